"""
MDX publisher

生成的文章寫成 <content_dir>/<event_type>/<work>/<post_id>.mdx (YAML frontmatter)。
設定 GitHub repository 時改為建立 branch + commit + pull request (GitHub REST API)。
"""

import base64
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

import requests
import yaml

from feed_writer.errors import DuplicateSlugError, PublishError
from feed_writer.models import GenerationRequest, GenerationResult, PublishResult
from feed_writer.processing.canonical_key import parse_canonical_key
from feed_writer.utils.hashing import key_digest
from feed_writer.utils.time import format_iso8601

logger = logging.getLogger(__name__)

POST_ID_LENGTH = 10
COMMITTER = {"name": "Feed Writer", "email": "feed-writer@users.noreply.github.com"}


def post_id_for(canonical_key: str) -> str:
    """同一 canonical key 一律得到同一 post id"""
    return key_digest(canonical_key)[:POST_ID_LENGTH]


def _path_part(value: str) -> str:
    return value.replace("/", "-").replace("\\", "-").strip(".") or "untitled"


def build_frontmatter(article: GenerationResult, request: GenerationRequest, post_id: str) -> Dict[str, Any]:
    facts = request.facts
    frontmatter = {
        "title": article.title,
        "slug": post_id,
        "date": format_iso8601(article.generated_at),
        "excerpt": article.excerpt,
        "tags": article.tags,
        "categories": article.categories,
        "work_title": facts.work_title,
        "venue": facts.venue,
        "event_type": facts.event_type,
        "start_date": facts.start_date.isoformat() if facts.start_date else None,
        "end_date": facts.end_date.isoformat() if facts.end_date else None,
        "official_url": facts.official_url,
        "source_url": request.entry.link or None,
        "canonical_key": request.canonical_key,
        "model": article.model,
    }
    return {k: v for k, v in frontmatter.items() if v not in (None, "", [])}


def render_mdx(article: GenerationResult, request: GenerationRequest, post_id: str) -> str:
    """YAML frontmatter + 本文"""
    frontmatter = yaml.safe_dump(
        build_frontmatter(article, request, post_id), allow_unicode=True, sort_keys=False
    )
    return f"---\n{frontmatter}---\n\n{article.body.strip()}\n"


class GitHubClient:
    """最小限的 GitHub REST API client (branch / contents / pulls)"""

    def __init__(
        self,
        repository: str,
        token: str,
        base_branch: str = "main",
        api_url: str = "https://api.github.com",
        session: Optional[requests.Session] = None,
        timeout: float = 30
    ):
        self.repository = repository
        self.base_branch = base_branch
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    def _url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.repository}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PublishError(f"GitHub request failed: {method} {path}: {e}") from e

        if resp.status_code >= 400:
            raise PublishError(
                f"GitHub API error: {method} {path} -> HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code
            )
        return resp

    def file_exists(self, path: str, ref: Optional[str] = None) -> bool:
        try:
            self._request("GET", f"contents/{path}", params={"ref": ref or self.base_branch})
        except PublishError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def create_pull_request(self, branch: str, path: str, content: str, title: str, body: str) -> Dict[str, Any]:
        """
        建立 branch、commit 檔案並開 PR

        Returns:
            GitHub pulls API 的回應 (number, html_url, ...)

        Raises:
            PublishError: 任一 API 呼叫失敗 (branch 已存在時為 HTTP 422)
        """
        base = self._request("GET", f"git/ref/heads/{self.base_branch}").json()
        self._request("POST", "git/refs", json={
            "ref": f"refs/heads/{branch}",
            "sha": base["object"]["sha"],
        })
        logger.info(f"✓ Created branch {branch}")

        self._request("PUT", f"contents/{path}", json={
            "message": title,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
            "committer": COMMITTER,
        })
        logger.info(f"✓ Committed {path}")

        pull = self._request("POST", "pulls", json={
            "title": title,
            "head": branch,
            "base": self.base_branch,
            "body": body,
        }).json()
        logger.info(f"✓ Opened pull request #{pull.get('number')}: {pull.get('html_url')}")
        return pull


class MdxPublisher:
    """MDX 檔案 (+ GitHub PR) 發布"""

    def __init__(
        self,
        content_dir: str = "content",
        github: Optional[GitHubClient] = None,
        base_dir: Union[str, Path] = "."
    ):
        """
        初始化 MdxPublisher

        Args:
            content_dir: repository 內的內容目錄
            github: GitHub client (None 時寫入本機 base_dir 下)
            base_dir: 本機寫入的根目錄
        """
        self.content_dir = content_dir.strip("/")
        self.github = github
        self.base_dir = Path(base_dir)

    def relative_path(self, request: GenerationRequest, post_id: str) -> str:
        parts = parse_canonical_key(request.canonical_key) or {}
        event_type = _path_part(parts.get("event_type", "event"))
        work = _path_part(parts.get("work", "untitled"))
        return f"{self.content_dir}/{event_type}/{work}/{post_id}.mdx"

    def publish(self, article: GenerationResult, request: GenerationRequest) -> PublishResult:
        """
        發布 MDX

        Args:
            article: 生成結果
            request: GenerationRequest (facts 與 canonical key)

        Returns:
            PublishResult；GitHub 失敗時 success=False 並保留 article

        Raises:
            DuplicateSlugError: 目標檔案已存在
        """
        post_id = post_id_for(request.canonical_key)
        rel_path = self.relative_path(request, post_id)
        content = render_mdx(article, request, post_id)

        if self.github is None:
            return self._write_local(rel_path, content, article, request, post_id)

        try:
            if self.github.file_exists(rel_path):
                raise DuplicateSlugError(
                    f"MDX file already exists: {rel_path}",
                    canonical_key=request.canonical_key,
                    existing_file_path=rel_path,
                )
            pull = self.github.create_pull_request(
                branch=f"content/mdx-{post_id}",
                path=rel_path,
                content=content,
                title=f"Generate MDX: {article.title}",
                body=self._pull_request_body(article, request, rel_path),
            )
        except PublishError as e:
            logger.error(f"✗ Failed to publish {rel_path}: {e}")
            return PublishResult(target="mdx", success=False, post_id=post_id, file_path=rel_path,
                                 article=article, error=str(e))

        return PublishResult(
            target="mdx",
            success=True,
            post_id=post_id,
            file_path=rel_path,
            pull_request_url=pull.get("html_url"),
            pull_request_number=pull.get("number"),
            article=article,
        )

    def _write_local(
        self,
        rel_path: str,
        content: str,
        article: GenerationResult,
        request: GenerationRequest,
        post_id: str
    ) -> PublishResult:
        file_path = self.base_dir / rel_path
        if file_path.exists():
            raise DuplicateSlugError(
                f"MDX file already exists: {rel_path}",
                canonical_key=request.canonical_key,
                existing_file_path=str(file_path),
            )

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "x", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise PublishError(f"Failed to write {file_path}: {e}", partial=article) from e

        logger.info(f"✓ Written MDX: {file_path}")
        return PublishResult(target="mdx", success=True, post_id=post_id, file_path=rel_path, article=article)

    @staticmethod
    def _pull_request_body(article: GenerationResult, request: GenerationRequest, rel_path: str) -> str:
        lines = [
            "## 概要",
            f"- Title: {article.title}",
            f"- File: `{rel_path}`",
            f"- Canonical key: `{request.canonical_key}`",
            f"- Source: {request.entry.link}",
        ]
        if article.model:
            lines.append(f"- Model: {article.model}")
        return "\n".join(lines)
