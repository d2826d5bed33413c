"""
WordPress publisher (REST API + application password)
"""

from typing import Optional
import logging

import requests

from feed_writer.models import GenerationRequest, GenerationResult, PublishResult
from feed_writer.publishing.mdx import post_id_for

logger = logging.getLogger(__name__)


class WordPressPublisher:
    """WordPress 投稿"""

    def __init__(
        self,
        base_url: str,
        username: str,
        app_password: str,
        status: str = "draft",
        session: Optional[requests.Session] = None,
        timeout: float = 30
    ):
        self.endpoint = f"{base_url.rstrip('/')}/wp-json/wp/v2/posts"
        self.status = status
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (username, app_password)

    def publish(self, article: GenerationResult, request: GenerationRequest) -> PublishResult:
        """
        建立投稿

        Returns:
            PublishResult (post_id 為 WordPress 的 post ID)；失敗時 success=False 並保留 article
        """
        payload = {
            "title": article.title,
            "content": article.body,
            "excerpt": article.excerpt,
            "status": self.status,
            "slug": post_id_for(request.canonical_key),
        }

        try:
            resp = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"✗ WordPress publish failed: {e}")
            return PublishResult(target="wordpress", success=False, article=article, error=str(e))

        post_id = str(data.get("id"))
        logger.info(f"✓ Created WordPress post {post_id}: {data.get('link')}")
        return PublishResult(target="wordpress", success=True, post_id=post_id, article=article)
