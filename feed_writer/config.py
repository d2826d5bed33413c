"""
Configuration schemas using Pydantic

定義完整的配置結構，包含 feeds、template、publish target、LLM 與 dedup store 設定。
Secrets 不寫在 YAML 裡，只記錄環境變數名稱 (*_env)。
"""

from typing import Any, Dict, List, Optional, Literal
from pydantic import BaseModel, Field
import os

from feed_writer.errors import ConfigError
from feed_writer.models import FeedSource, GenerationOptions


class GitHubConfig(BaseModel):
    """MDX 發布用的 GitHub repository 設定"""
    repository: Optional[str] = Field(None, description="owner/repo (None=只寫本機檔案)")
    base_branch: str = Field(default="main", description="PR base branch")
    token_env: str = Field(default="GITHUB_TOKEN", description="GitHub token 環境變數名稱")
    api_url: str = Field(default="https://api.github.com", description="GitHub API base URL")


class WordPressConfig(BaseModel):
    """WordPress REST API 設定"""
    base_url: Optional[str] = Field(None, description="WordPress site URL")
    username: Optional[str] = Field(None, description="Application password 使用者")
    app_password_env: str = Field(default="WORDPRESS_APP_PASSWORD", description="Application password 環境變數名稱")
    status: Literal["draft", "publish", "pending", "private"] = Field(default="draft", description="投稿狀態")


class PublishConfig(BaseModel):
    """發布目標設定 (取代環境變數的 pipeline mode 切換)"""
    target: Literal["mdx", "wordpress"] = Field(default="mdx", description="發布目標")
    content_dir: str = Field(default="content", description="MDX 輸出目錄 (repository 內的相對路徑)")
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    wordpress: WordPressConfig = Field(default_factory=WordPressConfig)


class LLMConfig(BaseModel):
    """OpenAI-compatible LLM 設定"""
    base_url: Optional[str] = Field(None, description="API base URL (None=OpenAI)")
    api_key_env: str = Field(default="OPENAI_API_KEY", description="API key 環境變數名稱")
    model: str = Field(default="gpt-4o-mini", description="模型名稱")
    temperature: float = Field(default=0.3, ge=0, le=2, description="Temperature")
    max_tokens: int = Field(default=4096, description="最大輸出 token 數")
    timeout_seconds: float = Field(default=120, description="Request timeout")


class DedupConfig(BaseModel):
    """去重紀錄後端設定"""
    backend: Literal["files", "postgres"] = Field(default="files", description="儲存後端")
    base_dir: str = Field(default="memory", description="files 後端的目錄")
    postgres_dsn_env: Optional[str] = Field(None, description="Postgres DSN 環境變數名稱")
    reservation_ttl_minutes: int = Field(default=30, ge=1, description="pending reservation 的有效時間")


class FeedWriterConfig(BaseModel):
    """完整設定 schema"""
    # 基本設定
    run_timezone: str = Field(default="Asia/Tokyo", description="執行時區 (event year 推定、run id)")
    max_items_per_feed: int = Field(default=50, ge=1, description="每個 feed 最多抓取數")
    max_attempts: int = Field(default=5, ge=1, description="每次 run 最多嘗試的候選數")

    # Template
    templates_dir: str = Field(default="templates", description="Template 根目錄")
    template_id: str = Field(default="collabo-cafe", description="使用的 template id")
    debug_templates: bool = Field(default=False, description="在 section 之間插入 boundary marker")
    generation_options: Dict[str, Any] = Field(default_factory=dict, description="生成選項 / 條件式 context")

    # Feeds
    feeds: List[FeedSource] = Field(default_factory=list, description="RSS feeds 清單")

    # 外部 collaborator
    publish: PublishConfig = Field(default_factory=PublishConfig, description="發布設定")
    llm: LLMConfig = Field(default_factory=LLMConfig, description="LLM 設定")
    dedup: DedupConfig = Field(default_factory=DedupConfig, description="去重紀錄設定")

    slug_aliases: Optional[str] = Field(None, description="Slug alias YAML 路徑")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "FeedWriterConfig":
        """從 YAML 檔案載入設定"""
        import yaml
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

    def get_feed(self, feed_ref: str) -> Optional[FeedSource]:
        """以 feed id 或 URL 查詢"""
        for feed in self.feeds:
            if feed.id == feed_ref or feed.url == feed_ref:
                return feed
        return None

    def get_generation_options(self) -> GenerationOptions:
        return GenerationOptions(**self.generation_options)

    def get_postgres_dsn(self) -> Optional[str]:
        """取得 Postgres DSN (從環境變數)"""
        if self.dedup.postgres_dsn_env:
            return os.environ.get(self.dedup.postgres_dsn_env)
        return None

    def get_llm_api_key(self) -> str:
        return _require_env(self.llm.api_key_env)

    def get_github_token(self) -> str:
        return _require_env(self.publish.github.token_env)

    def get_wordpress_password(self) -> str:
        return _require_env(self.publish.wordpress.app_password_env)


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"Environment variable {name} is not set")
    return value


class OrchestratorSettings(BaseModel):
    """Orchestrator 建構時傳入的設定 (core 內不讀環境變數)"""
    max_attempts: int = Field(default=5, ge=1)
    template_id: str = Field(default="collabo-cafe")
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    debug_templates: bool = Field(default=False)
    run_timezone: str = Field(default="Asia/Tokyo")
    max_items: int = Field(default=50, ge=1)

    @classmethod
    def from_config(cls, cfg: FeedWriterConfig) -> "OrchestratorSettings":
        return cls(
            max_attempts=cfg.max_attempts,
            template_id=cfg.template_id,
            options=cfg.get_generation_options(),
            debug_templates=cfg.debug_templates,
            run_timezone=cfg.run_timezone,
            max_items=cfg.max_items_per_feed,
        )
