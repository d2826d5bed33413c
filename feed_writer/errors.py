"""
Error taxonomy for Feed Writer

Validation rejection 不是錯誤 (放在 ValidationResult.reasons)；
duplicate 是可恢復的結果 (orchestrator 前進到下一個候選)；其餘皆為 fatal。
"""

from typing import Any, Optional


class FeedWriterError(Exception):
    """所有 Feed Writer 例外的基底類別"""


class ConfigError(FeedWriterError):
    """設定檔缺漏或不一致"""


# --- Feed fetch ---

class FeedFetchError(FeedWriterError):
    """Feed 無法取得或無法解析 (整個 run fatal)"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FeedInactiveError(FeedWriterError):
    """Feed 已停用 (soft-deactivated)"""


class NoCandidatesError(FeedWriterError):
    """Feed 無項目，或 start_index 超出範圍"""

    def __init__(self, message: str, item_count: int = 0, start_index: int = 0):
        super().__init__(message)
        self.item_count = item_count
        self.start_index = start_index


# --- Templates ---

class TemplateError(FeedWriterError):
    """Template 相關錯誤的基底類別"""


class TemplateNotFoundError(TemplateError):
    """未知的 template id"""

    def __init__(self, template_id: str, path: Optional[str] = None):
        message = f"Template not found: {template_id}"
        if path:
            message += f" ({path})"
        super().__init__(message)
        self.template_id = template_id
        self.path = path


class TemplateIntegrityError(TemplateError):
    """Template graph 不一致 (缺少 shared、未知 section、循環依賴、順序不明確)"""

    def __init__(self, message: str, template_id: Optional[str] = None):
        if template_id:
            message = f"[{template_id}] {message}"
        super().__init__(message)
        self.template_id = template_id


class ConditionSyntaxError(TemplateIntegrityError):
    """條件式無法解析"""

    def __init__(self, message: str, expression: str, position: int = -1):
        detail = f"{message} in condition {expression!r}"
        if position >= 0:
            detail += f" at position {position}"
        super().__init__(detail)
        self.expression = expression
        self.position = position


class TemplateRenderError(TemplateError):
    """Placeholder 替換失敗 (缺少 required placeholder)"""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])


# --- Dedup ---

class CanonicalKeyError(FeedWriterError):
    """抽取的 facts 不足以產生 canonical key"""


class DuplicateSlugError(FeedWriterError):
    """
    重複內容 (同一 canonical key 已生成)

    retryable=False：同一個 key 重試只會得到同樣結果；
    orchestrator 以 tagged result 處理這個情況，此例外僅提供給需要 raise 的呼叫端。
    """

    retryable = False

    def __init__(
        self,
        message: str,
        canonical_key: str,
        existing_ref: Optional[str] = None,
        existing_file_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.canonical_key = canonical_key
        self.existing_ref = existing_ref
        self.existing_file_path = existing_file_path


class StoreError(FeedWriterError):
    """Dedup store 讀寫失敗"""


# --- Providers (extraction / generation / publish) ---

class ProviderError(FeedWriterError):
    """
    外部 provider 失敗 (run fatal，不自動重試)

    Attributes:
        step: 發生錯誤的 pipeline step 名稱
        partial: 已生成的部分內容 (若有)，讓呼叫端決定是否保留
    """

    retryable = False

    def __init__(self, message: str, step: Optional[str] = None, partial: Any = None):
        super().__init__(message)
        self.step = step
        self.partial = partial

    def __str__(self) -> str:
        base = super().__str__()
        if self.step:
            return f"[{self.step}] {base}"
        return base


class RateLimitError(ProviderError):
    """Provider rate limit"""

    retryable = True

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        partial: Any = None,
    ):
        super().__init__(message, step=step, partial=partial)
        self.retry_after_seconds = retry_after_seconds


class PublishError(ProviderError):
    """發布失敗；partial 帶著已生成的文章"""

    def __init__(self, message: str, partial: Any = None, status_code: Optional[int] = None):
        super().__init__(message, step="publish", partial=partial)
        self.status_code = status_code
