"""
Core data models for Feed Writer

定義 FeedSource / CandidateEntry / ValidationResult 以及生成、發布、去重的契約。
除 FeedSource 與 DedupRecord 外，其餘皆為 request-scoped 的值。
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator

from feed_writer.utils.time import utcnow


class KeywordLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class ValidationConfig(BaseModel):
    """
    Feed 個別的 admission 規則 (immutable)

    min_score 與 [0, 100] 範圍內的 score 比較。
    """
    model_config = ConfigDict(frozen=True)

    keywords: List[str] = Field(default_factory=list, description="關鍵字 (ordered set)")
    keyword_logic: KeywordLogic = Field(default=KeywordLogic.OR, description="AND | OR")
    require_japanese: bool = Field(default=False, description="是否要求日文內容")
    min_score: float = Field(default=70, ge=0, le=100, description="最低分數")
    is_enabled: bool = Field(default=True, description="是否啟用驗證")

    @field_validator("keywords")
    @classmethod
    def _ordered_unique(cls, keywords: List[str]) -> List[str]:
        seen = set()
        result = []
        for keyword in keywords:
            keyword = keyword.strip()
            if keyword and keyword not in seen:
                seen.add(keyword)
                result.append(keyword)
        return result


class FeedSource(BaseModel):
    """訂閱中的 RSS feed"""
    id: str = Field(..., description="Feed ID")
    url: str = Field(..., description="RSS feed URL")
    title: Optional[str] = Field(None, description="顯示名稱")
    is_active: bool = Field(default=True, description="停用時不刪除 (soft-deactivate)")
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = Field(None, description="建立者")

    def with_validation(self, validation: ValidationConfig) -> "FeedSource":
        """規則變更時回傳新的 FeedSource"""
        return self.model_copy(update={"validation": validation, "updated_at": utcnow()})


class CandidateEntry(BaseModel):
    """單一 RSS item (每次 run 重新抓取，不持久化)"""
    title: str = Field(default="", description="標題")
    link: str = Field(default="", description="連結")
    description: Optional[str] = Field(None, description="RSS snippet")
    content: Optional[str] = Field(None, description="content:encoded")
    pub_date: Optional[str] = Field(None, description="原始 pubDate 字串")
    published_at: Optional[datetime] = Field(None, description="解析後的發布時間 (UTC)")
    categories: List[str] = Field(default_factory=list)
    guid: Optional[str] = None

    source_id: Optional[str] = Field(None, description="FeedSource ID")
    source_url: Optional[str] = Field(None, description="Feed URL")
    source_title: Optional[str] = Field(None, description="Feed 名稱")

    def searchable_fields(self) -> List[str]:
        """title / description / content (依序)"""
        return [self.title or "", self.description or "", self.content or ""]

    @property
    def body_text(self) -> str:
        return self.content or self.description or ""


class ValidationResult(BaseModel):
    """Admission 結果 (每次 run 重新計算)"""
    is_valid: bool
    score: float = Field(..., ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)


class ExtractedFacts(BaseModel):
    """
    從候選文章抽取的語意 facts

    canonical key 由這些欄位組成，而非 RSS link / title。
    """
    work_title: str = Field(..., description="作品名")
    venue: str = Field(..., description="主要會場或店舗名")
    event_type: Optional[str] = Field(None, description="活動類型 (e.g. コラボカフェ)")
    start_date: Optional[date] = Field(None, description="開催開始日")
    end_date: Optional[date] = Field(None, description="開催終了日")
    event_year: Optional[int] = Field(None, description="無 start_date 時使用")
    official_url: Optional[str] = Field(None, description="官方公告 URL")


class GenerationOptions(BaseModel):
    """生成選項；同時作為 template 條件式的評估 context"""
    model_config = ConfigDict(extra="allow")

    target_length: Optional[int] = Field(None, description="目標字數")
    tone: Optional[str] = Field(None, description="語氣")
    language: str = Field(default="ja", description="輸出語言")
    keyword_hints: List[str] = Field(default_factory=list)

    def as_context(self) -> Dict[str, Any]:
        return self.model_dump()


class GenerationRequest(BaseModel):
    entry: CandidateEntry
    facts: ExtractedFacts
    canonical_key: str
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class GenerationResult(BaseModel):
    """生成的文章欄位 + metadata"""
    title: str
    body: str
    excerpt: str = ""
    tags: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    word_count: int = 0
    generated_at: datetime = Field(default_factory=utcnow)
    model: Optional[str] = None


class PublishResult(BaseModel):
    """
    發布結果

    失敗時 article 仍保留，避免生成內容遺失。
    """
    target: Literal["mdx", "wordpress"]
    success: bool
    post_id: Optional[str] = None
    file_path: Optional[str] = None
    pull_request_url: Optional[str] = None
    pull_request_number: Optional[int] = None
    article: Optional[GenerationResult] = None
    error: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        """CMS post id，或 file path (+ PR URL)"""
        if self.target == "wordpress":
            return self.post_id
        if self.pull_request_url:
            return f"{self.file_path} ({self.pull_request_url})"
        return self.file_path


class DedupStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    FAILED = "failed"


class DedupRecord(BaseModel):
    """去重紀錄 (以 canonical key 為主鍵)"""
    canonical_key: str
    status: DedupStatus = DedupStatus.PENDING
    run_id: str
    publish_ref: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "canonical_key": "jujutsu-kaisen:box-cafe-and-space:collabo-cafe:2025",
                "status": "generated",
                "run_id": "run_20251201_101500_ab12cd34",
                "publish_ref": "content/collabo-cafe/jujutsu-kaisen/01jcxy4567.mdx",
                "created_at": "2025-12-01T01:15:00Z",
                "updated_at": "2025-12-01T01:16:30Z"
            }
        }


class DuplicateCheck(BaseModel):
    """Duplicate 檢查 / reservation 結果"""
    canonical_key: str
    exists: bool
    existing_ref: Optional[str] = None
    existing: Optional[DedupRecord] = None

    @property
    def message(self) -> str:
        if not self.exists:
            return f"No existing record for {self.canonical_key}"
        if self.existing is None:
            return f"Reserved or unreadable record: {self.canonical_key}"
        status = self.existing.status
        if status == DedupStatus.GENERATED:
            message = f"Already generated: {self.canonical_key} (status={status.value}"
        elif status == DedupStatus.PENDING:
            message = f"In progress by {self.existing.run_id}: {self.canonical_key} (status={status.value}"
        else:
            message = f"Reservation conflict: {self.canonical_key} (status={status.value}"
        if self.existing_ref:
            message += f", ref={self.existing_ref}"
        return message + ")"


ProgressKind = Literal["step", "skipped", "completed", "exhausted"]


class ProgressEvent(BaseModel):
    """單向 progress 通知"""
    step: int
    total_steps: int
    message: str
    detail: Optional[str] = None
    kind: ProgressKind = "step"


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"


class CandidateAttempt(BaseModel):
    """一次 attempt (消耗一個候選)"""
    index: int
    title: str
    link: str
    result: Literal["published", "duplicate", "rejected"]
    canonical_key: Optional[str] = None
    message: Optional[str] = None


class GenerationOutcome(BaseModel):
    """Orchestrator 的 terminal 結果 (Completed | Exhausted)"""
    status: OutcomeStatus
    run_id: str
    feed_url: str
    start_index: int
    attempts: List[CandidateAttempt] = Field(default_factory=list)
    duplicates_seen: int = 0
    rejections_seen: int = 0
    last_duplicate_message: Optional[str] = None
    canonical_key: Optional[str] = None
    facts: Optional[ExtractedFacts] = None
    generation: Optional[GenerationResult] = None
    publish: Optional[PublishResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


class RunMetadata(BaseModel):
    """執行期中繼資料"""
    run_id: str
    feed_url: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = Field(default="running")

    stats: Dict[str, Any] = Field(default_factory=dict, description="attempts、duplicates 等")
