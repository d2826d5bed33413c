"""
Generation Orchestrator

依序處理 feed 的候選文章，直到第一篇成功發布或用盡 max_attempts。

    Idle -> FetchingCandidates -> ProcessingCandidate
         -> (ExtractingFacts -> CheckingDuplicate -> Generating -> Publishing)
         -> Completed | Exhausted | Failed

duplicate 是唯一會前進到下一個候選的情況 (以 tagged result 表示，不用例外控制流程)；
admission 被拒的候選同樣消耗一次 attempt。其他錯誤一律立即往外拋。
"""

from datetime import datetime
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Protocol
import logging
import uuid

import pytz

from feed_writer.config import OrchestratorSettings
from feed_writer.errors import DuplicateSlugError, NoCandidatesError, PublishError
from feed_writer.models import (
    CandidateAttempt,
    CandidateEntry,
    DuplicateCheck,
    ExtractedFacts,
    FeedSource,
    GenerationOutcome,
    GenerationRequest,
    GenerationResult,
    OutcomeStatus,
    ProgressEvent,
    PublishResult,
    RunMetadata,
)
from feed_writer.pipeline.progress import ProgressEmitter
from feed_writer.processing.canonical_key import SlugAliases, compute_canonical_key
from feed_writer.processing.dedupe import DuplicateResolver, raise_for_duplicate
from feed_writer.processing.validation import validate
from feed_writer.templating.resolver import TemplateResolver
from feed_writer.templating.schema import MergedTemplate
from feed_writer.utils import hashing
from feed_writer.utils.time import local_today, utcnow

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6
STEP_FETCH = 1
STEP_ADMISSION = 2
STEP_EXTRACT = 3
STEP_DUPLICATE = 4
STEP_GENERATE = 5
STEP_PUBLISH = 6


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING_CANDIDATES = "fetching_candidates"
    PROCESSING_CANDIDATE = "processing_candidate"
    EXTRACTING_FACTS = "extracting_facts"
    CHECKING_DUPLICATE = "checking_duplicate"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


# --- collaborators ---

class FeedFetcher(Protocol):
    def __call__(self, feed_url: str) -> List[CandidateEntry]: ...


class FactExtractor(Protocol):
    def extract(self, entry: CandidateEntry, template: MergedTemplate) -> ExtractedFacts: ...


class ArticleGenerator(Protocol):
    def generate(self, request: GenerationRequest, template: MergedTemplate) -> GenerationResult: ...


class Publisher(Protocol):
    def publish(self, article: GenerationResult, request: GenerationRequest) -> PublishResult: ...


class RunStore(Protocol):
    def save_run(self, run_meta: RunMetadata) -> None: ...


class CandidateResult(NamedTuple):
    """單一候選的處理結果 (published | duplicate | rejected)"""
    attempt: CandidateAttempt
    check: Optional[DuplicateCheck] = None
    facts: Optional[ExtractedFacts] = None
    generation: Optional[GenerationResult] = None
    publish: Optional[PublishResult] = None


def new_run_id(tz_name: str = "UTC") -> str:
    timestamp = datetime.now(pytz.timezone(tz_name)).strftime("%Y%m%d_%H%M%S")
    return f"run_{timestamp}_{uuid.uuid4().hex[:8]}"


class GenerationOrchestrator:
    """有上限的 retry/skip state machine"""

    def __init__(
        self,
        fetcher: FeedFetcher,
        extractor: FactExtractor,
        generator: ArticleGenerator,
        publisher: Publisher,
        dedup: DuplicateResolver,
        templates: TemplateResolver,
        settings: Optional[OrchestratorSettings] = None,
        aliases: Optional[SlugAliases] = None,
        progress: Optional[List[Callable[[ProgressEvent], None]]] = None,
        run_store: Optional[RunStore] = None
    ):
        """
        初始化 GenerationOrchestrator

        Args:
            fetcher: feed_url -> CandidateEntry 清單
            extractor: facts 抽取
            generator: 文章生成
            publisher: 發布目標 (MDX / WordPress)
            dedup: DuplicateResolver
            templates: TemplateResolver
            settings: 建構時決定的設定 (不讀環境變數)
            aliases: slug alias 表
            progress: progress sinks
            run_store: run metadata 的寫入目標 (可選)
        """
        self.fetcher = fetcher
        self.extractor = extractor
        self.generator = generator
        self.publisher = publisher
        self.dedup = dedup
        self.templates = templates
        self.settings = settings or OrchestratorSettings()
        self.aliases = aliases
        self.progress = list(progress or [])
        self.run_store = run_store
        self.state = RunState.IDLE

    def run(
        self,
        feed_url: str,
        start_index: int = 0,
        max_attempts: Optional[int] = None,
        source: Optional[FeedSource] = None
    ) -> GenerationOutcome:
        """
        執行一次生成

        Args:
            feed_url: Feed URL
            start_index: 第一個候選的 index
            max_attempts: 最多處理的候選數 (None 時使用 settings)
            source: FeedSource (有啟用的 validation 時執行 admission)

        Returns:
            GenerationOutcome (Completed 或 Exhausted)

        Raises:
            ValueError: max_attempts 小於 1
            NoCandidatesError: feed 為空或 start_index 超出範圍
            FeedFetchError / ProviderError / TemplateError / ...: 其他錯誤不重試
        """
        if max_attempts is None:
            max_attempts = self.settings.max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        return self._execute(feed_url, start_index, max_attempts, source, raise_on_duplicate=False)

    def generate_item(self, feed_url: str, index: int, source: Optional[FeedSource] = None) -> GenerationOutcome:
        """
        只處理指定的單一候選

        Raises:
            DuplicateSlugError: 該候選已生成
        """
        return self._execute(feed_url, index, 1, source, raise_on_duplicate=True)

    # ------------------------------------------------------------------

    def _execute(
        self,
        feed_url: str,
        start_index: int,
        max_attempts: int,
        source: Optional[FeedSource],
        raise_on_duplicate: bool
    ) -> GenerationOutcome:
        run_id = new_run_id(self.settings.run_timezone)
        emitter = ProgressEmitter(self.progress, total_steps=TOTAL_STEPS)
        run_meta = RunMetadata(run_id=run_id, feed_url=feed_url, started_at=utcnow())
        outcome = GenerationOutcome(
            status=OutcomeStatus.EXHAUSTED, run_id=run_id, feed_url=feed_url, start_index=start_index
        )

        logger.info(f"Run {run_id}: {feed_url} (start={start_index}, max_attempts={max_attempts})")

        try:
            self.state = RunState.FETCHING_CANDIDATES
            emitter.emit(STEP_FETCH, "Fetching feed", feed_url)
            entries = self.fetcher(feed_url)

            if not entries:
                raise NoCandidatesError(f"Feed has no items: {feed_url}", item_count=0, start_index=start_index)
            if start_index < 0 or start_index >= len(entries):
                raise NoCandidatesError(
                    f"start_index {start_index} is out of range (feed has {len(entries)} items)",
                    item_count=len(entries),
                    start_index=start_index
                )
            emitter.emit(STEP_FETCH, f"Fetched {len(entries)} candidates")

            end_index = min(len(entries), start_index + max_attempts)
            for index in range(start_index, end_index):
                result = self._process_candidate(entries[index], index, run_id, emitter, source)
                outcome.attempts.append(result.attempt)

                if result.attempt.result == "rejected":
                    outcome.rejections_seen += 1
                    continue

                if result.attempt.result == "duplicate":
                    outcome.duplicates_seen += 1
                    outcome.last_duplicate_message = result.attempt.message
                    if raise_on_duplicate:
                        raise_for_duplicate(result.check)
                    continue

                self.state = RunState.COMPLETED
                outcome.status = OutcomeStatus.COMPLETED
                outcome.canonical_key = result.attempt.canonical_key
                outcome.facts = result.facts
                outcome.generation = result.generation
                outcome.publish = result.publish
                emitter.emit(STEP_PUBLISH, "Completed", result.publish.reference, kind="completed")
                break
            else:
                self.state = RunState.EXHAUSTED
                emitter.emit(
                    TOTAL_STEPS,
                    f"Exhausted after {len(outcome.attempts)} attempts " +
                    f"({outcome.duplicates_seen} duplicates, {outcome.rejections_seen} rejected)",
                    outcome.last_duplicate_message,
                    kind="exhausted"
                )

        except Exception as e:
            self.state = RunState.FAILED
            run_meta.status = "failed"
            run_meta.stats = self._stats(outcome)
            run_meta.stats["error"] = str(e)
            logger.error(f"✗ Run {run_id} failed: {e}")
            try:
                self._save_run(run_meta)
            except Exception as save_error:
                logger.error(f"Failed to save run metadata {run_id}: {save_error}")
            raise

        run_meta.status = outcome.status.value
        run_meta.stats = self._stats(outcome)
        self._save_run(run_meta)

        if outcome.succeeded:
            logger.info(f"✓ Run {run_id} completed: {outcome.canonical_key} -> {outcome.publish.reference}")
        else:
            logger.warning(f"Run {run_id} exhausted: {outcome.duplicates_seen} duplicates, " +
                           f"{outcome.rejections_seen} rejected")
        return outcome

    def _process_candidate(
        self,
        entry: CandidateEntry,
        index: int,
        run_id: str,
        emitter: ProgressEmitter,
        source: Optional[FeedSource]
    ) -> CandidateResult:
        self.state = RunState.PROCESSING_CANDIDATE

        def attempt(result: str, key: Optional[str] = None, message: Optional[str] = None) -> CandidateAttempt:
            return CandidateAttempt(index=index, title=entry.title, link=entry.link,
                                    result=result, canonical_key=key, message=message)

        # Step 2: admission
        if source is not None and source.validation.is_enabled:
            validation = validate(entry, source.validation)
            if not validation.is_valid:
                reasons = "; ".join(validation.reasons)
                emitter.emit(STEP_ADMISSION, f"Skipped rejected candidate #{index}: {entry.title}",
                             reasons, kind="skipped")
                return CandidateResult(attempt("rejected", message=reasons))
            emitter.emit(STEP_ADMISSION, f"Admitted candidate #{index}", f"score={validation.score:g}")

        template = self.templates.resolve(
            self.settings.template_id, self.settings.options, debug=self.settings.debug_templates
        )

        # Step 3: facts + canonical key
        self.state = RunState.EXTRACTING_FACTS
        emitter.emit(STEP_EXTRACT, f"Extracting facts from candidate #{index}", entry.title)
        facts = self.extractor.extract(entry, template)
        key = compute_canonical_key(
            facts, self.aliases, fallback_year=local_today(self.settings.run_timezone).year
        )
        emitter.emit(STEP_EXTRACT, "Computed canonical key", key)

        # Step 4: duplicate check + reservation
        self.state = RunState.CHECKING_DUPLICATE
        check = self.dedup.reserve(key, run_id)
        if check.exists:
            emitter.emit(STEP_DUPLICATE, f"Skipped duplicate candidate #{index}: {entry.title}",
                         check.message, kind="skipped")
            return CandidateResult(attempt("duplicate", key, check.message), check=check, facts=facts)
        emitter.emit(STEP_DUPLICATE, "Reserved canonical key", key)

        request = GenerationRequest(entry=entry, facts=facts, canonical_key=key, options=self.settings.options)
        try:
            # Step 5: generate
            self.state = RunState.GENERATING
            emitter.emit(STEP_GENERATE, "Generating article", template.template_id)
            article = self.generator.generate(request, template)

            # Step 6: publish
            self.state = RunState.PUBLISHING
            emitter.emit(STEP_PUBLISH, "Publishing article", article.title)
            publish = self._publish(article, request)

        except DuplicateSlugError as e:
            # 發布目標已有同一篇
            ref = e.existing_file_path or e.existing_ref
            self.dedup.mark_generated(key, run_id, ref)
            message = str(e)
            emitter.emit(STEP_PUBLISH, f"Skipped duplicate candidate #{index}: {entry.title}",
                         message, kind="skipped")
            check = DuplicateCheck(canonical_key=key, exists=True, existing_ref=ref)
            return CandidateResult(attempt("duplicate", key, message), check=check, facts=facts)

        except Exception as e:
            # 原本的錯誤 (step / partial) 優先於 reservation 更新失敗
            try:
                self.dedup.mark_failed(key, run_id, str(e))
            except Exception as mark_error:
                logger.error(f"✗ Failed to mark {key} as failed: {mark_error}")
            raise

        self.dedup.mark_generated(key, run_id, publish.reference)
        return CandidateResult(attempt("published", key, publish.reference),
                               facts=facts, generation=article, publish=publish)

    def _publish(self, article: GenerationResult, request: GenerationRequest) -> PublishResult:
        """PublishResult(success=False) 與 PublishError 一律轉為帶 partial article 的 PublishError"""
        try:
            result = self.publisher.publish(article, request)
        except PublishError as e:
            if e.partial is None:
                e.partial = article
            raise

        if not result.success:
            raise PublishError(result.error or "Publish failed", partial=result.article or article)
        return result

    def _stats(self, outcome: GenerationOutcome) -> dict:
        stats = {
            "attempts": len(outcome.attempts),
            "duplicates_seen": outcome.duplicates_seen,
            "rejections_seen": outcome.rejections_seen,
            "start_index": outcome.start_index,
            "template_id": self.settings.template_id,
            "settings_hash": hashing.config_hash({
                "template_id": self.settings.template_id,
                "generation_options": self.settings.options.as_context(),
                "max_attempts": self.settings.max_attempts,
            }),
        }
        if outcome.canonical_key:
            stats["canonical_key"] = outcome.canonical_key
        if outcome.publish:
            stats["publish_ref"] = outcome.publish.reference
        if outcome.generation:
            stats["content_hash"] = hashing.content_hash(outcome.generation.title, outcome.generation.body)
        return stats

    def _save_run(self, run_meta: RunMetadata) -> None:
        run_meta.finished_at = utcnow()
        if self.run_store is not None:
            self.run_store.save_run(run_meta)
