"""
RSS Feed Collector

取得 feed 並轉為 CandidateEntry。transport / parse 錯誤對整個 run 是 fatal。
"""

import feedparser
from typing import Any, Dict, List, Optional, Tuple
import logging
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from feed_writer.errors import FeedFetchError, FeedInactiveError
from feed_writer.models import CandidateEntry, FeedSource, ValidationResult
from feed_writer.processing.url_normalize import normalize_url
from feed_writer.processing.validation import validate
from feed_writer.utils import time as time_utils

logger = logging.getLogger(__name__)


class CollectionReport(BaseModel):
    """單一 FeedSource 的取得 + admission 結果"""
    source_id: str
    feed_url: str
    total: int = 0
    admitted: List[CandidateEntry] = Field(default_factory=list)
    entries: List[CandidateEntry] = Field(default_factory=list, description="取得的 entry (feed 順序)")
    results: List[ValidationResult] = Field(default_factory=list, description="與 entries 同 index")

    @property
    def valid(self) -> int:
        return len(self.admitted)

    @property
    def invalid(self) -> int:
        return self.total - self.valid

    def rejection_reasons(self) -> List[Tuple[CandidateEntry, List[str]]]:
        """被拒絕的 entry 與理由 (同 link 或無 link 的 entry 也各自保留)"""
        return [(entry, result.reasons) for entry, result in zip(self.entries, self.results)
                if not result.is_valid]


def _validate_url(url: str) -> None:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise FeedFetchError(f"Invalid feed URL: {url!r} (only http/https are supported)", url=url)


def _entry_content(entry: Dict[str, Any]) -> Optional[str]:
    """content:encoded (content[0].value)"""
    contents = entry.get('content') or []
    if contents:
        value = contents[0].get('value')
        if value:
            return value
    return None


def _entry_published(entry: Dict[str, Any]):
    for field in ('published_parsed', 'updated_parsed'):
        dt = time_utils.from_struct_time(entry.get(field))
        if dt:
            return dt
    return time_utils.parse_feed_date(entry.get('published') or entry.get('updated'))


def to_candidate(entry: Dict[str, Any], source: Optional[FeedSource] = None, feed_url: Optional[str] = None) -> CandidateEntry:
    """feedparser entry -> CandidateEntry"""
    link = (entry.get('link') or '').strip()
    return CandidateEntry(
        title=(entry.get('title') or '').strip(),
        link=normalize_url(link),
        description=entry.get('summary') or entry.get('description'),
        content=_entry_content(entry),
        pub_date=entry.get('published') or entry.get('updated'),
        published_at=_entry_published(entry),
        categories=[t.get('term') for t in (entry.get('tags') or []) if t.get('term')],
        guid=entry.get('id') or entry.get('guid') or link or None,
        source_id=source.id if source else None,
        source_url=source.url if source else feed_url,
        source_title=source.title if source else None,
    )


def fetch_feed(url: str, max_items: int = 50, source: Optional[FeedSource] = None) -> List[CandidateEntry]:
    """
    取得單一 RSS/Atom feed

    Args:
        url: Feed URL
        max_items: 最多取得的項目數 (feed 原本的順序)
        source: 對應的 FeedSource (back-reference 用，可選)

    Returns:
        CandidateEntry 清單 (可能為空)

    Raises:
        FeedFetchError: URL 不合法、HTTP 錯誤、或不是有效的 feed
    """
    _validate_url(url)

    logger.info(f"Fetching RSS feed: {url}")
    try:
        parsed = feedparser.parse(url)
    except Exception as e:
        raise FeedFetchError(f"Could not fetch feed: {e}", url=url) from e

    status = parsed.get('status', 200)
    if status >= 400:
        raise FeedFetchError(f"Could not reach feed: HTTP {status}", url=url)

    feed_meta = parsed.get('feed') or {}
    entries = parsed.get('entries') or []

    if not feed_meta.get('title') and not entries:
        detail = f": {parsed.get('bozo_exception')}" if parsed.get('bozo') else ""
        raise FeedFetchError(f"URL does not point to a valid RSS or Atom feed{detail}", url=url)

    if parsed.get('bozo'):
        logger.warning(f"Feed parsing warning for {url}: {parsed.get('bozo_exception')}")

    candidates = [to_candidate(entry, source, feed_url=url) for entry in entries[:max_items]]

    logger.info(f"✓ Fetched {len(candidates)} entries from {feed_meta.get('title', url)}")
    return candidates


def collect_candidates(source: FeedSource, max_items: int = 50) -> CollectionReport:
    """
    取得 FeedSource 並對每個 entry 執行 admission

    Args:
        source: FeedSource
        max_items: 最多取得數

    Returns:
        CollectionReport

    Raises:
        FeedInactiveError: feed 已停用
    """
    if not source.is_active:
        raise FeedInactiveError(f"Feed {source.id} is inactive")

    entries = fetch_feed(source.url, max_items=max_items, source=source)
    report = CollectionReport(source_id=source.id, feed_url=source.url, total=len(entries))

    for entry in entries:
        result = validate(entry, source.validation)
        report.entries.append(entry)
        report.results.append(result)
        if result.is_valid:
            report.admitted.append(entry)

    logger.info(f"Admission for {source.id}: {report.valid} valid, {report.invalid} invalid")
    return report
