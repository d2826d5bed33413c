"""
Canonical Key

由抽取的語意 facts (作品、會場、活動類型、年份) 產生穩定的 event identity。
同一個真實活動不論 RSS 標題怎麼寫，都必須得到同一個 key。

Format: {work}:{venue}:{event_type}:{year}

期間元件一律為年份：有無抽取到開始日的 item 都得到相同 key。
"""

from pathlib import Path
from typing import Dict, Optional, Mapping, Any, Union
import logging
import re
import unicodedata

import yaml

from feed_writer.errors import CanonicalKeyError
from feed_writer.models import ExtractedFacts

logger = logging.getLogger(__name__)

SEPARATOR = ":"
DEFAULT_EVENT_TYPE = "event"

# 固定的欄位順序
KEY_FIELDS = ("work", "venue", "event_type", "year")

_WHITESPACE = re.compile(r"\s+")
_YEAR_PATTERN = re.compile(r"^\d{4}$")


class SlugAliases:
    """
    顯示名稱 -> slug 對照表

    吸收同義詞 (e.g. コラボカフェ / カフェコラボ -> collabo-cafe)。
    查詢前會先做與 key 相同的 normalize，所以表內寫法不必完全一致。
    """

    def __init__(
        self,
        works: Optional[Dict[str, str]] = None,
        venues: Optional[Dict[str, str]] = None,
        event_types: Optional[Dict[str, str]] = None
    ):
        self.works = _normalize_table(works or {})
        self.venues = _normalize_table(venues or {})
        self.event_types = _normalize_table(event_types or {})

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "SlugAliases":
        """從 YAML 檔案載入 (works / venues / event_types)"""
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(
            works=data.get("works"),
            venues=data.get("venues"),
            event_types=data.get("event_types"),
        )

    def resolve(self, table: str, value: str) -> str:
        normalized = normalize_component(value)
        return getattr(self, table).get(normalized, normalized)


def _normalize_table(table: Dict[str, str]) -> Dict[str, str]:
    return {normalize_component(k): normalize_component(v) for k, v in table.items()}


def normalize_component(value: str) -> str:
    """
    正規化單一 key 元件

    1. NFKC (全形英數 -> 半形)
    2. 去除前後空白，內部空白壓縮為 '-'
    3. case-fold
    4. ':' 置換為 '-' (保留分隔符號的唯一性)

    Args:
        value: 原始值

    Returns:
        正規化後的字串
    """
    value = unicodedata.normalize("NFKC", value or "")
    value = _WHITESPACE.sub(" ", value.strip())
    value = value.replace(" ", "-").casefold()
    return value.replace(SEPARATOR, "-")


def _year_component(facts: ExtractedFacts, fallback_year: Optional[int]) -> str:
    """start_date 的年份 > event_year > fallback_year"""
    if facts.start_date is not None:
        year = facts.start_date.year
    else:
        year = facts.event_year or fallback_year
    if year is None:
        raise CanonicalKeyError(
            f"Cannot determine event period for '{facts.work_title}': "
            "no start_date, event_year, or fallback year"
        )
    if year <= 0:
        raise CanonicalKeyError(f"Invalid year: {year}. Year must be a positive integer.")
    return str(year)


def compute_canonical_key(
    facts: Union[ExtractedFacts, Mapping[str, Any]],
    aliases: Optional[SlugAliases] = None,
    fallback_year: Optional[int] = None
) -> str:
    """
    由 facts 產生 canonical key

    欄位以名稱讀取並以固定順序串接，因此 facts 的抽取順序不影響結果；
    任何一個 fact 的值改變 (例如會場名稱) 都會改變 key。

    Args:
        facts: ExtractedFacts 或等價的 mapping
        aliases: 同義詞對照表 (可選)
        fallback_year: 無 start_date / event_year 時使用的年份

    Returns:
        Canonical key
    """
    if not isinstance(facts, ExtractedFacts):
        facts = ExtractedFacts.model_validate(dict(facts))

    aliases = aliases or SlugAliases()

    work = aliases.resolve("works", facts.work_title)
    venue = aliases.resolve("venues", facts.venue)
    event_type = aliases.resolve("event_types", facts.event_type or DEFAULT_EVENT_TYPE)

    if not work or not venue:
        raise CanonicalKeyError(
            f"work_title and venue must be non-empty (work={facts.work_title!r}, venue={facts.venue!r})"
        )
    if not event_type:
        event_type = DEFAULT_EVENT_TYPE

    year = _year_component(facts, fallback_year)
    key = SEPARATOR.join([work, venue, event_type, year])

    logger.debug(f"Canonical key: {key}")
    return key


def parse_canonical_key(canonical_key: str) -> Optional[Dict[str, str]]:
    """
    拆解 canonical key

    Returns:
        {work, venue, event_type, year} 或 None (格式不符)
    """
    parts = canonical_key.split(SEPARATOR)
    if len(parts) != len(KEY_FIELDS):
        return None
    if not all(parts):
        return None
    if not _YEAR_PATTERN.match(parts[-1]):
        return None
    return dict(zip(KEY_FIELDS, parts))


def is_valid_canonical_key(canonical_key: str) -> bool:
    return parse_canonical_key(canonical_key) is not None
