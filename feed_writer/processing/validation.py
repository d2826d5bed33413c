"""
Admission Scoring (Validation Engine)

決定單一 RSS entry 是否值得生成文章。純函式：無 I/O、無隱藏狀態。

Score 組成 (固定順序，每項只加一次):
    keyword pass (或無關鍵字)      -> +60
    日文條件滿足 (或不要求日文)    -> +30
    title 與 link 皆非空           -> +10
"""

from typing import List
import logging
import re

from feed_writer.models import CandidateEntry, KeywordLogic, ValidationConfig, ValidationResult

logger = logging.getLogger(__name__)

KEYWORD_SCORE = 60
JAPANESE_SCORE = 30
COMPLETENESS_SCORE = 10
MAX_SCORE = KEYWORD_SCORE + JAPANESE_SCORE + COMPLETENESS_SCORE

# Hiragana, Katakana, CJK Unified Ideographs
JAPANESE_PATTERN = re.compile(r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FFF]")

REASON_NOT_JAPANESE = "not a Japanese-language article"
REASON_INCOMPLETE = "title or link missing"


def build_haystack(entry: CandidateEntry) -> str:
    """title / description / content 合併並 case-fold"""
    return " ".join(entry.searchable_fields()).casefold()


def check_keywords(entry: CandidateEntry, config: ValidationConfig) -> bool:
    """
    關鍵字檢查 (AND/OR，部分一致，不分大小寫)
    
    AND: 每個關鍵字都必須出現在 haystack 某處，可分散在不同欄位。
    空的關鍵字清單一律通過。
    
    Args:
        entry: 候選文章
        config: 驗證設定
    
    Returns:
        是否通過
    """
    if not config.keywords:
        return True
    
    haystack = build_haystack(entry)
    keywords = [kw.casefold() for kw in config.keywords]
    
    if config.keyword_logic == KeywordLogic.AND:
        return all(kw in haystack for kw in keywords)
    return any(kw in haystack for kw in keywords)


def check_japanese(entry: CandidateEntry) -> bool:
    """是否含有平假名、片假名或漢字"""
    text = " ".join(entry.searchable_fields())
    return JAPANESE_PATTERN.search(text) is not None


def validate(entry: CandidateEntry, config: ValidationConfig) -> ValidationResult:
    """
    對單一 entry 計算 admission score 與判定
    
    Args:
        entry: 候選文章
        config: Feed 的驗證設定
    
    Returns:
        ValidationResult (reasons 只供 operator 參考，不參與控制流程)
    """
    if not config.is_enabled:
        return ValidationResult(is_valid=True, score=MAX_SCORE, reasons=[])
    
    reasons: List[str] = []
    score = 0
    
    # 1. Keyword
    keyword_ok = check_keywords(entry, config)
    if keyword_ok:
        score += KEYWORD_SCORE
    else:
        logic = config.keyword_logic.value
        reasons.append(f"keywords not found ({logic}): {', '.join(config.keywords)}")
    
    # 2. Japanese
    japanese_ok = True
    if config.require_japanese:
        japanese_ok = check_japanese(entry)
    if japanese_ok:
        score += JAPANESE_SCORE
    else:
        reasons.append(REASON_NOT_JAPANESE)
    
    # 3. Completeness
    if entry.title.strip() and entry.link.strip():
        score += COMPLETENESS_SCORE
    else:
        reasons.append(REASON_INCOMPLETE)
    
    is_valid = keyword_ok and japanese_ok and score >= config.min_score
    if score < config.min_score:
        reasons.append(f"score {score} below minimum {config.min_score:g}")
    
    logger.debug(f"Validated '{entry.title[:40]}': score={score}, valid={is_valid}, " +
                 f"reasons={reasons}")
    
    return ValidationResult(is_valid=is_valid, score=score, reasons=reasons)


def partition_entries(
    entries: List[CandidateEntry],
    config: ValidationConfig
) -> tuple:
    """
    依 admission 結果分成 (admitted, rejected)
    
    Returns:
        (admitted entries, [(entry, ValidationResult), ...])
    """
    admitted = []
    rejected = []
    for entry in entries:
        result = validate(entry, config)
        if result.is_valid:
            admitted.append(entry)
        else:
            rejected.append((entry, result))
    
    logger.info(f"Admission: {len(admitted)}/{len(entries)} entries admitted")
    return admitted, rejected
