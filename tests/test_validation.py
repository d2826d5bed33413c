"""
Tests for admission scoring
"""

import pytest

from feed_writer.models import FeedSource, KeywordLogic, ValidationConfig
from feed_writer.processing.validation import (
    REASON_INCOMPLETE,
    REASON_NOT_JAPANESE,
    check_japanese,
    check_keywords,
    partition_entries,
    validate,
)

from conftest import make_entry


def test_empty_keywords_always_pass():
    """空的關鍵字清單一律通過"""
    config = ValidationConfig(keywords=[], keyword_logic=KeywordLogic.AND)
    entry = make_entry(title="anything", description="", content="")

    assert check_keywords(entry, config) is True


def test_or_logic_partial_match():
    config = ValidationConfig(keywords=["コラボ", "ポップアップ"], keyword_logic=KeywordLogic.OR)

    assert check_keywords(make_entry(title="コラボカフェ開催"), config) is True
    assert check_keywords(make_entry(title="新商品のお知らせ"), config) is False


def test_and_logic_cross_field():
    """AND: 關鍵字可分散在不同欄位"""
    config = ValidationConfig(keywords=["呪術廻戦", "カフェ"], keyword_logic=KeywordLogic.AND)
    entry = make_entry(title="呪術廻戦の新情報", description="", content="池袋のカフェで開催")

    assert check_keywords(entry, config) is True

    missing = make_entry(title="呪術廻戦の新情報", description="グッズ発売", content=None)
    assert check_keywords(missing, config) is False


def test_keyword_case_insensitive():
    config = ValidationConfig(keywords=["Collabo"], keyword_logic=KeywordLogic.OR)

    assert check_keywords(make_entry(title="COLLABO cafe"), config) is True
    assert check_keywords(make_entry(title="collabo cafe"), config) is True


@pytest.mark.parametrize("text", ["ひらがな", "カタカナ", "漢字", "mixed テキスト"])
def test_japanese_detected(text):
    assert check_japanese(make_entry(title=text)) is True


@pytest.mark.parametrize("text", ["English only", "12345", "!?#-", ""])
def test_non_japanese_rejected(text):
    assert check_japanese(make_entry(title=text, description=None, content=None)) is False


def test_disabled_validation_bypasses():
    config = ValidationConfig(keywords=["never"], require_japanese=True, min_score=100, is_enabled=False)
    result = validate(make_entry(title="", link=""), config)

    assert result.is_valid is True
    assert result.score == 100
    assert result.reasons == []


def test_full_score():
    config = ValidationConfig(keywords=["コラボ"], require_japanese=True, min_score=70)
    result = validate(make_entry(title="コラボカフェ開催"), config)

    assert result.is_valid is True
    assert result.score == 100
    assert result.reasons == []


def test_not_japanese_reason_and_score():
    config = ValidationConfig(keywords=[], require_japanese=True, min_score=70)
    result = validate(make_entry(title="Collab cafe", description=None, content=None), config)

    assert result.score == 70  # 60 + 0 + 10
    assert result.is_valid is False  # 日文檢查失敗
    assert REASON_NOT_JAPANESE in result.reasons


def test_missing_link_reduces_score_only():
    config = ValidationConfig(keywords=["コラボ"], min_score=0)
    result = validate(make_entry(title="コラボ", link=""), config)

    assert result.score == 90
    assert result.is_valid is True
    assert REASON_INCOMPLETE in result.reasons


def test_score_below_min_score_is_invalid():
    """所有子檢查通過但分數不足"""
    config = ValidationConfig(keywords=["コラボ"], min_score=95)
    result = validate(make_entry(title="コラボ", link=""), config)

    assert result.score == 90
    assert result.is_valid is False
    assert any("below minimum" in r for r in result.reasons)


def test_min_score_zero_with_no_rules_always_admits():
    config = ValidationConfig(keywords=[], require_japanese=False, min_score=0)
    result = validate(make_entry(title="", link=""), config)

    assert result.is_valid is True
    assert result.score == 90


def test_score_monotonic():
    config = ValidationConfig(keywords=["コラボ"], require_japanese=True, min_score=0)

    nothing = validate(make_entry(title="news", link=""), config)
    keyword = validate(make_entry(title="コラボ", link=""), config)
    complete = validate(make_entry(title="コラボ", link="https://example.com"), config)

    assert nothing.score <= keyword.score <= complete.score


def test_keywords_deduplicated_in_order():
    config = ValidationConfig(keywords=[" カフェ", "コラボ", "カフェ", ""])

    assert config.keywords == ["カフェ", "コラボ"]


def test_partition_entries():
    config = ValidationConfig(keywords=["コラボ"], min_score=70)
    entries = [make_entry(title="コラボ開催"), make_entry(title="別の話題", link="https://example.com/b")]

    admitted, rejected = partition_entries(entries, config)

    assert [e.title for e in admitted] == ["コラボ開催"]
    assert len(rejected) == 1
    assert rejected[0][1].is_valid is False


def test_rule_change_returns_new_source():
    """規則變更時不修改原本的 FeedSource"""
    source = FeedSource(id="collabo", url="https://example.com/feed")
    updated = source.with_validation(ValidationConfig(keywords=["コラボ"], min_score=80))

    assert source.validation.keywords == []
    assert updated.validation.min_score == 80
    assert updated.id == source.id
    assert updated.updated_at >= source.updated_at
