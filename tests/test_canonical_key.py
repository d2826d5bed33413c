"""
Tests for canonical key derivation
"""

import pytest

from feed_writer.errors import CanonicalKeyError
from feed_writer.processing.canonical_key import (
    SlugAliases,
    compute_canonical_key,
    is_valid_canonical_key,
    normalize_component,
    parse_canonical_key,
)

from conftest import make_facts


def test_key_format():
    key = compute_canonical_key(make_facts(work="Jujutsu Kaisen", venue="Animate Cafe", event_type="Collabo Cafe"))

    assert key == "jujutsu-kaisen:animate-cafe:collabo-cafe:2025"


def test_key_ignores_field_order():
    """欄位抽取順序不影響結果"""
    forward = {"work_title": "呪術廻戦", "venue": "池袋", "event_type": "コラボカフェ", "start_date": "2025-12-25"}
    backward = dict(reversed(list(forward.items())))

    assert compute_canonical_key(forward) == compute_canonical_key(backward)


def test_key_sensitive_to_venue():
    first = compute_canonical_key(make_facts(venue="アニメイトカフェ池袋"))
    second = compute_canonical_key(make_facts(venue="アニメイトカフェ大阪"))

    assert first != second


def test_whitespace_and_width_normalized():
    """全形英數、多餘空白、大小寫"""
    a = compute_canonical_key(make_facts(work="  ＪＵＪＵＴＳＵ　 Kaisen ", venue="Cafe"))
    b = compute_canonical_key(make_facts(work="jujutsu kaisen", venue="cafe"))

    assert a == b


def test_separator_in_value_replaced():
    assert normalize_component("Re:Zero") == "re-zero"


def test_event_type_defaults():
    key = compute_canonical_key(make_facts(event_type=None))

    assert key.split(":")[2] == "event"


def test_year_fallback():
    facts = make_facts(start_date=None, event_year=2026)
    assert compute_canonical_key(facts).endswith(":2026")

    no_year = make_facts(start_date=None)
    assert compute_canonical_key(no_year, fallback_year=2025).endswith(":2025")


def test_same_key_with_or_without_start_date():
    """同一活動：一則有開始日、一則沒有，key 相同"""
    dated = compute_canonical_key(make_facts(start_date="2025-07-01"))
    undated = compute_canonical_key(make_facts(start_date=None), fallback_year=2025)
    by_event_year = compute_canonical_key(make_facts(start_date=None, event_year=2025))

    assert dated == undated == by_event_year
    assert dated.endswith(":2025")


def test_start_date_year_wins_over_fallback():
    key = compute_canonical_key(make_facts(start_date="2026-01-03"), fallback_year=2025)

    assert key.endswith(":2026")


def test_missing_period_raises():
    with pytest.raises(CanonicalKeyError):
        compute_canonical_key(make_facts(start_date=None))


def test_missing_venue_raises():
    with pytest.raises(CanonicalKeyError):
        compute_canonical_key(make_facts(venue="   "))


def test_aliases_converge_synonyms():
    aliases = SlugAliases(event_types={"コラボカフェ": "collabo-cafe", "カフェコラボ": "collabo-cafe"})

    a = compute_canonical_key(make_facts(event_type="コラボカフェ"), aliases)
    b = compute_canonical_key(make_facts(event_type="カフェコラボ"), aliases)

    assert a == b
    assert a.split(":")[2] == "collabo-cafe"


def test_aliases_from_yaml(tmp_path):
    path = tmp_path / "aliases.yaml"
    path.write_text("works:\n  呪術廻戦: jujutsu-kaisen\n", encoding="utf-8")

    aliases = SlugAliases.from_yaml(path)
    key = compute_canonical_key(make_facts(work="呪術廻戦"), aliases)

    assert key.startswith("jujutsu-kaisen:")


def test_parse_round_trip():
    key = compute_canonical_key(make_facts(work="Work", venue="Venue", event_type="Cafe"))

    assert parse_canonical_key(key) == {
        "work": "work", "venue": "venue", "event_type": "cafe", "year": "2025"
    }


@pytest.mark.parametrize("key", [
    "only:three:parts",
    "a:b:c:not-a-date",
    "a::c:2025",
    "a:b:c:2025-12-25",
    "a:b:c:25",
])
def test_invalid_keys(key):
    assert is_valid_canonical_key(key) is False


def test_valid_year_key():
    assert is_valid_canonical_key("jujutsu-kaisen:animate-cafe:collabo-cafe:2025") is True
