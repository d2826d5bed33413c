"""
Tests for RSS collection and URL helpers
"""

import time

import pytest

from feed_writer.collectors import rss
from feed_writer.errors import FeedFetchError, FeedInactiveError
from feed_writer.models import FeedSource, ValidationConfig
from feed_writer.processing.url_normalize import extract_domain, is_allowed_domain, normalize_url

FEED_URL = "https://example.com/feed.xml"


def parsed_feed(entries, title="Collabo News", **extra):
    result = {"feed": {"title": title}, "entries": entries, "status": 200, "bozo": False}
    result.update(extra)
    return result


def sample_entry(**kwargs):
    entry = {
        "title": " 呪術廻戦×アニメイトカフェ開催決定 ",
        "link": "https://Example.com/news/1?utm_source=rss&id=5#top",
        "summary": "池袋でコラボカフェ",
        "content": [{"value": "<p>本文</p>"}],
        "published": "Mon, 01 Dec 2025 10:00:00 +0900",
        "published_parsed": time.strptime("2025-12-01 01:00:00", "%Y-%m-%d %H:%M:%S"),
        "tags": [{"term": "コラボ"}, {"term": "カフェ"}],
        "id": "urn:news:1",
    }
    entry.update(kwargs)
    return entry


@pytest.fixture
def fake_parse(monkeypatch):
    """替換 feedparser.parse，回傳值由測試指定"""
    holder = {"result": parsed_feed([sample_entry()])}

    def parse(url):
        holder["url"] = url
        return holder["result"]

    monkeypatch.setattr(rss.feedparser, "parse", parse)
    return holder


def test_fetch_feed_maps_entries(fake_parse):
    source = FeedSource(id="collabo", url=FEED_URL, title="Collabo News")

    [candidate] = rss.fetch_feed(FEED_URL, source=source)

    assert candidate.title == "呪術廻戦×アニメイトカフェ開催決定"
    assert candidate.link == "https://example.com/news/1?id=5"
    assert candidate.description == "池袋でコラボカフェ"
    assert candidate.content == "<p>本文</p>"
    assert candidate.categories == ["コラボ", "カフェ"]
    assert candidate.guid == "urn:news:1"
    assert candidate.published_at.year == 2025
    assert candidate.published_at.hour == 1
    assert candidate.source_id == "collabo"


def test_fetch_feed_respects_max_items(fake_parse):
    fake_parse["result"] = parsed_feed([sample_entry(link=f"https://example.com/{i}") for i in range(5)])

    candidates = rss.fetch_feed(FEED_URL, max_items=3)

    assert [c.link for c in candidates] == ["https://example.com/0", "https://example.com/1", "https://example.com/2"]


def test_fetch_feed_allows_empty_feed(fake_parse):
    fake_parse["result"] = parsed_feed([])

    assert rss.fetch_feed(FEED_URL) == []


def test_fetch_feed_date_fallback(fake_parse):
    fake_parse["result"] = parsed_feed([sample_entry(published_parsed=None, published="2025-12-01T10:00:00+09:00")])

    [candidate] = rss.fetch_feed(FEED_URL)

    assert candidate.published_at.hour == 1


@pytest.mark.parametrize("url", ["ftp://example.com/feed", "not a url", ""])
def test_invalid_url(url, fake_parse):
    with pytest.raises(FeedFetchError):
        rss.fetch_feed(url)


def test_http_error(fake_parse):
    fake_parse["result"] = parsed_feed([], status=404)

    with pytest.raises(FeedFetchError, match="HTTP 404"):
        rss.fetch_feed(FEED_URL)


def test_not_a_feed(fake_parse):
    fake_parse["result"] = {"feed": {}, "entries": [], "bozo": True, "bozo_exception": "syntax error"}

    with pytest.raises(FeedFetchError, match="valid RSS or Atom"):
        rss.fetch_feed(FEED_URL)


def test_bozo_with_entries_is_warning(fake_parse):
    fake_parse["result"] = parsed_feed([sample_entry()], bozo=True, bozo_exception="undefined entity")

    assert len(rss.fetch_feed(FEED_URL)) == 1


def test_collect_candidates_report(fake_parse):
    fake_parse["result"] = parsed_feed([
        sample_entry(),
        sample_entry(title="Weekly English digest", summary="", content=[], link="https://example.com/en"),
    ])
    source = FeedSource(id="collabo", url=FEED_URL,
                        validation=ValidationConfig(keywords=["コラボ"], require_japanese=True))

    report = rss.collect_candidates(source)

    assert report.total == 2
    assert report.valid == 1
    assert report.invalid == 1
    assert [entry.link for entry, _ in report.rejection_reasons()] == ["https://example.com/en"]


def test_report_keeps_rejections_with_shared_link(fake_parse):
    """同 link / 無 link 的 entry 不互相覆蓋"""
    fake_parse["result"] = parsed_feed([
        sample_entry(title="Weekly digest 1", summary="", content=[], link="https://example.com/same"),
        sample_entry(title="Weekly digest 2", summary="", content=[], link="https://example.com/same"),
        sample_entry(title="", summary="", content=[], link=""),
    ])
    source = FeedSource(id="collabo", url=FEED_URL, validation=ValidationConfig(keywords=["コラボ"]))

    report = rss.collect_candidates(source)
    rejected = report.rejection_reasons()

    assert report.invalid == 3
    assert len(rejected) == 3
    assert [entry.title for entry, _ in rejected] == ["Weekly digest 1", "Weekly digest 2", ""]


def test_inactive_source():
    source = FeedSource(id="old", url=FEED_URL, is_active=False)

    with pytest.raises(FeedInactiveError):
        rss.collect_candidates(source)


def test_normalize_url_empty():
    assert normalize_url("") == ""


@pytest.mark.parametrize("url, expected", [
    ("https://www.animate-cafe.com/event/1", "animate-cafe.com"),
    ("https://news.example.co.jp/a", "example.co.jp"),
])
def test_extract_domain(url, expected):
    assert extract_domain(url) == expected


def test_is_allowed_domain():
    allowed = ["animate-cafe.com", "collabo-cafe.com"]

    assert is_allowed_domain("https://www.animate-cafe.com/event/1", allowed) is True
    assert is_allowed_domain("https://evil.example.com/", allowed) is False
    assert is_allowed_domain("https://anything.example.com/", []) is True
