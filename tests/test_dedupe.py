"""
Tests for duplicate resolution
"""

import os
import time
from datetime import timedelta

import pytest

from feed_writer.errors import DuplicateSlugError
from feed_writer.models import DedupRecord, DedupStatus, DuplicateCheck
from feed_writer.processing.dedupe import DuplicateResolver, raise_for_duplicate
from feed_writer.utils.hashing import key_digest
from feed_writer.utils.time import utcnow

KEY = "jujutsu-kaisen:animate-cafe:collabo-cafe:2025"


def test_unknown_key_not_duplicate(resolver):
    check = resolver.check_duplicate(KEY)

    assert check.exists is False
    assert check.existing is None


def test_reserve_then_generated(resolver):
    """reserve -> mark_generated 後即為 duplicate"""
    assert resolver.reserve(KEY, "run_a").exists is False

    resolver.mark_generated(KEY, "run_a", "content/cafe/jujutsu-kaisen/abc.mdx")
    check = resolver.check_duplicate(KEY)

    assert check.exists is True
    assert check.existing_ref == "content/cafe/jujutsu-kaisen/abc.mdx"
    assert "Already generated" in check.message


def test_second_reservation_conflicts(resolver):
    """同一 key 只有一個 run 能取得 reservation"""
    first = resolver.reserve(KEY, "run_a")
    second = resolver.reserve(KEY, "run_b")

    assert first.exists is False
    assert second.exists is True
    assert second.existing.run_id == "run_a"
    assert second.existing.status == DedupStatus.PENDING


def test_generated_record_blocks_reservation(resolver):
    resolver.reserve(KEY, "run_a")
    resolver.mark_generated(KEY, "run_a", "ref")

    check = resolver.reserve(KEY, "run_b")

    assert check.exists is True
    assert check.existing.status == DedupStatus.GENERATED


def test_failed_record_can_be_retried(resolver, file_store):
    resolver.reserve(KEY, "run_a")
    resolver.mark_failed(KEY, "run_a", "LLM timeout")

    assert file_store.get(KEY).status == DedupStatus.FAILED
    assert resolver.check_duplicate(KEY).exists is False

    check = resolver.reserve(KEY, "run_b")

    assert check.exists is False
    assert file_store.get(KEY).run_id == "run_b"


def test_stale_pending_taken_over(file_store):
    resolver = DuplicateResolver(file_store, reservation_ttl=timedelta(minutes=5))
    stale = utcnow() - timedelta(hours=1)
    file_store.put(DedupRecord(canonical_key=KEY, run_id="run_crashed", created_at=stale, updated_at=stale))

    check = resolver.reserve(KEY, "run_b")

    assert check.exists is False
    assert file_store.get(KEY).run_id == "run_b"


def test_empty_record_file_counts_as_reserved(resolver, file_store):
    """寫入中 (空檔) 的紀錄視為其他 run 的 reservation，而非 fatal error"""
    (file_store.keys_dir / f"{key_digest(KEY)}.json").write_bytes(b"")

    check = resolver.reserve(KEY, "run_b")

    assert check.exists is True
    assert check.existing is None
    assert KEY in check.message


def test_failed_record_retried_despite_leftover_lock(resolver, file_store):
    resolver.reserve(KEY, "run_a")
    resolver.mark_failed(KEY, "run_a", "LLM timeout")
    lock = file_store.keys_dir / f"{key_digest(KEY)}.lock"
    lock.touch()
    old = time.time() - file_store.lock_timeout - 5
    os.utime(lock, (old, old))

    check = resolver.reserve(KEY, "run_b")

    assert check.exists is False
    assert file_store.get(KEY).run_id == "run_b"


@pytest.mark.parametrize("status, prefix", [
    (DedupStatus.GENERATED, "Already generated"),
    (DedupStatus.PENDING, "In progress by run_a"),
    (DedupStatus.FAILED, "Reservation conflict"),
])
def test_duplicate_message_by_status(status, prefix):
    record = DedupRecord(canonical_key=KEY, run_id="run_a", status=status)
    check = DuplicateCheck(canonical_key=KEY, exists=True, existing=record)

    assert check.message.startswith(prefix)


def test_mark_failed_ignores_foreign_reservation(resolver, file_store):
    resolver.reserve(KEY, "run_a")

    assert resolver.mark_failed(KEY, "run_b", "boom") is None
    assert file_store.get(KEY).status == DedupStatus.PENDING


def test_reset_allows_regeneration(resolver):
    resolver.reserve(KEY, "run_a")
    resolver.mark_generated(KEY, "run_a", "ref")

    assert resolver.reset(KEY) is True
    assert resolver.reset(KEY) is False
    assert resolver.reserve(KEY, "run_b").exists is False


def test_list_records_by_status(resolver):
    other = "frieren:pop-up:pop-up-store:2026"
    resolver.reserve(KEY, "run_a")
    resolver.mark_generated(KEY, "run_a", "ref")
    resolver.reserve(other, "run_a")

    generated = resolver.list_records(DedupStatus.GENERATED)
    everything = resolver.list_records()

    assert [r.canonical_key for r in generated] == [KEY]
    assert {r.canonical_key for r in everything} == {KEY, other}


def test_raise_for_duplicate(resolver):
    resolver.reserve(KEY, "run_a")
    resolver.mark_generated(KEY, "run_a", "content/x.mdx")

    with pytest.raises(DuplicateSlugError) as exc_info:
        raise_for_duplicate(resolver.check_duplicate(KEY))

    assert exc_info.value.canonical_key == KEY
    assert exc_info.value.existing_ref == "content/x.mdx"
    assert exc_info.value.retryable is False


def test_raise_for_duplicate_passes_new_key(resolver):
    raise_for_duplicate(resolver.check_duplicate(KEY))
