"""
Duplicate Resolver

以 canonical key 為單位避免重複生成。

check-then-publish 之間沒有全域鎖，因此在 duplicate 檢查時就以 atomic create
(compare-and-swap) 寫入 pending reservation；寫入衝突即視為 duplicate。
generated 狀態只在 publish 成功後寫入一次。
"""

from datetime import timedelta
from typing import List, Optional, Protocol, Tuple
import logging

from feed_writer.errors import DuplicateSlugError, StoreError
from feed_writer.models import DedupRecord, DedupStatus, DuplicateCheck, RunMetadata
from feed_writer.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=30)


class DedupStore(Protocol):
    """Dedup store 介面 (file / postgres)"""

    def get(self, canonical_key: str) -> Optional[DedupRecord]: ...

    def create(self, record: DedupRecord) -> bool:
        """不存在時建立；已存在回傳 False (atomic)"""
        ...

    def replace(self, record: DedupRecord, expected: DedupRecord) -> bool:
        """現存紀錄與 expected 相同 (run_id/status/updated_at) 時覆寫"""
        ...

    def put(self, record: DedupRecord) -> None: ...

    def delete(self, canonical_key: str) -> bool: ...

    def list_records(self, status: Optional[DedupStatus] = None) -> List[DedupRecord]: ...

    def save_run(self, run_meta: RunMetadata) -> None: ...


class DuplicateResolver:
    """Canonical key 的存在檢查、reservation 與狀態更新"""

    def __init__(self, store: DedupStore, reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL):
        self.store = store
        self.reservation_ttl = reservation_ttl

    def _is_blocking(self, record: DedupRecord) -> bool:
        """
        是否阻擋新的生成

        generated -> 阻擋；failed -> 可覆寫；
        pending -> 未過期時阻擋 (其他 run 正在處理)，過期視為遺留 reservation
        """
        if record.status == DedupStatus.GENERATED:
            return True
        if record.status == DedupStatus.PENDING:
            return utcnow() - record.updated_at < self.reservation_ttl
        return False

    def _duplicate(self, canonical_key: str, record: Optional[DedupRecord]) -> DuplicateCheck:
        return DuplicateCheck(
            canonical_key=canonical_key,
            exists=True,
            existing_ref=record.publish_ref if record else None,
            existing=record,
        )

    def _read_for_reservation(self, canonical_key: str) -> Tuple[Optional[DedupRecord], bool]:
        """
        讀取紀錄；無法讀取 (空檔、損毀) 時回傳 (None, True)

        無法讀取的紀錄可能是其他 run 正在寫入，視同處理中的 reservation。
        """
        try:
            return self.store.get(canonical_key), False
        except StoreError as e:
            logger.warning(f"Unreadable dedup record for {canonical_key}, treating as reserved: {e}")
            return None, True

    def check_duplicate(self, canonical_key: str) -> DuplicateCheck:
        """
        唯讀檢查

        Args:
            canonical_key: Canonical key

        Returns:
            DuplicateCheck (exists=True 表示已生成或處理中)
        """
        record = self.store.get(canonical_key)
        if record is None or not self._is_blocking(record):
            return DuplicateCheck(canonical_key=canonical_key, exists=False, existing=record)
        return self._duplicate(canonical_key, record)

    def reserve(self, canonical_key: str, run_id: str) -> DuplicateCheck:
        """
        檢查並以 pending 狀態保留 canonical key

        exists=False 表示 reservation 成功 (此 run 擁有該 key)；
        寫入衝突 (其他 run 搶先) 回傳 exists=True。

        Args:
            canonical_key: Canonical key
            run_id: 執行 ID

        Returns:
            DuplicateCheck
        """
        reservation = DedupRecord(canonical_key=canonical_key, run_id=run_id)
        existing, unreadable = self._read_for_reservation(canonical_key)

        if unreadable:
            return self._duplicate(canonical_key, None)

        if existing is None:
            if self.store.create(reservation):
                logger.info(f"✓ Reserved canonical key: {canonical_key}")
                return DuplicateCheck(canonical_key=canonical_key, exists=False)
            # 其他 run 搶先建立
            winner, _ = self._read_for_reservation(canonical_key)
            logger.info(f"Reservation conflict on {canonical_key} (created by another run)")
            return self._duplicate(canonical_key, winner)

        if self._is_blocking(existing):
            return self._duplicate(canonical_key, existing)

        if self.store.replace(reservation, expected=existing):
            logger.info(f"✓ Reserved canonical key: {canonical_key} " +
                        f"(took over {existing.status.value} record from {existing.run_id})")
            return DuplicateCheck(canonical_key=canonical_key, exists=False, existing=existing)

        winner, _ = self._read_for_reservation(canonical_key)
        logger.info(f"Reservation conflict on {canonical_key} (record changed concurrently)")
        return self._duplicate(canonical_key, winner)

    def mark_generated(self, canonical_key: str, run_id: str, publish_ref: Optional[str]) -> DedupRecord:
        """Publish 成功後標記為 generated"""
        current = self.store.get(canonical_key)
        if current is not None and current.run_id != run_id:
            logger.warning(f"Reservation for {canonical_key} is held by {current.run_id}, " +
                           f"overwriting with {run_id} after successful publish")

        record = DedupRecord(
            canonical_key=canonical_key,
            status=DedupStatus.GENERATED,
            run_id=run_id,
            publish_ref=publish_ref,
            created_at=current.created_at if current else utcnow(),
        )
        self.store.put(record)
        logger.info(f"✓ Marked generated: {canonical_key} -> {publish_ref}")
        return record

    def mark_failed(self, canonical_key: str, run_id: str, error_message: str) -> Optional[DedupRecord]:
        """
        生成 / 發布失敗時釋放 reservation (failed 可被之後的 run 覆寫)

        只處理此 run 持有的 reservation。
        """
        current = self.store.get(canonical_key)
        if current is None or current.run_id != run_id or current.status != DedupStatus.PENDING:
            return None

        record = current.model_copy(update={
            "status": DedupStatus.FAILED,
            "error_message": error_message,
            "updated_at": utcnow(),
        })
        self.store.put(record)
        logger.info(f"✗ Marked failed: {canonical_key} ({error_message})")
        return record

    def reset(self, canonical_key: str) -> bool:
        """Operator 操作：刪除紀錄以允許重新生成"""
        deleted = self.store.delete(canonical_key)
        if deleted:
            logger.info(f"Reset canonical key: {canonical_key}")
        else:
            logger.warning(f"No record to reset: {canonical_key}")
        return deleted

    def list_records(self, status: Optional[DedupStatus] = None) -> List[DedupRecord]:
        return self.store.list_records(status)


def raise_for_duplicate(check: DuplicateCheck) -> None:
    """需要以例外處理 duplicate 的呼叫端 (例如單篇 CLI) 使用"""
    if check.exists:
        raise DuplicateSlugError(
            check.message,
            canonical_key=check.canonical_key,
            existing_ref=check.existing_ref,
        )
