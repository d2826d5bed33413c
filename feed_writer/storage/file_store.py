"""
File-based dedup store

每個 canonical key 一個 JSON 檔 (檔名為 key digest)，run metadata 另存於 runs/。
create 先寫 tmp 檔再以 os.link 發布 (不會出現空檔)，replace 以 lock 檔保護
compare-and-swap；超過 lock_timeout 的 lock 檔視為遺留並接管。
"""

import os
import json
import time
import tempfile
from typing import List, Optional
from pathlib import Path
import logging

from feed_writer.errors import StoreError
from feed_writer.models import DedupRecord, DedupStatus, RunMetadata
from feed_writer.utils.hashing import key_digest

logger = logging.getLogger(__name__)


class FileStore:
    """檔案儲存後端"""

    def __init__(self, base_dir: str = "memory", lock_timeout: float = 60.0):
        """
        初始化 FileStore

        Args:
            base_dir: 基礎目錄
            lock_timeout: lock 檔超過此秒數視為遺留 (持有的 process 已結束)
        """
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout
        self.keys_dir = self.base_dir / "canonical_keys"
        self.runs_dir = self.base_dir / "runs"

        # 建立目錄
        for dir_path in [self.keys_dir, self.runs_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

        logger.info(f"FileStore initialized at {self.base_dir}")

    def _path(self, canonical_key: str) -> Path:
        return self.keys_dir / f"{key_digest(canonical_key)}.json"

    def _lock_path(self, canonical_key: str) -> Path:
        return self.keys_dir / f"{key_digest(canonical_key)}.lock"

    @staticmethod
    def _dump(record: DedupRecord) -> str:
        return json.dumps(record.model_dump(mode="json"), indent=2, ensure_ascii=False)

    def _write_tmp(self, record: DedupRecord) -> Path:
        """寫入唯一的 tmp 檔"""
        fd, tmp_name = tempfile.mkstemp(dir=self.keys_dir, suffix=".tmp")
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(self._dump(record))
        return Path(tmp_name)

    def _write(self, path: Path, record: DedupRecord) -> None:
        """tmp 檔 + os.replace，避免讀到寫一半的檔案"""
        os.replace(self._write_tmp(record), path)

    def get(self, canonical_key: str) -> Optional[DedupRecord]:
        """讀取紀錄"""
        file_path = self._path(canonical_key)

        if not file_path.exists():
            return None

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return DedupRecord(**json.load(f))
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read dedup record {file_path}: {e}") from e

    def create(self, record: DedupRecord) -> bool:
        """不存在時建立 (os.link 在目標已存在時失敗)"""
        file_path = self._path(record.canonical_key)
        tmp_path = self._write_tmp(record)

        try:
            os.link(tmp_path, file_path)
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.debug(f"Created dedup record: {file_path}")
        return True

    def replace(self, record: DedupRecord, expected: DedupRecord) -> bool:
        """現存紀錄與 expected 相同時覆寫 (lock 檔保護)"""
        lock_path = self._lock_path(record.canonical_key)
        lock_fd = self._acquire_lock(lock_path)
        if lock_fd is None:
            # 其他 run 正在覆寫
            return False

        try:
            current = self.get(record.canonical_key)
            if current is None or (
                current.run_id != expected.run_id or
                current.status != expected.status or
                current.updated_at != expected.updated_at
            ):
                return False

            self._write(self._path(record.canonical_key), record)
            return True
        finally:
            os.close(lock_fd)
            lock_path.unlink(missing_ok=True)

    def _acquire_lock(self, lock_path: Path) -> Optional[int]:
        """取得 lock 檔；遺留的 lock 檔 (mtime 超過 lock_timeout) 刪除後重試一次"""
        for _ in range(2):
            try:
                return os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                try:
                    age = time.time() - lock_path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age < self.lock_timeout:
                    return None
                logger.warning(f"Removing stale lock {lock_path} (age {age:.0f}s)")
                lock_path.unlink(missing_ok=True)
        return None

    def put(self, record: DedupRecord) -> None:
        """無條件寫入"""
        self._write(self._path(record.canonical_key), record)
        logger.debug(f"Written dedup record: {record.canonical_key} ({record.status.value})")

    def delete(self, canonical_key: str) -> bool:
        """刪除紀錄"""
        file_path = self._path(canonical_key)

        if not file_path.exists():
            return False

        file_path.unlink()
        return True

    def list_records(self, status: Optional[DedupStatus] = None) -> List[DedupRecord]:
        """列出紀錄 (新的在前)"""
        records = []
        for file_path in self.keys_dir.glob("*.json"):
            with open(file_path, 'r', encoding='utf-8') as f:
                record = DedupRecord(**json.load(f))
            if status is None or record.status == status:
                records.append(record)

        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def save_run(self, run_meta: RunMetadata) -> None:
        """寫入 run metadata"""
        file_path = self.runs_dir / f"{run_meta.run_id}.json"

        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(run_meta.model_dump(), f, indent=2, ensure_ascii=False, default=str)

        logger.info(f"Written run metadata: {file_path}")

    def read_run(self, run_id: str) -> Optional[RunMetadata]:
        """讀取 run metadata"""
        file_path = self.runs_dir / f"{run_id}.json"

        if not file_path.exists():
            return None

        with open(file_path, 'r', encoding='utf-8') as f:
            return RunMetadata(**json.load(f))
