"""
Postgres dedup store with automatic schema initialization

使用 psycopg2-binary；reservation 以 primary key 的 unique constraint 判定
(INSERT ... ON CONFLICT DO NOTHING)，覆寫則以條件式 UPDATE 做 compare-and-swap。
"""

from typing import List, Optional
import logging
import json
import psycopg2
import psycopg2.extras

from feed_writer.errors import StoreError
from feed_writer.models import DedupRecord, DedupStatus, RunMetadata

logger = logging.getLogger(__name__)

DDL = """
CREATE TABLE IF NOT EXISTS event_canonical_keys (
    canonical_key TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    run_id TEXT NOT NULL,
    publish_ref TEXT,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS generation_runs (
    run_id TEXT PRIMARY KEY,
    feed_url TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    status TEXT NOT NULL,
    stats_json JSONB
);

CREATE INDEX IF NOT EXISTS idx_event_canonical_keys_status ON event_canonical_keys(status);
"""

COLUMNS = "canonical_key, status, run_id, publish_ref, error_message, created_at, updated_at"


class PostgresStore:
    """Postgres 儲存後端（不 fallback，fail fast）"""

    def __init__(self, dsn: str, auto_init_schema: bool = True):
        """
        初始化 PostgresStore

        Args:
            dsn: Postgres connection string
            auto_init_schema: 是否自動建立 schema
        """
        self.dsn = dsn
        self.conn = None
        self._connect()

        if auto_init_schema:
            self.init_schema()

    def _connect(self):
        """建立資料庫連線（連線失敗直接拋出異常，不 fallback）"""
        try:
            self.conn = psycopg2.connect(self.dsn)
            self.conn.autocommit = False  # 使用 transaction
            logger.info("✓ Connected to Postgres")
        except Exception as e:
            logger.error(f"✗ Failed to connect to Postgres: {e}")
            raise StoreError(f"Postgres connection failed (no fallback): {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> int:
        """執行單一語句並 commit，回傳 rowcount"""
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
                rowcount = cur.rowcount
            self.conn.commit()
            return rowcount
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Postgres statement failed: {e}")
            raise

    def init_schema(self):
        """初始化資料庫 schema（若表不存在則建立）"""
        self._execute(DDL)
        logger.info("✓ Schema initialized successfully")

    @staticmethod
    def _row_to_record(row) -> DedupRecord:
        return DedupRecord(
            canonical_key=row["canonical_key"],
            status=DedupStatus(row["status"]),
            run_id=row["run_id"],
            publish_ref=row["publish_ref"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _values(record: DedupRecord) -> tuple:
        return (
            record.canonical_key, record.status.value, record.run_id, record.publish_ref,
            record.error_message, record.created_at, record.updated_at
        )

    def get(self, canonical_key: str) -> Optional[DedupRecord]:
        sql = f"SELECT {COLUMNS} FROM event_canonical_keys WHERE canonical_key = %s"
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, (canonical_key,))
            row = cur.fetchone()
        self.conn.commit()
        return self._row_to_record(row) if row else None

    def create(self, record: DedupRecord) -> bool:
        """unique constraint 衝突時回傳 False"""
        sql = f"""
        INSERT INTO event_canonical_keys ({COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (canonical_key) DO NOTHING
        """
        return self._execute(sql, self._values(record)) == 1

    def replace(self, record: DedupRecord, expected: DedupRecord) -> bool:
        sql = """
        UPDATE event_canonical_keys
        SET status = %s, run_id = %s, publish_ref = %s, error_message = %s,
            created_at = %s, updated_at = %s
        WHERE canonical_key = %s AND run_id = %s AND status = %s AND updated_at = %s
        """
        params = (
            record.status.value, record.run_id, record.publish_ref, record.error_message,
            record.created_at, record.updated_at,
            record.canonical_key, expected.run_id, expected.status.value, expected.updated_at
        )
        return self._execute(sql, params) == 1

    def put(self, record: DedupRecord) -> None:
        sql = f"""
        INSERT INTO event_canonical_keys ({COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (canonical_key) DO UPDATE SET
            status = EXCLUDED.status,
            run_id = EXCLUDED.run_id,
            publish_ref = EXCLUDED.publish_ref,
            error_message = EXCLUDED.error_message,
            updated_at = EXCLUDED.updated_at
        """
        self._execute(sql, self._values(record))

    def delete(self, canonical_key: str) -> bool:
        sql = "DELETE FROM event_canonical_keys WHERE canonical_key = %s"
        return self._execute(sql, (canonical_key,)) > 0

    def list_records(self, status: Optional[DedupStatus] = None) -> List[DedupRecord]:
        sql = f"SELECT {COLUMNS} FROM event_canonical_keys"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = %s"
            params = (status.value,)
        sql += " ORDER BY updated_at DESC"

        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        self.conn.commit()
        return [self._row_to_record(r) for r in rows]

    def save_run(self, run_meta: RunMetadata) -> None:
        """寫入 run metadata"""
        sql = """
        INSERT INTO generation_runs (run_id, feed_url, started_at, finished_at, status, stats_json)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (run_id) DO UPDATE SET
            finished_at = EXCLUDED.finished_at,
            status = EXCLUDED.status,
            stats_json = EXCLUDED.stats_json
        """
        self._execute(sql, (
            run_meta.run_id,
            run_meta.feed_url,
            run_meta.started_at,
            run_meta.finished_at,
            run_meta.status,
            json.dumps(run_meta.stats, default=str)
        ))
        logger.info(f"✓ Saved run: {run_meta.run_id}")

    def close(self):
        """關閉連線"""
        if self.conn:
            self.conn.close()
            logger.info("Postgres connection closed")
