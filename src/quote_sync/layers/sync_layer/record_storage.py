"""
レコードストレージ - SQLiteによる名言レコードの永続化と同期ログ管理
破損・欠損データはデフォルトにフォールバックし、起動を止めない
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

from ...core.models import Clock, Record, default_records, normalize_record, utc_now, parse_timestamp

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class SyncLog:
    """同期ログ"""
    id: Optional[int]
    action: str  # SYNC, RESOLVE
    applied_count: int
    conflict_count: int
    error_message: Optional[str]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "applied_count": self.applied_count,
            "conflict_count": self.conflict_count,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }


class RecordStorage(ABC):
    """永続化コラボレーター"""

    @abstractmethod
    async def load_all(self) -> List[Record]:
        """全レコード読み込み（破損時は空またはシードにフォールバック）"""

    @abstractmethod
    async def save_all(self, records: Sequence[Record]) -> bool:
        """全レコード保存（順序を維持）"""


class SQLiteRecordStorage(RecordStorage):
    """SQLiteストレージ"""

    def __init__(self, database_path: Union[str, Path] = "data/quotes.db", clock: Clock = utc_now):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._initialized = False

    async def initialize(self) -> bool:
        """データベース初期化（破損ファイルは退避して作り直す）"""
        try:
            await self._create_tables()
        except sqlite3.DatabaseError as e:
            logger.error(f"Record database unreadable, recreating: {self.database_path} ({e})")
            self._quarantine_corrupt_file()
            try:
                await self._create_tables()
            except sqlite3.Error as retry_error:
                logger.error(f"Failed to recreate record database: {retry_error}")
                return False
        except OSError as e:
            logger.error(f"Failed to initialize record storage: {e}")
            return False

        self._initialized = True
        logger.info(f"Record storage initialized: {self.database_path}")
        return True

    def _quarantine_corrupt_file(self):
        corrupt_path = self.database_path.with_name(self.database_path.name + ".corrupt")
        try:
            if corrupt_path.exists():
                corrupt_path.unlink()
            self.database_path.rename(corrupt_path)
            logger.warning(f"Corrupt database moved to {corrupt_path}")
        except OSError as e:
            logger.error(f"Failed to move corrupt database aside: {e}")

    async def _create_tables(self):
        """テーブル作成"""
        quotes_table_sql = """
        CREATE TABLE IF NOT EXISTS quotes (
            local_id TEXT PRIMARY KEY,
            position INTEGER NOT NULL,
            remote_id TEXT,
            text TEXT NOT NULL,
            category TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            origin TEXT NOT NULL,
            last_synced_at TIMESTAMP
        )
        """

        sync_logs_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            applied_count INTEGER DEFAULT 0,
            conflict_count INTEGER DEFAULT 0,
            error_message TEXT,
            timestamp TIMESTAMP NOT NULL
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(quotes_table_sql)
            await db.execute(sync_logs_table_sql)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_quotes_position ON quotes(position)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_quotes_remote_id ON quotes(remote_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_sync_logs_timestamp ON sync_logs(timestamp)")
            await db.commit()

    async def _ensure_initialized(self) -> bool:
        if self._initialized:
            return True
        return await self.initialize()

    async def load_all(self) -> List[Record]:
        """全レコード読み込み"""
        if not await self._ensure_initialized():
            return []

        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("PRAGMA user_version")
                version = (await cursor.fetchone())[0]

                if version == 0:
                    # 一度も保存されていない → シードデータ
                    logger.info("No saved quotes yet, using seeded defaults")
                    return default_records(self.clock)

                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM quotes ORDER BY position ASC")
                rows = await cursor.fetchall()

        except sqlite3.Error as e:
            logger.error(f"Failed to load quotes, falling back to empty set: {e}")
            return []

        records = []
        for row in rows:
            record = self._row_to_record(row)
            if record:
                records.append(record)
            else:
                logger.warning(f"Dropping invalid stored quote: {row['local_id']}")

        logger.debug(f"Loaded {len(records)} quotes")
        return records

    def _row_to_record(self, row: aiosqlite.Row) -> Optional[Record]:
        """データベース行をRecordに変換（不正行はNone）"""
        return normalize_record({
            "localId": row["local_id"],
            "remoteId": row["remote_id"],
            "text": row["text"],
            "category": row["category"],
            "updatedAt": row["updated_at"],
            "origin": row["origin"],
            "lastSyncedAt": row["last_synced_at"],
        }, self.clock)

    async def save_all(self, records: Sequence[Record]) -> bool:
        """全レコード保存（1トランザクションで置き換え）"""
        if not await self._ensure_initialized():
            return False

        rows = [
            (
                record.local_id, position, record.remote_id, record.text, record.category,
                record.updated_at.isoformat(), record.origin.value,
                record.last_synced_at.isoformat() if record.last_synced_at else None,
            )
            for position, record in enumerate(records)
        ]

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute("DELETE FROM quotes")
                await db.executemany(
                    """
                    INSERT INTO quotes (
                        local_id, position, remote_id, text, category,
                        updated_at, origin, last_synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                await db.commit()

            logger.debug(f"Saved {len(rows)} quotes")
            return True

        except sqlite3.Error as e:
            logger.error(f"Failed to save quotes: {e}")
            return False

    async def record_sync_outcome(self, action: str, applied_count: int, conflict_count: int,
                                  error_message: Optional[str] = None) -> bool:
        """同期アクション記録"""
        if not await self._ensure_initialized():
            return False

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(
                    """
                    INSERT INTO sync_logs (action, applied_count, conflict_count, error_message, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (action, applied_count, conflict_count, error_message, self.clock().isoformat()),
                )
                await db.commit()
            return True

        except sqlite3.Error as e:
            logger.error(f"Failed to record sync outcome: {e}")
            return False

    async def get_sync_logs(self, limit: int = 100) -> List[SyncLog]:
        """同期ログ取得（新しい順）"""
        if not await self._ensure_initialized():
            return []

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?", (limit,)
                )
                rows = await cursor.fetchall()

            return [
                SyncLog(
                    id=row["id"],
                    action=row["action"],
                    applied_count=row["applied_count"],
                    conflict_count=row["conflict_count"],
                    error_message=row["error_message"],
                    timestamp=parse_timestamp(row["timestamp"]),
                )
                for row in rows
            ]

        except sqlite3.Error as e:
            logger.error(f"Failed to get sync logs: {e}")
            return []

    async def cleanup_old_logs(self, retention_days: int = 30):
        """古い同期ログの削除"""
        cutoff = self.clock() - timedelta(days=retention_days)

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute("DELETE FROM sync_logs WHERE timestamp < ?", (cutoff.isoformat(),))
                await db.commit()
            logger.info(f"Cleaned up sync logs older than {retention_days} days")

        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup sync logs: {e}")

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        if not await self._ensure_initialized():
            return {}

        try:
            stats = {}
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM quotes")
                stats['total_quotes'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM quotes WHERE last_synced_at IS NOT NULL")
                stats['synced_quotes'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM sync_logs")
                stats['total_sync_logs'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM sync_logs WHERE error_message IS NOT NULL")
                stats['failed_syncs'] = (await cursor.fetchone())[0]

            stats['database_size_mb'] = self.database_path.stat().st_size / (1024 * 1024)
            return stats

        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to get storage statistics: {e}")
            return {}
