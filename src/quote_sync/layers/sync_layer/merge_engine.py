"""
マージエンジン - リモートから取得したレコードをローカルストアと照合する

照合キーはremote_id。内容（text/category）が異なる場合のみ競合とし、
タイムスタンプの差だけでは競合にしない（リモートの更新時刻は取得時刻の合成値のため）。
既定ポリシーはリモート優先で即時適用し、ローカル版は競合ログに残して後から復元可能にする。
"""

import logging
from typing import Any, Dict, Iterable

from ...core.models import Clock, Conflict, Origin, Record, normalize_record, utc_now
from .conflict_resolver import ConflictLog
from .record_store import RecordStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """リモート→ローカルのマージ"""

    def __init__(self, store: RecordStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

        # 統計情報
        self.records_inserted = 0
        self.records_unchanged = 0
        self.conflicts_detected = 0
        self.records_skipped = 0

        # 直近のマージ結果が保存できたか
        self.last_flush_ok = True

    async def merge(self, incoming: Iterable[Record], log: ConflictLog) -> int:
        """取得レコードを分類・適用し、適用件数を返す"""
        applied = 0
        self.last_flush_ok = True

        for raw in incoming:
            remote = normalize_record(raw, self.clock)
            if remote is None:
                # text/categoryが空のレコードはこの1件だけ破棄
                self.records_skipped += 1
                logger.warning(f"Ignoring invalid incoming quote: {raw!r}")
                continue

            if not remote.remote_id:
                self.records_skipped += 1
                logger.warning(f"Ignoring incoming quote without remote id: {remote.local_id}")
                continue

            existing = self.store.find_by_remote_id(remote.remote_id)

            if existing is None:
                # リモート新規
                inserted = self.store.insert(remote)
                inserted.origin = Origin.REMOTE
                inserted.last_synced_at = self.clock()
                self.records_inserted += 1
                applied += 1
                continue

            if existing.same_content(remote):
                # 変更なし、同期時刻のみ更新
                self.store.replace(existing.local_id, last_synced_at=self.clock())
                self.records_unchanged += 1
                continue

            log.append(Conflict(
                local=existing.snapshot(),
                remote=remote.snapshot(),
                detected_at=self.clock(),
            ))
            self.conflicts_detected += 1

            # 既定ポリシー（リモート優先）を即時適用
            self.store.replace(
                existing.local_id,
                text=remote.text,
                category=remote.category,
                updated_at=remote.updated_at,
                origin=Origin.REMOTE,
                last_synced_at=self.clock(),
            )
            applied += 1
            logger.info(f"Conflict on {remote.remote_id}: remote version applied by default")

        if applied > 0:
            self.last_flush_ok = await self.store.flush()

        logger.info(f"Merge completed: {applied} applied, {len(log)} conflicts pending")
        return applied

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "records_inserted": self.records_inserted,
            "records_unchanged": self.records_unchanged,
            "conflicts_detected": self.conflicts_detected,
            "records_skipped": self.records_skipped,
        }
