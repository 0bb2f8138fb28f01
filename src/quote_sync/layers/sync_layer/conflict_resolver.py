"""
競合解決 - 競合ログの公開と、外部（ユーザー）による解決選択の適用

マージ時に既定ポリシー（リモート優先）が適用済みの競合を、
"local" を選んだものだけローカル版へ戻し、リモートへベストエフォートで書き戻す。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set, Union

from ...core.models import Clock, Conflict, Origin, Resolution, utc_now
from .record_store import RecordStore
from .remote_adapter import RemoteAdapter

logger = logging.getLogger(__name__)


class ConflictLog:
    """解決待ち競合（検出順）。プロセス外には永続化しない"""

    def __init__(self):
        self._pending: List[Conflict] = []

    def append(self, conflict: Conflict):
        self._pending.append(conflict)

    def pending(self) -> List[Conflict]:
        return list(self._pending)

    def clear(self):
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[Conflict]:
        return iter(list(self._pending))

    def __getitem__(self, index: int) -> Conflict:
        return self._pending[index]


@dataclass
class ResolutionReport:
    """解決パスの結果"""
    resolved: int = 0
    kept_local: int = 0
    kept_server: int = 0
    skipped: int = 0
    pushes_scheduled: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    saved: bool = True

    def summary(self) -> str:
        message = (f"Resolved {self.resolved} conflict(s): "
                   f"{self.kept_server} server, {self.kept_local} local, "
                   f"{self.skipped} skipped")
        if not self.saved:
            message += " (save failed, changes kept in memory)"
        return message


class ConflictResolver:
    """競合解決プロトコル"""

    def __init__(self, store: RecordStore, log: ConflictLog,
                 remote: Optional[RemoteAdapter] = None, clock: Clock = utc_now):
        self.store = store
        self.log = log
        self.remote = remote
        self.clock = clock

        # 書き戻しタスク（fire-and-forget、参照だけ保持）
        self._push_tasks: Set[asyncio.Task] = set()

        # 統計情報
        self.conflicts_resolved = 0
        self.local_overrides = 0
        self.stale_conflicts = 0
        self.pushes_failed = 0

    def list_pending(self) -> List[Conflict]:
        """解決待ち競合一覧（検出順）"""
        return self.log.pending()

    def set_resolution(self, index: int, choice: Union[Resolution, str]):
        """競合の解決方法を設定（適用はapply_allで行う）"""
        if index < 0:
            raise IndexError(f"Conflict index out of range: {index}")
        conflict = self.log[index]
        conflict.resolution = choice if isinstance(choice, Resolution) else Resolution(choice)

    async def apply_all(self) -> ResolutionReport:
        """全競合に解決を適用し、1回だけ保存してログをクリア"""
        report = ResolutionReport()
        to_push: List[str] = []

        for conflict in self.log:
            target = self.store.find_by_local_id(conflict.local.local_id)
            if target is None:
                # 解決前に削除されたレコード
                report.skipped += 1
                self.stale_conflicts += 1
                logger.debug(f"Skipping stale conflict for {conflict.local.local_id}")
                continue

            now = self.clock()
            if conflict.resolution == Resolution.SERVER:
                self.store.replace(
                    target.local_id,
                    text=conflict.remote.text,
                    category=conflict.remote.category,
                    updated_at=conflict.remote.updated_at,
                    origin=Origin.REMOTE,
                    last_synced_at=now,
                )
                report.kept_server += 1
            else:
                self.store.replace(
                    target.local_id,
                    text=conflict.local.text,
                    category=conflict.local.category,
                    updated_at=now,
                    origin=Origin.LOCAL,
                    last_synced_at=now,
                )
                to_push.append(target.local_id)
                report.kept_local += 1
                self.local_overrides += 1

            report.resolved += 1

        report.saved = await self.store.flush()
        self.log.clear()
        self.conflicts_resolved += report.resolved

        if self.remote is not None:
            for local_id in to_push:
                self._schedule_push(local_id)
                report.pushes_scheduled.append(local_id)

        report.completed_at = self.clock()
        logger.info(report.summary())
        return report

    def _schedule_push(self, local_id: str):
        task = asyncio.create_task(self._push(local_id))
        self._push_tasks.add(task)
        task.add_done_callback(self._on_push_done)

    def _on_push_done(self, task: asyncio.Task):
        self._push_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.pushes_failed += 1
            logger.error(f"Background push failed: {error!r}")

    async def _push(self, local_id: str):
        """ローカル版の書き戻し（成功時のみ同期時刻を更新）"""
        record = self.store.find_by_local_id(local_id)
        if record is None:
            return

        if await self.remote.push_record(record.snapshot()):
            if self.store.find_by_local_id(local_id) is not None:
                self.store.replace(local_id, last_synced_at=self.clock())
                await self.store.flush()
        else:
            self.pushes_failed += 1
            logger.warning(f"Quote {local_id} kept locally but not pushed to remote")

    async def wait_for_pushes(self):
        """実行中の書き戻しを待機"""
        if self._push_tasks:
            await asyncio.gather(*list(self._push_tasks), return_exceptions=True)

    @property
    def pending_pushes(self) -> int:
        return len(self._push_tasks)

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        return {
            "conflicts_pending": len(self.log),
            "conflicts_resolved": self.conflicts_resolved,
            "local_overrides": self.local_overrides,
            "stale_conflicts": self.stale_conflicts,
            "pushes_pending": self.pending_pushes,
            "pushes_failed": self.pushes_failed,
        }
