"""
同期スケジューラー - 取得→マージの同期パスを定期実行・手動実行する

同時に実行される同期パスは最大1つ。実行中のトリガーはキューせず何もしない。
競合解決パスも同じロックで直列化する（こちらはスキップせず待機）。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ...core.models import Clock, Conflict, Resolution, utc_now
from ...utils.enhanced_logger import get_logger
from ..data_acquisition.error_handler import SyncErrorHandler
from .conflict_resolver import ConflictLog, ConflictResolver, ResolutionReport
from .merge_engine import MergeEngine
from .record_storage import SQLiteRecordStorage
from .record_store import RecordStore
from .remote_adapter import RemoteAdapter

logger = logging.getLogger(__name__)

StatusListener = Callable[[str], None]

SAVE_FAILED_NOTE = " Save failed; changes are kept in memory until the next save."


class SyncState(Enum):
    """同期ステータス"""
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncOutcome:
    """同期パスの結果"""
    applied_count: int
    conflict_count_after: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    skipped: bool = False
    saved: bool = True

    def summary(self) -> str:
        if self.skipped:
            return "Sync skipped: a sync pass is already running"
        if self.error:
            return self.error
        finished = (self.finished_at or self.started_at).astimezone()
        message = f"Last sync: {finished.strftime('%H:%M:%S')} • Applied {self.applied_count} update(s)."
        if self.conflict_count_after:
            message += " Conflicts detected."
        if not self.saved:
            message += SAVE_FAILED_NOTE
        return message


class SyncScheduler:
    """同期セッションの調停役（ストア・競合ログ・リモートを所有）"""

    def __init__(self, store: RecordStore, remote: RemoteAdapter,
                 clock: Clock = utc_now,
                 error_handler: Optional[SyncErrorHandler] = None):
        self.store = store
        self.remote = remote
        self.clock = clock
        self.error_handler = error_handler or SyncErrorHandler()

        self.conflict_log = ConflictLog()
        self.merge_engine = MergeEngine(store, clock)
        self.resolver = ConflictResolver(store, self.conflict_log, remote, clock)

        self.state = SyncState.IDLE
        self.status_message = "Ready."
        self.last_outcome: Optional[SyncOutcome] = None
        self.status_listeners: List[StatusListener] = []

        self._lock = asyncio.Lock()
        self._auto_task: Optional[asyncio.Task] = None
        self._auto_interval: Optional[float] = None

        # 統計情報
        self.passes_completed = 0
        self.passes_failed = 0
        self.passes_skipped = 0

    # ------------------------------------------------------------------
    # ステータス通知
    # ------------------------------------------------------------------

    def _set_status(self, message: str):
        self.status_message = message
        for listener in list(self.status_listeners):
            try:
                listener(message)
            except Exception as e:  # リスナーの失敗で同期を止めない
                logger.warning(f"Status listener failed: {e!r}")

    @property
    def has_pending_conflicts(self) -> bool:
        return len(self.conflict_log) > 0

    @property
    def is_syncing(self) -> bool:
        return self.state == SyncState.SYNCING

    # ------------------------------------------------------------------
    # 同期パス
    # ------------------------------------------------------------------

    async def sync_once(self) -> SyncOutcome:
        """取得＋マージを1回実行（実行中なら何もしない）"""
        started_at = self.clock()

        if self._lock.locked():
            self.passes_skipped += 1
            logger.info("Sync trigger ignored: a pass is already in flight")
            return SyncOutcome(
                applied_count=0,
                conflict_count_after=len(self.conflict_log),
                started_at=started_at,
                finished_at=started_at,
                skipped=True,
            )

        async with self._lock:
            self.state = SyncState.SYNCING
            self._set_status("Syncing with server…")
            app_logger = get_logger()
            op_context = app_logger.log_operation_start("sync_pass")

            try:
                incoming = await self.remote.fetch_remote()
                applied = await self.merge_engine.merge(incoming, self.conflict_log)
                outcome = SyncOutcome(
                    applied_count=applied,
                    conflict_count_after=len(self.conflict_log),
                    started_at=started_at,
                    finished_at=self.clock(),
                    saved=self.merge_engine.last_flush_ok,
                )
                self.passes_completed += 1
                app_logger.log_operation_end(op_context, success=True,
                                             applied=applied, conflicts=len(self.conflict_log))

            except Exception as e:  # 同期失敗は回復可能な結果として返す
                outcome = SyncOutcome(
                    applied_count=0,
                    conflict_count_after=len(self.conflict_log),
                    started_at=started_at,
                    finished_at=self.clock(),
                    error=self.error_handler.handle_error(e, {"operation": "sync_pass"}),
                )
                self.passes_failed += 1
                app_logger.log_operation_end(op_context, success=False, error_message=outcome.error)

            finally:
                self.state = SyncState.IDLE

            self.last_outcome = outcome
            self._set_status(outcome.summary())
            await self._record_outcome("SYNC", outcome.applied_count, outcome.conflict_count_after, outcome.error)
            return outcome

    async def _record_outcome(self, action: str, applied: int, conflicts: int, error: Optional[str]):
        storage = self.store.storage
        if isinstance(storage, SQLiteRecordStorage):
            await storage.record_sync_outcome(action, applied, conflicts, error)

    # ------------------------------------------------------------------
    # 自動同期
    # ------------------------------------------------------------------

    def start_auto(self, interval_seconds: float, run_immediately: bool = False):
        """定期同期開始（既存のスケジュールは停止してから開始）"""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.stop_auto()
        self._auto_interval = interval_seconds
        self._auto_task = asyncio.get_running_loop().create_task(
            self._auto_loop(interval_seconds, run_immediately)
        )
        logger.info(f"Auto sync started (every {interval_seconds}s)")

    def stop_auto(self):
        """定期同期停止（未実行でも安全）"""
        if self._auto_task is not None:
            self._auto_task.cancel()
            logger.info("Auto sync stopped")
        self._auto_task = None
        self._auto_interval = None

    @property
    def is_auto_running(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    async def _auto_loop(self, interval_seconds: float, run_immediately: bool):
        if run_immediately:
            await self.sync_once()
        while True:
            await asyncio.sleep(interval_seconds)
            await self.sync_once()

    # ------------------------------------------------------------------
    # 競合解決
    # ------------------------------------------------------------------

    def list_pending(self) -> List[Conflict]:
        return self.resolver.list_pending()

    def set_resolution(self, index: int, choice: Union[Resolution, str]):
        self.resolver.set_resolution(index, choice)

    async def apply_resolutions(self) -> ResolutionReport:
        """競合解決を適用（同期パスとは直列化）"""
        async with self._lock:
            report = await self.resolver.apply_all()

        finished = (report.completed_at or self.clock()).astimezone()
        message = f"Conflicts resolved at {finished.strftime('%H:%M:%S')}."
        if not report.saved:
            message += SAVE_FAILED_NOTE
        self._set_status(message)
        await self._record_outcome("RESOLVE", report.resolved, len(self.conflict_log), None)
        return report

    # ------------------------------------------------------------------
    # 後始末
    # ------------------------------------------------------------------

    async def close(self):
        """自動同期停止と書き戻し完了待ち"""
        task = self._auto_task
        self.stop_auto()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await self.resolver.wait_for_pushes()

    def get_statistics(self) -> Dict[str, Any]:
        """同期統計情報"""
        return {
            "state": self.state.value,
            "auto_sync": self.is_auto_running,
            "auto_interval_seconds": self._auto_interval,
            "passes_completed": self.passes_completed,
            "passes_failed": self.passes_failed,
            "passes_skipped": self.passes_skipped,
            "status": self.status_message,
            "merge": self.merge_engine.get_statistics(),
            "conflicts": self.resolver.get_statistics(),
            "errors": self.error_handler.get_statistics(),
            "health": get_logger().get_health_status(),
        }
