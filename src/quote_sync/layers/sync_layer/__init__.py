"""
同期層 - ローカルレプリカ ↔ リモートの定期同期と競合解決を管理
"""

from .conflict_resolver import ConflictLog, ConflictResolver, ResolutionReport
from .merge_engine import MergeEngine
from .record_storage import RecordStorage, SQLiteRecordStorage, SyncLog
from .record_store import RecordStore
from .remote_adapter import JsonPlaceholderAdapter, RemoteAdapter
from .sync_scheduler import SyncOutcome, SyncScheduler, SyncState

__all__ = [
    'ConflictLog', 'ConflictResolver', 'ResolutionReport',
    'MergeEngine',
    'RecordStorage', 'SQLiteRecordStorage', 'SyncLog',
    'RecordStore',
    'JsonPlaceholderAdapter', 'RemoteAdapter',
    'SyncOutcome', 'SyncScheduler', 'SyncState'
]
