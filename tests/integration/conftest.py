"""
統合テスト共通フィクスチャ - 固定時計・メモリストレージ・フェイクリモート
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import pytest

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from quote_sync.core.models import Origin, Record, generate_local_id
from quote_sync.layers.sync_layer.record_storage import RecordStorage
from quote_sync.layers.sync_layer.remote_adapter import RemoteAdapter


class FakeClock:
    """手動で進める時計"""
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class MemoryStorage(RecordStorage):
    """保存回数を数えるメモリストレージ"""
    def __init__(self, records: Sequence[Record] = ()):
        self.records = [record.snapshot() for record in records]
        self.saves = 0
        self.fail_saves = False

    async def load_all(self) -> List[Record]:
        return [record.snapshot() for record in self.records]

    async def save_all(self, records: Sequence[Record]) -> bool:
        self.saves += 1
        if self.fail_saves:
            return False
        self.records = [record.snapshot() for record in records]
        return True


class FakeRemote(RemoteAdapter):
    """テスト用リモート"""
    def __init__(self, records: Sequence[Record] = (), push_result: bool = True,
                 fail_with: Optional[Exception] = None):
        self.records = list(records)
        self.push_result = push_result
        self.fail_with = fail_with
        self.gate: Optional[asyncio.Event] = None
        self.fetch_calls = 0
        self.pushed: List[Record] = []

    async def fetch_remote(self) -> List[Record]:
        self.fetch_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return [record.snapshot() for record in self.records]

    async def push_record(self, record: Record) -> bool:
        self.pushed.append(record)
        return self.push_result


def remote_record(post_id: int, text: str, category: str = "Server",
                  updated_at: Optional[datetime] = None) -> Record:
    """リモート側のレコード"""
    return Record(
        local_id=generate_local_id(),
        remote_id=f"jp-{post_id}",
        text=text,
        category=category,
        updated_at=updated_at or datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc),
        origin=Origin.REMOTE,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage():
    return MemoryStorage()
