"""
レコードストア - ローカルレプリカの名言レコードを所有する集約
remote_idがあればremote_idで、なければlocal_idで論理的にキー付けされる
"""

import asyncio
import logging
import random
from typing import Any, Dict, Iterable, List, Optional, Set

from ...core.models import Clock, Record, generate_local_id, normalize_record, utc_now
from ..data_acquisition.error_handler import RecordValidationError
from .record_storage import RecordStorage

logger = logging.getLogger(__name__)

CONTENT_FIELDS = {"text", "category"}
MUTABLE_FIELDS = {"remote_id", "text", "category", "updated_at", "origin", "last_synced_at"}


class RecordStore:
    """名言レコードストア"""

    def __init__(self, storage: Optional[RecordStorage] = None, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock
        self._records: List[Record] = []
        self._by_local_id: Dict[str, Record] = {}
        self._by_remote_id: Dict[str, Record] = {}
        self._flush_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # 永続化
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """ストレージから読み込み（既存の内容は置き換え）"""
        self._records.clear()
        self._by_local_id.clear()
        self._by_remote_id.clear()

        if self.storage is None:
            return 0

        for record in await self.storage.load_all():
            try:
                self.insert(record)
            except ValueError as e:
                logger.warning(f"Skipping duplicate stored quote {record.local_id}: {e}")

        logger.info(f"Record store loaded: {len(self._records)} quotes")
        return len(self._records)

    async def flush(self) -> bool:
        """現在の全レコードを保存（保存は直列化し、常に最新状態を書き込む）"""
        if self.storage is None:
            return True

        async with self._flush_lock:
            snapshot = [record.snapshot() for record in self._records]
            saved = await self.storage.save_all(snapshot)

        if not saved:
            logger.warning(f"Record store flush failed ({len(snapshot)} quotes kept in memory)")
        return saved

    # ------------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------------

    def all(self) -> List[Record]:
        """挿入順の全レコード"""
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def find_by_local_id(self, local_id: str) -> Optional[Record]:
        return self._by_local_id.get(local_id)

    def find_by_remote_id(self, remote_id: Optional[str]) -> Optional[Record]:
        if not remote_id:
            return None
        return self._by_remote_id.get(remote_id)

    def local_id_for_remote(self, remote_id: str) -> str:
        """リモートIDに対応する既存のlocal_id（未知なら新規発行）"""
        existing = self.find_by_remote_id(remote_id)
        return existing.local_id if existing else self._new_local_id()

    def categories(self) -> List[str]:
        """カテゴリ一覧（重複なし・ソート済み）"""
        return sorted({record.category for record in self._records})

    def filter_by_category(self, category: str = "all") -> List[Record]:
        if category == "all":
            return self.all()
        return [record for record in self._records if record.category == category]

    def random_quote(self, category: str = "all", rng: Optional[random.Random] = None) -> Optional[Record]:
        """カテゴリ内からランダムに1件"""
        candidates = self.filter_by_category(category)
        if not candidates:
            return None
        return (rng or random).choice(candidates)

    # ------------------------------------------------------------------
    # 変更（メモリ上のみ。永続化は呼び出し側の操作単位でflush）
    # ------------------------------------------------------------------

    def _new_local_id(self) -> str:
        local_id = generate_local_id()
        while local_id in self._by_local_id:
            local_id = generate_local_id()
        return local_id

    def insert(self, record: Any) -> Optional[Record]:
        """レコード追加（不正なレコードは破棄してNoneを返す）"""
        normalized = normalize_record(record, self.clock)
        if normalized is None:
            logger.debug(f"Dropping invalid quote: {record!r}")
            return None

        if normalized.local_id in self._by_local_id:
            normalized.local_id = self._new_local_id()

        if normalized.remote_id and normalized.remote_id in self._by_remote_id:
            raise ValueError(f"Quote with remote id {normalized.remote_id} already exists")

        self._records.append(normalized)
        self._by_local_id[normalized.local_id] = normalized
        if normalized.remote_id:
            self._by_remote_id[normalized.remote_id] = normalized
        return normalized

    def upsert_by_remote_id(self, remote_id: str, **fields) -> Record:
        """
        remote_idでレコードを取得、なければ新規作成して追加

        既存レコードは変更せずに返す（変更はreplaceで行う）。
        新規レコードが不正な場合はRecordValidationError。
        """
        existing = self.find_by_remote_id(remote_id)
        if existing:
            return existing

        candidate = {
            "localId": self._new_local_id(),
            "remoteId": remote_id,
            "text": fields.get("text"),
            "category": fields.get("category"),
            "updatedAt": fields.get("updated_at"),
            "origin": fields.get("origin"),
            "lastSyncedAt": fields.get("last_synced_at"),
        }
        record = self.insert(candidate)
        if record is None:
            raise RecordValidationError(f"Quote for {remote_id} has empty text or category")
        return record

    def replace(self, local_id: str, /, **fields) -> Record:
        """既存レコードのフィールドをその場で更新（local_idは変更不可）"""
        record = self._by_local_id.get(local_id)
        if record is None:
            raise KeyError(local_id)

        if "local_id" in fields:
            raise ValueError("local_id is immutable")

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown quote fields: {', '.join(sorted(unknown))}")

        for name in CONTENT_FIELDS & set(fields):
            value = fields[name].strip() if isinstance(fields[name], str) else ""
            if not value:
                raise RecordValidationError(f"Quote {name} must not be empty")
            fields[name] = value

        new_remote_id = fields.get("remote_id", record.remote_id)
        if new_remote_id != record.remote_id:
            owner = self._by_remote_id.get(new_remote_id) if new_remote_id else None
            if owner is not None and owner is not record:
                raise ValueError(f"Quote with remote id {new_remote_id} already exists")
            if record.remote_id:
                del self._by_remote_id[record.remote_id]
            if new_remote_id:
                self._by_remote_id[new_remote_id] = record

        for name, value in fields.items():
            setattr(record, name, value)
        return record

    def delete(self, local_id: str) -> bool:
        record = self._by_local_id.pop(local_id, None)
        if record is None:
            return False
        self._records.remove(record)
        if record.remote_id:
            self._by_remote_id.pop(record.remote_id, None)
        return True

    def bulk_replace_or_append(self, records: Iterable[Any]) -> int:
        """
        一括取り込み（インポート用）

        remote_id付きはremote_idで、既存のlocal_idを持つものはlocal_idで置き換え、
        それ以外はtext+categoryで重複排除して追加。
        不正なエントリは破棄。追加・更新件数を返す。
        """
        seen: Set[tuple] = {(record.text, record.category) for record in self._records}
        changed = 0

        for raw in records:
            incoming = normalize_record(raw, self.clock)
            if incoming is None:
                continue

            if incoming.remote_id:
                existing = self.find_by_remote_id(incoming.remote_id)
            else:
                existing = self.find_by_local_id(incoming.local_id)

            if existing is not None:
                if not existing.same_content(incoming):
                    self.replace(
                        existing.local_id,
                        text=incoming.text,
                        category=incoming.category,
                        updated_at=incoming.updated_at,
                        origin=incoming.origin,
                    )
                    changed += 1
                seen.add((incoming.text, incoming.category))
                continue

            if incoming.remote_id:
                self.insert(incoming)
                changed += 1
                seen.add((incoming.text, incoming.category))
                continue

            key = (incoming.text, incoming.category)
            if key in seen:
                continue
            seen.add(key)
            self.insert(incoming)
            changed += 1

        return changed
