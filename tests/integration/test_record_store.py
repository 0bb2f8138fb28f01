"""
レコードストア・SQLiteストレージ 統合テスト
正規化・一意性・永続化・破損データからの回復の確認
"""

import random
import re

import aiosqlite
import pytest

from conftest import FakeClock, MemoryStorage
from quote_sync.core.models import (
    Origin, Record, default_records, generate_local_id, normalize_record,
)
from quote_sync.layers.data_acquisition.error_handler import RecordValidationError
from quote_sync.layers.sync_layer.record_storage import SQLiteRecordStorage
from quote_sync.layers.sync_layer.record_store import RecordStore


class TestRecordNormalization:
    """レコード正規化のテスト"""

    def test_local_id_format(self):
        """local_idの形式"""
        local_id = generate_local_id()
        assert re.fullmatch(r"local-[0-9a-z]+-[0-9a-z]{6}", local_id)

    def test_trims_and_rejects_empty_fields(self, clock):
        record = normalize_record({"text": "  Stay hungry.  ", "category": " Life "}, clock)
        assert record.text == "Stay hungry."
        assert record.category == "Life"
        assert record.updated_at == clock.now
        assert record.origin == Origin.LOCAL

        assert normalize_record({"text": "   ", "category": "Life"}, clock) is None
        assert normalize_record({"text": "Hi", "category": ""}, clock) is None
        assert normalize_record(["not", "a", "mapping"], clock) is None

    def test_legacy_keys_accepted(self, clock):
        """旧フォーマット（id, serverId, origin=server）"""
        record = normalize_record({
            "id": "local-abc-123456",
            "serverId": "jp-7",
            "text": "Old quote",
            "category": "Server",
            "updatedAt": "2023-05-01T10:00:00Z",
            "origin": "server",
        }, clock)

        assert record.local_id == "local-abc-123456"
        assert record.remote_id == "jp-7"
        assert record.origin == Origin.REMOTE
        assert record.updated_at.year == 2023

    def test_origin_defaults_from_remote_id(self, clock):
        with_remote = normalize_record({"remoteId": "jp-1", "text": "a", "category": "b"}, clock)
        without_remote = normalize_record({"text": "a", "category": "b"}, clock)
        assert with_remote.origin == Origin.REMOTE
        assert without_remote.origin == Origin.LOCAL

    def test_to_dict_field_names(self, clock):
        record = normalize_record({"text": "a", "category": "b"}, clock)
        assert list(record.to_dict()) == [
            "localId", "remoteId", "text", "category", "updatedAt", "origin", "lastSyncedAt"
        ]


class TestRecordStore:
    """レコードストアのテスト"""

    @pytest.fixture
    def store(self, clock):
        return RecordStore(clock=clock)

    def test_insert_drops_invalid(self, store):
        assert store.insert({"text": "", "category": "Life"}) is None
        assert len(store) == 0

    def test_insert_preserves_order(self, store):
        for i in range(3):
            store.insert({"text": f"quote {i}", "category": "Life"})
        assert [record.text for record in store.all()] == ["quote 0", "quote 1", "quote 2"]

    def test_duplicate_remote_id_rejected(self, store):
        store.insert({"remoteId": "jp-1", "text": "a", "category": "Server"})
        with pytest.raises(ValueError):
            store.insert({"remoteId": "jp-1", "text": "b", "category": "Server"})
        assert len(store) == 1

    def test_upsert_by_remote_id(self, store):
        """既存は変更せず返し、未知なら新規作成"""
        created = store.upsert_by_remote_id("jp-3", text="hello", category="Server")
        again = store.upsert_by_remote_id("jp-3", text="ignored", category="Server")

        assert again is created
        assert again.text == "hello"
        assert len(store) == 1
        assert store.find_by_remote_id("jp-3") is created

    def test_upsert_rejects_invalid_new_record(self, store):
        with pytest.raises(RecordValidationError):
            store.upsert_by_remote_id("jp-4", text="", category="Server")
        assert store.find_by_remote_id("jp-4") is None

    def test_replace_keeps_local_id(self, store):
        record = store.insert({"text": "a", "category": "b"})

        with pytest.raises(ValueError):
            store.replace(record.local_id, local_id="local-other-000000")
        with pytest.raises(RecordValidationError):
            store.replace(record.local_id, text="   ")
        with pytest.raises(KeyError):
            store.replace("local-missing-000000", text="x")

        updated = store.replace(record.local_id, text="  changed ")
        assert updated.local_id == record.local_id
        assert updated.text == "changed"

    def test_replace_reindexes_remote_id(self, store):
        record = store.insert({"text": "a", "category": "b"})
        other = store.insert({"remoteId": "jp-2", "text": "c", "category": "d"})

        store.replace(record.local_id, remote_id="jp-1")
        assert store.find_by_remote_id("jp-1") is record

        with pytest.raises(ValueError):
            store.replace(record.local_id, remote_id="jp-2")
        assert store.find_by_remote_id("jp-2") is other

    def test_delete(self, store):
        record = store.insert({"remoteId": "jp-1", "text": "a", "category": "b"})
        assert store.delete(record.local_id)
        assert not store.delete(record.local_id)
        assert store.find_by_remote_id("jp-1") is None
        assert store.find_by_local_id(record.local_id) is None

    def test_local_id_for_remote_reuses_existing(self, store):
        record = store.insert({"remoteId": "jp-1", "text": "a", "category": "b"})
        assert store.local_id_for_remote("jp-1") == record.local_id
        assert store.local_id_for_remote("jp-2") != record.local_id

    def test_categories_and_random_quote(self, store):
        store.insert({"text": "a", "category": "Life"})
        store.insert({"text": "b", "category": "Inspiration"})
        store.insert({"text": "c", "category": "Life"})

        assert store.categories() == ["Inspiration", "Life"]
        assert len(store.filter_by_category("Life")) == 2
        assert len(store.filter_by_category("all")) == 3

        quote = store.random_quote("Inspiration", rng=random.Random(0))
        assert quote.text == "b"
        assert store.random_quote("Missing") is None

    def test_bulk_replace_or_append(self, store):
        """インポート時の重複排除と置き換え"""
        store.insert({"text": "a", "category": "Life"})
        store.insert({"remoteId": "jp-1", "text": "old", "category": "Server"})

        changed = store.bulk_replace_or_append([
            {"text": "a", "category": "Life"},               # 重複
            {"text": "new", "category": "Life"},             # 追加
            {"remoteId": "jp-1", "text": "fresh", "category": "Server"},  # 置き換え
            {"text": "", "category": "Life"},                # 不正
            {"text": "new", "category": "Life"},             # 同一バッチ内の重複
        ])

        assert changed == 2
        assert len(store) == 3
        assert store.find_by_remote_id("jp-1").text == "fresh"

    def test_bulk_import_matches_local_id(self, store):
        """エクスポートを編集して再インポートすると同じレコードを更新"""
        original = store.insert({"text": "A", "category": "X"})
        edited = original.to_dict()
        edited["text"] = "A edited"

        assert store.bulk_replace_or_append([edited]) == 1
        assert store.bulk_replace_or_append([edited]) == 0

        assert len(store) == 1
        record = store.find_by_local_id(original.local_id)
        assert record.text == "A edited"
        assert str(record) == '"A edited" - [X]'

    @pytest.mark.asyncio
    async def test_load_skips_duplicate_remote_ids(self, clock):
        first = normalize_record({"remoteId": "jp-1", "text": "a", "category": "b"}, clock)
        second = normalize_record({"remoteId": "jp-1", "text": "c", "category": "d"}, clock)
        store = RecordStore(MemoryStorage([first, second]), clock)

        assert await store.load() == 1
        assert store.find_by_remote_id("jp-1").text == "a"

    @pytest.mark.asyncio
    async def test_flush_writes_snapshot(self, clock):
        storage = MemoryStorage()
        store = RecordStore(storage, clock)
        record = store.insert({"text": "a", "category": "b"})

        assert await store.flush()
        store.replace(record.local_id, text="changed")

        assert storage.saves == 1
        assert storage.records[0].text == "a"


class TestSQLiteRecordStorage:
    """SQLiteストレージのテスト"""

    @pytest.fixture
    async def storage(self, tmp_path):
        storage = SQLiteRecordStorage(tmp_path / "quotes.db", clock=FakeClock())
        await storage.initialize()
        yield storage

    @pytest.mark.asyncio
    async def test_never_saved_returns_seeded_defaults(self, storage):
        records = await storage.load_all()
        assert [record.text for record in records] == [record.text for record in default_records()]
        assert len(records) == 3

    @pytest.mark.asyncio
    async def test_saved_empty_set_stays_empty(self, storage):
        """一度保存した空集合はシードに戻らない"""
        assert await storage.save_all([])
        assert await storage.load_all() == []

    @pytest.mark.asyncio
    async def test_round_trip_preserves_order_and_fields(self, storage, clock):
        records = [
            normalize_record({"text": f"quote {i}", "category": "Life"}, clock)
            for i in range(5)
        ]
        records[2].remote_id = "jp-9"
        records[2].origin = Origin.REMOTE
        records[2].last_synced_at = clock.advance(60)

        assert await storage.save_all(records)
        loaded = await storage.load_all()

        assert [record.to_dict() for record in loaded] == [record.to_dict() for record in records]

    @pytest.mark.asyncio
    async def test_invalid_rows_dropped(self, storage, clock):
        await storage.save_all([normalize_record({"text": "ok", "category": "Life"}, clock)])

        async with aiosqlite.connect(storage.database_path) as db:
            await db.execute(
                "INSERT INTO quotes (local_id, position, remote_id, text, category, updated_at, origin) "
                "VALUES ('local-bad-000000', 1, NULL, '   ', 'Life', '2024-01-01T00:00:00+00:00', 'local')"
            )
            await db.commit()

        loaded = await storage.load_all()
        assert [record.text for record in loaded] == ["ok"]

    @pytest.mark.asyncio
    async def test_corrupt_database_recovered(self, tmp_path):
        """破損ファイルは退避してデフォルトで起動"""
        db_path = tmp_path / "quotes.db"
        db_path.write_bytes(b"this is not a sqlite database" * 64)

        storage = SQLiteRecordStorage(db_path)
        assert await storage.initialize()
        assert (tmp_path / "quotes.db.corrupt").exists()

        store = RecordStore(storage)
        assert await store.load() == 3

        store.insert({"text": "after recovery", "category": "Life"})
        assert await store.flush()
        assert len(await storage.load_all()) == 4

    @pytest.mark.asyncio
    async def test_sync_logs(self, storage):
        await storage.record_sync_outcome("SYNC", 2, 1)
        await storage.record_sync_outcome("SYNC", 0, 1, "Sync failed: boom")

        logs = await storage.get_sync_logs()
        assert [log.applied_count for log in logs] == [0, 2]
        assert logs[0].error_message == "Sync failed: boom"

        stats = await storage.get_storage_statistics()
        assert stats['total_sync_logs'] == 2
        assert stats['failed_syncs'] == 1

    @pytest.mark.asyncio
    async def test_cleanup_old_logs(self, tmp_path):
        clock = FakeClock()
        storage = SQLiteRecordStorage(tmp_path / "quotes.db", clock=clock)
        await storage.initialize()

        await storage.record_sync_outcome("SYNC", 1, 0)
        clock.advance(40 * 24 * 3600)
        await storage.record_sync_outcome("SYNC", 2, 0)
        await storage.cleanup_old_logs(retention_days=30)

        logs = await storage.get_sync_logs()
        assert [log.applied_count for log in logs] == [2]
