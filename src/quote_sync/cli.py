"""
quote-sync コマンドラインフロントエンド
名言の表示・追加、リモート同期、競合解決、JSONエクスポート／インポート
"""

import argparse
import asyncio
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .config.enhanced_config import ConfigManager, QuoteSyncConfig
from .core.models import Resolution
from .layers.data_acquisition.error_handler import ImportFormatError
from .layers.data_processing.record_io import export_records, read_records_file
from .layers.sync_layer.record_storage import SQLiteRecordStorage
from .layers.sync_layer.record_store import RecordStore
from .layers.sync_layer.remote_adapter import JsonPlaceholderAdapter
from .layers.sync_layer.sync_scheduler import SyncScheduler
from .utils.enhanced_logger import setup_logging


async def open_session(config: QuoteSyncConfig, secrets: Optional[Dict[str, Any]] = None) -> SyncScheduler:
    """ストレージ読み込み済みの同期セッションを作成"""
    secrets = secrets or {}

    storage = SQLiteRecordStorage(config.storage.database_path)
    await storage.initialize()
    await storage.cleanup_old_logs(config.storage.sync_log_retention_days)

    store = RecordStore(storage)
    await store.load()

    remote = JsonPlaceholderAdapter(
        asdict(config.remote),
        store=store,
        auth_token=secrets.get('QUOTE_SYNC_REMOTE_TOKEN'),
    )
    return SyncScheduler(store, remote)


def _warn_if_unsaved(saved: bool):
    if not saved:
        print("Save failed; changes are kept in memory until the next save.", file=sys.stderr)


def _print_pending(scheduler: SyncScheduler):
    pending = scheduler.list_pending()
    if not pending:
        return
    print(f"{len(pending)} conflict(s) pending:")
    for index, conflict in enumerate(pending):
        print(f"  [{index}] {conflict.summary()}")


async def cmd_show(scheduler: SyncScheduler, args) -> int:
    quote = scheduler.store.random_quote(args.category)
    if quote is None:
        print(f"No quotes in category: {args.category}")
        return 1
    print(quote)
    return 0


async def cmd_categories(scheduler: SyncScheduler, args) -> int:
    for category in scheduler.store.categories():
        print(category)
    return 0


async def cmd_add(scheduler: SyncScheduler, args) -> int:
    record = scheduler.store.insert({"text": args.text, "category": args.category})
    if record is None:
        print("Please enter both quote text and category.", file=sys.stderr)
        return 1
    _warn_if_unsaved(await scheduler.store.flush())
    print(f"Added {record.local_id}: {record}")
    return 0


async def cmd_sync(scheduler: SyncScheduler, args) -> int:
    outcome = await scheduler.sync_once()
    print(scheduler.status_message)
    _print_pending(scheduler)

    if outcome.error:
        return 1

    if scheduler.has_pending_conflicts:
        for index in args.keep_local or []:
            try:
                scheduler.set_resolution(index, Resolution.LOCAL)
            except IndexError:
                print(f"No pending conflict at index {index}", file=sys.stderr)
                return 1
        report = await scheduler.apply_resolutions()
        print(report.summary())
        print(scheduler.status_message)

    return 0


async def cmd_watch(scheduler: SyncScheduler, args, config: QuoteSyncConfig) -> int:
    if not config.sync.auto_sync:
        print("Auto sync is disabled in configuration.", file=sys.stderr)
        return 1

    interval = args.interval or config.sync.interval_seconds
    scheduler.status_listeners.append(print)
    scheduler.start_auto(interval, run_immediately=config.sync.sync_on_start)
    try:
        await asyncio.sleep(interval * args.ticks)
    finally:
        scheduler.stop_auto()
    _print_pending(scheduler)
    return 0


async def cmd_export(scheduler: SyncScheduler, args, config: QuoteSyncConfig) -> int:
    path = export_records(scheduler.store.all(), args.dir or config.storage.export_dir)
    print(f"Exported {len(scheduler.store)} quotes to {path}")
    return 0


async def cmd_import(scheduler: SyncScheduler, args) -> int:
    try:
        records = read_records_file(args.file)
    except ImportFormatError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1

    changed = scheduler.store.bulk_replace_or_append(records)
    _warn_if_unsaved(await scheduler.store.flush())
    print(f"Quotes imported successfully! ({changed} added or updated)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quote-sync", description="Quote collection with remote sync")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ")
    parser.add_argument("--db", help="SQLiteデータベースのパス（設定を上書き）")
    parser.add_argument("--log-level", help="ログレベル（設定を上書き）")

    commands = parser.add_subparsers(dest="command", required=True)

    show = commands.add_parser("show", help="ランダムな名言を表示")
    show.add_argument("--category", default="all")

    commands.add_parser("categories", help="カテゴリ一覧")

    add = commands.add_parser("add", help="名言を追加")
    add.add_argument("text")
    add.add_argument("category")

    sync = commands.add_parser("sync", help="リモートと1回同期")
    sync.add_argument("--keep-local", type=int, action="append", metavar="N",
                      help="N番目の競合でローカル版を採用（複数指定可）")

    watch = commands.add_parser("watch", help="自動同期を実行")
    watch.add_argument("--interval", type=float, help="同期間隔（秒）")
    watch.add_argument("--ticks", type=int, default=3, help="同期回数")

    export = commands.add_parser("export", help="JSONエクスポート")
    export.add_argument("--dir", help="出力先ディレクトリ")

    import_ = commands.add_parser("import", help="JSONインポート")
    import_.add_argument("file", type=Path)

    return parser


async def run(args, config: QuoteSyncConfig, secrets: Dict[str, Any]) -> int:
    scheduler = await open_session(config, secrets)
    try:
        if args.command == "show":
            return await cmd_show(scheduler, args)
        if args.command == "categories":
            return await cmd_categories(scheduler, args)
        if args.command == "add":
            return await cmd_add(scheduler, args)
        if args.command == "sync":
            return await cmd_sync(scheduler, args)
        if args.command == "watch":
            return await cmd_watch(scheduler, args, config)
        if args.command == "export":
            return await cmd_export(scheduler, args, config)
        return await cmd_import(scheduler, args)
    finally:
        await scheduler.close()


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    manager = ConfigManager(args.config_dir, Path(args.config_dir) / "secrets")
    config = manager.load_config()
    if args.db:
        config.storage.database_path = args.db
    if args.log_level:
        config.logging.level = args.log_level.upper()

    setup_logging(asdict(config.logging))
    secrets = manager.load_secrets()

    return asyncio.run(run(args, config, secrets))


if __name__ == "__main__":
    sys.exit(main())
