"""
名言データのJSON入出力 - エクスポート（日付付きファイル）とインポート（正規化・重複排除）
"""

import json
import logging
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ...core.models import Clock, Record, normalize_record, utc_now
from ..data_acquisition.error_handler import ImportFormatError

logger = logging.getLogger(__name__)

EXPORT_PREFIX = "quotes-"


def export_filename(day: Optional[date] = None) -> str:
    day = day or utc_now().date()
    return f"{EXPORT_PREFIX}{day.isoformat()}.json"


def dump_records(records: Iterable[Record]) -> str:
    """レコードをJSON文字列に変換（2スペースインデント）"""
    return json.dumps([record.to_dict() for record in records], indent=2, ensure_ascii=False)


def export_records(records: Iterable[Record], directory: Union[str, Path] = ".",
                   day: Optional[date] = None) -> Path:
    """quotes-YYYY-MM-DD.json としてエクスポート"""
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)

    path = target_dir / export_filename(day)
    records = list(records)
    path.write_text(dump_records(records), encoding="utf-8")

    logger.info(f"Exported {len(records)} quotes to {path}")
    return path


def parse_records(payload: str, clock: Clock = utc_now) -> List[Record]:
    """
    JSON文字列をレコード一覧に変換

    配列以外・不正なJSONはImportFormatError。
    配列内の不正なエントリ（空のtext/categoryなど）は黙って破棄する。
    """
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise ImportFormatError(f"Invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise ImportFormatError("Invalid file format: expected an array of quotes")

    records = []
    for entry in data:
        record = normalize_record(entry, clock)
        if record is None:
            logger.debug(f"Dropping invalid imported entry: {entry!r}")
            continue
        records.append(record)

    dropped = len(data) - len(records)
    if dropped:
        logger.warning(f"Dropped {dropped} invalid entries during import")
    return records


def read_records_file(path: Union[str, Path], clock: Clock = utc_now) -> List[Record]:
    """JSONファイルからレコードを読み込む"""
    path = Path(path)
    try:
        payload = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ImportFormatError(f"Failed to read {path}: {e}") from e

    return parse_records(payload, clock)
