"""データモデル定義 - 名言レコードと競合"""

import random
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


Clock = Callable[[], datetime]

# 永続化・エクスポート時のフィールド名（この順序で出力）
RECORD_FIELDS = ("localId", "remoteId", "text", "category", "updatedAt", "origin", "lastSyncedAt")

_ID_ALPHABET = string.digits + string.ascii_lowercase


def utc_now() -> datetime:
    """現在時刻（UTC, timezone-aware）"""
    return datetime.now(timezone.utc)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_local_id() -> str:
    """ローカルID生成（タイムスタンプ + ランダムサフィックス）"""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"local-{timestamp}-{suffix}"


class Origin(Enum):
    """最後に内容を書き込んだ側"""
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def parse(cls, value: Any) -> Optional["Origin"]:
        if isinstance(value, Origin):
            return value
        if value == "server":  # 旧フォーマット
            return cls.REMOTE
        try:
            return cls(value)
        except ValueError:
            return None


class Resolution(Enum):
    """競合解決の選択"""
    SERVER = "server"
    LOCAL = "local"


@dataclass
class Record:
    """名言レコード（ローカル・リモート間で照合される単位）"""
    local_id: str
    text: str
    category: str
    updated_at: datetime
    origin: Origin = Origin.LOCAL
    remote_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    def snapshot(self) -> "Record":
        """検出時点のスナップショット"""
        return replace(self)

    def same_content(self, other: "Record") -> bool:
        return self.text == other.text and self.category == other.category

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（永続化・エクスポート共通フォーマット）"""
        return {
            "localId": self.local_id,
            "remoteId": self.remote_id,
            "text": self.text,
            "category": self.category,
            "updatedAt": self.updated_at.isoformat(),
            "origin": self.origin.value,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    def __str__(self) -> str:
        return f'"{self.text}" - [{self.category}]'


@dataclass
class Conflict:
    """解決待ちの競合"""
    local: Record
    remote: Record
    resolution: Resolution = Resolution.SERVER
    detected_at: datetime = field(default_factory=utc_now)

    def summary(self) -> str:
        return (f"Conflict {self.remote.remote_id or 'n/a'}: "
                f"local='{self.local.text}' [{self.local.category}] vs "
                f"remote='{self.remote.text}' [{self.remote.category}] -> {self.resolution.value}")


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO文字列・datetimeをUTCのdatetimeに変換（不正値はNone）"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_record(obj: Any, clock: Clock = utc_now) -> Optional[Record]:
    """
    任意のマッピングをRecordへ正規化

    text/categoryはトリムし、どちらかが空なら None を返す（保存しない）。
    旧フォーマットのキー（id, serverId）も受け付ける。
    """
    if isinstance(obj, Record):
        obj = obj.to_dict()
    if not isinstance(obj, dict):
        return None

    text = _clean_text(obj.get("text"))
    category = _clean_text(obj.get("category"))
    if not text or not category:
        return None

    local_id = obj.get("localId") or obj.get("id")
    if not isinstance(local_id, str) or not local_id.strip():
        local_id = generate_local_id()

    remote_id = obj.get("remoteId", obj.get("serverId"))
    if remote_id is not None:
        remote_id = str(remote_id).strip() or None

    updated_at = parse_timestamp(obj.get("updatedAt")) or clock()

    origin = Origin.parse(obj.get("origin"))
    if origin is None:
        origin = Origin.REMOTE if remote_id else Origin.LOCAL

    return Record(
        local_id=local_id.strip(),
        remote_id=remote_id,
        text=text,
        category=category,
        updated_at=updated_at,
        origin=origin,
        last_synced_at=parse_timestamp(obj.get("lastSyncedAt")),
    )


def default_records(clock: Clock = utc_now) -> List[Record]:
    """初回起動時のシードデータ"""
    seeds = [
        {"text": "The best way to predict the future is to invent it.", "category": "Inspiration"},
        {"text": "Life is what happens when you're busy making other plans.", "category": "Life"},
        {"text": "Do or do not. There is no try.", "category": "Motivation"},
    ]
    return [normalize_record(seed, clock) for seed in seeds]
