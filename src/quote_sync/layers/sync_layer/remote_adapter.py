"""
リモートアダプター - リモートの投稿データをRecordに変換し、ローカル変更を書き戻す
リモート（JSONPlaceholder互換）は書き込みを永続化しないため、書き戻しはベストエフォート
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from ...core.models import Clock, Record, generate_local_id, normalize_record, utc_now
from ..data_acquisition.error_handler import RemoteFetchError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://jsonplaceholder.typicode.com"
DEFAULT_RESOURCE = "/posts"
REMOTE_ID_PREFIX = "jp-"
REMOTE_CATEGORY = "Server"


class RemoteAdapter(ABC):
    """リモートトランスポート抽象基底クラス"""

    @abstractmethod
    async def fetch_remote(self) -> List[Record]:
        """リモートのレコード一覧を取得（失敗時はRemoteFetchError）"""

    @abstractmethod
    async def push_record(self, record: Record) -> bool:
        """レコードを書き戻す（失敗は例外にせずFalse）"""


class JsonPlaceholderAdapter(RemoteAdapter):
    """JSONPlaceholder /posts リソースのアダプター"""

    def __init__(self, config: Dict[str, Any], store=None,
                 timestamp_source: Clock = utc_now,
                 rng: Optional[random.Random] = None,
                 auth_token: Optional[str] = None):
        self.base_url = config.get('base_url', DEFAULT_BASE_URL).rstrip('/')
        self.resource = config.get('resource', DEFAULT_RESOURCE)
        self.user_id = config.get('user_id', 9)
        self.page_size = config.get('page_size', 5)
        self.start_spread = max(1, config.get('start_spread', 5))
        self.timeout = aiohttp.ClientTimeout(total=config.get('timeout_seconds', 10.0))
        self.auth_token = auth_token

        # ローカルID再利用のためのストア参照
        self.store = store
        # リモートは更新時刻を返さないため、取得時刻を合成する
        self.timestamp_source = timestamp_source
        self.rng = rng or random.Random()

        self.total_fetched = 0
        self.pushes_succeeded = 0
        self.pushes_failed = 0

    @property
    def resource_url(self) -> str:
        return f"{self.base_url}{self.resource}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json; charset=UTF-8"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def fetch_remote(self) -> List[Record]:
        """リモート投稿を取得してRecordに変換"""
        params = {
            "userId": self.user_id,
            "_limit": self.page_size,
            "_start": self.rng.randrange(self.start_spread),
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.get(self.resource_url, params=params) as response:
                    if not 200 <= response.status < 300:
                        raise RemoteFetchError(
                            f"Server fetch failed: {response.status}", status=response.status
                        )
                    payload = await response.json(content_type=None)

        except RemoteFetchError:
            raise
        except asyncio.TimeoutError as e:
            raise RemoteFetchError("Server fetch failed: request timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteFetchError(f"Server fetch failed: {e}") from e
        except ValueError as e:
            raise RemoteFetchError("Server fetch failed: malformed JSON payload") from e

        if not isinstance(payload, list):
            raise RemoteFetchError("Server fetch failed: expected a list payload")

        records = []
        for post in payload:
            record = self.map_post(post)
            if record:
                records.append(record)
            else:
                logger.debug(f"Skipping unusable remote post: {post!r}")

        self.total_fetched += len(records)
        logger.info(f"Fetched {len(records)} remote quotes from {self.resource_url}")
        return records

    def map_post(self, post: Any) -> Optional[Record]:
        """投稿1件をRecordに変換（不正な投稿はNone）"""
        if not isinstance(post, dict) or post.get("id") is None:
            return None

        remote_id = f"{REMOTE_ID_PREFIX}{post['id']}"
        text = post.get("title") or post.get("body") or ""

        if self.store is not None:
            local_id = self.store.local_id_for_remote(remote_id)
        else:
            local_id = generate_local_id()

        return normalize_record({
            "localId": local_id,
            "remoteId": remote_id,
            "text": text,
            "category": REMOTE_CATEGORY,
            "updatedAt": self.timestamp_source(),
            "origin": "remote",
        }, self.timestamp_source)

    def build_push_payload(self, record: Record) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "title": record.category,
            "body": json.dumps({
                "id": record.local_id,
                "text": record.text,
                "category": record.category,
                "updatedAt": record.updated_at.isoformat(),
            }, ensure_ascii=False),
        }

    async def push_record(self, record: Record) -> bool:
        """レコードをPOST（2xxのみ成功。失敗はログのみ）"""
        payload = self.build_push_payload(record)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.post(self.resource_url, json=payload) as response:
                    if 200 <= response.status < 300:
                        self.pushes_succeeded += 1
                        logger.debug(f"Pushed quote {record.local_id} ({response.status})")
                        return True

                    response_text = await response.text()
                    logger.warning(f"Push of quote {record.local_id} rejected: {response.status} {response_text[:200]}")

        except asyncio.TimeoutError:
            logger.warning(f"Push of quote {record.local_id} timed out")
        except aiohttp.ClientError as e:
            logger.warning(f"Push of quote {record.local_id} failed: {e}")

        self.pushes_failed += 1
        return False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "resource_url": self.resource_url,
            "total_fetched": self.total_fetched,
            "pushes_succeeded": self.pushes_succeeded,
            "pushes_failed": self.pushes_failed,
        }
