"""
エラーハンドリング - 同期処理のエラー分類とステータス通知
すべての失敗はローカルで回復可能として扱い、プロセスを停止させない
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class QuoteSyncError(Exception):
    """quote_sync基底例外"""


class RecordValidationError(QuoteSyncError):
    """text/categoryが空など、保存できないレコード"""


class RemoteError(QuoteSyncError):
    """リモート通信エラー"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RemoteFetchError(RemoteError):
    """リモート取得失敗"""


class ImportFormatError(QuoteSyncError):
    """インポートファイルの形式不正"""


class ErrorType(Enum):
    """エラータイプ分類"""
    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    HTTP_STATUS_ERROR = "http_status_error"
    DATA_PARSING_ERROR = "data_parsing_error"
    STORAGE_ERROR = "storage_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class ErrorStrategy:
    """エラー対応設定"""
    alert_threshold: int = 1
    recoverable: bool = True


class SyncErrorHandler:
    """同期エラーの分類・集計"""

    STRATEGIES: Dict[ErrorType, ErrorStrategy] = {
        ErrorType.NETWORK_ERROR: ErrorStrategy(alert_threshold=3),
        ErrorType.TIMEOUT_ERROR: ErrorStrategy(alert_threshold=3),
        ErrorType.HTTP_STATUS_ERROR: ErrorStrategy(alert_threshold=3),
        ErrorType.DATA_PARSING_ERROR: ErrorStrategy(alert_threshold=2),
        ErrorType.STORAGE_ERROR: ErrorStrategy(alert_threshold=1),
        ErrorType.VALIDATION_ERROR: ErrorStrategy(alert_threshold=10),
        ErrorType.UNKNOWN_ERROR: ErrorStrategy(alert_threshold=1),
    }

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.error_counts: Dict[ErrorType, int] = {}
        self.last_error: Optional[Exception] = None
        self.last_error_time: Optional[datetime] = None

    def classify_error(self, error: BaseException) -> ErrorType:
        """エラーを分類してタイプを返す"""
        # 原因となった例外を優先
        cause = error.__cause__ if isinstance(error, RemoteError) and error.__cause__ else error

        if isinstance(error, RemoteError) and error.status is not None:
            return ErrorType.HTTP_STATUS_ERROR

        if isinstance(cause, asyncio.TimeoutError):
            return ErrorType.TIMEOUT_ERROR

        # ContentTypeErrorはClientErrorのサブクラスなので先に判定
        if isinstance(cause, (ValueError, aiohttp.ContentTypeError)):
            return ErrorType.DATA_PARSING_ERROR

        if isinstance(cause, (aiohttp.ClientError, ConnectionError, OSError)):
            return ErrorType.NETWORK_ERROR

        if isinstance(error, sqlite3.Error):
            return ErrorType.STORAGE_ERROR

        if isinstance(error, (RecordValidationError, ImportFormatError)):
            return ErrorType.VALIDATION_ERROR

        return ErrorType.UNKNOWN_ERROR

    def handle_error(self, error: BaseException, context: Optional[dict] = None) -> str:
        """エラーを記録し、ユーザー向けステータス文字列を返す"""
        error_type = self.classify_error(error)
        strategy = self.STRATEGIES[error_type]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        self.last_error = error
        self.last_error_time = datetime.now()

        logger.error(f"Error classified as {error_type.value}: {error} (context: {context or {}})")

        if self.error_counts[error_type] >= strategy.alert_threshold:
            logger.warning(
                f"Repeated {error_type.value} failures: {self.error_counts[error_type]} occurrences"
            )

        return self.describe(error)

    @staticmethod
    def describe(error: BaseException) -> str:
        """ステータス表示用の文字列"""
        reason = str(error) or error.__class__.__name__
        return f"Sync failed: {reason}"

    def get_statistics(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}
