"""
データ取得層 - エラー分類と例外定義
"""

from .error_handler import (
    SyncErrorHandler, ErrorType,
    QuoteSyncError, RecordValidationError,
    RemoteError, RemoteFetchError,
    ImportFormatError,
)

__all__ = [
    'SyncErrorHandler', 'ErrorType',
    'QuoteSyncError', 'RecordValidationError',
    'RemoteError', 'RemoteFetchError',
    'ImportFormatError',
]
