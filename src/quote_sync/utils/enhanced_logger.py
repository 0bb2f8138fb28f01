"""
強化ログシステム - structlogによるJSON構造化ログと操作単位の成功率メトリクス

同期パスなどの操作は log_operation_start / log_operation_end で囲み、
操作名ごとの成功・失敗回数と所要時間を集計する。
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class OperationStats:
    """操作ごとの集計"""
    successes: int = 0
    failures: int = 0
    durations: List[float] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def total(self) -> int:
        return self.successes + self.failures

    def average_duration(self) -> Optional[float]:
        if not self.durations:
            return None
        return sum(self.durations) / len(self.durations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "avg_duration_seconds": self.average_duration(),
            "last_error": self.last_error,
        }


class MetricsCollector:
    """操作メトリクス収集"""

    def __init__(self):
        self.operations: Dict[str, OperationStats] = {}
        self.start_time = datetime.now()

    def _stats(self, operation: str) -> OperationStats:
        return self.operations.setdefault(operation, OperationStats())

    def record_success(self, operation: str, duration: float):
        stats = self._stats(operation)
        stats.successes += 1
        stats.durations.append(duration)

    def record_failure(self, operation: str, duration: float, error_message: Optional[str] = None):
        stats = self._stats(operation)
        stats.failures += 1
        stats.durations.append(duration)
        stats.last_error = error_message

    def success_rate(self) -> float:
        """全操作の成功率（%）。記録がなければ100"""
        total = sum(stats.total for stats in self.operations.values())
        if total == 0:
            return 100.0
        successes = sum(stats.successes for stats in self.operations.values())
        return successes / total * 100

    def get_health_summary(self) -> Dict[str, Any]:
        return {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'success_rate_percent': self.success_rate(),
            'total_operations': sum(stats.total for stats in self.operations.values()),
            'operations': {name: stats.to_dict() for name, stats in self.operations.items()},
        }


class EnhancedLogger:
    """構造化ログ＋標準ログ＋メトリクス"""

    def __init__(self,
                 name: str = "quote_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True,
                 structured: bool = True):

        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.structured = structured
        self.metrics = MetricsCollector() if metrics_enabled else None

        self.structured_logger = structlog.wrap_logger(
            structlog.PrintLogger(sys.stderr),
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, log_level.value)
            ),
        ).bind(logger=name)

        self.logger = logging.getLogger(name)
        self._setup_handlers()

    def _setup_handlers(self):
        """標準ログのハンドラー設定（再生成時は置き換え）"""
        self.logger.setLevel(getattr(logging, self.log_level.value))
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_file, encoding='utf-8'))

        for handler in handlers:
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def debug(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(LogLevel.DEBUG, message, error, context)

    def info(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(LogLevel.INFO, message, error, context)

    def warning(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(LogLevel.WARNING, message, error, context)

    def error(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(LogLevel.ERROR, message, error, context)

    def _log(self, level: LogLevel, message: str,
             error: Optional[BaseException], context: Dict[str, Any]):
        if error is not None:
            context['error_type'] = error.__class__.__name__
            context['error_message'] = str(error)

        method = level.value.lower()
        if self.structured:
            getattr(self.structured_logger, method)(message, **context)

        if context:
            message = f"{message} | Context: {json.dumps(context, ensure_ascii=False, default=str)}"
        getattr(self.logger, method)(message)

    def log_operation_start(self, operation: str, **context) -> Dict[str, Any]:
        """操作開始ログ。戻り値を log_operation_end に渡す"""
        start_time = datetime.now()
        self.debug(f"Operation started: {operation}", operation=operation, **context)
        return {'operation': operation, 'start_time': start_time, **context}

    def log_operation_end(self, operation_context: Dict[str, Any], success: bool = True, **additional):
        """操作終了ログ（成功・失敗をメトリクスに記録）"""
        context = dict(operation_context)
        operation = context.pop('operation', 'unknown')
        start_time = context.pop('start_time', None)
        duration = (datetime.now() - start_time).total_seconds() if start_time else 0.0
        context.update(additional)

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)",
                      operation=operation, duration_seconds=duration, **context)
        else:
            if self.metrics:
                self.metrics.record_failure(operation, duration, context.get('error_message'))
            self.error(f"Operation failed: {operation} ({duration:.2f}s)",
                       operation=operation, duration_seconds=duration, **context)

    def get_health_status(self) -> Dict[str, Any]:
        """成功率から健全性を判定"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        summary = self.metrics.get_health_summary()
        success_rate = summary['success_rate_percent']
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {"overall_status": status, **summary}


# グローバルインスタンス
_global_logger: Optional[EnhancedLogger] = None


def get_logger() -> EnhancedLogger:
    """グローバルロガー取得（未設定ならデフォルト設定で生成）"""
    global _global_logger
    if _global_logger is None:
        _global_logger = EnhancedLogger()
    return _global_logger


def setup_logging(config: Optional[Dict[str, Any]] = None) -> EnhancedLogger:
    """ログ設定からグローバルロガーを作り直す"""
    config = config or {}
    log_file_path = config.get('file_path')

    global _global_logger
    _global_logger = EnhancedLogger(
        name=config.get('name', 'quote_sync'),
        log_level=LogLevel(str(config.get('level', 'INFO')).upper()),
        log_file=Path(log_file_path) if log_file_path else None,
        metrics_enabled=config.get('metrics_enabled', True),
        structured=config.get('structured', True),
    )
    return _global_logger
