"""
Structured logging for company-profile discovery.

Every component logs through one StructuredLogger: a console handler at the
configured level plus a daily file under logs/ that records everything.
Keyword context is appended to the message as JSON so log lines stay
greppable by search term, window or flag key.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_context(message: str, context: Dict[str, Any]) -> str:
    """Append context as JSON; values JSON can't encode are logged via str()."""
    if not context:
        return message
    return f"{message} | Context: {json.dumps(context, default=str)}"


def daily_log_file(log_dir: Path, name: str, day: Optional[datetime] = None) -> Path:
    day = day or datetime.now()
    return log_dir / f"{name}_{day.strftime('%Y%m%d')}.log"


def _handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DATE_FORMAT))
    return handler


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger with keyword context.

    Args:
        name: Logger name, also the log file prefix
        level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for daily log files (default: logs/)
        enable_file: Write a daily log file
        enable_console: Echo to stdout
    """

    def __init__(
        self,
        name: str = "companylink",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        numeric_level = getattr(logging, level.upper())

        self.logger = logging.getLogger(name)
        self.logger.setLevel(numeric_level)
        self.logger.handlers.clear()
        self.logger.propagate = False

        if enable_console:
            self.logger.addHandler(_handler(logging.StreamHandler(sys.stdout), numeric_level, CONSOLE_FORMAT))

        if enable_file:
            log_dir = log_dir or Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(daily_log_file(log_dir, name), encoding="utf-8")
            # File keeps DEBUG regardless of the console level
            self.logger.addHandler(_handler(file_handler, logging.DEBUG, FILE_FORMAT))

    def debug(self, message: str, **context):
        self.logger.debug(format_context(message, context))

    def info(self, message: str, **context):
        self.logger.info(format_context(message, context))

    def warning(self, message: str, **context):
        self.logger.warning(format_context(message, context))

    def error(self, message: str, **context):
        self.logger.error(format_context(message, context))

    def critical(self, message: str, **context):
        self.logger.critical(format_context(message, context))

    def log_metrics_summary(self, metrics: Dict[str, Any]):
        """
        Write a human-readable digest of a metrics snapshot.

        Args:
            metrics: MonitoringMetrics.to_dict() output
        """
        req = metrics["requests"]
        cache = metrics["cache"]
        api = metrics["api"]
        by_type = metrics["errors"]["by_type"]

        success_pct = round(req["successful"] / req["total"] * 100, 1) if req["total"] else 0.0

        lines = [
            "=== Discovery Metrics ===",
            f"Requests: {req['successful']}/{req['total']} ({success_pct}% success)",
            f"Avg response time: {req['avg_response_time_ms']:.0f}ms",
            f"Cache: {cache['hits']} hits / {cache['misses']} misses ({cache['hit_rate'] * 100:.1f}% hit rate)",
            f"Quota: {api['quota_used']} used, {api['quota_remaining']} remaining",
        ]
        if by_type:
            lines.append("Error Types:")
            lines.extend(f"  {error_type}: {count}" for error_type, count in sorted(by_type.items()))

        for line in lines:
            self.info(line)


_global_logger: Optional[StructuredLogger] = None


def get_logger(name: str = "companylink", level: str = "INFO", **kwargs) -> StructuredLogger:
    """
    Return the process-wide logger, creating it on first use.

    Arguments only apply to that first call.
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Forget the process-wide logger so the next get_logger() builds a fresh one."""
    global _global_logger
    _global_logger = None
