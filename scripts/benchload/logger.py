"""
Structured logging for the loader.
Timestamped, level-based, key=value details, safe to call from worker threads.
"""
import sys
import threading
from datetime import datetime
from enum import Enum
from typing import Optional, TextIO


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


_LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.SUCCESS: 1,
    LogLevel.WARNING: 2,
    LogLevel.ERROR: 3,
}


class StructuredLogger:
    """
    Line-oriented logger with structured details.

    Producer threads, the consumer and the main thread all log through one
    instance, so every line is written under a lock.
    """

    def __init__(
        self,
        min_level: LogLevel = LogLevel.INFO,
        show_timestamp: bool = True,
        show_thread: bool = False,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        self.min_level = min_level
        self.show_timestamp = show_timestamp
        self.show_thread = show_thread
        self._out = out
        self._err = err
        self._lock = threading.Lock()

    def _should_log(self, level: LogLevel) -> bool:
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self.min_level]

    def _format_message(self, level: LogLevel, message: str, details: Optional[dict] = None) -> str:
        """Format log message with consistent structure."""
        parts = []

        if self.show_timestamp:
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            parts.append(f"[{timestamp}]")

        parts.append(f"[{level.value}]")

        if self.show_thread:
            parts.append(f"[{threading.current_thread().name}]")

        parts.append(message)

        if details:
            detail_strs = [f"{k}={v}" for k, v in details.items()]
            parts.append(f"({', '.join(detail_strs)})")

        return " ".join(parts)

    def _write(self, level: LogLevel, message: str, details: Optional[dict] = None):
        if not self._should_log(level):
            return

        formatted = self._format_message(level, message, details)

        # Errors and warnings go to stderr, everything else to stdout
        if level in (LogLevel.ERROR, LogLevel.WARNING):
            stream = self._err or sys.stderr
        else:
            stream = self._out or sys.stdout

        with self._lock:
            stream.write(formatted + "\n")
            stream.flush()

    def debug(self, message: str, **details):
        self._write(LogLevel.DEBUG, message, details or None)

    def info(self, message: str, **details):
        self._write(LogLevel.INFO, message, details or None)

    def success(self, message: str, **details):
        self._write(LogLevel.SUCCESS, message, details or None)

    def warning(self, message: str, **details):
        self._write(LogLevel.WARNING, message, details or None)

    def error(self, message: str, **details):
        self._write(LogLevel.ERROR, message, details or None)

    def section(self, title: str):
        """Log section header."""
        separator = "=" * 60
        self._write(LogLevel.INFO, separator)
        self._write(LogLevel.INFO, title)
        self._write(LogLevel.INFO, separator)


# Global logger instance
_default_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create default logger instance."""
    global _default_logger
    if _default_logger is None:
        _default_logger = StructuredLogger()
    return _default_logger


def set_logger(logger: StructuredLogger):
    """Set custom logger instance."""
    global _default_logger
    _default_logger = logger
