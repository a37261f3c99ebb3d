"""
Logging utilities for the billing consumer.

Components never talk to a global logging hook. They receive a ``LogSink``
(anything with ``record(text)``) and wrap it in ``BestEffortLog``, the one
place where a failing log write is swallowed.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Protocol


DEFAULT_FORMAT = "%(asctime)s | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_logger = logging.getLogger("billing_consumer")


class LogSink(Protocol):
    def record(self, text: str) -> None: ...


class LoggerSink:
    """Forward records to a standard library logger at a fixed level."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self._logger = logger or _logger
        self._level = level

    def record(self, text: str) -> None:
        self._logger.log(self._level, text)


class NullSink:
    def record(self, text: str) -> None:
        return None


class BestEffortLog:
    """Wrap a sink so that recording can never alter program outcome."""

    def __init__(self, sink: Optional[LogSink] = None) -> None:
        self._sink: LogSink = sink if sink is not None else LoggerSink()

    @property
    def sink(self) -> LogSink:
        return self._sink

    def record(self, text: str) -> None:
        try:
            self._sink.record(text)
        except Exception:  # noqa: BLE001
            # Diagnostics are best-effort; message processing must go on
            pass

    __call__ = record


def best_effort(sink: Optional[LogSink] = None) -> BestEffortLog:
    """Return ``sink`` wrapped in ``BestEffortLog`` (idempotent)."""
    if isinstance(sink, BestEffortLog):
        return sink
    return BestEffortLog(sink)


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    log_file: Optional[str] = None,
    console: bool = True,
) -> None:
    """
    Setup logging configuration for the consumer host.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string for log messages
        log_file: Optional file path to append logs to
        console: Whether to also log to stdout
    """
    if format_string is None:
        format_string = DEFAULT_FORMAT

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(format_string, datefmt=DEFAULT_DATEFMT)

    handlers: list[logging.Handler] = []
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = handlers

    # aiormq/aio_pika are chatty on reconnects
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
