"""
Structured logging for the HandlerSocket cache driver.

Provides:
- Context variables for namespace and channel (using contextvars)
- JSONFormatter for machine-readable logs to file
- RichHandler for pretty console output
- ContextLogger wrapper that attaches context to all log calls
- setup_logging() that configures both file and console handlers
- Context manager log_context() for scoped context
- get_logger() factory
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

_ROOT = "hscache"

# Context variables for structured logging
_namespace_var: ContextVar[str | None] = ContextVar("namespace", default=None)
_channel_var: ContextVar[str | None] = ContextVar("channel", default=None)


def get_namespace() -> str | None:
    """Get the current cache namespace from context."""
    return _namespace_var.get()


def get_channel() -> str | None:
    """Get the current channel role (read/write) from context."""
    return _channel_var.get()


@contextmanager
def log_context(
    namespace: str | None = None,
    channel: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Args:
        namespace: Cache namespace to set in context.
        channel: Channel role to set in context.

    Yields:
        None. Context variables are set for the duration of the context.
    """
    old_namespace = _namespace_var.get()
    old_channel = _channel_var.get()

    try:
        if namespace is not None:
            _namespace_var.set(namespace)
        if channel is not None:
            _channel_var.set(channel)
        yield
    finally:
        _namespace_var.set(old_namespace)
        _channel_var.set(old_channel)


class JSONFormatter(logging.Formatter):
    """JSON formatter for machine-readable log files.

    Produces JSON Lines format with structured context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        namespace = get_namespace()
        channel = get_channel()
        if namespace:
            log_obj["namespace"] = namespace
        if channel:
            log_obj["channel"] = channel

        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class ContextRichHandler(RichHandler):
    """Rich handler that includes context in console output."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        """Override to add context prefix."""
        level_text = super().get_level_text(record)

        parts: list[str] = []
        namespace = get_namespace()
        channel = get_channel()

        if namespace:
            parts.append(f"[cyan]{namespace}[/cyan]")
        if channel:
            parts.append(f"[magenta]{channel}[/magenta]")

        if parts:
            prefix = " ".join(parts)
            return Text.from_markup(f"{level_text} {prefix}")

        return level_text


class ContextLogger:
    """Logger wrapper that automatically attaches context to log calls.

    Keyword arguments other than exc_info/stack_info/stacklevel become
    structured fields on the record.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return

        extra = kwargs.pop("extra", {})

        namespace = get_namespace()
        channel = get_channel()
        if namespace:
            extra["namespace"] = namespace
        if channel:
            extra["channel"] = channel

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel"):
                extra[key] = kwargs.pop(key)

        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Set up logging with JSON file handler and rich console handler.

    Only the CLI calls this. Library use leaves the hscache logger
    unconfigured so records propagate to the host application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. If None, only console logging is enabled.
        console_output: Whether to enable console output.
    """
    root_logger = logging.getLogger(_ROOT)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=True,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger.

    Args:
        name: Logger name (usually __name__).

    Returns:
        ContextLogger wrapper around the standard logger.
    """
    if not name.startswith(_ROOT):
        name = f"{_ROOT}.{name}"

    return ContextLogger(logging.getLogger(name))
