"""Logging utilities for the agent bridge SDK."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

LOG_LEVEL_ENV = "AGENT_BRIDGE_LOG_LEVEL"

_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "stacklevel",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """Formatter with ISO timestamps and ``extra=`` fields appended as JSON."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return timestamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_FIELDS and not key.startswith("_")
        }
        if extras:
            try:
                serialized = json.dumps(extras, sort_keys=True, ensure_ascii=True, default=str)
            except (TypeError, ValueError):
                serialized = str(extras)
            return f"{message} | {serialized}"
        return message


class AgentBridgeLogger:
    """Owner of the ``agent_bridge`` logger and its handlers.

    Module loggers (``logging.getLogger(__name__)``) inside the package are
    children of this logger. Nothing is installed until :func:`init_logger`
    asks for it, so by default records propagate to the application's handlers.
    """

    def __init__(
        self,
        name: str = "agent_bridge",
        log_dir: Optional[Path] = None,
        console: bool = False,
    ):
        self.logger = logging.getLogger(name)
        self._file_handler: Optional[logging.Handler] = None
        self._file_handler_path: Optional[Path] = None

        if console:
            self.attach_console_handler()
        if log_dir:
            log_file = log_dir / f"agent_bridge_{datetime.now().strftime('%Y%m%d')}.log"
            self.attach_file_handler(log_file)

    @property
    def file_path(self) -> Optional[Path]:
        return self._file_handler_path

    def attach_console_handler(self) -> None:
        """Log to stderr at the level from ``AGENT_BRIDGE_LOG_LEVEL``.

        The SDK's records stop propagating once it owns a console handler, so
        they are not printed twice.
        """
        level_name = os.getenv(LOG_LEVEL_ENV, "WARNING").upper()
        level = getattr(logging, level_name, logging.WARNING)
        # File handlers capture debug records; the console respects the configured level.
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        if any(getattr(h, "_agent_bridge_console", False) for h in self.logger.handlers):
            return
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        console_handler._agent_bridge_console = True  # type: ignore[attr-defined]
        self.logger.addHandler(console_handler)

    def attach_file_handler(self, log_file: Path) -> Path:
        """Attach or replace the file handler writing structured records to disk."""
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if self._file_handler and self._file_handler_path == log_file:
            return log_file

        if self._file_handler:
            self.logger.removeHandler(self._file_handler)
            self._file_handler.close()

        self.logger.setLevel(logging.DEBUG)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(StructuredFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        self.logger.addHandler(file_handler)
        self._file_handler = file_handler
        self._file_handler_path = log_file
        return log_file

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.error(message, *args, **kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        self.logger.exception(message, *args, **kwargs)


# Global logger instance
_logger: Optional[AgentBridgeLogger] = None


def get_logger() -> AgentBridgeLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = AgentBridgeLogger()
    return _logger


def init_logger(log_dir: Optional[Path] = None, console: bool = True) -> AgentBridgeLogger:
    """Install the SDK's own handlers: stderr (unless ``console`` is false) and
    optionally a structured log file in ``log_dir``.

    Applications that configure logging themselves should not call this; SDK
    records then reach their handlers through normal propagation.
    """
    global _logger
    _logger = AgentBridgeLogger(log_dir=log_dir, console=console)
    return _logger
