"""Logging setup for swarmdl.

Everything logs below the ``swarmdl`` logger. ``setup_logging`` installs a
console handler (ANSI colored text or one JSON object per line) and an
optional rotating file, both tagging records with the correlation id of the
running task. Sessions set the id to ``t<session id>`` so the lines of
concurrent torrents can be told apart.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from swarmdl.exceptions import SwarmError

if TYPE_CHECKING:
    from swarmdl.models import ObservabilityConfig

ROOT_LOGGER = "swarmdl"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

correlation_id: ContextVar[str | None] = ContextVar("swarmdl_correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "correlation_id",
}


class CorrelationFilter(logging.Filter):
    """Stamp each record with the current correlation id, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Render records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS:
                entry[key] = value
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console text with the level name in ANSI color."""

    LEVEL_COLORS: ClassVar[dict[int, str]] = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def format(self, record: logging.LogRecord) -> str:
        # Other handlers share the record, so color a copy
        colored = logging.makeLogRecord(vars(record))
        code = self.LEVEL_COLORS.get(record.levelno)
        if code is not None:
            colored.levelname = f"\033[{code}m{record.levelname}\033[0m"
        colored.correlation_id = f"[{getattr(record, 'correlation_id', '-')}]"
        return super().format(colored)


def _handlers(config: ObservabilityConfig) -> dict[str, dict[str, Any]]:
    level = config.log_level.value
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": sys.stderr,
            "level": level,
            "formatter": "json" if config.structured_logging else "console",
            "filters": ["correlation"],
        },
    }
    if config.log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": config.log_file,
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
            "encoding": "utf-8",
            "level": level,
            "formatter": "json" if config.structured_logging else "plain",
            "filters": ["correlation"],
        }
    return handlers


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the ``swarmdl`` logger tree from the observability section."""
    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)

    handlers = _handlers(config)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"correlation": {"()": CorrelationFilter}},
            "formatters": {
                "console": {
                    "()": ColoredFormatter,
                    "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s: %(message)s",
                    "datefmt": "%H:%M:%S",
                },
                "plain": {
                    "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s: %(message)s",
                },
                "json": {"()": StructuredFormatter},
            },
            "handlers": handlers,
            "loggers": {
                ROOT_LOGGER: {
                    "level": config.log_level.value,
                    "handlers": list(handlers),
                    "propagate": False,
                },
            },
        },
    )

    if config.log_correlation_id and correlation_id.get() is None:
        set_correlation_id()


def get_logger(name: str) -> logging.Logger:
    """Return ``name`` as a logger under ``swarmdl``."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def set_correlation_id(corr_id: str | None = None) -> str:
    """Tag the current context; a random id is generated when none is given."""
    corr_id = corr_id or uuid.uuid4().hex[:12]
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    return correlation_id.get()


class LoggingContext:
    """Log how long a block of work took, at debug level or as an error."""

    def __init__(self, operation: str, logger: logging.Logger | None = None, **fields: Any):
        self.operation = operation
        self.fields = fields
        self.logger = logger or get_logger(__name__)
        self._started = 0.0

    def __enter__(self) -> LoggingContext:
        self._started = time.monotonic()
        self.logger.debug("Starting %s", self.operation, extra=self.fields)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        elapsed = time.monotonic() - self._started
        if exc is None:
            self.logger.debug("Completed %s in %.3fs", self.operation, elapsed, extra=self.fields)
        else:
            self.logger.error("Failed %s in %.3fs: %s", self.operation, elapsed, exc, extra=self.fields)
        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log ``exc`` as an error; swarmdl errors carry their details along."""
    if isinstance(exc, SwarmError):
        logger.error("%s: %s", context, exc.message, extra={"details": exc.details})
    else:
        logger.error("%s: %s", context, exc, exc_info=exc)
