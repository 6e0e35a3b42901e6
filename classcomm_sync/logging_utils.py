"""
Logging setup for processes that run a sync engine.

Library modules only call logging.getLogger. The server entry point (or
any host embedding a client engine) calls configure_structured_logging()
once. Container log collectors want one JSON object per line; a developer
at a terminal usually prefers text, so the format is switchable.

Environment:
    CLASSCOMM_LOG_FORMAT: "json" (default) or "text"
    CLASSCOMM_LOG_LEVEL: level name, default INFO
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Context every engine log line can carry; always present in JSON output
CONTEXT_FIELDS = ("client_id", "tenant_id")

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "context"}


class StructuredJsonFormatter(logging.Formatter):
    """Single-line JSON with the sync context as top-level keys.

    ``client_id`` and ``tenant_id`` are emitted as null when a record has
    none, so collectors can index on them. Any other ``extra`` values
    follow; values JSON cannot encode are written as strings.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            entry[field] = getattr(record, field, None)

        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key in entry or key.startswith("_"):
                continue
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text lines with the sync context in brackets after the logger name."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s%(context)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        pairs = [
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None)
        ]
        record.context = f" [{' '.join(pairs)}]" if pairs else ""
        return super().format(record)


def configure_structured_logging(
    level: int | str | None = None,
    fmt: str | None = None,
    logger_name: str | None = None,
) -> logging.Logger:
    """
    Install a single stdout handler on a logger (the root logger by default).

    Args:
        level: Logging level; defaults to CLASSCOMM_LOG_LEVEL or INFO
        fmt: "json" or "text"; defaults to CLASSCOMM_LOG_FORMAT or json
        logger_name: Specific logger to configure

    Returns:
        The configured logger
    """
    if level is None:
        level = os.environ.get("CLASSCOMM_LOG_LEVEL", "INFO").upper()
    fmt = (fmt or os.environ.get("CLASSCOMM_LOG_FORMAT", "json")).lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextTextFormatter() if fmt == "text" else StructuredJsonFormatter())

    logger = logging.getLogger(logger_name)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger named ``classcomm_sync.{name}`` for entry points outside the package tree."""
    return logging.getLogger(f"classcomm_sync.{name}")


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps sync context onto every record.

    The engines attach client_id or tenant_id so that interleaved cycles
    from several clients can be told apart. Per-call ``extra`` values are
    kept; the adapter's context wins on conflicts.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
