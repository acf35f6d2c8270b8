"""Logging helpers: console formatting, bound context and the sqlite sink."""

from __future__ import annotations

import json
import logging
import logging.handlers
import sqlite3
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from imap_event_ingest.config.settings import LoggingSettings

_RESERVED_LOG_RECORD_KEYS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "message",
    "module",
    "msecs",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}


def _safe_json_value(value: object) -> Any:
    """Coerce a value to something JSON-serializable.

    Args:
        value: Value to serialize.

    Returns:
        The original value if JSON-serializable; otherwise, its string representation.
    """
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Return the ``extra`` fields attached to a log record.

    Args:
        record: Log record.

    Returns:
        Mapping of non-standard record attributes, made JSON-safe.
    """
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_LOG_RECORD_KEYS:
            continue
        if key.startswith("_"):
            continue
        extras[key] = _safe_json_value(value)
    return extras


class JsonLogFormatter(logging.Formatter):
    """Formatter that emits JSON payloads to stdout/stderr."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON string representation.
        """
        payload: dict[str, Any] = {
            "ts": datetime.now(tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(record_extras(record))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


class ContextLogger(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter that merges bound context into every record's ``extra``.

    Per-call ``extra`` keys win over bound ones, so a call site can still
    override e.g. ``uid`` for one entry.
    """

    def __init__(self, logger: logging.Logger, extra: Mapping[str, object] | None = None) -> None:
        """Initialize the adapter.

        Args:
            logger: Underlying logger.
            extra: Context fields attached to every record.
        """
        super().__init__(logger, dict(extra or {}))

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        """Merge bound context with per-call ``extra``."""
        bound = dict(self.extra or {})
        call_extra = kwargs.get("extra")
        if call_extra:
            bound.update(call_extra)
        kwargs["extra"] = bound
        return msg, kwargs

    @property
    def context(self) -> dict[str, object]:
        """Return a copy of the bound context."""
        return dict(self.extra or {})

    def with_context(self, **context: object) -> ContextLogger:
        """Return a child adapter with additional bound context.

        Args:
            **context: Fields to bind (e.g. ``provider_id``, ``session_id``).

        Returns:
            New adapter sharing the same underlying logger.
        """
        return ContextLogger(self.logger, {**(self.extra or {}), **context})


def get_context_logger(name: str, **context: object) -> ContextLogger:
    """Return a ContextLogger for ``name`` with optional bound context."""
    return ContextLogger(logging.getLogger(name), context)


class SqliteLogHandler(logging.Handler):
    """Writes log records into the ``worker_log`` table."""

    def __init__(self, *, sqlite_path: Path, level: int = logging.NOTSET) -> None:
        """Initialize the handler with its own sqlite connection.

        Args:
            sqlite_path: Path to the worker sqlite database (schema must exist).
            level: Minimum level persisted.
        """
        super().__init__(level=level)
        self._conn = sqlite3.connect(sqlite_path, timeout=30, isolation_level=None)

    def emit(self, record: logging.LogRecord) -> None:
        """Persist one record.

        Args:
            record: Log record to persist.
        """
        try:
            extras = record_extras(record)
            provider_id = extras.pop("provider_id", None)
            session_id = extras.pop("session_id", None)
            if record.exc_info:
                extras["exc_info"] = logging.Formatter().formatException(record.exc_info)
            self._conn.execute(
                """
                INSERT INTO worker_log(ts, level, logger, provider_id, session_id, msg, data)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    datetime.fromtimestamp(record.created, tz=UTC).isoformat(
                        timespec="microseconds",
                    ),
                    record.levelname,
                    record.name,
                    None if provider_id is None else str(provider_id),
                    None if session_id is None else str(session_id),
                    record.getMessage(),
                    json.dumps(extras, ensure_ascii=False) if extras else None,
                ),
            )
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """Close the sqlite connection."""
        try:
            self._conn.close()
        finally:
            super().close()


def build_db_sink(*, sqlite_path: Path, batch_size: int, level: int) -> logging.Handler:
    """Create a buffered handler that flushes batches into ``worker_log``.

    Args:
        sqlite_path: Path to the worker sqlite database.
        batch_size: Records buffered before a flush.
        level: Minimum level persisted.

    Returns:
        MemoryHandler targeting a SqliteLogHandler; errors flush immediately.
    """
    target = SqliteLogHandler(sqlite_path=sqlite_path, level=level)
    handler = logging.handlers.MemoryHandler(
        capacity=batch_size,
        flushLevel=logging.ERROR,
        target=target,
        flushOnClose=True,
    )
    handler.setLevel(level)
    return handler


def configure_logging(*, settings: LoggingSettings, sqlite_path: Path | None = None) -> None:
    """Configure stdout/stderr logging for CLI runs.

    Args:
        settings: Logging settings (level, JSON/human output, database sink).
        sqlite_path: Worker database used by the sink when ``settings.db_sink`` is set.
    """
    level_name = settings.level.strip().upper() if settings.level else "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if settings.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ),
        )

    handlers: list[logging.Handler] = [handler]
    if settings.db_sink and sqlite_path is not None:
        handlers.append(
            build_db_sink(
                sqlite_path=sqlite_path,
                batch_size=settings.db_sink_batch_size,
                level=level,
            ),
        )

    logging.basicConfig(level=level, handlers=handlers, force=True)

    logging.getLogger("aioimaplib").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
