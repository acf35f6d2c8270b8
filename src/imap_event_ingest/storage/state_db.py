"""SQLite connection, schema and shared helpers for worker state."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def dt_to_iso(value: datetime) -> str:
    """Convert datetime to a fixed-width ISO string in UTC.

    Args:
        value: Timezone-aware datetime value.

    Returns:
        ISO-formatted string in UTC with microseconds, so strings sort like instants.
    """
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def iso_to_dt(value: str) -> datetime:
    """Parse ISO datetime strings into timezone-aware datetimes.

    Args:
        value: ISO-formatted datetime string.

    Returns:
        Parsed datetime, defaulting to UTC if no timezone is present.
    """
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _casefold(value: str | None) -> str | None:
    return value.casefold() if value is not None else None


def dump_json(value: Any) -> str:
    """Serialize a JSON column value, stringifying anything unknown."""
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json(value: str | None) -> dict[str, Any]:
    """Parse a JSON object column, tolerating NULL and non-object payloads."""
    if not value:
        return {}
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True)
class StateDbPaths:
    """Filesystem paths used by the state database."""

    sqlite_path: Path


class StateDb:
    """SQLite wrapper holding providers, events and worker logs."""

    def __init__(self, *, sqlite_path: Path) -> None:
        """Initialize the database connection.

        Args:
            sqlite_path: Path to the sqlite database file.
        """
        self._paths = StateDbPaths(sqlite_path=sqlite_path)
        self._conn = sqlite3.connect(
            sqlite_path,
            timeout=30,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        # SQLite lower() only folds ASCII.
        self._conn.create_function("casefold", 1, _casefold, deterministic=True)

    @property
    def sqlite_path(self) -> Path:
        """Return the sqlite database path."""
        return self._paths.sqlite_path

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the underlying connection for read queries."""
        return self._conn

    def close(self) -> None:
        """Close the underlying sqlite connection."""
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Provide a transaction context manager."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            yield self._conn
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def init_schema(self) -> None:
        """Create tables if missing and ensure sqlite PRAGMA settings."""
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Cursor writes must hit disk before the session moves past a message.
        self._conn.execute("PRAGMA synchronous=FULL")

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  description TEXT,
                  category TEXT NOT NULL,
                  status TEXT NOT NULL,
                  trusted INTEGER NOT NULL DEFAULT 0,
                  config TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """,
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_providers_status ON providers(status)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id TEXT PRIMARY KEY,
                  slug TEXT NOT NULL,
                  provider_id TEXT NOT NULL,
                  external_id TEXT NOT NULL,
                  flag_id TEXT,
                  title TEXT NOT NULL,
                  description TEXT,
                  location TEXT,
                  url TEXT,
                  start_at TEXT NOT NULL,
                  end_at TEXT,
                  is_all_day INTEGER NOT NULL DEFAULT 0,
                  is_published INTEGER NOT NULL DEFAULT 0,
                  metadata TEXT NOT NULL DEFAULT '{}',
                  priority INTEGER NOT NULL DEFAULT 3,
                  status TEXT NOT NULL DEFAULT 'pending',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(provider_id, external_id)
                )
                """,
            )
            conn.execute("DROP INDEX IF EXISTS idx_events_provider_title")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_provider_start ON events(provider_id, start_at)",
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_status ON events(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_slug ON events(slug)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_log (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  logger TEXT NOT NULL,
                  provider_id TEXT,
                  session_id TEXT,
                  msg TEXT NOT NULL,
                  data TEXT
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_worker_log_provider ON worker_log(provider_id, ts)",
            )

            conn.execute("PRAGMA user_version = 1")
