"""Idempotent persistence of extracted events."""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterator, Mapping
from datetime import datetime, timedelta
from typing import Any

from imap_event_ingest.models.event import EventCandidate, StoredEvent
from imap_event_ingest.models.types import EventStatus
from imap_event_ingest.storage.state_db import (
    StateDb,
    dt_to_iso,
    dump_json,
    iso_to_dt,
    load_json,
    utcnow,
)

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def normalize_slug(value: str) -> str:
    """Lowercase a value and collapse everything but ``[a-z0-9]`` into single dashes."""
    return _SLUG_STRIP_RE.sub("-", value.lower().strip()).strip("-")


def generate_slug(*, title: str, event_id: str, slug: str | None = None) -> str:
    """Build a URL slug for an event.

    Args:
        title: Event title.
        event_id: Event id; its first segment becomes the uniqueness suffix.
        slug: Explicit slug that wins when it normalizes to something non-empty.

    Returns:
        Slug such as ``team-offsite-1a2b3c4d``.
    """
    provided = normalize_slug(slug) if slug else ""
    if provided:
        return provided

    suffix = normalize_slug(event_id.split("-")[0])[:12] or normalize_slug(event_id)[:12]
    if not suffix:
        suffix = uuid.uuid4().hex[:8]

    base = normalize_slug(title)
    if base:
        return normalize_slug(f"{base}-{suffix}")
    return f"event-{suffix}"


class EventStore:
    """Event table access: conflict-free inserts plus duplicate lookups."""

    def __init__(self, db: StateDb) -> None:
        """Initialize the store.

        Args:
            db: Open state database.
        """
        self._db = db

    def insert(
        self,
        candidate: EventCandidate,
        *,
        event_id: str | None = None,
        slug: str | None = None,
    ) -> StoredEvent | None:
        """Insert a candidate keyed on ``(provider_id, external_id)``.

        Args:
            candidate: Normalized candidate; ``external_id`` must be set.
            event_id: Optional explicit event id (defaults to a UUID4).
            slug: Optional explicit slug.

        Returns:
            The stored event, or None when a row with the same key already exists.

        Raises:
            ValueError: If the candidate has no external id.
        """
        if not candidate.external_id:
            raise ValueError("Cannot insert an event without an external_id")

        new_id = event_id or str(uuid.uuid4())
        now = dt_to_iso(utcnow())
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events(
                  id, slug, provider_id, external_id, flag_id, title, description, location,
                  url, start_at, end_at, is_all_day, is_published, metadata, priority, status,
                  created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_id, external_id) DO NOTHING
                """,
                (
                    new_id,
                    generate_slug(title=candidate.title, event_id=new_id, slug=slug),
                    candidate.provider_id,
                    candidate.external_id,
                    candidate.flag_id,
                    candidate.title,
                    candidate.description,
                    candidate.location,
                    candidate.url,
                    dt_to_iso(candidate.start_at),
                    dt_to_iso(candidate.end_at) if candidate.end_at else None,
                    int(candidate.is_all_day),
                    int(candidate.is_published),
                    dump_json(candidate.metadata),
                    candidate.priority,
                    candidate.status.value,
                    now,
                    now,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM events WHERE id=?", (new_id,)).fetchone()
            assert row is not None
            return _row_to_event(row)

    def get(self, event_id: str) -> StoredEvent | None:
        """Fetch an event by id."""
        row = self._db.connection.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()
        return _row_to_event(row) if row is not None else None

    def find_by_external_id(self, *, provider_id: str, external_id: str) -> str | None:
        """Return the id of the event stored under ``(provider_id, external_id)``."""
        row = self._db.connection.execute(
            "SELECT id FROM events WHERE provider_id=? AND external_id=? LIMIT 1",
            (provider_id, external_id),
        ).fetchone()
        return str(row["id"]) if row is not None else None

    def find_by_title_in_window(
        self,
        *,
        provider_id: str,
        title: str,
        start_at: datetime,
        lookback: timedelta,
    ) -> str | None:
        """Return the latest same-provider event with an equal title in the lookback window.

        Args:
            provider_id: Provider identifier.
            title: Title to compare case-insensitively.
            start_at: End of the window (the candidate start time).
            lookback: Window length before ``start_at``.

        Returns:
            Matching event id, or None.
        """
        row = self._db.connection.execute(
            """
            SELECT id FROM events
            WHERE provider_id=?
              AND casefold(title)=casefold(?)
              AND start_at BETWEEN ? AND ?
            ORDER BY start_at DESC
            LIMIT 1
            """,
            (provider_id, title, dt_to_iso(start_at - lookback), dt_to_iso(start_at)),
        ).fetchone()
        return str(row["id"]) if row is not None else None

    def find_by_source_url(self, *, provider_id: str, url: str) -> str | None:
        """Return a same-provider event whose ``metadata.source_url`` equals ``url``."""
        row = self._db.connection.execute(
            """
            SELECT id FROM events
            WHERE provider_id=? AND json_extract(metadata, '$.source_url')=?
            LIMIT 1
            """,
            (provider_id, url),
        ).fetchone()
        return str(row["id"]) if row is not None else None

    def counts_by_status(self, *, provider_id: str | None = None) -> dict[EventStatus, int]:
        """Return counts of events by status, optionally for one provider."""
        if provider_id is None:
            rows = self._db.connection.execute(
                "SELECT status, COUNT(*) AS c FROM events GROUP BY status",
            ).fetchall()
        else:
            rows = self._db.connection.execute(
                "SELECT status, COUNT(*) AS c FROM events WHERE provider_id=? GROUP BY status",
                (provider_id,),
            ).fetchall()
        return {EventStatus(str(row["status"])): int(row["c"]) for row in rows}

    def iter_events(
        self,
        *,
        provider_id: str | None = None,
        status: EventStatus | None = None,
        limit: int | None = None,
    ) -> Iterator[StoredEvent]:
        """Iterate stored events, newest first, with optional filters."""
        clauses: list[str] = []
        params: list[Any] = []
        if provider_id is not None:
            clauses.append("provider_id=?")
            params.append(provider_id)
        if status is not None:
            clauses.append("status=?")
            params.append(status.value)
        query = "SELECT * FROM events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        for row in self._db.connection.execute(query, params).fetchall():
            yield _row_to_event(row)


def _row_to_event(row: Mapping[str, Any]) -> StoredEvent:
    """Convert a sqlite row to a StoredEvent."""
    return StoredEvent(
        id=str(row["id"]),
        slug=str(row["slug"]),
        provider_id=str(row["provider_id"]),
        external_id=str(row["external_id"]),
        flag_id=row["flag_id"],
        title=str(row["title"]),
        description=row["description"],
        location=row["location"],
        url=row["url"],
        start_at=iso_to_dt(str(row["start_at"])),
        end_at=iso_to_dt(row["end_at"]) if row["end_at"] else None,
        is_all_day=bool(row["is_all_day"]),
        is_published=bool(row["is_published"]),
        metadata=load_json(row["metadata"]),
        priority=int(row["priority"]),
        status=EventStatus(str(row["status"])),
        created_at=iso_to_dt(str(row["created_at"])),
        updated_at=iso_to_dt(str(row["updated_at"])),
    )
