"""Provider records and their resume cursors."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from imap_event_ingest.models.provider import Provider
from imap_event_ingest.models.types import ProviderStatus
from imap_event_ingest.storage.state_db import StateDb, dt_to_iso, dump_json, load_json, utcnow

logger = logging.getLogger(__name__)


class ProviderStore:
    """Reads provider configuration and owns the ``config.runtime.cursor`` field."""

    def __init__(self, db: StateDb) -> None:
        """Initialize the store.

        Args:
            db: Open state database.
        """
        self._db = db

    def upsert(self, provider: Provider) -> None:
        """Insert or replace a provider, keeping any cursor already stored.

        Args:
            provider: Provider to persist.
        """
        now = dt_to_iso(utcnow())
        config = provider.config_dump()
        with self._db.transaction() as conn:
            row = conn.execute("SELECT config FROM providers WHERE id=?", (provider.id,)).fetchone()
            if row is not None:
                stored_cursor = _runtime(load_json(row["config"])).get("cursor")
                runtime = _runtime(config)
                if runtime.get("cursor") is None and stored_cursor is not None:
                    runtime["cursor"] = stored_cursor
                    config["runtime"] = runtime
            conn.execute(
                """
                INSERT INTO providers(
                  id, name, description, category, status, trusted, config, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  description=excluded.description,
                  category=excluded.category,
                  status=excluded.status,
                  trusted=excluded.trusted,
                  config=excluded.config,
                  updated_at=excluded.updated_at
                """,
                (
                    provider.id,
                    provider.name,
                    provider.description,
                    provider.category,
                    provider.status.value,
                    int(provider.trusted),
                    dump_json(config),
                    now,
                    now,
                ),
            )

    def get(self, provider_id: str) -> Provider | None:
        """Fetch one provider by id.

        Args:
            provider_id: Provider identifier.

        Returns:
            The provider if present, otherwise None.
        """
        row = self._db.connection.execute(
            "SELECT * FROM providers WHERE id=?",
            (provider_id,),
        ).fetchone()
        return _row_to_provider(row) if row is not None else None

    def list_all(self) -> list[Provider]:
        """Return every provider ordered by name."""
        rows = self._db.connection.execute("SELECT * FROM providers ORDER BY name, id").fetchall()
        return [_row_to_provider(row) for row in rows]

    def list_active(self) -> list[Provider]:
        """Return providers whose status is ``active``, ordered by name."""
        rows = self._db.connection.execute(
            "SELECT * FROM providers WHERE status=? ORDER BY name, id",
            (ProviderStatus.active.value,),
        ).fetchall()
        return [_row_to_provider(row) for row in rows]

    def get_cursor(self, provider_id: str) -> int | None:
        """Return the stored cursor for a provider.

        Args:
            provider_id: Provider identifier.

        Returns:
            The last processed UID, or None if no cursor has been stored.
        """
        row = self._db.connection.execute(
            "SELECT config FROM providers WHERE id=?",
            (provider_id,),
        ).fetchone()
        if row is None:
            return None
        raw = _runtime(load_json(row["config"])).get("cursor")
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring unparsable provider cursor",
                extra={"provider_id": provider_id, "raw_cursor": raw},
            )
            return None

    def set_cursor(self, provider_id: str, uid: int) -> int:
        """Persist a provider cursor without ever moving it backwards.

        Args:
            provider_id: Provider identifier.
            uid: Last processed UID.

        Returns:
            The cursor value now stored.

        Raises:
            KeyError: If the provider does not exist.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT config FROM providers WHERE id=?",
                (provider_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown provider: {provider_id}")
            config = load_json(row["config"])
            runtime = _runtime(config)
            current = runtime.get("cursor")
            stored = uid if current is None else max(int(current), uid)
            runtime["cursor"] = stored
            config["runtime"] = runtime
            conn.execute(
                "UPDATE providers SET config=?, updated_at=? WHERE id=?",
                (dump_json(config), dt_to_iso(utcnow()), provider_id),
            )
            return stored


def _runtime(config: Mapping[str, Any]) -> dict[str, Any]:
    """Return a mutable copy of the runtime section of a provider config."""
    runtime = config.get("runtime")
    return dict(runtime) if isinstance(runtime, Mapping) else {}


def _row_to_provider(row: Mapping[str, Any]) -> Provider:
    """Convert a sqlite row to a Provider.

    An invalid ``imap`` section is logged and dropped, so the provider surfaces as
    missing its protocol settings instead of failing the whole listing.

    Args:
        row: Row mapping from sqlite.

    Returns:
        Provider instance.
    """
    payload: dict[str, Any] = {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "category": row["category"],
        "status": row["status"],
        "trusted": bool(row["trusted"]),
        "config": load_json(row["config"]),
    }
    try:
        return Provider.model_validate(payload)
    except ValidationError as exc:
        if payload["config"].get("imap") is None:
            raise
        logger.error(
            "Invalid IMAP settings for provider",
            extra={"provider_id": row["id"], "errors": exc.errors(include_url=False)},
        )
        payload["config"] = {**payload["config"], "imap": None}
        return Provider.model_validate(payload)
