"""Event candidate and stored event models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AwareDatetime, Field, field_validator, model_validator

from imap_event_ingest.models.base import AppModel
from imap_event_ingest.models.types import EventStatus


class EventCandidate(AppModel):
    """An event proposed by the extractor for one message."""

    provider_id: str = Field(min_length=1)
    flag_id: str | None = None
    external_id: str | None = None

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    url: str | None = None
    start_at: AwareDatetime
    end_at: AwareDatetime | None = None

    is_all_day: bool = False
    is_published: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=3, ge=1, le=5)
    status: EventStatus = EventStatus.pending

    @field_validator("external_id", "flag_id", "description", "location", "url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        """Treat blank optional strings as missing."""
        if value is None:
            return None
        return value or None

    @field_validator("url")
    @classmethod
    def _url_must_be_http(cls, value: str | None) -> str | None:
        """Reject URLs that are not absolute http(s) links.

        Raises:
            ValueError: If the URL has another scheme or no host.
        """
        if value is None:
            return None
        lowered = value.lower()
        if not (lowered.startswith("http://") or lowered.startswith("https://")):
            raise ValueError(f"url must be an absolute http(s) URL: {value!r}")
        return value

    @model_validator(mode="after")
    def _end_not_before_start(self) -> EventCandidate:
        """Reject candidates whose end time precedes their start time.

        Raises:
            ValueError: If ``end_at`` is earlier than ``start_at``.
        """
        if self.end_at is not None and self.end_at < self.start_at:
            raise ValueError("end_at must not be earlier than start_at")
        return self


class StoredEvent(AppModel):
    """Row model for the events table."""

    id: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    provider_id: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    flag_id: str | None = None

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    url: str | None = None
    start_at: datetime
    end_at: datetime | None = None
    is_all_day: bool = False
    is_published: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=3, ge=1, le=5)
    status: EventStatus = EventStatus.pending

    created_at: datetime
    updated_at: datetime
