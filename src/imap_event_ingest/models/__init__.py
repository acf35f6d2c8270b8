"""Validated domain models (Pydantic)."""

from __future__ import annotations

from imap_event_ingest.models.event import EventCandidate, StoredEvent
from imap_event_ingest.models.provider import ImapAuth, ImapConfig, Provider, ProviderConfig
from imap_event_ingest.models.types import (
    ConfidenceLevel,
    EventStatus,
    ProcessOutcome,
    ProviderStatus,
    SessionState,
)

__all__ = [
    "ConfidenceLevel",
    "EventCandidate",
    "EventStatus",
    "ImapAuth",
    "ImapConfig",
    "ProcessOutcome",
    "Provider",
    "ProviderConfig",
    "ProviderStatus",
    "SessionState",
    "StoredEvent",
]
