"""Shared enums used across the worker."""

from __future__ import annotations

from enum import StrEnum


class ProviderStatus(StrEnum):
    """Provider lifecycle statuses; only ``active`` providers are monitored."""

    draft = "draft"
    beta = "beta"
    active = "active"
    deprecated = "deprecated"


class EventStatus(StrEnum):
    """Review status of a stored event."""

    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ConfidenceLevel(StrEnum):
    """Buckets for the confidence score."""

    low = "low"
    medium = "medium"
    high = "high"


class SessionState(StrEnum):
    """States of a mailbox session."""

    disconnected = "disconnected"
    connecting = "connecting"
    mailbox_open = "mailbox_open"
    idling = "idling"
    processing = "processing"
    backoff = "backoff"
    stopped = "stopped"


class ProcessOutcome(StrEnum):
    """Result of handling one fetched message."""

    inserted = "inserted"
    already_exists = "already_exists"
    not_an_event = "not_an_event"
    duplicate = "duplicate"
