"""Tagged result variants produced by the ingest pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from imap_event_ingest.models.types import ConfidenceLevel, EventStatus

DuplicateMatch = Literal["external_id_match", "title_time_window_match", "source_url_match"]


@dataclass(frozen=True)
class SpamClear:
    """No spam signal was found."""

    is_spam: Literal[False] = False
    penalty: float = 0.0

    def as_audit(self) -> dict[str, Any]:
        """Return the audit-trail representation."""
        return {"is_spam": False, "reasons": [], "penalty": 0.0}


@dataclass(frozen=True)
class SpamFlagged:
    """One or more spam signals matched."""

    reasons: tuple[str, ...]
    penalty: float
    is_spam: Literal[True] = True

    def as_audit(self) -> dict[str, Any]:
        """Return the audit-trail representation."""
        return {"is_spam": True, "reasons": list(self.reasons), "penalty": self.penalty}


SpamResult = SpamClear | SpamFlagged


@dataclass(frozen=True)
class NoDuplicate:
    """No existing event matched."""

    is_duplicate: Literal[False] = False
    penalty: float = 0.0

    def as_audit(self) -> dict[str, Any]:
        """Return the audit-trail representation."""
        return {"is_duplicate": False, "match": None, "existing_event_id": None, "penalty": 0.0}


@dataclass(frozen=True)
class DuplicateFound:
    """An existing event of the same provider matched."""

    match: DuplicateMatch
    existing_event_id: str
    penalty: float
    is_duplicate: Literal[True] = True

    def as_audit(self) -> dict[str, Any]:
        """Return the audit-trail representation."""
        return {
            "is_duplicate": True,
            "match": self.match,
            "existing_event_id": self.existing_event_id,
            "penalty": self.penalty,
        }


DuplicateResult = NoDuplicate | DuplicateFound


@dataclass(frozen=True)
class ConfidenceResult:
    """Score, level and contributing reasons of a candidate."""

    score: float
    level: ConfidenceLevel
    reasons: tuple[str, ...]
    auto_approve: bool

    def as_audit(self) -> dict[str, Any]:
        """Return the audit-trail representation."""
        return {
            "score": self.score,
            "level": self.level.value,
            "reasons": list(self.reasons),
            "auto_approve": self.auto_approve,
        }


@dataclass(frozen=True)
class SkipDecision:
    """The candidate must not be stored."""

    reason: str
    duplicate_event_id: str | None
    metadata_patch: dict[str, Any] = field(default_factory=dict)
    proceed: Literal[False] = False


@dataclass(frozen=True)
class PersistDecision:
    """The candidate should be stored with the given status."""

    status: EventStatus
    auto_approved: bool
    approval_reason: str | None
    metadata_patch: dict[str, Any] = field(default_factory=dict)
    proceed: Literal[True] = True


IngestDecision = SkipDecision | PersistDecision
