"""Decision pipeline: spam screening, duplicate detection, scoring and approval."""

from __future__ import annotations

from typing import Any

from imap_event_ingest.config.settings import IngestSettings
from imap_event_ingest.ingest.confidence import ConfidenceScorer
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.duplicates import DuplicateDetector
from imap_event_ingest.ingest.results import (
    ConfidenceResult,
    DuplicateResult,
    IngestDecision,
    PersistDecision,
    SkipDecision,
    SpamResult,
)
from imap_event_ingest.ingest.spam import SpamFilter
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.types import EventStatus
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.storage.state_db import dt_to_iso

TRUSTED_HIGH_CONFIDENCE = "trusted_provider_high_confidence"
CONFIDENCE_LOW = "confidence_low"
SPAM_DETECTED = "spam_detected"
SKIP_DUPLICATE = "duplicate"


def extraction_snapshot(candidate: EventCandidate) -> dict[str, Any]:
    """Return the candidate fields recorded in the audit trail."""
    return {
        "title": candidate.title,
        "description": candidate.description,
        "location": candidate.location,
        "url": candidate.url,
        "start_at": dt_to_iso(candidate.start_at),
        "end_at": dt_to_iso(candidate.end_at) if candidate.end_at else None,
        "is_all_day": candidate.is_all_day,
        "is_published": candidate.is_published,
        "priority": candidate.priority,
        "flag_id": candidate.flag_id,
        "external_id": candidate.external_id,
        "metadata": dict(candidate.metadata),
    }


class IngestPipeline:
    """Runs every stage for one candidate and folds the results into a decision."""

    def __init__(
        self,
        *,
        events: EventStore,
        settings: IngestSettings,
        spam_filter: SpamFilter | None = None,
        duplicate_detector: DuplicateDetector | None = None,
        scorer: ConfidenceScorer | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            events: Event store backing duplicate lookups.
            settings: Pipeline tuning.
            spam_filter: Optional spam filter override.
            duplicate_detector: Optional duplicate detector override.
            scorer: Optional confidence scorer override.
        """
        self._spam = spam_filter or SpamFilter(settings.spam)
        self._duplicates = duplicate_detector or DuplicateDetector(
            events=events,
            settings=settings.duplicates,
        )
        self._scorer = scorer or ConfidenceScorer(settings.confidence)

    def run(self, candidate: EventCandidate, context: IngestContext) -> IngestDecision:
        """Decide whether and how a candidate is stored.

        Args:
            candidate: Candidate with its final ``external_id`` resolved.
            context: Message context.

        Returns:
            SkipDecision for duplicates, otherwise PersistDecision with the final status.
        """
        spam = self._spam.check(candidate, context)
        duplicate = self._duplicates.check(candidate, context)
        confidence = self._scorer.score(
            candidate,
            spam=spam,
            duplicate=duplicate,
            context=context,
        )

        status, auto_approved, reason = _resolve_status(
            requested=candidate.status,
            trusted=context.provider.trusted,
            spam=spam,
            confidence=confidence,
        )

        skip_reason = SKIP_DUPLICATE if duplicate.is_duplicate else None
        patch = _metadata_patch(
            candidate=candidate,
            spam=spam,
            duplicate=duplicate,
            confidence=confidence,
            decision={
                "status": status.value,
                "auto_approved": auto_approved,
                "reason": reason,
                "skipped": skip_reason is not None,
                "skip_reason": skip_reason,
            },
        )

        if duplicate.is_duplicate:
            return SkipDecision(
                reason=SKIP_DUPLICATE,
                duplicate_event_id=duplicate.existing_event_id,
                metadata_patch=patch,
            )
        return PersistDecision(
            status=status,
            auto_approved=auto_approved,
            approval_reason=reason,
            metadata_patch=patch,
        )


def _resolve_status(
    *,
    requested: EventStatus,
    trusted: bool,
    spam: SpamResult,
    confidence: ConfidenceResult,
) -> tuple[EventStatus, bool, str | None]:
    """Apply the approval rules.

    Returns:
        Final status, whether it counts as auto-approved, and the reason code.
    """
    status = requested
    auto_approved = status is EventStatus.approved
    reason: str | None = None

    if trusted:
        if confidence.auto_approve:
            status, auto_approved, reason = EventStatus.approved, True, TRUSTED_HIGH_CONFIDENCE
        else:
            status, auto_approved, reason = EventStatus.pending, False, CONFIDENCE_LOW
    elif status is EventStatus.approved and not confidence.auto_approve:
        status, auto_approved, reason = EventStatus.pending, False, CONFIDENCE_LOW

    # Spam never stays auto-approved, trusted or not.
    if spam.is_spam and auto_approved:
        status, auto_approved, reason = EventStatus.pending, False, SPAM_DETECTED

    return status, auto_approved, reason


def _metadata_patch(
    *,
    candidate: EventCandidate,
    spam: SpamResult,
    duplicate: DuplicateResult,
    confidence: ConfidenceResult,
    decision: dict[str, Any],
) -> dict[str, Any]:
    return {
        "ingest_pipeline": {
            "spam": spam.as_audit(),
            "duplicate": duplicate.as_audit(),
            "confidence": confidence.as_audit(),
            "extraction": extraction_snapshot(candidate),
            "decision": decision,
        },
    }
