"""Tests for the ingest decision pipeline."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from conftest import build_candidate, build_provider

from imap_event_ingest.config.settings import IngestSettings
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.pipeline import CONFIDENCE_LOW, TRUSTED_HIGH_CONFIDENCE, IngestPipeline
from imap_event_ingest.ingest.results import PersistDecision, SkipDecision
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.types import EventStatus
from imap_event_ingest.storage.events import EventStore

START = datetime(2030, 3, 10, 15, 0, tzinfo=UTC)
INTERNAL_DATE = datetime(2030, 3, 1, 8, 0, tzinfo=UTC)


def _complete(**overrides: object) -> EventCandidate:
    payload: dict[str, object] = {
        "external_id": "<webinar@example.org>",
        "title": "Python Webinar Series",
        "url": "https://example.org/webinar",
        "start_at": START,
        "end_at": START + timedelta(hours=1),
        "metadata": {"source": "email", "organizer": "PyData"},
    }
    payload.update(overrides)
    return build_candidate(**payload)


def test_trusted_high_confidence_is_auto_approved(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    decision = pipeline.run(
        _complete(),
        make_context(build_provider(trusted=True), internal_date=INTERNAL_DATE),
    )

    assert isinstance(decision, PersistDecision)
    assert decision.status is EventStatus.approved
    assert decision.auto_approved is True
    assert decision.approval_reason == TRUSTED_HIGH_CONFIDENCE

    audit = decision.metadata_patch["ingest_pipeline"]
    assert audit["confidence"]["score"] == 0.8
    assert audit["decision"] == {
        "status": "approved",
        "auto_approved": True,
        "reason": TRUSTED_HIGH_CONFIDENCE,
        "skipped": False,
        "skip_reason": None,
    }
    assert audit["extraction"]["title"] == "Python Webinar Series"


def test_trusted_low_confidence_is_forced_pending(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    """A trusted provider's requested approval is withdrawn below the high threshold."""
    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    decision = pipeline.run(
        build_candidate(external_id="x", status="approved"),
        make_context(build_provider(trusted=True)),
    )
    assert isinstance(decision, PersistDecision)
    assert decision.status is EventStatus.pending
    assert decision.auto_approved is False
    assert decision.approval_reason == CONFIDENCE_LOW


def test_untrusted_requested_approval_needs_high_confidence(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    low = pipeline.run(build_candidate(external_id="x", status="approved"), make_context())
    assert isinstance(low, PersistDecision)
    assert low.status is EventStatus.pending
    assert low.approval_reason == CONFIDENCE_LOW

    high = pipeline.run(
        _complete(status="approved", is_published=True, location="Main hall"),
        make_context(internal_date=INTERNAL_DATE),
    )
    assert isinstance(high, PersistDecision)
    assert high.status is EventStatus.approved
    assert high.auto_approved is True
    assert high.approval_reason is None


def test_untrusted_pending_stays_pending(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    decision = pipeline.run(_complete(), make_context(internal_date=INTERNAL_DATE))
    assert isinstance(decision, PersistDecision)
    assert decision.status is EventStatus.pending
    assert decision.auto_approved is False
    assert decision.approval_reason is None


def test_spam_from_trusted_provider_is_not_approved(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    """Spam signals always keep the event in review."""
    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    decision = pipeline.run(
        _complete(url="https://clickme.net/webinar"),
        make_context(build_provider(trusted=True), internal_date=INTERNAL_DATE),
    )
    assert isinstance(decision, PersistDecision)
    assert decision.status is EventStatus.pending
    assert decision.auto_approved is False
    assert decision.metadata_patch["ingest_pipeline"]["spam"]["reasons"] == ["suspicious_url_domain"]


def test_duplicate_is_skipped(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    stored = events.insert(_complete())
    assert stored is not None

    pipeline = IngestPipeline(events=events, settings=IngestSettings())
    decision = pipeline.run(_complete(), make_context(build_provider(trusted=True)))

    assert isinstance(decision, SkipDecision)
    assert decision.proceed is False
    assert decision.reason == "duplicate"
    assert decision.duplicate_event_id == stored.id
    audit = decision.metadata_patch["ingest_pipeline"]
    assert audit["duplicate"]["match"] == "external_id_match"
    assert audit["decision"]["skipped"] is True
