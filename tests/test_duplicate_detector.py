"""Tests for duplicate detection."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from conftest import build_candidate

from imap_event_ingest.config.settings import DuplicateSettings
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.duplicates import DuplicateDetector
from imap_event_ingest.ingest.results import DuplicateFound
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.utils.metrics import DUPLICATE_DETECTED, WorkerMetrics

START = datetime(2030, 3, 10, 15, 0, tzinfo=UTC)


def test_no_match_on_empty_store(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    detector = DuplicateDetector(events=events, settings=DuplicateSettings())
    result = detector.check(build_candidate(external_id="a"), make_context())
    assert result.is_duplicate is False


def test_external_id_match_wins(
    events: EventStore,
    make_context: Callable[..., IngestContext],
    metrics: WorkerMetrics,
) -> None:
    """An equal external id should match before the title rule is consulted."""
    stored = events.insert(build_candidate(external_id="<m1@example.org>", start_at=START))
    assert stored is not None

    detector = DuplicateDetector(events=events, settings=DuplicateSettings())
    result = detector.check(
        build_candidate(external_id="<m1@example.org>", start_at=START),
        make_context(),
    )
    assert isinstance(result, DuplicateFound)
    assert result.match == "external_id_match"
    assert result.existing_event_id == stored.id
    assert result.penalty == 0.3
    assert metrics.value(DUPLICATE_DETECTED) == 1


def test_title_window_match(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    """Same title within the lookback window should match case-insensitively."""
    events.insert(build_candidate(external_id="a", title="Team Sync", start_at=START))
    detector = DuplicateDetector(events=events, settings=DuplicateSettings(lookback_days=7))

    near = detector.check(
        build_candidate(external_id="b", title="TEAM SYNC", start_at=START + timedelta(days=2)),
        make_context(),
    )
    assert isinstance(near, DuplicateFound)
    assert near.match == "title_time_window_match"

    far = detector.check(
        build_candidate(external_id="c", title="Team Sync", start_at=START + timedelta(days=30)),
        make_context(),
    )
    assert far.is_duplicate is False


def test_title_match_folds_non_ascii_case(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    stored = events.insert(build_candidate(external_id="a", title="CAFÉ MEETUP", start_at=START))
    assert stored is not None
    detector = DuplicateDetector(events=events, settings=DuplicateSettings())

    result = detector.check(
        build_candidate(external_id="b", title="café meetup", start_at=START),
        make_context(),
    )
    assert isinstance(result, DuplicateFound)
    assert result.match == "title_time_window_match"
    assert result.existing_event_id == stored.id

    other = detector.check(
        build_candidate(external_id="c", title="cafe meetup", start_at=START),
        make_context(),
    )
    assert other.is_duplicate is False


def test_source_url_match(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    """A candidate URL equal to a stored ``metadata.source_url`` should match."""
    events.insert(
        build_candidate(
            external_id="a",
            title="Launch party",
            metadata={"source_url": "https://example.org/launch"},
        ),
    )
    detector = DuplicateDetector(events=events, settings=DuplicateSettings())
    result = detector.check(
        build_candidate(external_id="b", title="Other", url="https://example.org/launch"),
        make_context(),
    )
    assert isinstance(result, DuplicateFound)
    assert result.match == "source_url_match"


def test_lookups_stay_within_provider(
    events: EventStore,
    make_context: Callable[..., IngestContext],
) -> None:
    """Events of another provider never count as duplicates."""
    events.insert(build_candidate(provider_id="other", external_id="a", start_at=START))
    detector = DuplicateDetector(events=events, settings=DuplicateSettings())
    result = detector.check(build_candidate(external_id="a", start_at=START), make_context())
    assert result.is_duplicate is False
