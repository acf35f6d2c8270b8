"""Tests for confidence scoring."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from conftest import build_candidate, build_provider

from imap_event_ingest.config.settings import ConfidenceWeights
from imap_event_ingest.ingest.confidence import ConfidenceScorer
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.results import DuplicateFound, NoDuplicate, SpamClear, SpamFlagged
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.types import ConfidenceLevel

START = datetime(2030, 3, 10, 15, 0, tzinfo=UTC)
INTERNAL_DATE = datetime(2030, 3, 1, 8, 0, tzinfo=UTC)


def _rich_candidate() -> EventCandidate:
    return build_candidate(
        title="Python Webinar Series",
        url="https://example.org/webinar",
        start_at=START,
        end_at=START + timedelta(hours=1),
        metadata={"source": "email", "organizer": "PyData"},
    )


def test_minimal_candidate_scores_base_and_is_low(
    make_context: Callable[..., IngestContext],
) -> None:
    """A bare candidate with a short title earns only the base weight."""
    result = ConfidenceScorer(ConfidenceWeights()).score(
        build_candidate(title="Sync"),
        spam=SpamClear(),
        duplicate=NoDuplicate(),
        context=make_context(),
    )
    assert result.score == 0.35
    assert result.level is ConfidenceLevel.low
    assert result.auto_approve is False
    assert result.reasons == ("auto_approval_withheld",)


def test_trusted_complete_candidate_reaches_high(
    make_context: Callable[..., IngestContext],
) -> None:
    """Trust and an internal date push a complete candidate to the high threshold."""
    result = ConfidenceScorer(ConfidenceWeights()).score(
        _rich_candidate(),
        spam=SpamClear(),
        duplicate=NoDuplicate(),
        context=make_context(build_provider(trusted=True), internal_date=INTERNAL_DATE),
    )
    assert result.score == 0.8
    assert result.level is ConfidenceLevel.high
    assert result.auto_approve is True
    assert result.reasons == ()


def test_penalties_lower_score_and_block_auto_approval(
    make_context: Callable[..., IngestContext],
) -> None:
    """Spam and duplicate penalties are subtracted and both are named."""
    result = ConfidenceScorer(ConfidenceWeights()).score(
        _rich_candidate(),
        spam=SpamFlagged(reasons=("suspicious_url_domain",), penalty=0.4),
        duplicate=DuplicateFound(match="external_id_match", existing_event_id="e1", penalty=0.3),
        context=make_context(build_provider(trusted=True), internal_date=INTERNAL_DATE),
    )
    assert result.score == 0.1
    assert result.level is ConfidenceLevel.low
    assert result.reasons == ("spam_penalty", "duplicate_penalty", "auto_approval_withheld")


def test_score_is_clamped_to_unit_interval(
    make_context: Callable[..., IngestContext],
) -> None:
    """Heavy penalties cannot push the score below zero."""
    result = ConfidenceScorer(ConfidenceWeights()).score(
        build_candidate(title="Sync"),
        spam=SpamFlagged(reasons=("title_contains_spam_keyword",), penalty=1.0),
        duplicate=NoDuplicate(),
        context=make_context(),
    )
    assert result.score == 0.0


def test_level_thresholds() -> None:
    scorer = ConfidenceScorer(ConfidenceWeights())
    assert scorer.level_for(0.8) is ConfidenceLevel.high
    assert scorer.level_for(0.79) is ConfidenceLevel.medium
    assert scorer.level_for(0.6) is ConfidenceLevel.medium
    assert scorer.level_for(0.59) is ConfidenceLevel.low


def test_blank_location_earns_nothing() -> None:
    """Whitespace-only locations do not count."""
    scorer = ConfidenceScorer(ConfidenceWeights())
    bare = scorer.base_score(build_candidate(title="Sync"))
    assert scorer.base_score(build_candidate(title="Sync", location="   ")) == bare
    assert scorer.base_score(build_candidate(title="Sync", location="Room 4")) > bare
