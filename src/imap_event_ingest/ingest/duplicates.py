"""Duplicate detection against events already stored for the same provider."""

from __future__ import annotations

from datetime import timedelta

from imap_event_ingest.config.settings import DuplicateSettings
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.results import (
    DuplicateFound,
    DuplicateMatch,
    DuplicateResult,
    NoDuplicate,
)
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.utils.metrics import DUPLICATE_DETECTED


class DuplicateDetector:
    """Looks for an existing event by external id, title window, then source URL.

    The first rule that matches wins. Lookups never cross provider boundaries.
    """

    def __init__(self, *, events: EventStore, settings: DuplicateSettings) -> None:
        """Initialize the detector.

        Args:
            events: Event store used for lookups.
            settings: Lookback window and score penalty.
        """
        self._events = events
        self._s = settings

    def check(self, candidate: EventCandidate, context: IngestContext) -> DuplicateResult:
        """Check a candidate for an existing match.

        Args:
            candidate: Candidate with its final ``external_id`` already resolved.
            context: Message context (metrics, logger).

        Returns:
            NoDuplicate, or DuplicateFound naming the matching rule and event.
        """
        provider_id = candidate.provider_id
        found: DuplicateFound | None = None

        if candidate.external_id:
            existing = self._events.find_by_external_id(
                provider_id=provider_id,
                external_id=candidate.external_id,
            )
            if existing is not None:
                found = self._found("external_id_match", existing)

        if found is None:
            existing = self._events.find_by_title_in_window(
                provider_id=provider_id,
                title=candidate.title,
                start_at=candidate.start_at,
                lookback=timedelta(days=self._s.lookback_days),
            )
            if existing is not None:
                found = self._found("title_time_window_match", existing)

        if found is None and candidate.url:
            existing = self._events.find_by_source_url(provider_id=provider_id, url=candidate.url)
            if existing is not None:
                found = self._found("source_url_match", existing)

        if found is None:
            return NoDuplicate()

        context.metrics.increment(DUPLICATE_DETECTED, tags=context.tags)
        context.logger.info(
            "Duplicate detected prior to insert",
            extra={
                "mailbox": context.mailbox,
                "uid": context.uid,
                "match": found.match,
                "existing_event_id": found.existing_event_id,
            },
        )
        return found

    def _found(self, match: DuplicateMatch, existing_event_id: str) -> DuplicateFound:
        return DuplicateFound(
            match=match,
            existing_event_id=existing_event_id,
            penalty=self._s.penalty,
        )
