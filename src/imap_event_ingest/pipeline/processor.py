"""Per-message processing: parse, extract, decide and persist."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import datetime
from typing import Any

from imap_event_ingest.extract.base import ExtractionRequest, Extractor
from imap_event_ingest.imap.client import FetchedMessage
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.pipeline import IngestPipeline
from imap_event_ingest.ingest.results import SkipDecision
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.provider import Provider
from imap_event_ingest.models.types import ProcessOutcome
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.storage.state_db import dt_to_iso, utcnow
from imap_event_ingest.utils.email import parse_message
from imap_event_ingest.utils.logging import ContextLogger
from imap_event_ingest.utils.metrics import EXTRACTION_FAILURE, INSERT_FAILURE, WorkerMetrics


def synthesize_external_id(
    *,
    provider_id: str,
    mailbox: str,
    uid: int,
    internal_date: datetime | None,
    now: datetime,
) -> str:
    """Build ``imap:{provider}:{mailbox}:{uid}:{epoch_ms}`` for messages without ids.

    Args:
        provider_id: Provider identifier.
        mailbox: Mailbox name.
        uid: Message UID.
        internal_date: Server receive time, preferred for the timestamp part.
        now: Fallback timestamp.

    Returns:
        Synthesized external id.
    """
    stamp = internal_date or now
    epoch_ms = int(stamp.timestamp() * 1000)
    return f"imap:{provider_id}:{mailbox}:{uid}:{epoch_ms}"


def operational_metadata(
    *,
    uid: int,
    mailbox: str,
    message_id: str | None,
    internal_date: datetime | None,
) -> dict[str, Any]:
    """Return the mailbox coordinates recorded with every candidate."""
    return {
        "imap_uid": uid,
        "mailbox": mailbox,
        "message_id": message_id,
        "internal_date": dt_to_iso(internal_date) if internal_date else None,
    }


class MessageProcessor:
    """Turns one fetched message into a stored event, a skip, or nothing."""

    def __init__(
        self,
        *,
        extractor: Extractor,
        pipeline: IngestPipeline,
        events: EventStore,
        metrics: WorkerMetrics,
        extraction_timeout_s: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the processor.

        Args:
            extractor: Extraction capability.
            pipeline: Decision pipeline.
            events: Event store.
            metrics: Counter registry.
            extraction_timeout_s: Upper bound for one extractor call.
            clock: Source of the current time.
        """
        self._extractor = extractor
        self._pipeline = pipeline
        self._events = events
        self._metrics = metrics
        self._timeout = extraction_timeout_s
        self._clock = clock

    async def process(
        self,
        message: FetchedMessage,
        *,
        provider: Provider,
        mailbox: str,
        logger: ContextLogger,
    ) -> ProcessOutcome:
        """Process one message end to end.

        Args:
            message: Fetched message.
            provider: Provider the mailbox belongs to.
            mailbox: Mailbox name.
            logger: Session logger.

        Returns:
            The processing outcome.

        Raises:
            MessageParseError: If the message cannot be decoded.
            sqlite3.Error: If the insert fails (counted before re-raising).
        """
        log = logger.with_context(uid=message.uid, mailbox=mailbox)
        parsed = parse_message(message.raw)
        tags = {"provider_id": provider.id, "mailbox": mailbox}

        request = ExtractionRequest(
            provider_id=provider.id,
            text=parsed.readable_text,
            html=parsed.html,
            message_id=parsed.message_id,
            subject=parsed.subject,
        )
        try:
            candidate = await asyncio.wait_for(self._extractor.extract(request), timeout=self._timeout)
        except Exception as exc:
            self._metrics.increment(EXTRACTION_FAILURE, tags=tags)
            log.warning(
                "Extraction failed; treating message as not an event",
                extra={"error": repr(exc), "message_id": parsed.message_id},
            )
            return ProcessOutcome.not_an_event

        if candidate is None:
            log.debug("Message did not produce event payload")
            return ProcessOutcome.not_an_event

        candidate = self._normalize(candidate, message=message, mailbox=mailbox, message_id=parsed.message_id)
        context = IngestContext(
            provider=provider,
            mailbox=mailbox,
            uid=message.uid,
            logger=log,
            metrics=self._metrics,
            internal_date=message.internal_date,
            message_id=parsed.message_id,
        )
        decision = self._pipeline.run(candidate, context)

        if isinstance(decision, SkipDecision):
            log.info(
                "Skipping candidate",
                extra={
                    "skip_reason": decision.reason,
                    "existing_event_id": decision.duplicate_event_id,
                    "external_id": candidate.external_id,
                },
            )
            return ProcessOutcome.duplicate

        metadata = {**candidate.metadata, **decision.metadata_patch}
        if decision.auto_approved:
            metadata["auto_approval"] = {
                "reason": decision.approval_reason,
                "provider_id": provider.id,
                "at": dt_to_iso(self._clock()),
            }
        final = candidate.model_copy(update={"status": decision.status, "metadata": metadata})

        try:
            stored = self._events.insert(final)
        except sqlite3.Error:
            self._metrics.increment(INSERT_FAILURE, tags=tags)
            log.exception("Event insert failed", extra={"external_id": final.external_id})
            raise

        if stored is None:
            log.debug("Event already existed", extra={"external_id": final.external_id})
            return ProcessOutcome.already_exists

        log.info(
            "Inserted event",
            extra={"event_id": stored.id, "status": stored.status.value, "external_id": stored.external_id},
        )
        return ProcessOutcome.inserted

    def _normalize(
        self,
        candidate: EventCandidate,
        *,
        message: FetchedMessage,
        mailbox: str,
        message_id: str | None,
    ) -> EventCandidate:
        """Resolve the external id and merge operational metadata under extractor keys."""
        external_id = (
            candidate.external_id
            or message_id
            or synthesize_external_id(
                provider_id=candidate.provider_id,
                mailbox=mailbox,
                uid=message.uid,
                internal_date=message.internal_date,
                now=self._clock(),
            )
        )
        metadata = {
            **operational_metadata(
                uid=message.uid,
                mailbox=mailbox,
                message_id=message_id,
                internal_date=message.internal_date,
            ),
            **candidate.metadata,
        }
        return candidate.model_copy(update={"external_id": external_id, "metadata": metadata})
