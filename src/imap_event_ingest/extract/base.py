"""Extraction boundary: request type, protocol and errors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.utils.email import html_to_text


class ExtractionError(RuntimeError):
    """Raised when the extraction capability fails or breaks its contract."""


@dataclass(frozen=True)
class ExtractionRequest:
    """Input handed to an extractor for one message."""

    provider_id: str
    text: str | None
    html: str | None
    message_id: str | None = None
    subject: str | None = None

    def combined_text(self, *, max_chars: int) -> str:
        """Return the text body (or HTML fallback) truncated to ``max_chars``."""
        body = (self.text or "").strip()
        if not body and self.html:
            body = html_to_text(self.html)
        return body[:max_chars]


class Extractor(Protocol):
    """Turns message content into an event candidate, or None when it is not an event."""

    async def extract(self, request: ExtractionRequest) -> EventCandidate | None:
        """Extract a candidate.

        Args:
            request: Message content and provider context.

        Returns:
            A validated candidate, or None if the message does not describe an event.

        Raises:
            ExtractionError: If the capability is unavailable or returns garbage.
        """
        ...
