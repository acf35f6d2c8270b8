"""Deterministic offline extractor for local runs and tests."""

from __future__ import annotations

import hashlib
import random
import re
from datetime import UTC, datetime, timedelta

from imap_event_ingest.extract.base import ExtractionRequest
from imap_event_ingest.models.event import EventCandidate

_EVENT_WORDS = (
    "webinar",
    "meeting",
    "meetup",
    "conference",
    "workshop",
    "invitation",
    "invite",
    "seminar",
    "concert",
    "class",
)
_URL_RE = re.compile(r"https?://[^\s<>\"')]+", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})(?:[T ](\d{2}:\d{2}))?\b")
_ANCHOR = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)


def _seed(request: ExtractionRequest) -> int:
    key = request.message_id or request.text or request.html or request.provider_id
    return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big")


class FakeExtractor:
    """Keyword heuristic that yields the same candidate for the same message.

    Messages mentioning an event word become candidates; the start time comes
    from the first ISO date in the body, else from a message-seeded offset.
    """

    def __init__(self, *, max_chars: int = 20_000) -> None:
        """Initialize the extractor.

        Args:
            max_chars: Body characters inspected.
        """
        self._max_chars = max_chars
        self.calls: list[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> EventCandidate | None:
        """Return a deterministic candidate, or None when no event word is present."""
        self.calls.append(request)
        text = request.combined_text(max_chars=self._max_chars)
        haystack = f"{request.subject or ''}\n{text}".lower()
        if not any(word in haystack for word in _EVENT_WORDS):
            return None

        rng = random.Random(_seed(request))
        start_at = self._start_at(text, rng)
        url_match = _URL_RE.search(text)
        lines = text.strip().splitlines()
        title = (request.subject or (lines[0] if lines else "")).strip()[:200] or "Untitled event"

        return EventCandidate(
            provider_id=request.provider_id,
            title=title,
            description=text.strip()[:1_000] or None,
            url=url_match.group(0).rstrip(".,;") if url_match else None,
            start_at=start_at,
            end_at=start_at + timedelta(minutes=rng.choice((30, 60, 90, 120))),
            metadata={"source": "email", "extractor": "fake"},
        )

    @staticmethod
    def _start_at(text: str, rng: random.Random) -> datetime:
        match = _ISO_DATE_RE.search(text)
        if match:
            stamp = match.group(1) + (f"T{match.group(2)}" if match.group(2) else "T09:00")
            try:
                return datetime.fromisoformat(stamp).replace(tzinfo=UTC)
            except ValueError:
                pass
        return _ANCHOR + timedelta(days=rng.randint(0, 364), hours=rng.randint(0, 9))
