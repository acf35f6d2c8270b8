"""Keyword, phrase and domain based spam screening."""

from __future__ import annotations

from urllib.parse import urlsplit

from imap_event_ingest.config.settings import SpamSettings
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.results import SpamClear, SpamFlagged, SpamResult
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.utils.metrics import SPAM_DETECTED


def _contains_any(value: str | None, needles: list[str]) -> bool:
    """Return True if the lowercased value contains any needle."""
    if not value:
        return False
    lowered = value.lower()
    return any(needle in lowered for needle in needles)


def _hostname(url: str | None) -> str | None:
    """Return the lowercased hostname of a URL, or None if it cannot be parsed."""
    if not url:
        return None
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


class SpamFilter:
    """Flags candidates whose text or link matches configured spam signals."""

    def __init__(self, settings: SpamSettings) -> None:
        """Initialize the filter.

        Args:
            settings: Keyword, phrase and domain lists plus the score penalty.
        """
        self._s = settings

    def check(self, candidate: EventCandidate, context: IngestContext) -> SpamResult:
        """Screen a candidate.

        Args:
            candidate: Candidate to screen.
            context: Message context (metrics, logger).

        Returns:
            SpamClear, or SpamFlagged with the matched reasons.
        """
        reasons: list[str] = []
        if _contains_any(candidate.title, self._s.keywords):
            reasons.append("title_contains_spam_keyword")
        if _contains_any(candidate.description, self._s.keywords):
            reasons.append("description_contains_spam_keyword")
        if _contains_any(candidate.description, self._s.suspicious_phrases):
            reasons.append("description_contains_suspicious_phrase")
        if self._is_blocked_host(_hostname(candidate.url)):
            reasons.append("suspicious_url_domain")

        if not reasons:
            return SpamClear()

        context.metrics.increment(SPAM_DETECTED, tags=context.tags)
        context.logger.debug(
            "Spam filter flagged extraction",
            extra={"mailbox": context.mailbox, "uid": context.uid, "reasons": reasons},
        )
        return SpamFlagged(reasons=tuple(reasons), penalty=self._s.penalty)

    def _is_blocked_host(self, host: str | None) -> bool:
        if host is None:
            return False
        return any(host == domain or host.endswith(f".{domain}") for domain in self._s.blocked_domains)
