"""Weighted confidence scoring of event candidates."""

from __future__ import annotations

import math

from imap_event_ingest.config.settings import ConfidenceWeights
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.ingest.results import ConfidenceResult, DuplicateResult, SpamResult
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.types import ConfidenceLevel


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


class ConfidenceScorer:
    """Scores how complete and trustworthy a candidate looks."""

    def __init__(self, weights: ConfidenceWeights) -> None:
        """Initialize the scorer.

        Args:
            weights: Per-signal weights and level thresholds.
        """
        self._w = weights

    def base_score(self, candidate: EventCandidate) -> float:
        """Return the score earned by the candidate's own fields."""
        w = self._w
        score = w.base
        if len(candidate.title.strip()) > w.title_min_length:
            score += w.title
        if candidate.description and len(candidate.description) > w.description_min_length:
            score += w.description
        if candidate.location and candidate.location.strip():
            score += w.location
        if candidate.url:
            score += w.url
        if candidate.end_at is not None:
            score += w.end_time
        if candidate.is_published:
            score += w.published
        if candidate.metadata.get("organizer"):
            score += w.organizer
        if candidate.metadata.get("source") == "email":
            score += w.email_source
        return score

    def level_for(self, score: float) -> ConfidenceLevel:
        """Map a score to its confidence level."""
        if score >= self._w.high_threshold:
            return ConfidenceLevel.high
        if score >= self._w.medium_threshold:
            return ConfidenceLevel.medium
        return ConfidenceLevel.low

    def score(
        self,
        candidate: EventCandidate,
        *,
        spam: SpamResult,
        duplicate: DuplicateResult,
        context: IngestContext,
    ) -> ConfidenceResult:
        """Score a candidate after spam and duplicate screening.

        Args:
            candidate: Candidate to score.
            spam: Spam filter result; its penalty is subtracted.
            duplicate: Duplicate detector result; its penalty is subtracted.
            context: Message context (provider trust, internal date).

        Returns:
            Clamped score, level, reasons and the auto-approval verdict.
        """
        reasons: list[str] = []
        value = self.base_score(candidate)

        if spam.is_spam:
            value -= spam.penalty
            reasons.append("spam_penalty")
        if duplicate.is_duplicate:
            value -= duplicate.penalty
            reasons.append("duplicate_penalty")
        if context.provider.trusted:
            value += self._w.trusted_provider
        if context.internal_date is not None:
            value += self._w.internal_date

        # Rounded so summed float weights land exactly on the thresholds.
        value = round(_clamp(value), 6)
        level = self.level_for(value)
        auto_approve = level is ConfidenceLevel.high and not spam.is_spam and not duplicate.is_duplicate
        if not auto_approve:
            reasons.append("auto_approval_withheld")

        return ConfidenceResult(
            score=value,
            level=level,
            reasons=tuple(reasons),
            auto_approve=auto_approve,
        )
