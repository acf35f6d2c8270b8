"""Per-message context shared by the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from imap_event_ingest.models.provider import Provider
from imap_event_ingest.utils.logging import ContextLogger
from imap_event_ingest.utils.metrics import WorkerMetrics


@dataclass(frozen=True)
class IngestContext:
    """Provider, message coordinates and observability handles for one candidate."""

    provider: Provider
    mailbox: str
    uid: int
    logger: ContextLogger
    metrics: WorkerMetrics
    internal_date: datetime | None = None
    message_id: str | None = None

    @property
    def tags(self) -> dict[str, str]:
        """Metric tags identifying the provider and mailbox."""
        return {"provider_id": self.provider.id, "mailbox": self.mailbox}
