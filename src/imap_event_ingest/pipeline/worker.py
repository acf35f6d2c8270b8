"""Wiring of stores, extractor, pipeline and sessions into one worker run."""

from __future__ import annotations

import logging
from collections.abc import Callable

from rich.console import Console

from imap_event_ingest.config.settings import AppSettings
from imap_event_ingest.extract.base import Extractor
from imap_event_ingest.extract.fake import FakeExtractor
from imap_event_ingest.extract.http import HttpExtractor
from imap_event_ingest.imap.session import ClientFactory, MailboxSession
from imap_event_ingest.ingest.pipeline import IngestPipeline
from imap_event_ingest.models.provider import Provider
from imap_event_ingest.pipeline.processor import MessageProcessor
from imap_event_ingest.pipeline.supervisor import SupervisorReport, WorkerSupervisor
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.storage.providers import ProviderStore
from imap_event_ingest.storage.state_db import StateDb
from imap_event_ingest.utils.cancel import CancelToken
from imap_event_ingest.utils.logging import ContextLogger
from imap_event_ingest.utils.metrics import (
    EXTRACTION_FAILURE,
    INSERT_FAILURE,
    CounterSink,
    WorkerMetrics,
    build_statsd,
)
from imap_event_ingest.utils.shutdown import install_signal_handlers, remove_signal_handlers

logger = logging.getLogger(__name__)


def build_extractor(settings: AppSettings) -> Extractor:
    """Return the configured extractor.

    Args:
        settings: Application settings.

    Returns:
        FakeExtractor when ``worker.use_fake_extractor`` is set, otherwise HttpExtractor.

    Raises:
        ValueError: If no fake extractor is requested and no endpoint is configured.
    """
    if settings.worker.use_fake_extractor:
        return FakeExtractor(max_chars=settings.extractor.max_chars)
    return HttpExtractor(settings.extractor)


def build_metrics(settings: AppSettings) -> WorkerMetrics:
    """Create the counter registry with the configured alert thresholds and StatsD export."""
    statsd: CounterSink | None = None
    if settings.metrics.statsd_host:
        statsd = build_statsd(
            host=settings.metrics.statsd_host,
            port=settings.metrics.statsd_port,
            prefix=settings.metrics.prefix,
        )
        logger.info(
            "Exporting counters to StatsD",
            extra={"host": settings.metrics.statsd_host, "port": settings.metrics.statsd_port},
        )
    metrics = WorkerMetrics(log=logging.getLogger("imap_event_ingest.metrics"), statsd=statsd)
    metrics.register_alert(
        EXTRACTION_FAILURE,
        threshold=settings.alerts.extraction_failure_threshold,
        level=logging.WARNING,
        message="Extraction failures crossed alert threshold",
    )
    metrics.register_alert(
        INSERT_FAILURE,
        threshold=settings.alerts.insert_failure_threshold,
        level=logging.ERROR,
        message="Event insert failures crossed alert threshold",
    )
    return metrics


class Worker:
    """Owns every long-lived object of one worker process."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        db: StateDb,
        extractor: Extractor,
        metrics: WorkerMetrics | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            settings: Application settings.
            db: Open state database with schema initialized.
            extractor: Extraction capability.
            metrics: Counter registry (built from settings when omitted).
            client_factory: Optional IMAP client factory override.
        """
        self._s = settings
        self.providers = ProviderStore(db)
        self.events = EventStore(db)
        self.metrics = metrics or build_metrics(settings)
        self._client_factory = client_factory
        self.processor = MessageProcessor(
            extractor=extractor,
            pipeline=IngestPipeline(events=self.events, settings=settings.ingest),
            events=self.events,
            metrics=self.metrics,
            extraction_timeout_s=settings.extractor.timeout_seconds,
        )
        self.supervisor = WorkerSupervisor(
            session_factory=self._make_session,
            metrics=self.metrics,
        )

    def _make_session(
        self,
        provider: Provider,
        cancel: CancelToken,
        log: ContextLogger,
    ) -> MailboxSession:
        return MailboxSession(
            provider=provider,
            providers=self.providers,
            handler=self.processor,
            settings=self._s.worker,
            cancel=cancel,
            logger=log,
            client_factory=self._client_factory,
        )

    async def run(self, *, handle_signals: bool = True) -> SupervisorReport:
        """Run sessions for every active provider until shutdown.

        Args:
            handle_signals: Whether to wire SIGINT/SIGTERM to a graceful shutdown.

        Returns:
            Supervisor report.
        """
        if handle_signals:
            install_signal_handlers(self.supervisor.request_shutdown)
        try:
            return await self.supervisor.run(
                self.providers.list_active(),
                self._s.worker.max_concurrent_providers,
            )
        finally:
            if handle_signals:
                remove_signal_handlers()
            logger.info(
                "Worker counters",
                extra={"counters": self.metrics.snapshot(), "by_tags": self.metrics.tagged_snapshot()},
            )
            self.metrics.close()


async def run_worker(
    settings: AppSettings,
    *,
    console: Console | None = None,
    extractor_factory: Callable[[AppSettings], Extractor] = build_extractor,
) -> SupervisorReport:
    """Open the database, run the worker and close everything afterwards.

    Args:
        settings: Application settings.
        console: Optional rich console for a startup summary.
        extractor_factory: Builds the extractor from settings.

    Returns:
        Supervisor report.
    """
    settings.storage.root_dir.mkdir(parents=True, exist_ok=True)
    if console is not None:
        console.print("[bold blue]Ingest worker starting[/bold blue]")
        console.print(f"  [dim]Database:[/dim] {settings.storage.sqlite_path}")
        console.print(
            f"  [dim]Max concurrent providers:[/dim] {settings.worker.max_concurrent_providers}",
        )
        console.print(
            f"  [dim]Extractor:[/dim] {'fake' if settings.worker.use_fake_extractor else 'http'}",
        )

    db = StateDb(sqlite_path=settings.storage.sqlite_path)
    db.init_schema()
    extractor = extractor_factory(settings)
    try:
        worker = Worker(settings=settings, db=db, extractor=extractor)
        return await worker.run()
    finally:
        if isinstance(extractor, HttpExtractor):
            await extractor.aclose()
        db.close()
