"""Bounded-concurrency lifecycle manager over provider sessions."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from imap_event_ingest.models.provider import Provider
from imap_event_ingest.models.types import ProviderStatus
from imap_event_ingest.utils.cancel import CancelToken
from imap_event_ingest.utils.logging import ContextLogger
from imap_event_ingest.utils.metrics import SESSION_STARTED, SESSION_STOPPED, WorkerMetrics


class Session(Protocol):
    """Anything with an async ``run`` that returns once its token is cancelled."""

    async def run(self) -> None: ...


SessionFactory = Callable[[Provider, CancelToken, ContextLogger], Session]


@dataclass
class SupervisorReport:
    """What happened to each provider handed to ``WorkerSupervisor.run``."""

    started: list[str] = field(default_factory=list)
    inactive: list[str] = field(default_factory=list)
    misconfigured: list[str] = field(default_factory=list)
    over_limit: list[str] = field(default_factory=list)
    crashed: list[str] = field(default_factory=list)


class WorkerSupervisor:
    """Starts one session per active provider, up to a concurrency limit."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        metrics: WorkerMetrics,
        logger: ContextLogger | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            session_factory: Builds a session for a provider, token and bound logger.
            metrics: Counter registry for lifecycle counters.
            logger: Base logger (defaults to this module's logger).
        """
        self._session_factory = session_factory
        self._metrics = metrics
        self._log = logger or ContextLogger(logging.getLogger(__name__))
        self._tokens: dict[str, CancelToken] = {}
        self._stop_reason: str | None = None

    @property
    def stopping(self) -> bool:
        """Whether a shutdown has been requested."""
        return self._stop_reason is not None

    def request_shutdown(self, reason: str = "shutdown") -> None:
        """Cancel every running session; sessions started afterwards stop immediately.

        Args:
            reason: Reason recorded on each token and in the log.
        """
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        self._log.info(
            "Shutdown requested",
            extra={"reason": reason, "running_sessions": len(self._tokens)},
        )
        for token in self._tokens.values():
            token.cancel(reason)

    async def run(self, providers: Iterable[Provider], max_concurrency: int) -> SupervisorReport:
        """Run sessions until all of them reach a terminal state.

        Args:
            providers: Candidate providers; only ``active`` ones are considered.
            max_concurrency: Maximum number of sessions started.

        Returns:
            Report of started, skipped and crashed providers.

        Raises:
            ValueError: If ``max_concurrency`` is below 1.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        report = SupervisorReport()
        runnable: list[Provider] = []
        for provider in providers:
            if provider.status is not ProviderStatus.active:
                report.inactive.append(provider.id)
                continue
            if provider.config.imap is None:
                report.misconfigured.append(provider.id)
                self._log.error(
                    "Provider is missing IMAP settings; not starting",
                    extra={"provider_id": provider.id},
                )
                continue
            runnable.append(provider)

        allowed = runnable[:max_concurrency]
        report.over_limit = [p.id for p in runnable[max_concurrency:]]
        if report.over_limit:
            self._log.warning(
                "Active providers exceed concurrency limit",
                extra={
                    "active_providers": len(runnable),
                    "max_concurrent_providers": max_concurrency,
                    "allowed_providers": len(allowed),
                    "not_started": report.over_limit,
                },
            )

        if not allowed:
            self._log.warning("No active providers to start", extra={"active_count": 0})
            return report

        self._log.info(
            "Worker starting",
            extra={"sessions": len(allowed), "max_concurrent_providers": max_concurrency},
        )
        semaphore = asyncio.Semaphore(max_concurrency)
        await asyncio.gather(
            *(self._run_session(provider, semaphore, report) for provider in allowed),
        )
        self._log.info("All provider sessions stopped")
        return report

    async def _run_session(
        self,
        provider: Provider,
        semaphore: asyncio.Semaphore,
        report: SupervisorReport,
    ) -> None:
        async with semaphore:
            token = CancelToken()
            if self._stop_reason is not None:
                token.cancel(self._stop_reason)
            self._tokens[provider.id] = token

            log = self._log.with_context(provider_id=provider.id, session_id=str(uuid.uuid4()))
            tags = {"provider_id": provider.id}
            log.info("Session starting", extra={"provider_name": provider.name})
            self._metrics.increment(SESSION_STARTED, tags=tags)
            report.started.append(provider.id)
            try:
                await self._session_factory(provider, token, log).run()
            except Exception:
                report.crashed.append(provider.id)
                log.exception("Session terminated unexpectedly")
            finally:
                self._tokens.pop(provider.id, None)
                self._metrics.increment(SESSION_STOPPED, tags=tags)
                log.info("Session stopped")
