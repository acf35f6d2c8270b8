"""Shared fixtures for worker tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from imap_event_ingest.imap.client import FetchedMessage, SelectInfo
from imap_event_ingest.ingest.context import IngestContext
from imap_event_ingest.models.event import EventCandidate
from imap_event_ingest.models.provider import ImapAuth, Provider
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.storage.providers import ProviderStore
from imap_event_ingest.storage.state_db import StateDb
from imap_event_ingest.utils.cancel import CancelToken
from imap_event_ingest.utils.logging import ContextLogger
from imap_event_ingest.utils.metrics import WorkerMetrics

INTERNAL_DATE = datetime(2030, 3, 1, 8, 0, tzinfo=UTC)


@pytest.fixture
def db(tmp_path: Path) -> Iterator[StateDb]:
    """Open a fresh state database with schema."""
    state = StateDb(sqlite_path=tmp_path / "worker.sqlite3")
    state.init_schema()
    yield state
    state.close()


@pytest.fixture
def events(db: StateDb) -> EventStore:
    return EventStore(db)


@pytest.fixture
def providers(db: StateDb) -> ProviderStore:
    return ProviderStore(db)


@pytest.fixture
def metrics() -> WorkerMetrics:
    return WorkerMetrics()


@pytest.fixture
def log() -> ContextLogger:
    return ContextLogger(logging.getLogger("tests"))


def build_provider(
    provider_id: str = "acme",
    *,
    trusted: bool = False,
    status: str = "active",
    imap: dict[str, Any] | None = None,
) -> Provider:
    """Build a provider with password IMAP settings unless ``imap`` is given."""
    config: dict[str, Any] = {
        "imap": imap
        if imap is not None
        else {
            "host": "imap.example.org",
            "port": 993,
            "secure": True,
            "auth": {"user": "events@example.org", "pass": "s3cret"},
            "mailbox": "INBOX",
        },
    }
    return Provider.model_validate(
        {
            "id": provider_id,
            "name": provider_id.title(),
            "status": status,
            "trusted": trusted,
            "config": config,
        },
    )


def build_candidate(**overrides: Any) -> EventCandidate:
    """Build a minimal candidate for provider ``acme``."""
    payload: dict[str, Any] = {
        "provider_id": "acme",
        "title": "Team sync",
        "start_at": datetime(2030, 3, 10, 15, 0, tzinfo=UTC),
    }
    payload.update(overrides)
    return EventCandidate.model_validate(payload)


@pytest.fixture
def make_context(
    metrics: WorkerMetrics,
    log: ContextLogger,
) -> Callable[..., IngestContext]:
    """Return a factory for IngestContext values bound to the shared metrics."""

    def _make(
        provider: Provider | None = None,
        *,
        internal_date: datetime | None = None,
        uid: int = 1,
    ) -> IngestContext:
        return IngestContext(
            provider=provider or build_provider(),
            mailbox="INBOX",
            uid=uid,
            logger=log,
            metrics=metrics,
            internal_date=internal_date,
        )

    return _make


class FakeMailbox:
    """Server-side state shared by every FakeClient connection."""

    def __init__(self, uids: Iterable[int] = (), *, uidnext: int | None = None) -> None:
        self.uids: set[int] = set(uids)
        self.raw: dict[int, bytes] = {}
        self.uidnext = uidnext
        self.idle = True
        # Callables run on each idle round; when none are left the token is cancelled.
        self.idle_script: list[Callable[[], None]] = []
        self.connect_errors: list[Exception] = []
        self.connections = 0
        self.logouts = 0

    def deliver(self, uid: int, raw: bytes | None = None) -> Callable[[], None]:
        def _deliver() -> None:
            self.uids.add(uid)
            if raw is not None:
                self.raw[uid] = raw

        return _deliver


class FakeClient:
    """In-memory stand-in for ImapClient driven by a FakeMailbox."""

    def __init__(self, mailbox: FakeMailbox) -> None:
        self._mb = mailbox

    async def connect(self) -> None:
        self._mb.connections += 1
        if self._mb.connect_errors:
            raise self._mb.connect_errors.pop(0)

    async def authenticate(self, auth: ImapAuth) -> None:
        assert auth.user == "events@example.org"

    async def select(self, mailbox: str) -> SelectInfo:
        return SelectInfo(
            mailbox=mailbox,
            uidvalidity=1,
            uidnext=self._mb.uidnext,
            exists=len(self._mb.uids),
        )

    def supports_idle(self) -> bool:
        return self._mb.idle

    async def uid_search(self, criteria: Iterable[str]) -> list[int]:
        assert list(criteria) == ["ALL"]
        return sorted(self._mb.uids)

    async def uids_after(self, cursor: int) -> list[int]:
        return sorted(uid for uid in self._mb.uids if uid > cursor)

    async def uid_fetch_message(self, uid: int) -> FetchedMessage:
        raw = self._mb.raw.get(uid) or f"Subject: {uid}\r\n\r\nbody".encode()
        return FetchedMessage(uid=uid, raw=raw, internal_date=INTERNAL_DATE)

    async def idle_wait(self, *, timeout_s: float, cancel: CancelToken) -> bool:
        await asyncio.sleep(0)
        if not self._mb.idle_script:
            cancel.cancel("test done")
            return False
        self._mb.idle_script.pop(0)()
        return True

    async def logout(self) -> None:
        self._mb.logouts += 1
