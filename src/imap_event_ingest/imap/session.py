"""Per-provider mailbox session: connect, resume, idle, process, back off."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Protocol

from imap_event_ingest.config.settings import WorkerSettings
from imap_event_ingest.imap.client import FetchedMessage, ImapClient, ImapError, SelectInfo
from imap_event_ingest.models.provider import ImapAuth, ImapConfig, Provider
from imap_event_ingest.models.types import ProcessOutcome, SessionState
from imap_event_ingest.storage.providers import ProviderStore
from imap_event_ingest.utils.backoff import BackoffController
from imap_event_ingest.utils.cancel import CancelToken
from imap_event_ingest.utils.logging import ContextLogger

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (ImapError, OSError, TimeoutError)


class MailboxClient(Protocol):
    """Subset of ImapClient the session drives."""

    async def connect(self) -> None: ...

    async def authenticate(self, auth: ImapAuth) -> None: ...

    async def select(self, mailbox: str) -> SelectInfo: ...

    def supports_idle(self) -> bool: ...

    async def uid_search(self, criteria: Iterable[str]) -> list[int]: ...

    async def uids_after(self, cursor: int) -> list[int]: ...

    async def uid_fetch_message(self, uid: int) -> FetchedMessage: ...

    async def idle_wait(self, *, timeout_s: float, cancel: CancelToken) -> bool: ...

    async def logout(self) -> None: ...


class MessageHandler(Protocol):
    """Processes one fetched message (MessageProcessor in production)."""

    async def process(
        self,
        message: FetchedMessage,
        *,
        provider: Provider,
        mailbox: str,
        logger: ContextLogger,
    ) -> ProcessOutcome: ...


ClientFactory = Callable[[ImapConfig], MailboxClient]


class MailboxSession:
    """State machine for one provider mailbox.

    ``disconnected -> connecting -> mailbox_open -> idling <-> processing``;
    transient errors go through ``backoff`` back to ``connecting``, and
    cancellation ends in ``stopped`` from any state.
    """

    def __init__(
        self,
        *,
        provider: Provider,
        providers: ProviderStore,
        handler: MessageHandler,
        settings: WorkerSettings,
        cancel: CancelToken,
        logger: ContextLogger,
        client_factory: ClientFactory | None = None,
        backoff: BackoffController | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            provider: Provider with IMAP settings.
            providers: Cursor store.
            handler: Per-message processor.
            settings: Worker timing settings.
            cancel: Stop request token.
            logger: Logger bound to provider and session ids.
            client_factory: Builds a client per connection attempt.
            backoff: Reconnect delay controller.

        Raises:
            ValueError: If the provider has no IMAP settings.
        """
        if provider.config.imap is None:
            raise ValueError(f"Provider {provider.id} has no IMAP settings")
        self._provider = provider
        self._imap = provider.config.imap
        self._providers = providers
        self._handler = handler
        self._s = settings
        self._cancel = cancel
        self._log = logger.with_context(mailbox=self._imap.mailbox)
        self._client_factory = client_factory or (
            lambda config: ImapClient.from_config(config, timeout_seconds=settings.imap_timeout_seconds)
        )
        self._backoff = backoff or BackoffController(
            min_ms=settings.backoff_min_ms,
            max_ms=settings.backoff_max_ms,
            factor=settings.backoff_factor,
            jitter=settings.backoff_jitter,
        )
        self._state = SessionState.disconnected
        self._cursor = 0

    @property
    def state(self) -> SessionState:
        """Current state."""
        return self._state

    @property
    def cursor(self) -> int:
        """Last processed UID known to this session."""
        return self._cursor

    @property
    def mailbox(self) -> str:
        """Mailbox this session watches."""
        return self._imap.mailbox

    async def run(self) -> None:
        """Run until cancelled. Transient errors reconnect after a backoff delay."""
        while not self._cancel.cancelled:
            self._transition(SessionState.connecting)
            client = self._client_factory(self._imap)
            try:
                await self._connect(client)
                await self._process(client)
                self._backoff.reset()
                await self._watch(client)
            except TRANSIENT_ERRORS as exc:
                if self._cancel.cancelled:
                    break
                self._log.warning("IMAP session error", extra={"error": repr(exc)})
                self._transition(SessionState.backoff)
                delay = await self._backoff.wait(self._cancel)
                if not self._cancel.cancelled:
                    self._log.info("Reconnecting after backoff", extra={"delay_ms": delay})
            finally:
                await self._close(client)
        self._transition(SessionState.stopped)

    async def _connect(self, client: MailboxClient) -> None:
        self._log.info(
            "Connecting to IMAP host",
            extra={"host": self._imap.host, "port": self._imap.port, "secure": self._imap.secure},
        )
        await client.connect()
        await client.authenticate(self._imap.auth)
        info = await client.select(self._imap.mailbox)
        self._transition(SessionState.mailbox_open)
        self._log.info(
            "Mailbox opened",
            extra={"exists": info.exists, "uidnext": info.uidnext, "uidvalidity": info.uidvalidity},
        )

        stored = self._providers.get_cursor(self._provider.id)
        if stored is None:
            if info.uidnext is not None:
                baseline = info.uidnext - 1
            else:
                baseline = max(await client.uid_search(["ALL"]), default=0)
            self._cursor = self._providers.set_cursor(self._provider.id, max(baseline, 0))
            self._log.debug("Initialized cursor", extra={"cursor": self._cursor})
        else:
            self._cursor = stored

    async def _watch(self, client: MailboxClient) -> None:
        """Alternate between waiting for mail and processing it until cancelled."""
        idle = client.supports_idle()
        if not idle:
            self._log.info(
                "Server does not support IDLE; polling",
                extra={"poll_interval_ms": self._s.poll_interval_ms},
            )
        while not self._cancel.cancelled:
            self._transition(SessionState.idling)
            if idle:
                new_mail = await client.idle_wait(
                    timeout_s=self._s.idle_keepalive_ms / 1000,
                    cancel=self._cancel,
                )
                self._log.debug("IDLE round finished", extra={"new_mail": new_mail})
            else:
                await self._cancel.sleep(self._s.poll_interval_ms / 1000)
            if self._cancel.cancelled:
                return
            await self._process(client)

    async def _process(self, client: MailboxClient) -> None:
        """Process every message above the cursor in ascending UID order."""
        self._transition(SessionState.processing)
        uids = await client.uids_after(self._cursor)
        processed = 0
        for uid in uids:
            if self._cancel.cancelled:
                break
            message = await client.uid_fetch_message(uid)
            try:
                outcome = await self._handler.process(
                    message,
                    provider=self._provider,
                    mailbox=self._imap.mailbox,
                    logger=self._log,
                )
                if outcome is ProcessOutcome.inserted:
                    processed += 1
            except Exception:
                self._log.exception("Failed to process message", extra={"uid": uid})
            finally:
                self._cursor = self._providers.set_cursor(self._provider.id, max(self._cursor, uid))

        if processed:
            self._log.info(
                "Processed new messages",
                extra={"processed": processed, "cursor": self._cursor},
            )

    async def _close(self, client: MailboxClient) -> None:
        try:
            await client.logout()
        except TRANSIENT_ERRORS as exc:
            self._log.debug("IMAP logout failed", extra={"error": repr(exc)})

    def _transition(self, new: SessionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        self._log.debug(
            "Session state change",
            extra={"from_state": old.value, "to_state": new.value},
        )
