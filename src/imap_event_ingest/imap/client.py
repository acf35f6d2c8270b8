"""IMAP client wrapper: connect, select, UID search/fetch and cancellable IDLE."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

import aioimaplib

from imap_event_ingest.models.provider import ImapAuth, ImapConfig
from imap_event_ingest.utils.cancel import CancelToken

_FETCH_LITERAL_RE = re.compile(rb"\{(?P<n>\d+)\}$")
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "(?P<date>[^"]+)"')
_UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (?P<uidvalidity>\d+)\]")
_UIDNEXT_RE = re.compile(rb"\[UIDNEXT (?P<uidnext>\d+)\]")
_EXISTS_RE = re.compile(rb"(?i)\b(?P<exists>\d+) EXISTS")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectInfo:
    """IMAP SELECT response metadata."""

    mailbox: str
    uidvalidity: int | None
    uidnext: int | None
    exists: int | None


@dataclass(frozen=True)
class FetchedMessage:
    """One message as fetched from the server; never persisted as-is."""

    uid: int
    raw: bytes
    internal_date: datetime | None


class ImapError(RuntimeError):
    """Raised for IMAP command errors."""


class ImapClient:
    """Async IMAP client bound to one provider mailbox connection."""

    def __init__(self, *, host: str, port: int, ssl: bool, timeout_seconds: float = 120.0) -> None:
        """Initialize the IMAP client.

        Args:
            host: IMAP host.
            port: IMAP port.
            ssl: Whether to use SSL.
            timeout_seconds: Network timeout for IMAP operations.
        """
        self._host = host
        self._port = port
        self._ssl = ssl
        self._timeout = timeout_seconds
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: ImapConfig, *, timeout_seconds: float) -> ImapClient:
        """Build a client from provider IMAP settings."""
        return cls(
            host=config.host,
            port=config.port,
            ssl=config.secure,
            timeout_seconds=timeout_seconds,
        )

    async def connect(self) -> None:
        """Connect to the IMAP server."""
        async with self._lock:
            if self._imap is not None:
                return
            if self._ssl:
                self._imap = aioimaplib.IMAP4_SSL(self._host, self._port, timeout=self._timeout)
            else:
                self._imap = aioimaplib.IMAP4(self._host, self._port, timeout=self._timeout)
            await asyncio.wait_for(self._imap.wait_hello_from_server(), timeout=self._timeout)

    async def authenticate(self, auth: ImapAuth) -> None:
        """Authenticate with a password (LOGIN) or an OAuth access token (XOAUTH2).

        Args:
            auth: Provider credentials.

        Raises:
            ImapError: If authentication fails.
        """
        async with self._lock:
            imap = self._require()
            if auth.access_token is not None:
                coro = imap.xoauth2(auth.user, auth.access_token.get_secret_value())
            else:
                assert auth.password is not None
                coro = imap.login(auth.user, auth.password.get_secret_value())
            resp = await asyncio.wait_for(coro, timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP authentication failed: {resp.result} {resp.lines!r}")

    async def logout(self) -> None:
        """Logout and close the IMAP connection."""
        async with self._lock:
            if self._imap is None:
                return
            try:
                await asyncio.wait_for(self._imap.logout(), timeout=self._timeout)
            finally:
                self._imap = None

    async def select(self, mailbox: str) -> SelectInfo:
        """Select a mailbox and return metadata.

        Args:
            mailbox: Mailbox name.

        Returns:
            SelectInfo with UIDVALIDITY, UIDNEXT and EXISTS info.

        Raises:
            ImapError: If the SELECT command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.select(_imap_quote(mailbox)), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP SELECT failed ({mailbox}): {resp.result} {resp.lines!r}")
            return parse_select_response(mailbox, resp.lines)

    def supports_idle(self) -> bool:
        """Return True if the server advertises the IDLE capability."""
        return self._require().has_capability("IDLE")

    async def uid_search(self, criteria: Iterable[str]) -> list[int]:
        """Run UID SEARCH and return matching UIDs.

        Args:
            criteria: IMAP search criteria.

        Returns:
            List of matching UIDs.

        Raises:
            ImapError: If the SEARCH command fails.
        """
        criteria = list(criteria)
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(
                imap.protocol.search(*criteria, by_uid=True),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP UID SEARCH failed: {resp.result} {resp.lines!r}")

            uids = parse_search_response(resp.lines)
            if not uids:
                logger.debug(
                    "IMAP UID SEARCH returned no matches (criteria=%s, lines=%r)",
                    criteria,
                    resp.lines,
                )
            return uids

    async def uids_after(self, cursor: int) -> list[int]:
        """Return UIDs strictly greater than ``cursor``, ascending.

        ``UID n:*`` always matches the highest message, so the result is
        filtered client-side.
        """
        uids = await self.uid_search(["UID", f"{cursor + 1}:*"])
        return sorted({uid for uid in uids if uid > cursor})

    async def uid_fetch_message(self, uid: int) -> FetchedMessage:
        """Fetch raw RFC822 bytes and INTERNALDATE for a UID.

        Args:
            uid: Message UID.

        Returns:
            FetchedMessage for the UID.

        Raises:
            ImapError: If the FETCH command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(
                imap.uid("fetch", str(uid), "(UID INTERNALDATE BODY.PEEK[])"),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP UID FETCH failed: {resp.result} {resp.lines!r}")
            return FetchedMessage(
                uid=uid,
                raw=_extract_literal(resp.lines),
                internal_date=parse_internal_date(resp.lines),
            )

    async def noop(self) -> None:
        """Send NOOP to keep the connection alive and surface pending updates."""
        async with self._lock:
            resp = await asyncio.wait_for(self._require().noop(), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP NOOP failed: {resp.result} {resp.lines!r}")

    async def idle_wait(self, *, timeout_s: float, cancel: CancelToken) -> bool:
        """Run one IDLE round, bounded by ``timeout_s`` and interruptible by ``cancel``.

        Args:
            timeout_s: Keepalive interval after which IDLE is ended.
            cancel: Token that ends the wait early.

        Returns:
            True if the server pushed new-mail data, False on keepalive expiry or cancellation.

        Raises:
            ImapError: If the IDLE command fails.
        """
        async with self._lock:
            imap = self._require()
            idle = await imap.idle_start(timeout=timeout_s)
            push = asyncio.ensure_future(imap.wait_server_push(timeout=timeout_s))
            stop = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({push, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
                if not push.done():
                    push.cancel()
                if imap.has_pending_idle():
                    imap.idle_done()
                resp = await asyncio.wait_for(idle, timeout=self._timeout)

            if resp.result != "OK":
                raise ImapError(f"IMAP IDLE failed: {resp.result} {resp.lines!r}")
            if push.cancelled():
                return False
            try:
                pushed = push.result()
            except TimeoutError:
                return False
            return _has_new_mail(pushed)

    def _require(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        """Return the underlying IMAP client or raise if not connected."""
        if self._imap is None:
            raise ImapError("IMAP client not connected")
        return self._imap


def parse_select_response(mailbox: str, lines: list[bytes]) -> SelectInfo:
    """Extract UIDVALIDITY, UIDNEXT and EXISTS from SELECT response lines."""
    uidvalidity: int | None = None
    uidnext: int | None = None
    exists: int | None = None

    for line in lines:
        match = _UIDVALIDITY_RE.search(line)
        if match:
            uidvalidity = int(match.group("uidvalidity"))
        match = _UIDNEXT_RE.search(line)
        if match:
            uidnext = int(match.group("uidnext"))
        match = _EXISTS_RE.search(line)
        if match:
            exists = int(match.group("exists"))

    return SelectInfo(mailbox=mailbox, uidvalidity=uidvalidity, uidnext=uidnext, exists=exists)


def parse_search_response(lines: list[bytes]) -> list[int]:
    """Extract UIDs from SEARCH response lines."""
    uids: list[int] = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 2 and parts[0] == b"*" and parts[1] == b"SEARCH":
            parts = parts[2:]
        elif parts and parts[0] == b"SEARCH":
            parts = parts[1:]

        if parts and all(p.isdigit() for p in parts):
            uids.extend(int(p) for p in parts)
    return uids


def parse_internal_date(lines: list[bytes]) -> datetime | None:
    """Return the INTERNALDATE of a FETCH response, or None if absent or malformed."""
    for line in lines:
        if not isinstance(line, bytes | bytearray) or b"FETCH" not in line:
            continue
        match = _INTERNALDATE_RE.search(line)
        if not match:
            continue
        try:
            return datetime.strptime(match.group("date").decode("ascii"), "%d-%b-%Y %H:%M:%S %z")
        except (UnicodeDecodeError, ValueError):
            logger.debug("Unparsable INTERNALDATE: %r", match.group("date"))
            return None
    return None


def _has_new_mail(pushed: object) -> bool:
    """Return True if data pushed during IDLE announces new messages."""
    if pushed == aioimaplib.STOP_WAIT_SERVER_PUSH:
        return False
    lines = getattr(pushed, "lines", pushed)
    if isinstance(lines, bytes | bytearray):
        lines = [lines]
    if not isinstance(lines, list):
        return False
    return any(
        isinstance(line, bytes | bytearray) and (b"EXISTS" in line or b"RECENT" in line)
        for line in lines
    )


def _extract_literal(lines: list[bytes]) -> bytes:
    """Extract the literal payload from an IMAP FETCH response.

    Args:
        lines: IMAP response lines.

    Returns:
        Literal payload bytes.

    Raises:
        ImapError: If no literal payload can be extracted.
    """
    if not lines:
        raise ImapError("IMAP response had no lines")

    for idx, line in enumerate(lines):
        match = _FETCH_LITERAL_RE.search(line)
        if not match:
            continue
        size = int(match.group("n"))
        if idx + 1 >= len(lines):
            break
        literal = lines[idx + 1]
        if len(literal) == size:
            return bytes(literal)

    candidates = [
        line for line in lines if b"FETCH" not in line and line.strip() not in {b")", b""}
    ]
    literal = max(candidates or lines, key=len)
    if not literal or len(literal) < 64:
        raise ImapError(f"IMAP response contained no literal payload: {lines!r}")
    return bytes(literal)


def _imap_quote(value: str) -> str:
    """Quote a string for use in IMAP commands.

    Args:
        value: Raw mailbox name.

    Returns:
        Quoted string safe for IMAP commands.
    """
    stripped = value.strip()
    if not stripped:
        return '""'
    escaped = stripped.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
