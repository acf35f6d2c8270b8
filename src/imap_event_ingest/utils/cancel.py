"""Cooperative cancellation shared between the supervisor and one session."""

from __future__ import annotations

import asyncio


class CancelToken:
    """One-shot stop request that waits and sleeps can observe."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether a stop has been requested."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason passed to the first ``cancel`` call."""
        return self._reason

    def cancel(self, reason: str = "shutdown") -> None:
        """Request a stop; later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``.

        Args:
            seconds: Maximum sleep duration.

        Returns:
            True if the sleep was cut short by cancellation.
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except TimeoutError:
            return False
        return True
