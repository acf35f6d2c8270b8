"""Graceful shutdown handling via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)


def install_signal_handlers(request_shutdown: Callable[[str], None]) -> None:
    """Register SIGTERM and SIGINT handlers that call ``request_shutdown``.

    Call this once from the running event loop. The handler receives the
    signal name as the shutdown reason.

    Args:
        request_shutdown: Callback invoked with the signal name.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", extra={"signal": sig.name})
        request_shutdown(sig.name)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


def remove_signal_handlers() -> None:
    """Remove the handlers installed by ``install_signal_handlers``."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.remove_signal_handler(sig)
