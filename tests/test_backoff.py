"""Tests for reconnect backoff and cancellation."""

from __future__ import annotations

import asyncio
import itertools

from imap_event_ingest.utils.backoff import BackoffController
from imap_event_ingest.utils.cancel import CancelToken


def test_delays_grow_and_cap_without_jitter() -> None:
    """Delays should double from min_ms and stop at max_ms."""
    backoff = BackoffController(min_ms=1_000, max_ms=5_000, factor=2.0, jitter=0.0)
    assert [backoff.next_delay() for _ in range(5)] == [1_000, 2_000, 4_000, 5_000, 5_000]
    assert backoff.attempt == 5


def test_long_outage_stays_at_the_cap() -> None:
    """Thousands of attempts keep returning max_ms instead of overflowing."""
    backoff = BackoffController(min_ms=1_000, max_ms=60_000, jitter=0.0)
    delays = [backoff.next_delay() for _ in range(1_200)]
    assert delays[:7] == [1_000, 2_000, 4_000, 8_000, 16_000, 32_000, 60_000]
    assert set(delays[6:]) == {60_000}
    assert backoff.attempt == 1_200


def test_delays_never_decrease_with_jitter() -> None:
    """Jitter may not make a later delay shorter than an earlier one."""
    rolls = itertools.cycle([0.99, 0.0, 0.5, 0.0])
    backoff = BackoffController(min_ms=1_000, max_ms=4_000, jitter=0.25, rng=lambda: next(rolls))
    delays = [backoff.next_delay() for _ in range(8)]
    assert delays == sorted(delays)
    assert all(1_000 <= d <= backoff.ceiling_ms for d in delays)
    assert backoff.ceiling_ms == 5_000


def test_reset_starts_over() -> None:
    """reset should return to the minimum delay."""
    backoff = BackoffController(min_ms=500, max_ms=8_000, jitter=0.0)
    for _ in range(3):
        backoff.next_delay()
    backoff.reset()
    assert backoff.attempt == 0
    assert backoff.next_delay() == 500


def test_max_below_min_is_raised_to_min() -> None:
    """A ceiling lower than the floor should behave like the floor."""
    backoff = BackoffController(min_ms=2_000, max_ms=100, jitter=0.0)
    assert backoff.next_delay() == 2_000
    assert backoff.next_delay() == 2_000


def test_wait_returns_early_on_cancel() -> None:
    """A cancelled token should cut a long backoff wait short."""

    async def _run() -> tuple[int, float]:
        token = CancelToken()
        backoff = BackoffController(min_ms=60_000, max_ms=60_000, jitter=0.0)
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel, "test")
        started = loop.time()
        delay = await backoff.wait(token)
        return delay, loop.time() - started

    delay, elapsed = asyncio.run(_run())
    assert delay == 60_000
    assert elapsed < 5


def test_cancel_token_keeps_first_reason() -> None:
    """Later cancel calls should not overwrite the first reason."""

    async def _run() -> CancelToken:
        token = CancelToken()
        assert await token.sleep(0.001) is False
        token.cancel("SIGTERM")
        token.cancel("SIGINT")
        assert await token.sleep(10) is True
        return token

    token = asyncio.run(_run())
    assert token.cancelled is True
    assert token.reason == "SIGTERM"
