"""Exponential reconnect backoff with jitter."""

from __future__ import annotations

import math
import random
from collections.abc import Callable

from imap_event_ingest.utils.cancel import CancelToken


class BackoffController:
    """Computes reconnect delays: ``min(min_ms * factor**attempt, max_ms)`` plus jitter.

    The jitter is a random fraction in ``[0, jitter]`` of the bounded delay.
    Between resets the emitted delays never decrease, and they never exceed
    ``max_ms * (1 + jitter)``.
    """

    def __init__(
        self,
        *,
        min_ms: int,
        max_ms: int,
        factor: float = 2.0,
        jitter: float = 0.25,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the controller.

        Args:
            min_ms: First delay before jitter.
            max_ms: Delay ceiling before jitter; raised to ``min_ms`` when lower.
            factor: Growth factor per attempt.
            jitter: Maximum jitter fraction.
            rng: Source of uniform ``[0, 1)`` values.
        """
        self._min_ms = min_ms
        self._max_ms = max(max_ms, min_ms)
        self._factor = factor
        self._jitter = jitter
        self._rng = rng
        self._attempt = 0
        self._last_ms = 0
        # Past this exponent the delay is already at max_ms.
        if factor > 1 and 0 < min_ms < self._max_ms:
            self._max_exponent = math.ceil(math.log(self._max_ms / min_ms, factor))
        else:
            self._max_exponent = 0

    @property
    def attempt(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempt

    @property
    def ceiling_ms(self) -> int:
        """Largest delay this controller can emit."""
        return round(self._max_ms * (1 + self._jitter))

    def next_delay(self) -> int:
        """Return the next delay in milliseconds and advance the attempt counter."""
        exponent = min(self._attempt, self._max_exponent)
        bounded = min(self._min_ms * self._factor**exponent, self._max_ms)
        candidate = min(round(bounded + bounded * self._jitter * self._rng()), self.ceiling_ms)
        delay = max(candidate, self._last_ms)
        self._last_ms = delay
        self._attempt += 1
        return delay

    async def wait(self, cancel: CancelToken) -> int:
        """Sleep for the next delay, returning early on cancellation.

        Args:
            cancel: Token that interrupts the sleep.

        Returns:
            The delay that was scheduled, in milliseconds.
        """
        delay = self.next_delay()
        await cancel.sleep(delay / 1000)
        return delay

    def reset(self) -> None:
        """Start over from ``min_ms``."""
        self._attempt = 0
        self._last_ms = 0
