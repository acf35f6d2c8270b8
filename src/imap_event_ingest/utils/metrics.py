"""In-process counters with tags, threshold alerts routed to logging and StatsD export."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from datadog.dogstatsd import DogStatsd

MetricTags = Mapping[str, str | int | float | bool | None]
TagKey = tuple[tuple[str, str], ...]

SPAM_DETECTED = "worker_ingest_spam_detected_total"
DUPLICATE_DETECTED = "worker_ingest_duplicate_detected_total"
EXTRACTION_FAILURE = "worker_ingest_extraction_failure_total"
INSERT_FAILURE = "worker_ingest_insert_failure_total"
SESSION_STARTED = "worker_session_started_total"
SESSION_STOPPED = "worker_session_stopped_total"

logger = logging.getLogger(__name__)


class CounterSink(Protocol):
    """Subset of the DogStatsd client used for counter export."""

    def increment(self, metric: str, value: int = 1, tags: list[str] | None = None) -> None: ...

    def close_socket(self) -> None: ...


def tag_key(tags: MetricTags | None) -> TagKey:
    """Return a stable key for a tag mapping; tags with a None value are dropped."""
    if not tags:
        return ()
    return tuple(sorted((key, str(value)) for key, value in tags.items() if value is not None))


def build_statsd(*, host: str, port: int, prefix: str) -> DogStatsd:
    """Create a StatsD client that prefixes every metric with ``prefix``."""
    return DogStatsd(host=host, port=port, namespace=prefix or None)


@dataclass
class _CounterAlert:
    """Alert configuration and last trigger point for one counter."""

    threshold: int
    level: int
    message: str | None
    last_triggered: int = 0


class WorkerMetrics:
    """Counter registry shared by every session of one worker process.

    Each counter keeps a total per tag set (for example per provider and
    mailbox) next to its overall total. Alerts are evaluated on the overall
    total. When a StatsD sink is given, every increment is also sent there
    with its tags.
    """

    def __init__(
        self,
        *,
        log: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
        statsd: CounterSink | None = None,
    ):
        """Initialize the registry.

        Args:
            log: Logger used for alert entries (defaults to this module's logger).
            statsd: Optional StatsD client receiving every increment.
        """
        self._log = log or logger
        self._statsd = statsd
        self._counters: dict[str, int] = {}
        self._tagged: dict[str, dict[TagKey, int]] = {}
        self._alerts: dict[str, _CounterAlert] = {}

    def register_alert(
        self,
        name: str,
        *,
        threshold: int,
        level: int = logging.WARNING,
        message: str | None = None,
    ) -> None:
        """Log at ``level`` each time ``name`` grows by ``threshold`` since the last alert.

        Args:
            name: Counter name.
            threshold: Increment that triggers an alert; zero or less disables it.
            level: Logging level of the alert entry.
            message: Optional alert message.
        """
        if threshold <= 0:
            self._alerts.pop(name, None)
            return
        self._alerts[name] = _CounterAlert(threshold=threshold, level=level, message=message)

    def increment(self, name: str, value: int = 1, *, tags: MetricTags | None = None) -> int:
        """Add ``value`` to a counter, export it and evaluate its alert.

        Args:
            name: Counter name.
            value: Increment.
            tags: Optional tags, such as ``provider_id`` and ``mailbox``.

        Returns:
            The new overall counter total.
        """
        total = self._counters.get(name, 0) + value
        self._counters[name] = total
        key = tag_key(tags)
        per_tags = self._tagged.setdefault(name, {})
        per_tags[key] = per_tags.get(key, 0) + value

        if self._statsd is not None:
            self._statsd.increment(name, value, tags=[f"{k}:{v}" for k, v in key] or None)
        self._evaluate_alert(name, total, tags)
        return total

    def value(self, name: str, *, tags: MetricTags | None = None) -> int:
        """Return a counter total (0 if never incremented).

        Args:
            name: Counter name.
            tags: When given, only increments made with exactly these tags count.
        """
        if tags is None:
            return self._counters.get(name, 0)
        return self._tagged.get(name, {}).get(tag_key(tags), 0)

    def snapshot(self) -> dict[str, int]:
        """Return a copy of every overall counter total."""
        return dict(self._counters)

    def tagged_snapshot(self) -> dict[str, list[dict[str, object]]]:
        """Return every counter broken down by tag set.

        Returns:
            Mapping of counter name to ``{"tags": {...}, "value": n}`` entries.
        """
        return {
            name: [{"tags": dict(key), "value": count} for key, count in sorted(per_tags.items())]
            for name, per_tags in self._tagged.items()
        }

    def close(self) -> None:
        """Release the StatsD socket, if any."""
        if self._statsd is not None:
            self._statsd.close_socket()

    def _evaluate_alert(self, name: str, total: int, tags: MetricTags | None) -> None:
        alert = self._alerts.get(name)
        if alert is None:
            return
        if total - alert.last_triggered < alert.threshold:
            return
        alert.last_triggered = total
        self._log.log(
            alert.level,
            alert.message or f"Metric {name} exceeded threshold {alert.threshold}",
            extra={
                "metric": name,
                "total": total,
                "threshold": alert.threshold,
                "tags": dict(tags) if tags else None,
            },
        )
