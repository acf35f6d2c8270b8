"""Tests for counters, alert escalation and logging helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from imap_event_ingest.storage.state_db import StateDb
from imap_event_ingest.utils.logging import (
    ContextLogger,
    JsonLogFormatter,
    build_db_sink,
    get_context_logger,
)
from imap_event_ingest.utils.metrics import (
    EXTRACTION_FAILURE,
    INSERT_FAILURE,
    SPAM_DETECTED,
    WorkerMetrics,
)


def test_counters_accumulate() -> None:
    metrics = WorkerMetrics()
    assert metrics.increment(EXTRACTION_FAILURE) == 1
    assert metrics.increment(EXTRACTION_FAILURE, 2) == 3
    assert metrics.value(INSERT_FAILURE) == 0
    assert metrics.snapshot() == {EXTRACTION_FAILURE: 3}


def test_counters_keep_providers_apart() -> None:
    """Totals per tag set stay separate while the overall total sums them."""
    metrics = WorkerMetrics()
    acme = {"provider_id": "acme", "mailbox": "INBOX"}
    beta = {"provider_id": "beta", "mailbox": "INBOX"}
    metrics.increment(SPAM_DETECTED, tags=acme)
    metrics.increment(SPAM_DETECTED, tags=acme)
    metrics.increment(SPAM_DETECTED, tags=beta)

    assert metrics.value(SPAM_DETECTED) == 3
    assert metrics.value(SPAM_DETECTED, tags=acme) == 2
    assert metrics.value(SPAM_DETECTED, tags={"mailbox": "INBOX", "provider_id": "beta"}) == 1
    assert metrics.value(SPAM_DETECTED, tags={"provider_id": "gamma"}) == 0
    assert metrics.tagged_snapshot()[SPAM_DETECTED] == [
        {"tags": {"mailbox": "INBOX", "provider_id": "acme"}, "value": 2},
        {"tags": {"mailbox": "INBOX", "provider_id": "beta"}, "value": 1},
    ]


class RecordingStatsd:
    def __init__(self) -> None:
        self.sent: list[tuple[str, int, list[str] | None]] = []
        self.closed = False

    def increment(self, metric: str, value: int = 1, tags: list[str] | None = None) -> None:
        self.sent.append((metric, value, tags))

    def close_socket(self) -> None:
        self.closed = True


def test_increments_are_exported_with_tags() -> None:
    statsd = RecordingStatsd()
    metrics = WorkerMetrics(statsd=statsd)

    metrics.increment(INSERT_FAILURE, tags={"provider_id": "acme", "mailbox": None})
    metrics.increment(EXTRACTION_FAILURE, 2)
    metrics.close()

    assert statsd.sent == [
        (INSERT_FAILURE, 1, ["provider_id:acme"]),
        (EXTRACTION_FAILURE, 2, None),
    ]
    assert statsd.closed is True


def test_alert_fires_every_threshold(caplog: pytest.LogCaptureFixture) -> None:
    """An alert is logged each time the counter grows by the threshold."""
    metrics = WorkerMetrics(log=logging.getLogger("tests.metrics"))
    metrics.register_alert(INSERT_FAILURE, threshold=2, level=logging.ERROR, message="Too many")

    with caplog.at_level(logging.WARNING, logger="tests.metrics"):
        for _ in range(5):
            metrics.increment(INSERT_FAILURE, tags={"provider_id": "acme"})

    alerts = [r for r in caplog.records if r.getMessage() == "Too many"]
    assert [r.__dict__["total"] for r in alerts] == [2, 4]
    assert all(r.levelno == logging.ERROR for r in alerts)
    assert alerts[0].__dict__["tags"] == {"provider_id": "acme"}


def test_zero_threshold_disables_alert(caplog: pytest.LogCaptureFixture) -> None:
    metrics = WorkerMetrics(log=logging.getLogger("tests.metrics"))
    metrics.register_alert(EXTRACTION_FAILURE, threshold=1)
    metrics.register_alert(EXTRACTION_FAILURE, threshold=0)

    with caplog.at_level(logging.WARNING, logger="tests.metrics"):
        metrics.increment(EXTRACTION_FAILURE)
    assert caplog.records == []


def test_context_logger_binds_and_overrides(caplog: pytest.LogCaptureFixture) -> None:
    """Bound fields reach every record; per-call extra wins."""
    base = get_context_logger("tests.ctx", provider_id="acme")
    child = base.with_context(session_id="s1", uid=1)
    assert child.context == {"provider_id": "acme", "session_id": "s1", "uid": 1}
    assert base.context == {"provider_id": "acme"}

    with caplog.at_level(logging.INFO, logger="tests.ctx"):
        child.info("hello", extra={"uid": 2})

    (record,) = caplog.records
    assert record.__dict__["provider_id"] == "acme"
    assert record.__dict__["session_id"] == "s1"
    assert record.__dict__["uid"] == 2


def test_json_formatter_includes_extras() -> None:
    record = logging.LogRecord("tests", logging.INFO, __file__, 1, "msg %s", ("x",), None)
    record.provider_id = "acme"
    record.blob = object()
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "msg x"
    assert payload["level"] == "INFO"
    assert payload["provider_id"] == "acme"
    assert isinstance(payload["blob"], str)


def test_db_sink_writes_worker_log(tmp_path: Path) -> None:
    """Records flushed through the sink land in worker_log with ids split out."""
    sqlite_path = tmp_path / "worker.sqlite3"
    db = StateDb(sqlite_path=sqlite_path)
    db.init_schema()

    handler = build_db_sink(sqlite_path=sqlite_path, batch_size=10, level=logging.INFO)
    base = logging.getLogger("tests.sink")
    base.setLevel(logging.INFO)
    base.addHandler(handler)
    try:
        log = ContextLogger(base, {"provider_id": "acme", "session_id": "s1"})
        log.info("Session starting", extra={"mailbox": "INBOX"})
        log.debug("ignored")
    finally:
        base.removeHandler(handler)
        handler.close()

    rows = db.connection.execute("SELECT * FROM worker_log").fetchall()
    db.close()
    assert len(rows) == 1
    row = rows[0]
    assert row["provider_id"] == "acme"
    assert row["session_id"] == "s1"
    assert row["msg"] == "Session starting"
    assert json.loads(row["data"]) == {"mailbox": "INBOX"}
