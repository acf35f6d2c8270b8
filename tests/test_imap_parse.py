"""Tests for IMAP response parsing helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import aioimaplib
import pytest

from imap_event_ingest.imap.client import (
    ImapError,
    _extract_literal,
    _has_new_mail,
    _imap_quote,
    parse_internal_date,
    parse_search_response,
    parse_select_response,
)

RAW = b"From: a@example.org\r\nSubject: Meetup\r\n\r\n" + b"Body line\r\n" * 8


def test_parse_select_response() -> None:
    lines = [
        b"FLAGS (\\Answered \\Seen)",
        b"12 EXISTS",
        b"0 RECENT",
        b"OK [UIDVALIDITY 1700000000] UIDs valid",
        b"OK [UIDNEXT 4242] Predicted next UID",
        b"[READ-WRITE] SELECT completed",
    ]
    info = parse_select_response("INBOX", lines)
    assert info.mailbox == "INBOX"
    assert info.exists == 12
    assert info.uidvalidity == 1700000000
    assert info.uidnext == 4242


def test_parse_select_response_without_uidnext() -> None:
    info = parse_select_response("INBOX", [b"3 EXISTS", b"SELECT completed"])
    assert info.uidnext is None
    assert info.exists == 3


def test_parse_search_response() -> None:
    assert parse_search_response([b"SEARCH 3 5 8", b"SEARCH completed"]) == [3, 5, 8]
    assert parse_search_response([b"* SEARCH 11"]) == [11]
    assert parse_search_response([b"SEARCH", b"Search completed (0.001 secs)."]) == []


def test_parse_internal_date() -> None:
    lines = [
        b'7 FETCH (UID 42 INTERNALDATE "17-Jul-2030 02:44:25 -0700" BODY[] {310}',
        RAW,
        b")",
    ]
    parsed = parse_internal_date(lines)
    assert parsed == datetime(2030, 7, 17, 2, 44, 25, tzinfo=timezone(timedelta(hours=-7)))
    assert parsed is not None and parsed.astimezone(UTC).hour == 9


def test_parse_internal_date_missing_or_malformed() -> None:
    assert parse_internal_date([b"7 FETCH (UID 42 BODY[] {3}", b"abc"]) is None
    assert parse_internal_date([b'7 FETCH (INTERNALDATE "yesterday")']) is None


def test_extract_literal_uses_announced_size() -> None:
    lines = [f"7 FETCH (UID 42 BODY[] {{{len(RAW)}}}".encode(), RAW, b")", b"Fetch completed"]
    assert _extract_literal(lines) == RAW


def test_extract_literal_falls_back_to_longest_line() -> None:
    lines = [b"7 FETCH (UID 42 BODY[] {999}", RAW, b")"]
    assert _extract_literal(lines) == RAW


def test_extract_literal_rejects_empty() -> None:
    with pytest.raises(ImapError):
        _extract_literal([])
    with pytest.raises(ImapError):
        _extract_literal([b"7 FETCH (UID 42)", b")"])


def test_has_new_mail() -> None:
    assert _has_new_mail([b"5 EXISTS"]) is True
    assert _has_new_mail([b"2 RECENT", b"3 FETCH (FLAGS (\\Seen))"]) is True
    assert _has_new_mail([b"3 EXPUNGE"]) is False
    assert _has_new_mail(aioimaplib.STOP_WAIT_SERVER_PUSH) is False
    assert _has_new_mail(None) is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [("INBOX", '"INBOX"'), ("  ", '""'), ('Say "hi"', '"Say \\"hi\\""'), ("a\\b", '"a\\\\b"')],
)
def test_imap_quote(value: str, expected: str) -> None:
    assert _imap_quote(value) == expected
