"""Email parsing and body decoding utilities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.errors import MessageError
from email.header import decode_header, make_header
from email.message import EmailMessage, MIMEPart
from email.parser import BytesParser
from email.utils import parsedate_to_datetime

from bs4 import BeautifulSoup


class MessageParseError(ValueError):
    """Raised when raw message bytes cannot be decoded."""


def _decode_header_value(value: str) -> str:
    """Decode RFC 2047-encoded header values.

    Args:
        value: Raw header value.

    Returns:
        Best-effort decoded value.
    """
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, UnicodeError, ValueError):
        return value


def normalize_message_id(value: str | None) -> str | None:
    """Trim a Message-ID header, keeping its angle brackets.

    Args:
        value: Raw Message-ID header value.

    Returns:
        The first token of the header, or None if missing/blank.
    """
    if value is None:
        return None
    v = value.strip()
    if not v:
        return None
    if " " in v:
        v = v.split(" ", 1)[0].strip()
    return v or None


def html_to_text(html: str) -> str:
    """Reduce HTML to readable text with scripts and styles removed.

    Args:
        html: HTML document or fragment.

    Returns:
        Whitespace-collapsed text.
    """
    if not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(separator=" ", strip=True).split())


@dataclass(frozen=True)
class ParsedMessage:
    """Decoded headers and bodies of one RFC822 message."""

    message_id: str | None
    subject: str | None
    from_: str | None
    date: datetime | None
    text: str | None
    html: str | None

    @property
    def readable_text(self) -> str | None:
        """Plain-text body, or the HTML body reduced to text when there is no plain part."""
        if self.text:
            return self.text
        if self.html:
            return html_to_text(self.html) or None
        return None


def _part_content(part: MIMEPart) -> str | None:
    """Return the decoded text of a MIME part, or None if it is not text."""
    try:
        content = part.get_content()
    except (LookupError, UnicodeError, ValueError):
        payload = part.get_payload(decode=True)
        if not isinstance(payload, bytes):
            return None
        content = payload.decode(part.get_content_charset() or "utf-8", errors="replace")
    return content if isinstance(content, str) else None


def parse_message(raw_rfc822: bytes) -> ParsedMessage:
    """Parse raw RFC822 bytes into headers plus plain-text and HTML bodies.

    Args:
        raw_rfc822: Raw RFC822 message bytes.

    Returns:
        ParsedMessage with best-effort decoded values.

    Raises:
        MessageParseError: If the bytes are empty or cannot be parsed.
    """
    if not raw_rfc822 or not raw_rfc822.strip():
        raise MessageParseError("Message source is empty")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw_rfc822)
    except (MessageError, UnicodeError, ValueError) as exc:
        raise MessageParseError(f"Message could not be parsed: {exc}") from exc
    assert isinstance(msg, EmailMessage)

    date: datetime | None = None
    date_raw = msg.get("Date")
    if date_raw:
        try:
            date = parsedate_to_datetime(str(date_raw))
        except (TypeError, ValueError):
            date = None

    text: str | None = None
    html: str | None = None
    try:
        text_part = msg.get_body(preferencelist=("plain",))
        html_part = msg.get_body(preferencelist=("html",))
    except (KeyError, ValueError) as exc:
        raise MessageParseError(f"Message body could not be located: {exc}") from exc
    if text_part is not None:
        text = (_part_content(text_part) or "").strip() or None
    if html_part is not None:
        html = _part_content(html_part)

    subject_raw = msg.get("Subject")
    from_raw = msg.get("From")
    return ParsedMessage(
        message_id=normalize_message_id(msg.get("Message-ID")),
        subject=_decode_header_value(str(subject_raw)) if subject_raw else None,
        from_=_decode_header_value(str(from_raw)) if from_raw else None,
        date=date,
        text=text,
        html=html or None,
    )
