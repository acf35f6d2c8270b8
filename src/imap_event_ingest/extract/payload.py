"""Parsing of extractor responses into validated candidates."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from imap_event_ingest.models.event import EventCandidate

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_OBJECT_RE = re.compile(r"\{[\s\S]*\}$")
_DEFAULTED_FIELDS = ("is_all_day", "is_published", "metadata", "priority", "status")

logger = logging.getLogger(__name__)


def _loads_object(value: str) -> dict[str, Any] | None:
    """Parse a JSON object, returning None for invalid JSON or non-objects."""
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def find_json_object(raw: str) -> dict[str, Any] | None:
    """Locate a JSON object in a response body.

    Tries, in order: the whole body, a fenced ```json block, and a trailing
    ``{...}`` object.

    Args:
        raw: Response body.

    Returns:
        Parsed object, or None if the body holds none.
    """
    text = raw.strip()
    if not text:
        return None

    direct = _loads_object(text)
    if direct is not None:
        return direct

    fence = _JSON_FENCE_RE.search(text)
    if fence:
        fenced = _loads_object(fence.group(1))
        if fenced is not None:
            return fenced

    braces = _TRAILING_OBJECT_RE.search(text)
    if braces:
        return _loads_object(braces.group(0))
    return None


def parse_candidate_payload(
    payload: str | Mapping[str, Any] | None,
    *,
    provider_id: str,
) -> EventCandidate | None:
    """Validate an extractor payload as an EventCandidate.

    ``provider_id`` always comes from the caller, never from the payload.

    Args:
        payload: Raw response body, an already-decoded object, or None.
        provider_id: Provider the message belongs to.

    Returns:
        The candidate, or None for a null/empty body or a payload that fails validation.
    """
    if payload is None:
        return None
    if isinstance(payload, str):
        if payload.strip() in {"", "null"}:
            return None
        data = find_json_object(payload)
        if data is None:
            logger.warning("Extractor response held no JSON object", extra={"provider_id": provider_id})
            return None
    else:
        data = dict(payload)

    unknown = sorted(set(data) - set(EventCandidate.model_fields))
    if unknown:
        logger.debug("Dropping unknown extractor fields", extra={"fields": unknown})
    data = {key: value for key, value in data.items() if key in EventCandidate.model_fields}
    # Explicit nulls fall back to the model defaults.
    for key in _DEFAULTED_FIELDS:
        if data.get(key) is None:
            data.pop(key, None)
    data["provider_id"] = provider_id

    try:
        return EventCandidate.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Extractor payload failed validation",
            extra={"provider_id": provider_id, "errors": exc.errors(include_url=False)},
        )
        return None
