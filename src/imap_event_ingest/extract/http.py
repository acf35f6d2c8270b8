"""HTTP adapter for a remote extraction service."""

from __future__ import annotations

import logging
from types import TracebackType

import httpx

from imap_event_ingest.config.settings import ExtractorSettings
from imap_event_ingest.extract.base import ExtractionError, ExtractionRequest
from imap_event_ingest.extract.payload import parse_candidate_payload
from imap_event_ingest.models.event import EventCandidate

logger = logging.getLogger(__name__)


class HttpExtractor:
    """POSTs message content to an extraction endpoint and validates the reply.

    The endpoint receives ``provider_id``, ``message_id``, ``subject`` and the
    plain-text body, and answers with a JSON event object or ``null`` (a fenced
    ```json block or a trailing object inside prose is also accepted).
    """

    def __init__(
        self,
        settings: ExtractorSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            settings: Endpoint, credentials and limits.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).

        Raises:
            ValueError: If no endpoint is configured.
        """
        if settings.endpoint is None:
            raise ValueError("Extractor endpoint is missing. Set INGEST_EXTRACTOR__ENDPOINT.")
        self._s = settings
        headers = {"Accept": "application/json"}
        if settings.api_key is not None:
            headers["Authorization"] = f"Bearer {settings.api_key.get_secret_value()}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout_seconds),
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> HttpExtractor:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def extract(self, request: ExtractionRequest) -> EventCandidate | None:
        """Ask the remote service for a candidate.

        Args:
            request: Message content and provider context.

        Returns:
            A validated candidate, or None when the message is not an event.

        Raises:
            ExtractionError: On transport failures or non-2xx responses.
        """
        text = request.combined_text(max_chars=self._s.max_chars)
        if not text:
            return None

        try:
            response = await self._client.post(
                str(self._s.endpoint),
                json={
                    "provider_id": request.provider_id,
                    "message_id": request.message_id,
                    "subject": request.subject,
                    "text": text,
                    "html": request.html[: self._s.max_chars] if request.html else None,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(
                f"Extractor returned HTTP {exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"Extractor request failed: {exc}") from exc

        if response.status_code == httpx.codes.NO_CONTENT:
            return None

        logger.debug(
            "Extractor responded",
            extra={
                "provider_id": request.provider_id,
                "message_id": request.message_id,
                "status_code": response.status_code,
            },
        )
        return parse_candidate_payload(response.text, provider_id=request.provider_id)
