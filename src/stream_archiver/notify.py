"""Client for the transcoding service's "new replay" endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from .config import TranscoderSettings

logger = logging.getLogger(__name__)


class AcknowledgeTransportFailed(RuntimeError):
    """Raised when the transcoding service could not be reached at all."""


class AckVerdict(str, Enum):
    ACCEPTED = "accepted"
    RETRY = "retry"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class AcknowledgeResponse:
    status_code: int
    verdict: AckVerdict
    error: object | None = None


def interpret_status(
    status_code: int, retry_status_code: int, error: object | None = None
) -> AcknowledgeResponse:
    """Map an HTTP status onto accepted / retry / rejected."""

    if 200 <= status_code < 300:
        verdict = AckVerdict.ACCEPTED
    elif status_code == retry_status_code:
        verdict = AckVerdict.RETRY
    else:
        verdict = AckVerdict.REJECTED
    return AcknowledgeResponse(status_code=status_code, verdict=verdict, error=error)


def _error_body(response: httpx.Response) -> object | None:
    if 200 <= response.status_code < 300:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    text = response.text.strip()
    return text or None


class TranscoderNotifier:
    """Thin async HTTP client announcing transferred replays."""

    def __init__(
        self,
        settings: TranscoderSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    def apply_settings(self, settings: TranscoderSettings) -> None:
        self._settings = settings

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
        return self._client

    async def notify_new_replay(
        self, file_name: str, source: str, content_hash: str
    ) -> AcknowledgeResponse:
        form = {
            "file_name": file_name,
            "channel_id": source,
            "hash": content_hash,
        }
        if self._settings.secret:
            form["secret"] = self._settings.secret
        url = self._settings.notify_url
        client = await self._get_client()
        try:
            response = await client.post(url, data=form, timeout=self._settings.timeout_seconds)
        except httpx.TransportError as exc:
            raise AcknowledgeTransportFailed(
                f"Unable to reach transcoder at {url}: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise AcknowledgeTransportFailed(f"Transcoder request to {url} failed: {exc}") from exc
        result = interpret_status(
            response.status_code,
            self._settings.retry_status_code,
            _error_body(response),
        )
        logger.debug("Transcoder answered %s for %s (%s)", response.status_code, file_name, result.verdict.value)
        return result

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "AckVerdict",
    "AcknowledgeResponse",
    "AcknowledgeTransportFailed",
    "TranscoderNotifier",
    "interpret_status",
]
