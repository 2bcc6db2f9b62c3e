"""Async client for submitting media requests to Overseerr."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any

import httpx

from portal.logging import get_logger

logger = get_logger(__name__)


class OverseerrMediaStatus(int, Enum):
    UNKNOWN = 1
    PENDING = 2
    PROCESSING = 3
    PARTIALLY_AVAILABLE = 4
    AVAILABLE = 5


class RequestStatus(str, Enum):
    CREATED = "created"
    ALREADY_REQUESTED = "already_requested"
    ALREADY_AVAILABLE = "already_available"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RequestPayload:
    media_type: str
    media_id: int
    seasons: Sequence[int] = ()
    is_4k: bool | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"mediaType": self.media_type, "mediaId": self.media_id}
        if self.seasons:
            body["seasons"] = list(self.seasons)
        if self.is_4k is not None:
            body["is4k"] = self.is_4k
        return body


@dataclass(slots=True, frozen=True)
class RequestResult:
    status: RequestStatus
    request_id: int | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class MediaStatus:
    status: int
    requests: list[Mapping[str, Any]] = field(default_factory=list)


class OverseerrError(RuntimeError):
    pass


class OverseerrClient:
    """Minimal Overseerr API wrapper used by watchlist sync."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_ms: int = 15000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not (base_url and api_key):
            raise ValueError("Overseerr configuration is incomplete")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_ms / 1000)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"X-Api-Key": self._api_key},
        )

    async def get_media_status(self, media_type: str, tmdb_id: int) -> MediaStatus | None:
        """Return the media entry, or ``None`` when Overseerr does not know it."""

        try:
            async with self._client() as client:
                response = await client.get(f"/api/v1/{media_type}/{int(tmdb_id)}")
                if response.status_code == HTTPStatus.NOT_FOUND:
                    return None
                if response.is_error:
                    raise OverseerrError(f"Overseerr API error: {response.reason_phrase}")
                data = response.json()
        except httpx.HTTPError as exc:
            raise OverseerrError(f"Overseerr fetch error: {exc}") from exc
        except ValueError as exc:
            raise OverseerrError("Failed to fetch Overseerr media status") from exc

        media_info = data.get("mediaInfo") if isinstance(data, Mapping) else None
        if not isinstance(media_info, Mapping):
            return MediaStatus(status=OverseerrMediaStatus.UNKNOWN.value)
        requests = media_info.get("requests") or []
        return MediaStatus(
            status=int(media_info.get("status") or OverseerrMediaStatus.UNKNOWN.value),
            requests=[entry for entry in requests if isinstance(entry, Mapping)],
        )

    async def submit_request(self, payload: RequestPayload) -> RequestResult:
        """Request ``payload`` unless it is already available or requested."""

        try:
            existing = await self.get_media_status(payload.media_type, payload.media_id)
        except OverseerrError as exc:
            # The pre-check is advisory; the request call reports real conflicts.
            logger.debug("Overseerr media status check failed: %s", exc)
            existing = None

        if existing is not None:
            if existing.status in (
                OverseerrMediaStatus.AVAILABLE,
                OverseerrMediaStatus.PARTIALLY_AVAILABLE,
            ):
                return RequestResult(status=RequestStatus.ALREADY_AVAILABLE)
            if existing.status in (OverseerrMediaStatus.PENDING, OverseerrMediaStatus.PROCESSING):
                request_id = existing.requests[0].get("id") if existing.requests else None
                return RequestResult(
                    status=RequestStatus.ALREADY_REQUESTED,
                    request_id=int(request_id) if isinstance(request_id, int) else None,
                )

        try:
            async with self._client() as client:
                response = await client.post("/api/v1/request", json=payload.to_body())
                if response.is_error:
                    return self._rejected(response, payload)
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error submitting Overseerr request: %s", exc)
            return RequestResult(status=RequestStatus.FAILED, error=str(exc) or "Unknown error")

        request_id = data.get("id") if isinstance(data, Mapping) else None
        logger.info(
            "Overseerr request submitted",
            extra={
                "event": "overseerr.request",
                "request_id": request_id,
                "tmdb_id": payload.media_id,
                "media_type": payload.media_type,
            },
        )
        return RequestResult(
            status=RequestStatus.CREATED,
            request_id=int(request_id) if isinstance(request_id, int) else None,
        )

    def _rejected(self, response: httpx.Response, payload: RequestPayload) -> RequestResult:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = ""
        if isinstance(body, Mapping):
            message = str(body.get("message") or "")
        message = message or response.reason_phrase or f"HTTP {response.status_code}"
        if response.status_code == HTTPStatus.CONFLICT or "already" in message:
            return RequestResult(status=RequestStatus.ALREADY_REQUESTED)
        logger.error(
            "Overseerr request submission failed with status %s: %s (tmdb %s)",
            response.status_code,
            message,
            payload.media_id,
        )
        return RequestResult(status=RequestStatus.FAILED, error=message)


__all__ = [
    "MediaStatus",
    "OverseerrClient",
    "OverseerrError",
    "OverseerrMediaStatus",
    "RequestPayload",
    "RequestResult",
    "RequestStatus",
]
