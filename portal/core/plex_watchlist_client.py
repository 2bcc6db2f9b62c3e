"""Async client for the Plex discover watchlist API."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

import httpx

from portal.logging import get_logger

logger = get_logger(__name__)

PLEX_DISCOVER_URL = "https://discover.provider.plex.tv"
PLEX_ACCOUNT_URL = "https://plex.tv/api/v2/user"

_PRODUCT = "Plex Wrapped"
_VERSION = "1.0.0"
_PLATFORM = "Web"


class PlexClientError(RuntimeError):
    """Base class for watchlist fetch failures."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status


class PlexTokenError(PlexClientError):
    """Raised when Plex rejects the user's token."""


@dataclass(slots=True, frozen=True)
class ExternalIds:
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None


@dataclass(slots=True, frozen=True)
class WatchlistItem:
    rating_key: str
    guid: str
    type: str
    title: str
    year: int | None = None
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None


def _parse_int(value: str) -> int | None:
    try:
        return int(value, 10)
    except (TypeError, ValueError):
        return None


def parse_external_ids(guids: Iterable[Mapping[str, Any]] | None) -> ExternalIds:
    """Extract TMDB/TVDB/IMDb ids from a Plex ``Guid`` array."""

    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None
    if not guids or not isinstance(guids, Iterable):
        return ExternalIds()
    for entry in guids:
        if not isinstance(entry, Mapping):
            continue
        value = str(entry.get("id") or "")
        if not value:
            continue
        if value.startswith("tmdb://"):
            parsed = _parse_int(value[len("tmdb://") :])
            if parsed is not None:
                tmdb_id = parsed
        elif value.startswith("tvdb://"):
            parsed = _parse_int(value[len("tvdb://") :])
            if parsed is not None:
                tvdb_id = parsed
        elif value.startswith("imdb://"):
            imdb_id = value[len("imdb://") :]
    return ExternalIds(tmdb_id=tmdb_id, tvdb_id=tvdb_id, imdb_id=imdb_id)


def parse_watchlist_guid(guid: str) -> tuple[str, str]:
    """Split a GUID such as ``plex://movie/5d77...`` into ``(kind, id)``."""

    if guid.startswith("plex://"):
        return "plex", guid.rsplit("/", 1)[-1]
    for prefix in ("tmdb", "tvdb", "imdb"):
        marker = f"{prefix}://"
        if guid.startswith(marker):
            return prefix, guid[len(marker) :]
    return "unknown", guid


def _parse_item(raw: Mapping[str, Any]) -> WatchlistItem:
    ids = parse_external_ids(raw.get("Guid"))
    year = raw.get("year")
    return WatchlistItem(
        rating_key=str(raw.get("ratingKey") or ""),
        guid=str(raw.get("guid") or ""),
        type=str(raw.get("type") or ""),
        title=str(raw.get("title") or ""),
        year=int(year) if isinstance(year, int) else None,
        tmdb_id=ids.tmdb_id,
        tvdb_id=ids.tvdb_id,
        imdb_id=ids.imdb_id,
    )


class PlexWatchlistClient:
    """Fetch watchlists on behalf of individual users.

    The client holds no user credentials; every call takes the user's token.
    """

    def __init__(
        self,
        *,
        client_identifier: str,
        timeout_ms: int = 15000,
        transport: httpx.AsyncBaseTransport | None = None,
        discover_url: str = PLEX_DISCOVER_URL,
        account_url: str = PLEX_ACCOUNT_URL,
    ) -> None:
        self._client_identifier = client_identifier
        self._timeout = httpx.Timeout(timeout_ms / 1000)
        self._transport = transport
        self._discover_url = discover_url.rstrip("/")
        self._account_url = account_url

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Plex-Token": token,
            "X-Plex-Client-Identifier": self._client_identifier,
            "X-Plex-Product": _PRODUCT,
            "X-Plex-Version": _VERSION,
            "X-Plex-Platform": _PLATFORM,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def get_watchlist(self, token: str) -> list[WatchlistItem]:
        url = f"{self._discover_url}/library/sections/watchlist/all"
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers(token))
                if response.status_code == HTTPStatus.UNAUTHORIZED:
                    logger.warning("Plex watchlist fetch unauthorized; token may be expired")
                    raise PlexTokenError(
                        "Plex token is invalid or expired", status=response.status_code
                    )
                if response.is_error:
                    logger.error(
                        "Plex watchlist fetch failed with status %s", response.status_code
                    )
                    raise PlexClientError(
                        f"Failed to fetch watchlist: {response.reason_phrase}",
                        status=response.status_code,
                    )
                payload = response.json()
        except PlexClientError:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error fetching Plex watchlist: %s", exc)
            raise PlexClientError("Failed to fetch watchlist") from exc

        container = payload.get("MediaContainer") if isinstance(payload, Mapping) else None
        metadata = container.get("Metadata") if isinstance(container, Mapping) else None
        if not metadata:
            return []
        items = [_parse_item(entry) for entry in metadata if isinstance(entry, Mapping)]
        logger.debug("Fetched %d watchlist items", len(items))
        return items

    async def validate_token(self, token: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(self._account_url, headers=self._headers(token))
        except httpx.HTTPError as exc:
            logger.debug("Error validating Plex token: %s", exc)
            return False
        return response.is_success


__all__ = [
    "ExternalIds",
    "PLEX_ACCOUNT_URL",
    "PLEX_DISCOVER_URL",
    "PlexClientError",
    "PlexTokenError",
    "PlexWatchlistClient",
    "WatchlistItem",
    "parse_external_ids",
    "parse_watchlist_guid",
]
