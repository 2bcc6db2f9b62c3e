"""Clients for the upstream Plex and Overseerr services."""

from .overseerr_client import OverseerrClient, RequestPayload, RequestResult, RequestStatus
from .plex_watchlist_client import (
    PlexClientError,
    PlexTokenError,
    PlexWatchlistClient,
    WatchlistItem,
)

__all__ = [
    "OverseerrClient",
    "PlexClientError",
    "PlexTokenError",
    "PlexWatchlistClient",
    "RequestPayload",
    "RequestResult",
    "RequestStatus",
    "WatchlistItem",
]
