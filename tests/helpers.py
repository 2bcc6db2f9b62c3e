"""Seed helpers and fakes shared by the watchlist sync tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from portal.config import WatchlistSyncConfig
from portal.core.overseerr_client import RequestPayload, RequestResult, RequestStatus
from portal.core.plex_watchlist_client import WatchlistItem
from portal.db import session_scope
from portal.models import GlobalSyncConfig, RequestService, User, WatchlistSyncSettings
from portal.services.lock_manager import DistributedLockManager
from portal.services.watchlist_sync_dao import RequestServiceRow, WatchlistSyncDAO
from portal.services.watchlist_sync_service import WatchlistSyncService


def seed_user(user_id: str = "user-1", *, token: str | None = "plex-token", **fields: Any) -> str:
    with session_scope() as session:
        session.add(
            User(
                id=user_id,
                name=fields.get("name", f"User {user_id}"),
                email=fields.get("email", f"{user_id}@example.com"),
                plex_auth_token=token,
                is_admin=fields.get("is_admin", False),
            )
        )
    return user_id


def seed_request_service(*, active: bool = True) -> None:
    with session_scope() as session:
        session.add(
            RequestService(
                name="Overseerr",
                url="http://overseerr.local",
                api_key="secret",
                is_active=active,
            )
        )


def seed_global_config(*, enabled: bool = True, interval_minutes: int = 60) -> None:
    with session_scope() as session:
        session.merge(
            GlobalSyncConfig(
                id="config",
                watchlist_sync_enabled=enabled,
                watchlist_sync_interval_minutes=interval_minutes,
            )
        )


def seed_sync_settings(user_id: str, *, enabled: bool = True, **fields: Any) -> None:
    with session_scope() as session:
        session.add(
            WatchlistSyncSettings(
                user_id=user_id,
                sync_enabled=enabled,
                last_sync_at=fields.get("last_sync_at"),
                items_synced=0,
                items_requested=0,
                total_items_synced=0,
                total_items_requested=0,
            )
        )


def movie(rating_key: str, title: str, *, tmdb_id: int | None = 100) -> WatchlistItem:
    return WatchlistItem(
        rating_key=rating_key,
        guid=f"plex://movie/{rating_key}",
        type="movie",
        title=title,
        year=2020,
        tmdb_id=tmdb_id,
    )


class StubPlexClient:
    def __init__(
        self,
        items: list[WatchlistItem] | None = None,
        *,
        valid: bool = True,
        error: Exception | None = None,
    ) -> None:
        self.items = list(items or [])
        self.valid = valid
        self.error = error
        self.fetches = 0

    async def validate_token(self, token: str) -> bool:
        return self.valid

    async def get_watchlist(self, token: str) -> list[WatchlistItem]:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return list(self.items)


class StubOverseerrClient:
    def __init__(self, outcomes: Mapping[int, RequestResult] | None = None) -> None:
        self.outcomes = dict(outcomes or {})
        self.requests: list[RequestPayload] = []
        self.errors: dict[int, Exception] = {}

    async def submit_request(self, payload: RequestPayload) -> RequestResult:
        self.requests.append(payload)
        if payload.media_id in self.errors:
            raise self.errors[payload.media_id]
        return self.outcomes.get(
            payload.media_id,
            RequestResult(status=RequestStatus.CREATED, request_id=payload.media_id),
        )


class SlowOverseerrClient(StubOverseerrClient):
    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self.delay_s = delay_s

    async def submit_request(self, payload: RequestPayload) -> RequestResult:
        await asyncio.sleep(self.delay_s)
        return await super().submit_request(payload)


def build_sync_service(
    plex: StubPlexClient | None = None,
    overseerr: StubOverseerrClient | None = None,
    *,
    config: WatchlistSyncConfig | None = None,
    sleeps: list[float] | None = None,
    lock_manager: DistributedLockManager | None = None,
) -> WatchlistSyncService:
    overseerr_client = overseerr or StubOverseerrClient()

    def _factory(service: RequestServiceRow) -> Any:
        return overseerr_client

    async def _sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return WatchlistSyncService(
        dao=WatchlistSyncDAO(),
        plex_client=plex or StubPlexClient(),  # type: ignore[arg-type]
        overseerr_factory=_factory,
        lock_manager=lock_manager or DistributedLockManager(),
        config=config or WatchlistSyncConfig(),
        instance_id="test-instance",
        sleep=_sleep,
    )


__all__ = [
    "SlowOverseerrClient",
    "StubOverseerrClient",
    "StubPlexClient",
    "build_sync_service",
    "movie",
    "seed_global_config",
    "seed_request_service",
    "seed_sync_settings",
    "seed_user",
]
