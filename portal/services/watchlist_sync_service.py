"""Sync Plex watchlists into Overseerr requests."""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from portal.config import WatchlistSyncConfig
from portal.core.overseerr_client import (
    OverseerrClient,
    RequestPayload,
    RequestResult,
    RequestStatus,
)
from portal.core.plex_watchlist_client import (
    PlexClientError,
    PlexTokenError,
    PlexWatchlistClient,
    WatchlistItem,
)
from portal.errors import ErrorCode
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.models import (
    TERMINAL_SYNC_STATUSES,
    MediaType,
    SyncRunStatus,
    WatchlistSyncStatus,
)
from portal.services.lock_manager import DistributedLockManager
from portal.services.watchlist_sync_dao import (
    HistoryItemWrite,
    RequestServiceRow,
    UserRow,
    WatchlistSyncDAO,
)
from portal.utils.time import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

OverseerrFactory = Callable[[RequestServiceRow], OverseerrClient]

_MAX_RETURNED_ERRORS = 10
_TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_SYNC_STATUSES)

DISABLED_GLOBALLY = "Watchlist sync is disabled globally"
LEASE_LOST = "Watchlist sync lease lost for this user"


def user_lock_name(user_id: str) -> str:
    return f"watchlist-sync:user:{user_id}"


@dataclass(slots=True)
class SyncResult:
    items_synced: int = 0
    items_requested: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def run_status(self) -> SyncRunStatus:
        if self.items_failed > 0:
            return SyncRunStatus.PARTIAL if self.items_synced > 0 else SyncRunStatus.FAILED
        return SyncRunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "itemsSynced": self.items_synced,
            "itemsRequested": self.items_requested,
            "itemsSkipped": self.items_skipped,
            "itemsFailed": self.items_failed,
        }
        if self.errors:
            payload["errors"] = list(self.errors[:_MAX_RETURNED_ERRORS])
        return payload


@dataclass(slots=True)
class SyncUserWatchlistResult:
    success: bool
    data: SyncResult | None = None
    error: str | None = None
    code: ErrorCode | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, data: SyncResult) -> SyncUserWatchlistResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls, message: str, code: ErrorCode, *, retryable: bool = False
    ) -> SyncUserWatchlistResult:
        return cls(success=False, error=message, code=code, retryable=retryable)


@dataclass(slots=True)
class BatchSyncResult:
    users_processed: int = 0
    users_succeeded: int = 0
    users_failed: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "usersProcessed": self.users_processed,
            "usersSucceeded": self.users_succeeded,
            "usersFailed": self.users_failed,
        }
        if self.skipped:
            payload["skipped"] = True
            payload["reason"] = DISABLED_GLOBALLY
        return payload


def _request_media_type(item: WatchlistItem) -> str:
    return "movie" if item.type == "movie" else "tv"


def _history_media_type(item: WatchlistItem) -> str:
    return MediaType.MOVIE.value if item.type == "movie" else MediaType.TV_SERIES.value


_RESULT_STATUS = {
    RequestStatus.CREATED: WatchlistSyncStatus.REQUESTED,
    RequestStatus.ALREADY_AVAILABLE: WatchlistSyncStatus.ALREADY_AVAILABLE,
    RequestStatus.ALREADY_REQUESTED: WatchlistSyncStatus.ALREADY_REQUESTED,
}


class WatchlistSyncService:
    """Run watchlist syncs for one user or for every user that is due.

    A run for a given user is single-flight: it holds the lease
    ``watchlist-sync:user:<id>`` for its whole duration and renews it every
    third of the TTL. A run whose renewal fails stops processing items and
    does not record its counters.
    """

    def __init__(
        self,
        *,
        dao: WatchlistSyncDAO,
        plex_client: PlexWatchlistClient,
        overseerr_factory: OverseerrFactory,
        lock_manager: DistributedLockManager,
        config: WatchlistSyncConfig,
        instance_id: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._dao = dao
        self._plex = plex_client
        self._overseerr_factory = overseerr_factory
        self._locks = lock_manager
        self._config = config
        self._instance_id = instance_id
        self._sleep = sleep

    async def _db(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def is_globally_enabled(self) -> bool:
        if not self._config.enabled:
            return False
        config = await self._db(self._dao.get_global_config)
        return config.enabled

    async def sync_user_watchlist(self, user_id: str) -> SyncUserWatchlistResult:
        user = await self._db(self._dao.get_user, user_id)
        if user is None:
            return SyncUserWatchlistResult.fail("User not found", ErrorCode.NOT_FOUND)
        if not await self.is_globally_enabled():
            return SyncUserWatchlistResult.fail(DISABLED_GLOBALLY, ErrorCode.INVALID_STATE)

        lock_name = user_lock_name(user.id)
        holder = f"{self._instance_id}:{secrets.token_hex(4)}"
        if not await self._locks.try_acquire(lock_name, holder, self._config.user_lock_ttl_s):
            return SyncUserWatchlistResult.fail(
                "Watchlist sync already in progress for this user", ErrorCode.INVALID_STATE
            )

        started = time.perf_counter()
        lease_lost = asyncio.Event()
        heartbeat = asyncio.create_task(
            self._keep_lease(lock_name, holder, lease_lost),
            name=f"watchlist-sync-lease:{user.id}",
        )
        try:
            result = await self._run(user, lease_lost)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            await self._locks.release(lock_name, holder)

        duration_ms = int((time.perf_counter() - started) * 1000)
        if result.success and result.data is not None:
            log_event(
                logger,
                "watchlist.sync",
                user_id=user.id,
                status=result.data.run_status.value,
                items_synced=result.data.items_synced,
                items_requested=result.data.items_requested,
                items_skipped=result.data.items_skipped,
                items_failed=result.data.items_failed,
                duration_ms=duration_ms,
            )
        else:
            log_event(
                logger,
                "watchlist.sync",
                user_id=user.id,
                status="error",
                error=result.error,
                duration_ms=duration_ms,
            )
        return result

    async def _keep_lease(self, lock_name: str, holder: str, lost: asyncio.Event) -> None:
        ttl_s = self._config.user_lock_ttl_s
        interval_s = max(ttl_s / 3, 0.05)
        while True:
            await asyncio.sleep(interval_s)
            try:
                renewed = await self._locks.renew(lock_name, holder, ttl_s)
            except SQLAlchemyError:
                logger.warning("Renewing %s failed", lock_name, exc_info=True)
                renewed = False
            if not renewed:
                lost.set()
                return

    async def _record_failure(self, user_id: str, error: str) -> None:
        await self._db(self._dao.record_sync_failure, user_id, error=error, at=utcnow())

    async def _run(self, user: UserRow, lease_lost: asyncio.Event) -> SyncUserWatchlistResult:
        token = user.plex_auth_token
        if not token:
            logger.warning("User %s has no Plex auth token", user.id)
            await self._record_failure(user.id, "No Plex auth token - please log in again")
            return SyncUserWatchlistResult.fail("No Plex auth token", ErrorCode.DEPENDENCY_ERROR)

        if not await self._plex.validate_token(token):
            logger.warning("Plex token for user %s is invalid or expired", user.id)
            await self._record_failure(user.id, "Plex token expired - please log in again")
            return SyncUserWatchlistResult.fail(
                "Plex token is invalid or expired", ErrorCode.DEPENDENCY_ERROR
            )

        service = await self._db(self._dao.get_active_request_service)
        if service is None:
            logger.warning("No active Overseerr configured; skipping user %s", user.id)
            await self._record_failure(user.id, "No Overseerr server configured")
            return SyncUserWatchlistResult.fail(
                "No Overseerr server configured", ErrorCode.DEPENDENCY_ERROR
            )

        try:
            items = await self._plex.get_watchlist(token)
        except PlexTokenError as exc:
            await self._record_failure(user.id, str(exc))
            return SyncUserWatchlistResult.fail(str(exc), ErrorCode.DEPENDENCY_ERROR)
        except PlexClientError as exc:
            await self._record_failure(user.id, str(exc))
            return SyncUserWatchlistResult.fail(
                str(exc), ErrorCode.DEPENDENCY_ERROR, retryable=True
            )

        existing = await self._db(self._dao.get_history_statuses, user.id)
        overseerr = self._overseerr_factory(service)
        result = SyncResult()

        for item in items:
            if lease_lost.is_set():
                break
            if existing.get(item.rating_key) in _TERMINAL_VALUES:
                result.items_skipped += 1
                continue
            if item.tmdb_id is None:
                logger.debug("Skipping %r without a TMDB id", item.title)
                result.items_skipped += 1
                continue
            try:
                outcome = await overseerr.submit_request(
                    RequestPayload(media_type=_request_media_type(item), media_id=item.tmdb_id)
                )
                write = self._history_write(item, outcome)
                await self._db(
                    self._dao.upsert_history_item, user.id, write, synced_at=utcnow()
                )
            except Exception:
                logger.exception("Error processing watchlist item %r for user %s", item.title, user.id)
                result.items_failed += 1
                result.errors.append(f"{item.title}: Processing error")
                continue
            result.items_synced += 1
            if write.status is WatchlistSyncStatus.REQUESTED:
                result.items_requested += 1
            elif write.status is WatchlistSyncStatus.FAILED:
                result.items_failed += 1
                if outcome.error:
                    result.errors.append(f"{item.title}: {outcome.error}")

        if lease_lost.is_set():
            # Counters are only recorded while the lease is held.
            logger.warning("Lost sync lease for user %s; run totals not recorded", user.id)
            return SyncUserWatchlistResult.fail(LEASE_LOST, ErrorCode.INVALID_STATE)

        stored_error = (
            "; ".join(result.errors[: self._config.error_limit]) if result.errors else None
        )
        await self._db(
            self._dao.record_sync_run,
            user.id,
            status=result.run_status.value,
            error=stored_error,
            items_synced=result.items_synced,
            items_requested=result.items_requested,
            at=utcnow(),
        )
        return SyncUserWatchlistResult.ok(result)

    @staticmethod
    def _history_write(item: WatchlistItem, outcome: RequestResult) -> HistoryItemWrite:
        status = _RESULT_STATUS.get(outcome.status, WatchlistSyncStatus.FAILED)
        requested_at = utcnow() if status is WatchlistSyncStatus.REQUESTED else None
        return HistoryItemWrite(
            external_key=item.rating_key,
            guid=item.guid,
            media_type=_history_media_type(item),
            title=item.title,
            year=item.year,
            tmdb_id=item.tmdb_id,
            tvdb_id=item.tvdb_id,
            imdb_id=item.imdb_id,
            status=status,
            requested_at=requested_at,
            request_id=outcome.request_id,
        )

    async def sync_all_due_users(self) -> BatchSyncResult:
        """Sync a batch of users whose last sync is older than the interval."""

        if not await self.is_globally_enabled():
            log_event(logger, "watchlist.sync_all", status="skipped", reason=DISABLED_GLOBALLY)
            return BatchSyncResult(skipped=True)

        started = time.perf_counter()
        config = await self._db(self._dao.get_global_config)
        cutoff = utcnow() - timedelta(minutes=config.interval_minutes)
        user_ids = await self._db(
            self._dao.list_due_user_ids, cutoff=cutoff, limit=self._config.batch_size
        )
        batch = BatchSyncResult(users_processed=len(user_ids))
        delay_s = self._config.user_delay_ms / 1000
        for index, user_id in enumerate(user_ids):
            try:
                outcome = await self.sync_user_watchlist(user_id)
            except Exception:
                logger.exception("Error syncing watchlist for user %s in batch", user_id)
                batch.users_failed += 1
            else:
                if outcome.success:
                    batch.users_succeeded += 1
                else:
                    batch.users_failed += 1
            if delay_s > 0 and index < len(user_ids) - 1:
                await self._sleep(delay_s)

        log_event(
            logger,
            "watchlist.sync_all",
            status="completed",
            users_processed=batch.users_processed,
            users_succeeded=batch.users_succeeded,
            users_failed=batch.users_failed,
            interval_minutes=config.interval_minutes,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return batch


__all__ = [
    "BatchSyncResult",
    "DISABLED_GLOBALLY",
    "LEASE_LOST",
    "OverseerrFactory",
    "SyncResult",
    "SyncUserWatchlistResult",
    "WatchlistSyncService",
    "user_lock_name",
]
