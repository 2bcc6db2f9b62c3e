"""User and admin actions around watchlist sync settings, history and runs."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from portal.errors import (
    ActionResult,
    AppError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    ValidationAppError,
)
from portal.logging import get_logger
from portal.orchestrator.handlers import JobType, sync_user_dedup_key
from portal.orchestrator.queue import JobOptions, JobQueue
from portal.orchestrator.scheduler import WatchlistSyncScheduler
from portal.schemas import (
    GlobalWatchlistSyncSettingsInput,
    UserWatchlistSyncSettingsInput,
    WatchlistHistoryQuery,
)
from portal.services.access import Actor, require_admin, require_user
from portal.services.watchlist_sync_dao import WatchlistSyncDAO, history_status_filter
from portal.services.watchlist_sync_service import DISABLED_GLOBALLY, WatchlistSyncService

logger = get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_RECENT_HISTORY_LIMIT = 5
_STATS_RECENT_LIMIT = 10

QUEUED_MESSAGE = "Sync job has been queued and will be processed shortly"


def _validate(model: type[M], payload: Mapping[str, Any] | None) -> M:
    try:
        return model.model_validate(dict(payload or {}))
    except ValidationError as exc:
        raise ValidationAppError("Invalid input") from exc


class WatchlistActions:
    """Actions behind the ``/api/watchlist`` and ``/api/admin/watchlist`` routes."""

    def __init__(
        self,
        *,
        dao: WatchlistSyncDAO,
        sync_service: WatchlistSyncService,
        queue: JobQueue | None = None,
        scheduler: WatchlistSyncScheduler | None = None,
    ) -> None:
        self._dao = dao
        self._sync = sync_service
        self._queue = queue
        self._scheduler = scheduler

    async def _db(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _guarded(
        self,
        check: Callable[[Actor | None], Actor],
        actor: Actor | None,
        action: Callable[[Actor], Awaitable[T]],
        *,
        failure: str,
    ) -> ActionResult[T]:
        try:
            caller = check(actor)
            return ActionResult.ok(await action(caller))
        except AppError as exc:
            return ActionResult.from_error(exc)
        except (SQLAlchemyError, RedisError, OSError):
            logger.exception(failure)
            return ActionResult.fail(failure, ErrorCode.INTERNAL_ERROR)

    # User actions

    async def get_watchlist_sync_settings(
        self, actor: Actor | None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(user: Actor) -> dict[str, Any]:
            account = await self._db(self._dao.get_user, user.user_id)
            settings = await self._db(self._dao.get_settings, user.user_id)
            service = await self._db(self._dao.get_active_request_service)
            config = await self._db(self._dao.get_global_config)
            recent: list[dict[str, Any]] = []
            if settings is not None and settings.sync_enabled:
                rows, _ = await self._db(
                    self._dao.list_history, user.user_id, limit=_RECENT_HISTORY_LIMIT
                )
                recent = [
                    {
                        "id": row.id,
                        "title": row.title,
                        "year": row.year,
                        "mediaType": row.media_type,
                        "status": row.status,
                        "syncedAt": row.synced_at,
                    }
                    for row in rows
                ]
            return {
                "hasPlexToken": bool(account and account.plex_auth_token),
                "hasOverseerr": service is not None,
                "globalSyncEnabled": config.enabled,
                "settings": settings.to_dict() if settings is not None else None,
                "recentHistory": recent,
            }

        return await self._guarded(
            require_user, actor, _load, failure="Failed to fetch settings"
        )

    async def update_watchlist_sync_settings(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _update(user: Actor) -> dict[str, Any]:
            data = _validate(UserWatchlistSyncSettingsInput, payload)
            if data.sync_enabled:
                account = await self._db(self._dao.get_user, user.user_id)
                if account is None or not account.plex_auth_token:
                    raise InvalidStateError("Please log in with Plex to enable watchlist sync")
                if await self._db(self._dao.get_active_request_service) is None:
                    raise InvalidStateError(
                        "Overseerr is not configured. Please contact an administrator."
                    )
                if not (await self._db(self._dao.get_global_config)).enabled:
                    raise InvalidStateError(
                        "Watchlist sync is not enabled globally. Please contact an administrator."
                    )
            settings = await self._db(self._dao.set_sync_enabled, user.user_id, data.sync_enabled)
            return settings.to_dict()

        return await self._guarded(
            require_user, actor, _update, failure="Failed to update settings"
        )

    async def trigger_watchlist_sync(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _trigger(user: Actor) -> dict[str, Any]:
            settings = await self._db(self._dao.get_settings, user.user_id)
            if settings is None or not settings.sync_enabled:
                raise InvalidStateError("Watchlist sync is not enabled")
            result = await self._sync.sync_user_watchlist(user.user_id)
            if not result.success or result.data is None:
                raise AppError(
                    result.error or "Sync failed",
                    code=result.code or ErrorCode.INTERNAL_ERROR,
                )
            return result.data.to_dict()

        return await self._guarded(
            require_user, actor, _trigger, failure="Failed to trigger sync"
        )

    async def get_watchlist_sync_history(
        self, actor: Actor | None, payload: Mapping[str, Any] | None = None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(user: Actor) -> dict[str, Any]:
            query = _validate(WatchlistHistoryQuery, payload)
            rows, total = await self._db(
                self._dao.list_history,
                user.user_id,
                limit=query.limit,
                offset=query.offset,
                status=history_status_filter(query.status),
            )
            return {
                "items": [row.to_dict() for row in rows],
                "total": total,
                "hasMore": query.offset + len(rows) < total,
            }

        return await self._guarded(
            require_user, actor, _load, failure="Failed to fetch history"
        )

    # Admin actions

    async def get_global_watchlist_sync_settings(
        self, actor: Actor | None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            config = await self._db(self._dao.get_global_config)
            return {"enabled": config.enabled, "intervalMinutes": config.interval_minutes}

        return await self._guarded(
            require_admin, actor, _load, failure="Failed to fetch settings"
        )

    async def update_global_watchlist_sync_settings(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _update(admin: Actor) -> dict[str, Any]:
            data = _validate(GlobalWatchlistSyncSettingsInput, payload)
            if data.enabled and await self._db(self._dao.get_active_request_service) is None:
                raise InvalidStateError(
                    "Cannot enable watchlist sync without an active Overseerr server"
                )
            config = await self._db(
                self._dao.upsert_global_config,
                enabled=data.enabled,
                interval_minutes=data.interval_minutes,
                updated_by=admin.user_id,
            )
            if self._scheduler is not None:
                try:
                    await self._scheduler.apply(
                        enabled=config.enabled, interval_minutes=config.interval_minutes
                    )
                except (RedisError, OSError):
                    # The scheduler's refresh loop reconciles on its next pass.
                    logger.warning("Failed to re-register watchlist schedule", exc_info=True)
            return {"enabled": config.enabled, "intervalMinutes": config.interval_minutes}

        return await self._guarded(
            require_admin, actor, _update, failure="Failed to update settings"
        )

    async def get_watchlist_sync_stats(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            stats = await self._db(self._dao.get_stats, recent_limit=_STATS_RECENT_LIMIT)
            return stats.to_dict()

        return await self._guarded(require_admin, actor, _load, failure="Failed to fetch stats")

    async def force_user_watchlist_sync(
        self, actor: Actor | None, user_id: str
    ) -> ActionResult[dict[str, Any]]:
        async def _force(_: Actor) -> dict[str, Any]:
            if not user_id or await self._db(self._dao.get_user, user_id) is None:
                raise NotFoundError("User not found")
            if not await self._sync.is_globally_enabled():
                raise InvalidStateError(DISABLED_GLOBALLY)
            if self._queue is not None:
                job_id = await self._queue.enqueue(
                    JobType.WATCHLIST_SYNC_USER,
                    {"userId": user_id, "triggeredBy": "admin"},
                    JobOptions(dedup_key=sync_user_dedup_key(user_id)),
                )
                return {"queued": True, "jobId": job_id, "message": QUEUED_MESSAGE}
            result = await self._sync.sync_user_watchlist(user_id)
            if not result.success or result.data is None:
                raise AppError(
                    result.error or "Sync failed",
                    code=result.code or ErrorCode.INTERNAL_ERROR,
                )
            return {"queued": False, **result.data.to_dict()}

        return await self._guarded(require_admin, actor, _force, failure="Failed to sync")


__all__ = ["QUEUED_MESSAGE", "WatchlistActions"]
