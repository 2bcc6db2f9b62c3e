"""Job types and the handlers the worker dispatches them to."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from portal.errors import ErrorCode
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.workers.persistence import QueueJobDTO

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from portal.services.watchlist_sync_service import WatchlistSyncService

logger = get_logger(__name__)


class JobType(str, Enum):
    """Every job type the worker understands."""

    WATCHLIST_SYNC_USER = "watchlist:sync:user"
    WATCHLIST_SYNC_ALL = "watchlist:sync:all"


JobHandler = Callable[[QueueJobDTO], Awaitable[Mapping[str, Any] | None]]

WATCHLIST_SCHEDULER_ID = "watchlist-sync-scheduled"


class JobFailedError(Exception):
    """A handler failure that may succeed when the job runs again."""

    retryable = True


class UnrecoverableJobError(JobFailedError):
    """A handler failure that retrying cannot fix."""

    retryable = False


class MissingHandlersError(RuntimeError):
    def __init__(self, missing: set[JobType]) -> None:
        names = ", ".join(sorted(job_type.value for job_type in missing))
        super().__init__(f"No handler registered for job type(s): {names}")
        self.missing = missing


def ensure_exhaustive(handlers: Mapping[JobType, JobHandler]) -> None:
    """Raise unless ``handlers`` covers every :class:`JobType`."""

    missing = set(JobType) - set(handlers)
    if missing:
        raise MissingHandlersError(missing)


def sync_user_dedup_key(user_id: str) -> str:
    return f"{JobType.WATCHLIST_SYNC_USER.value}:{user_id}"


@dataclass(slots=True)
class WatchlistHandlerDeps:
    service: "WatchlistSyncService"


_UNRECOVERABLE_CODES = frozenset(
    {ErrorCode.NOT_FOUND, ErrorCode.VALIDATION_ERROR, ErrorCode.UNAUTHORIZED}
)


def build_sync_user_handler(deps: WatchlistHandlerDeps) -> JobHandler:
    async def _handler(job: QueueJobDTO) -> Mapping[str, Any] | None:
        user_id = str(job.payload.get("userId") or "").strip()
        if not user_id:
            raise UnrecoverableJobError("Job payload is missing userId")

        result = await deps.service.sync_user_watchlist(user_id)
        if result.success and result.data is not None:
            return result.data.to_dict()
        if result.code is ErrorCode.INVALID_STATE:
            # Disabled globally or another run for this user is in flight.
            log_event(
                logger,
                "worker.job",
                job_id=job.id,
                job_type=job.type,
                status="skipped",
                reason=result.error,
            )
            return {"skipped": True, "reason": result.error}
        message = result.error or "Watchlist sync failed"
        if result.code in _UNRECOVERABLE_CODES or not result.retryable:
            raise UnrecoverableJobError(message)
        raise JobFailedError(message)

    return _handler


def build_sync_all_handler(deps: WatchlistHandlerDeps) -> JobHandler:
    async def _handler(job: QueueJobDTO) -> Mapping[str, Any] | None:
        batch = await deps.service.sync_all_due_users()
        return batch.to_dict()

    return _handler


def build_job_handlers(deps: WatchlistHandlerDeps) -> dict[JobType, JobHandler]:
    handlers: dict[JobType, JobHandler] = {
        JobType.WATCHLIST_SYNC_USER: build_sync_user_handler(deps),
        JobType.WATCHLIST_SYNC_ALL: build_sync_all_handler(deps),
    }
    ensure_exhaustive(handlers)
    return handlers


__all__ = [
    "JobFailedError",
    "JobHandler",
    "JobType",
    "MissingHandlersError",
    "UnrecoverableJobError",
    "WATCHLIST_SCHEDULER_ID",
    "WatchlistHandlerDeps",
    "build_job_handlers",
    "build_sync_all_handler",
    "build_sync_user_handler",
    "ensure_exhaustive",
    "sync_user_dedup_key",
]
