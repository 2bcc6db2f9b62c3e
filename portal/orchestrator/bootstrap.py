"""Bootstrap helpers wiring the queue, worker, scheduler and leader election."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

from portal.config import AppConfig
from portal.core.overseerr_client import OverseerrClient
from portal.core.plex_watchlist_client import PlexWatchlistClient
from portal.logging import get_logger
from portal.orchestrator.handlers import WatchlistHandlerDeps, build_job_handlers
from portal.orchestrator.leader import LeaderElection
from portal.orchestrator.queue import JobQueue
from portal.orchestrator.scheduler import WatchlistSyncScheduler
from portal.orchestrator.worker import JobWorker
from portal.services.lock_manager import DistributedLockManager
from portal.services.queue_admin import QueueAdminService
from portal.services.watchlist_actions import WatchlistActions
from portal.services.watchlist_sync_dao import RequestServiceRow, WatchlistSyncDAO
from portal.services.watchlist_sync_service import OverseerrFactory, WatchlistSyncService

logger = get_logger(__name__)


class BackgroundService(Protocol):
    """A collaborator that only runs on the leader instance."""

    async def start(self) -> object: ...

    async def stop(self) -> None: ...


def build_overseerr_factory(timeout_ms: int) -> OverseerrFactory:
    def _factory(service: RequestServiceRow) -> OverseerrClient:
        return OverseerrClient(base_url=service.url, api_key=service.api_key, timeout_ms=timeout_ms)

    return _factory


def build_redis_client(config: AppConfig) -> Redis | None:
    url = config.queue.redis_url
    if not url:
        return None
    return redis_from_url(
        url,
        decode_responses=True,
        socket_timeout=config.queue.socket_timeout_s,
        socket_connect_timeout=config.queue.socket_timeout_s,
    )


@dataclass(slots=True)
class BackgroundRuntime:
    """Container bundling background components and the services built on them."""

    config: AppConfig
    dao: WatchlistSyncDAO
    lock_manager: DistributedLockManager
    sync_service: WatchlistSyncService
    queue_admin: QueueAdminService
    watchlist_actions: WatchlistActions
    queue: JobQueue | None = None
    worker: JobWorker | None = None
    scheduler: WatchlistSyncScheduler | None = None
    leader: LeaderElection | None = None
    services: list[BackgroundService] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        redis: Redis | None = None,
        plex_client: PlexWatchlistClient | None = None,
        overseerr_factory: OverseerrFactory | None = None,
        services: Sequence[BackgroundService] = (),
    ) -> BackgroundRuntime:
        sync_config = config.watchlist_sync
        dao = WatchlistSyncDAO()
        lock_manager = DistributedLockManager()
        sync_service = WatchlistSyncService(
            dao=dao,
            plex_client=plex_client
            or PlexWatchlistClient(
                client_identifier=sync_config.plex_client_identifier,
                timeout_ms=sync_config.plex_timeout_ms,
            ),
            overseerr_factory=overseerr_factory
            or build_overseerr_factory(sync_config.overseerr_timeout_ms),
            lock_manager=lock_manager,
            config=sync_config,
            instance_id=config.lock.instance_id,
        )

        client = redis if redis is not None else build_redis_client(config)
        queue: JobQueue | None = None
        worker: JobWorker | None = None
        scheduler: WatchlistSyncScheduler | None = None
        if client is not None:
            queue = JobQueue(client, config=config.queue, owns_client=redis is None)
            worker = JobWorker(
                queue,
                build_job_handlers(WatchlistHandlerDeps(service=sync_service)),
                config=config.queue,
            )
            scheduler = WatchlistSyncScheduler(queue, dao, sync_config)
        else:
            logger.warning("REDIS_URL is not set; background processing is disabled")

        runtime = cls(
            config=config,
            dao=dao,
            lock_manager=lock_manager,
            sync_service=sync_service,
            queue_admin=QueueAdminService(
                queue=queue,
                dao=dao,
                scheduler=scheduler,
                worker_running=lambda: worker is not None and worker.is_running,
                admin_config=config.admin,
                watchlist_config=sync_config,
            ),
            watchlist_actions=WatchlistActions(
                dao=dao, sync_service=sync_service, queue=queue, scheduler=scheduler
            ),
            queue=queue,
            worker=worker,
            scheduler=scheduler,
            services=list(services),
        )
        if queue is not None or runtime.services:
            runtime.leader = LeaderElection(
                lock_manager,
                config.lock,
                on_acquired=runtime._on_leadership_acquired,
                on_lost=runtime._on_leadership_lost,
            )
        return runtime

    def worker_running(self) -> bool:
        return self.worker is not None and self.worker.is_running

    @property
    def is_leader(self) -> bool:
        return self.leader is not None and self.leader.is_leader

    async def start(self) -> None:
        if self.leader is None:
            return
        await self.leader.start()

    async def close(self) -> None:
        if self.leader is not None:
            await self.leader.stop()
        if self.queue is not None:
            await self.queue.close()

    async def _on_leadership_acquired(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.start()
        if self.worker is not None:
            await self.worker.start()
        for service in self.services:
            await service.start()

    async def _on_leadership_lost(self) -> None:
        for service in reversed(self.services):
            await service.stop()
        if self.worker is not None:
            await self.worker.stop()
        if self.scheduler is not None:
            await self.scheduler.stop()


__all__ = [
    "BackgroundRuntime",
    "BackgroundService",
    "build_overseerr_factory",
    "build_redis_client",
]
