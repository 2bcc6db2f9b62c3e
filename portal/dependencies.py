"""FastAPI dependency providers."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Header, Request

from portal.config import AppConfig, load_config
from portal.errors import DependencyError
from portal.orchestrator.bootstrap import BackgroundRuntime
from portal.services.access import Actor
from portal.services.queue_admin import QueueAdminService
from portal.services.watchlist_actions import WatchlistActions

ADMIN_ROLE = "admin"


@lru_cache
def get_app_config() -> AppConfig:
    return load_config()


def get_runtime(request: Request) -> BackgroundRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, BackgroundRuntime):
        raise DependencyError("Background runtime is not initialised")
    return runtime


def get_queue_admin_service(request: Request) -> QueueAdminService:
    return get_runtime(request).queue_admin


def get_watchlist_actions(request: Request) -> WatchlistActions:
    return get_runtime(request).watchlist_actions


def get_actor(
    x_portal_user: str | None = Header(default=None),
    x_portal_role: str | None = Header(default=None),
) -> Actor | None:
    """Resolve the caller from headers set by the authenticating proxy.

    Returns ``None`` for anonymous requests; actions decide whether that is
    acceptable.
    """

    user_id = (x_portal_user or "").strip()
    if not user_id:
        return None
    role = (x_portal_role or "").strip().lower()
    return Actor(user_id=user_id, is_admin=role == ADMIN_ROLE)


__all__ = [
    "ADMIN_ROLE",
    "get_actor",
    "get_app_config",
    "get_queue_admin_service",
    "get_runtime",
    "get_watchlist_actions",
]
