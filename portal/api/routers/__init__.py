"""Domain-specific FastAPI routers."""

from .queue import router as queue_router
from .watchlist import admin_router as watchlist_admin_router
from .watchlist import router as watchlist_router

__all__ = ["queue_router", "watchlist_admin_router", "watchlist_router"]
