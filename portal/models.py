"""Database models for users, watchlist sync state and distributed locks."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from portal.db import Base
from portal.utils.time import utcnow

GLOBAL_CONFIG_ID = "config"


class WatchlistSyncStatus(str, Enum):
    """Per-item outcome of the most recent sync attempt."""

    SYNCED = "SYNCED"
    REQUESTED = "REQUESTED"
    ALREADY_AVAILABLE = "ALREADY_AVAILABLE"
    ALREADY_REQUESTED = "ALREADY_REQUESTED"
    FAILED = "FAILED"
    REMOVED_FROM_WATCHLIST = "REMOVED_FROM_WATCHLIST"


TERMINAL_SYNC_STATUSES = frozenset(
    {
        WatchlistSyncStatus.REQUESTED,
        WatchlistSyncStatus.ALREADY_AVAILABLE,
        WatchlistSyncStatus.ALREADY_REQUESTED,
    }
)


class MediaType(str, Enum):
    MOVIE = "MOVIE"
    TV_SERIES = "TV_SERIES"


class SyncRunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True, unique=True)
    plex_auth_token = Column(Text, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RequestService(Base):
    """A downstream request-management server (Overseerr)."""

    __tablename__ = "request_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    url = Column(String(1024), nullable=False)
    api_key = Column(String(512), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GlobalSyncConfig(Base):
    __tablename__ = "global_sync_config"

    id = Column(String(32), primary_key=True, default=GLOBAL_CONFIG_ID)
    watchlist_sync_enabled = Column(Boolean, nullable=False, default=False)
    watchlist_sync_interval_minutes = Column(Integer, nullable=False, default=60)
    updated_by = Column(String(64), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class WatchlistSyncSettings(Base):
    __tablename__ = "watchlist_sync_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    sync_enabled = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String(16), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    items_synced = Column(Integer, nullable=False, default=0)
    items_requested = Column(Integer, nullable=False, default=0)
    total_items_synced = Column(Integer, nullable=False, default=0)
    total_items_requested = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_watchlist_sync_settings_due", "sync_enabled", "last_sync_at"),)


class WatchlistSyncHistory(Base):
    __tablename__ = "watchlist_sync_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    external_key = Column(String(255), nullable=False)
    guid = Column(String(512), nullable=False)
    media_type = Column(String(16), nullable=False)
    title = Column(String(1024), nullable=False)
    year = Column(Integer, nullable=True)
    tmdb_id = Column(Integer, nullable=True)
    tvdb_id = Column(Integer, nullable=True)
    imdb_id = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default=WatchlistSyncStatus.SYNCED.value)
    synced_at = Column(DateTime, nullable=False, default=utcnow)
    requested_at = Column(DateTime, nullable=True)
    request_id = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "external_key", name="uq_watchlist_history_user_item"),
        Index("ix_watchlist_history_user_status", "user_id", "status"),
        Index("ix_watchlist_history_synced_at", "synced_at"),
    )


class DistributedLock(Base):
    __tablename__ = "distributed_locks"

    name = Column(String(128), primary_key=True)
    holder_id = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    last_renewed_at = Column(DateTime, nullable=False)


__all__ = [
    "GLOBAL_CONFIG_ID",
    "TERMINAL_SYNC_STATUSES",
    "DistributedLock",
    "GlobalSyncConfig",
    "MediaType",
    "RequestService",
    "SyncRunStatus",
    "User",
    "WatchlistSyncHistory",
    "WatchlistSyncSettings",
]
