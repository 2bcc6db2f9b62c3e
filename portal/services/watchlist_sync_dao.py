"""Database access helpers for watchlist sync.

The service layer is asynchronous while SQLAlchemy stays synchronous, so the
DAO exposes plain blocking primitives that callers run through
``asyncio.to_thread``. Every method opens its own short session; rows leave
the DAO as lightweight dataclasses, never as attached ORM instances.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.db import SessionFactory, session_scope
from portal.models import (
    GLOBAL_CONFIG_ID,
    GlobalSyncConfig,
    RequestService,
    User,
    WatchlistSyncHistory,
    WatchlistSyncSettings,
    WatchlistSyncStatus,
)
from portal.utils.time import utcnow

DEFAULT_INTERVAL_MINUTES = 60


@dataclass(slots=True, frozen=True)
class UserRow:
    id: str
    name: str | None
    email: str | None
    plex_auth_token: str | None
    is_admin: bool


@dataclass(slots=True, frozen=True)
class RequestServiceRow:
    id: int
    name: str
    url: str
    api_key: str


@dataclass(slots=True, frozen=True)
class GlobalSyncConfigRow:
    enabled: bool
    interval_minutes: int
    updated_by: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class SyncSettingsRow:
    user_id: str
    sync_enabled: bool
    last_sync_at: datetime | None
    last_sync_status: str | None
    last_sync_error: str | None
    items_synced: int
    items_requested: int
    total_items_synced: int
    total_items_requested: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncEnabled": self.sync_enabled,
            "lastSyncAt": self.last_sync_at,
            "lastSyncStatus": self.last_sync_status,
            "lastSyncError": self.last_sync_error,
            "itemsSynced": self.items_synced,
            "itemsRequested": self.items_requested,
            "totalItemsSynced": self.total_items_synced,
            "totalItemsRequested": self.total_items_requested,
        }


@dataclass(slots=True, frozen=True)
class HistoryRow:
    id: int
    user_id: str
    external_key: str
    guid: str
    media_type: str
    title: str
    year: int | None
    tmdb_id: int | None
    tvdb_id: int | None
    imdb_id: str | None
    status: str
    synced_at: datetime
    requested_at: datetime | None
    request_id: int | None
    user_name: str | None = None
    user_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "ratingKey": self.external_key,
            "guid": self.guid,
            "mediaType": self.media_type,
            "title": self.title,
            "year": self.year,
            "tmdbId": self.tmdb_id,
            "tvdbId": self.tvdb_id,
            "imdbId": self.imdb_id,
            "status": self.status,
            "syncedAt": self.synced_at,
            "requestedAt": self.requested_at,
            "requestId": self.request_id,
        }
        if self.user_name is not None or self.user_email is not None:
            payload["user"] = {"name": self.user_name, "email": self.user_email}
        return payload


@dataclass(slots=True)
class HistoryItemWrite:
    """Values written for one watchlist item during a run."""

    external_key: str
    guid: str
    media_type: str
    title: str
    status: WatchlistSyncStatus
    year: int | None = None
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None
    requested_at: datetime | None = None
    request_id: int | None = None


@dataclass(slots=True, frozen=True)
class SyncStats:
    users_with_sync_enabled: int
    total_items_synced: int
    total_items_requested: int
    recent: list[HistoryRow] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "usersWithSyncEnabled": self.users_with_sync_enabled,
            "totalItemsSynced": self.total_items_synced,
            "totalItemsRequested": self.total_items_requested,
            "recentSyncs": [row.to_dict() for row in self.recent],
        }


def _settings_row(record: WatchlistSyncSettings) -> SyncSettingsRow:
    return SyncSettingsRow(
        user_id=record.user_id,
        sync_enabled=bool(record.sync_enabled),
        last_sync_at=record.last_sync_at,
        last_sync_status=record.last_sync_status,
        last_sync_error=record.last_sync_error,
        items_synced=int(record.items_synced or 0),
        items_requested=int(record.items_requested or 0),
        total_items_synced=int(record.total_items_synced or 0),
        total_items_requested=int(record.total_items_requested or 0),
    )


def _history_row(
    record: WatchlistSyncHistory, user: User | None = None
) -> HistoryRow:
    return HistoryRow(
        id=record.id,
        user_id=record.user_id,
        external_key=record.external_key,
        guid=record.guid,
        media_type=record.media_type,
        title=record.title,
        year=record.year,
        tmdb_id=record.tmdb_id,
        tvdb_id=record.tvdb_id,
        imdb_id=record.imdb_id,
        status=record.status,
        synced_at=record.synced_at,
        requested_at=record.requested_at,
        request_id=record.request_id,
        user_name=user.name if user is not None else None,
        user_email=user.email if user is not None else None,
    )


class WatchlistSyncDAO:
    """Synchronous persistence primitives for watchlist sync."""

    def __init__(self, *, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    def get_user(self, user_id: str) -> UserRow | None:
        with self._session_factory() as session:
            record = session.get(User, str(user_id))
            if record is None:
                return None
            return UserRow(
                id=record.id,
                name=record.name,
                email=record.email,
                plex_auth_token=record.plex_auth_token,
                is_admin=bool(record.is_admin),
            )

    def get_global_config(self) -> GlobalSyncConfigRow:
        """Return the singleton config, defaulting to disabled every hour."""

        with self._session_factory() as session:
            record = session.get(GlobalSyncConfig, GLOBAL_CONFIG_ID)
            if record is None:
                return GlobalSyncConfigRow(enabled=False, interval_minutes=DEFAULT_INTERVAL_MINUTES)
            return GlobalSyncConfigRow(
                enabled=bool(record.watchlist_sync_enabled),
                interval_minutes=int(
                    record.watchlist_sync_interval_minutes or DEFAULT_INTERVAL_MINUTES
                ),
                updated_by=record.updated_by,
                updated_at=record.updated_at,
            )

    def upsert_global_config(
        self, *, enabled: bool, interval_minutes: int, updated_by: str | None
    ) -> GlobalSyncConfigRow:
        with self._session_factory() as session:
            record = session.get(GlobalSyncConfig, GLOBAL_CONFIG_ID)
            if record is None:
                record = GlobalSyncConfig(id=GLOBAL_CONFIG_ID)
                session.add(record)
            record.watchlist_sync_enabled = bool(enabled)
            record.watchlist_sync_interval_minutes = int(interval_minutes)
            record.updated_by = updated_by
            record.updated_at = utcnow()
            session.flush()
            return GlobalSyncConfigRow(
                enabled=bool(record.watchlist_sync_enabled),
                interval_minutes=int(record.watchlist_sync_interval_minutes),
                updated_by=record.updated_by,
                updated_at=record.updated_at,
            )

    def get_active_request_service(self) -> RequestServiceRow | None:
        with self._session_factory() as session:
            record = session.execute(
                select(RequestService)
                .where(RequestService.is_active.is_(True))
                .order_by(RequestService.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if record is None:
                return None
            return RequestServiceRow(
                id=record.id, name=record.name, url=record.url, api_key=record.api_key
            )

    def get_settings(self, user_id: str) -> SyncSettingsRow | None:
        with self._session_factory() as session:
            record = self._load_settings(session, user_id)
            return _settings_row(record) if record is not None else None

    def set_sync_enabled(self, user_id: str, enabled: bool) -> SyncSettingsRow:
        with self._session_factory() as session:
            record = self._ensure_settings(session, user_id)
            record.sync_enabled = bool(enabled)
            record.updated_at = utcnow()
            session.flush()
            return _settings_row(record)

    def record_sync_failure(self, user_id: str, *, error: str, at: datetime) -> None:
        """Persist a run that failed before any item was processed."""

        with self._session_factory() as session:
            record = self._ensure_settings(session, user_id)
            record.last_sync_at = at
            record.last_sync_status = "failed"
            record.last_sync_error = error
            record.updated_at = utcnow()

    def get_history_statuses(self, user_id: str) -> dict[str, str]:
        with self._session_factory() as session:
            rows = session.execute(
                select(WatchlistSyncHistory.external_key, WatchlistSyncHistory.status).where(
                    WatchlistSyncHistory.user_id == str(user_id)
                )
            ).all()
            return {str(key): str(status) for key, status in rows}

    def upsert_history_item(self, user_id: str, item: HistoryItemWrite, *, synced_at: datetime) -> None:
        """Create or update the history row keyed by ``(user_id, external_key)``."""

        def _apply(record: WatchlistSyncHistory) -> None:
            record.guid = item.guid
            record.media_type = item.media_type
            record.title = item.title
            record.year = item.year
            record.tmdb_id = item.tmdb_id
            record.tvdb_id = item.tvdb_id
            record.imdb_id = item.imdb_id
            record.status = item.status.value
            record.synced_at = synced_at
            if item.requested_at is not None:
                record.requested_at = item.requested_at
            if item.request_id is not None:
                record.request_id = item.request_id

        try:
            with self._session_factory() as session:
                record = self._load_history(session, user_id, item.external_key)
                if record is None:
                    record = WatchlistSyncHistory(user_id=str(user_id), external_key=item.external_key)
                    session.add(record)
                _apply(record)
        except IntegrityError:
            # A concurrent writer inserted the row; update it instead.
            with self._session_factory() as session:
                record = self._load_history(session, user_id, item.external_key)
                if record is None:
                    raise
                _apply(record)

    def record_sync_run(
        self,
        user_id: str,
        *,
        status: str,
        error: str | None,
        items_synced: int,
        items_requested: int,
        at: datetime,
    ) -> SyncSettingsRow:
        """Store the run outcome and add its counts to the running totals."""

        with self._session_factory() as session:
            record = self._ensure_settings(session, user_id)
            record.last_sync_at = at
            record.last_sync_status = status
            record.last_sync_error = error
            record.items_synced = int(items_synced)
            record.items_requested = int(items_requested)
            record.total_items_synced = int(record.total_items_synced or 0) + int(items_synced)
            record.total_items_requested = int(record.total_items_requested or 0) + int(
                items_requested
            )
            record.updated_at = utcnow()
            session.flush()
            return _settings_row(record)

    def list_due_user_ids(self, *, cutoff: datetime, limit: int) -> list[str]:
        if limit <= 0:
            return []
        with self._session_factory() as session:
            statement = (
                select(WatchlistSyncSettings.user_id)
                .where(WatchlistSyncSettings.sync_enabled.is_(True))
                .where(
                    or_(
                        WatchlistSyncSettings.last_sync_at.is_(None),
                        WatchlistSyncSettings.last_sync_at < cutoff,
                    )
                )
                .order_by(
                    WatchlistSyncSettings.last_sync_at.is_not(None),
                    WatchlistSyncSettings.last_sync_at.asc(),
                    WatchlistSyncSettings.id.asc(),
                )
                .limit(int(limit))
            )
            return [str(user_id) for user_id in session.execute(statement).scalars().all()]

    def list_history(
        self,
        user_id: str,
        *,
        limit: int,
        offset: int = 0,
        status: WatchlistSyncStatus | None = None,
    ) -> tuple[list[HistoryRow], int]:
        with self._session_factory() as session:
            filters = [WatchlistSyncHistory.user_id == str(user_id)]
            if status is not None:
                filters.append(WatchlistSyncHistory.status == status.value)
            total = int(
                session.execute(
                    select(func.count()).select_from(WatchlistSyncHistory).where(*filters)
                ).scalar_one()
            )
            records = (
                session.execute(
                    select(WatchlistSyncHistory)
                    .where(*filters)
                    .order_by(WatchlistSyncHistory.synced_at.desc(), WatchlistSyncHistory.id.desc())
                    .offset(max(0, int(offset)))
                    .limit(max(1, int(limit)))
                )
                .scalars()
                .all()
            )
            return [_history_row(record) for record in records], total

    def get_stats(self, *, recent_limit: int = 10) -> SyncStats:
        with self._session_factory() as session:
            enabled = session.execute(
                select(func.count())
                .select_from(WatchlistSyncSettings)
                .where(WatchlistSyncSettings.sync_enabled.is_(True))
            ).scalar_one()
            synced = session.execute(
                select(func.count()).select_from(WatchlistSyncHistory)
            ).scalar_one()
            requested = session.execute(
                select(func.count())
                .select_from(WatchlistSyncHistory)
                .where(WatchlistSyncHistory.status == WatchlistSyncStatus.REQUESTED.value)
            ).scalar_one()
            recent = session.execute(
                select(WatchlistSyncHistory, User)
                .join(User, User.id == WatchlistSyncHistory.user_id, isouter=True)
                .order_by(WatchlistSyncHistory.synced_at.desc(), WatchlistSyncHistory.id.desc())
                .limit(int(recent_limit))
            ).all()
            return SyncStats(
                users_with_sync_enabled=int(enabled),
                total_items_synced=int(synced),
                total_items_requested=int(requested),
                recent=[_history_row(history, user) for history, user in recent],
            )

    @staticmethod
    def _load_settings(session: Session, user_id: str) -> WatchlistSyncSettings | None:
        return session.execute(
            select(WatchlistSyncSettings).where(WatchlistSyncSettings.user_id == str(user_id))
        ).scalar_one_or_none()

    def _ensure_settings(self, session: Session, user_id: str) -> WatchlistSyncSettings:
        record = self._load_settings(session, user_id)
        if record is None:
            record = WatchlistSyncSettings(
                user_id=str(user_id),
                sync_enabled=False,
                items_synced=0,
                items_requested=0,
                total_items_synced=0,
                total_items_requested=0,
            )
            session.add(record)
        return record

    @staticmethod
    def _load_history(
        session: Session, user_id: str, external_key: str
    ) -> WatchlistSyncHistory | None:
        return session.execute(
            select(WatchlistSyncHistory)
            .where(WatchlistSyncHistory.user_id == str(user_id))
            .where(WatchlistSyncHistory.external_key == external_key)
        ).scalar_one_or_none()


def history_status_filter(value: str | None) -> WatchlistSyncStatus | None:
    if not value:
        return None
    return WatchlistSyncStatus(str(value).upper())


__all__ = [
    "DEFAULT_INTERVAL_MINUTES",
    "GlobalSyncConfigRow",
    "HistoryItemWrite",
    "HistoryRow",
    "RequestServiceRow",
    "SyncSettingsRow",
    "SyncStats",
    "UserRow",
    "WatchlistSyncDAO",
    "history_status_filter",
]
