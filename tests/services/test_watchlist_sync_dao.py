from datetime import datetime, timedelta

from portal.models import WatchlistSyncStatus
from portal.services.watchlist_sync_dao import (
    DEFAULT_INTERVAL_MINUTES,
    HistoryItemWrite,
    WatchlistSyncDAO,
    history_status_filter,
)
from tests.helpers import seed_request_service, seed_sync_settings, seed_user


def _write(key: str, status: WatchlistSyncStatus, **fields) -> HistoryItemWrite:
    return HistoryItemWrite(
        external_key=key,
        guid=f"plex://movie/{key}",
        media_type="MOVIE",
        title=fields.pop("title", f"Movie {key}"),
        status=status,
        **fields,
    )


def test_global_config_defaults_to_disabled_hourly() -> None:
    config = WatchlistSyncDAO().get_global_config()

    assert config.enabled is False
    assert config.interval_minutes == DEFAULT_INTERVAL_MINUTES


def test_global_config_upsert_keeps_single_row() -> None:
    dao = WatchlistSyncDAO()

    dao.upsert_global_config(enabled=True, interval_minutes=30, updated_by="admin-1")
    updated = dao.upsert_global_config(enabled=False, interval_minutes=120, updated_by="admin-2")

    assert updated.enabled is False
    assert updated.interval_minutes == 120
    assert dao.get_global_config().updated_by == "admin-2"


def test_active_request_service_ignores_inactive_rows() -> None:
    dao = WatchlistSyncDAO()
    assert dao.get_active_request_service() is None

    seed_request_service(active=False)
    assert dao.get_active_request_service() is None

    seed_request_service()
    service = dao.get_active_request_service()
    assert service is not None
    assert service.url == "http://overseerr.local"


def test_history_upsert_updates_existing_row() -> None:
    seed_user("u1")
    dao = WatchlistSyncDAO()
    first_sync = datetime(2024, 1, 1)
    requested_at = datetime(2024, 1, 1, 0, 5)

    dao.upsert_history_item(
        "u1",
        _write("k1", WatchlistSyncStatus.REQUESTED, request_id=7, requested_at=requested_at),
        synced_at=first_sync,
    )
    dao.upsert_history_item(
        "u1", _write("k1", WatchlistSyncStatus.ALREADY_AVAILABLE), synced_at=datetime(2024, 1, 2)
    )

    rows, total = dao.list_history("u1", limit=10)
    assert total == 1
    assert rows[0].status == WatchlistSyncStatus.ALREADY_AVAILABLE.value
    assert rows[0].request_id == 7
    assert rows[0].requested_at == requested_at
    assert dao.get_history_statuses("u1") == {"k1": "ALREADY_AVAILABLE"}


def test_list_history_filters_and_pages_newest_first() -> None:
    seed_user("u1")
    seed_user("u2")
    dao = WatchlistSyncDAO()
    base = datetime(2024, 1, 1)
    for offset, status in enumerate(
        [WatchlistSyncStatus.REQUESTED, WatchlistSyncStatus.FAILED, WatchlistSyncStatus.REQUESTED]
    ):
        dao.upsert_history_item(
            "u1", _write(f"k{offset}", status), synced_at=base + timedelta(hours=offset)
        )
    dao.upsert_history_item("u2", _write("other", WatchlistSyncStatus.REQUESTED), synced_at=base)

    rows, total = dao.list_history("u1", limit=2, offset=0)
    assert total == 3
    assert [row.external_key for row in rows] == ["k2", "k1"]

    rows, total = dao.list_history("u1", limit=2, offset=2)
    assert [row.external_key for row in rows] == ["k0"]

    rows, total = dao.list_history("u1", limit=10, status=history_status_filter("requested"))
    assert total == 2
    assert {row.external_key for row in rows} == {"k0", "k2"}
    assert history_status_filter(None) is None


def test_record_sync_run_accumulates_totals() -> None:
    seed_user("u1")
    dao = WatchlistSyncDAO()
    at = datetime(2024, 3, 1)

    dao.record_sync_run(
        "u1", status="success", error=None, items_synced=3, items_requested=2, at=at
    )
    row = dao.record_sync_run(
        "u1", status="partial", error="x: boom", items_synced=1, items_requested=0, at=at
    )

    assert row.sync_enabled is False
    assert (row.items_synced, row.items_requested) == (1, 0)
    assert (row.total_items_synced, row.total_items_requested) == (4, 2)
    assert row.last_sync_status == "partial"
    assert row.to_dict()["lastSyncError"] == "x: boom"


def test_due_users_prefer_never_synced_and_skip_recent() -> None:
    now = datetime(2024, 6, 1, 12, 0)
    for user_id in ("fresh", "stale", "never", "off"):
        seed_user(user_id)
    seed_sync_settings("fresh", last_sync_at=now - timedelta(minutes=5))
    seed_sync_settings("stale", last_sync_at=now - timedelta(hours=3))
    seed_sync_settings("never")
    seed_sync_settings("off", enabled=False)
    dao = WatchlistSyncDAO()

    due = dao.list_due_user_ids(cutoff=now - timedelta(hours=1), limit=10)

    assert due == ["never", "stale"]
    assert dao.list_due_user_ids(cutoff=now - timedelta(hours=1), limit=1) == ["never"]
    assert dao.list_due_user_ids(cutoff=now, limit=0) == []


def test_stats_count_enabled_users_and_requests() -> None:
    seed_user("u1", name="Ada")
    seed_user("u2")
    seed_sync_settings("u1")
    seed_sync_settings("u2", enabled=False)
    dao = WatchlistSyncDAO()
    dao.upsert_history_item("u1", _write("a", WatchlistSyncStatus.REQUESTED), synced_at=datetime(2024, 1, 1))
    dao.upsert_history_item("u1", _write("b", WatchlistSyncStatus.FAILED), synced_at=datetime(2024, 1, 2))

    stats = dao.get_stats()

    assert stats.users_with_sync_enabled == 1
    assert stats.total_items_synced == 2
    assert stats.total_items_requested == 1
    recent = stats.to_dict()["recentSyncs"]
    assert [entry["ratingKey"] for entry in recent] == ["b", "a"]
    assert recent[0]["user"] == {"name": "Ada", "email": "u1@example.com"}


def test_set_sync_enabled_creates_settings_row() -> None:
    seed_user("u1")
    dao = WatchlistSyncDAO()
    assert dao.get_settings("u1") is None

    row = dao.set_sync_enabled("u1", True)

    assert row.sync_enabled is True
    assert row.total_items_synced == 0
