from pathlib import Path

from portal.config import (
    DEFAULT_QUEUE_NAME,
    LockConfig,
    QueueConfig,
    WatchlistSyncConfig,
    load_config,
    load_runtime_env,
)


def test_load_config_defaults_without_redis() -> None:
    config = load_config({})

    assert config.queue.redis_url is None
    assert config.queue.enabled is False
    assert config.queue.name == DEFAULT_QUEUE_NAME
    assert config.queue.global_concurrency == 5
    assert config.queue.default_attempts == 3
    assert config.queue.backoff_base_ms == 5_000
    assert config.database.url == "sqlite:///./portal.db"
    assert config.watchlist_sync.enabled is True
    assert config.watchlist_sync.error_limit == 3
    assert config.workers_enabled is True


def test_queue_pool_limits_parse_job_type_keys() -> None:
    config = QueueConfig.from_env(
        {"QUEUE_POOL_WATCHLIST_SYNC_USER": "4", "QUEUE_POOL_WATCHLIST_SYNC_ALL": "0"}
    )

    assert config.pool_limit("watchlist:sync:user") == 4
    assert config.pool_limit("watchlist:sync:all") == 1
    assert config.pool_limit("unknown") == 1


def test_queue_lease_is_at_least_two_heartbeats() -> None:
    config = QueueConfig.from_env({"QUEUE_HEARTBEAT_S": "20", "QUEUE_LEASE_TIMEOUT_S": "10"})

    assert config.heartbeat_s == 20
    assert config.lease_timeout_s == 40


def test_queue_max_stalled_defaults_to_one_and_clamps() -> None:
    assert QueueConfig.from_env({}).max_stalled == 1
    assert QueueConfig.from_env({"QUEUE_MAX_STALLED": "-2"}).max_stalled == 0
    assert QueueConfig.from_env({"QUEUE_MAX_STALLED": "3"}).max_stalled == 3


def test_lock_config_renews_at_least_twice_per_lease() -> None:
    config = LockConfig.from_env(
        {"LOCK_TTL_S": "10", "LOCK_RENEW_INTERVAL_S": "9", "INSTANCE_ID": "node-a"}
    )

    assert config.ttl_s == 10
    assert config.renew_interval_s == 5
    assert config.instance_id == "node-a"


def test_default_instance_ids_are_unique() -> None:
    assert LockConfig().instance_id != LockConfig().instance_id


def test_upstream_timeouts_are_clamped() -> None:
    config = WatchlistSyncConfig.from_env({"PLEX_TIMEOUT_MS": "10", "OVERSEERR_TIMEOUT_MS": "99999"})

    assert config.plex_timeout_ms == 1_000
    assert config.overseerr_timeout_ms == 30_000


def test_process_switch_and_worker_flag() -> None:
    config = load_config({"ENABLE_WATCHLIST_SYNC": "false", "PORTAL_DISABLE_WORKERS": "1"})

    assert config.watchlist_sync.enabled is False
    assert config.workers_enabled is False


def test_environment_wins_over_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("QUEUE_NAME=from-file\n# comment\nLOCK_NAME='file-lock'\n", encoding="utf-8")

    env = load_runtime_env(env_file=env_file, base_env={"QUEUE_NAME": "from-env"})

    assert env["QUEUE_NAME"] == "from-env"
    assert env["LOCK_NAME"] == "file-lock"
