"""Application configuration utilities for the portal worker."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import secrets
import socket
from typing import Any

DEFAULT_DATABASE_URL = "sqlite:///./portal.db"
DEFAULT_QUEUE_NAME = "plex-wrapped"
DEFAULT_QUEUE_WORKER_CONCURRENCY = 5
DEFAULT_QUEUE_POOL_LIMIT = 1
DEFAULT_QUEUE_ATTEMPTS = 3
DEFAULT_QUEUE_BACKOFF_BASE_MS = 5_000
DEFAULT_QUEUE_JITTER_PCT = 0
DEFAULT_QUEUE_POLL_INTERVAL_MS = 500
DEFAULT_QUEUE_LEASE_TIMEOUT_S = 60
DEFAULT_QUEUE_HEARTBEAT_S = 15
DEFAULT_QUEUE_COMPLETED_RETENTION_S = 24 * 60 * 60
DEFAULT_QUEUE_COMPLETED_MAX = 1_000
DEFAULT_QUEUE_FAILED_RETENTION_S = 7 * 24 * 60 * 60
DEFAULT_QUEUE_MAINTENANCE_INTERVAL_S = 30
DEFAULT_QUEUE_MAX_STALLED = 1
DEFAULT_REDIS_SOCKET_TIMEOUT_S = 5

DEFAULT_LOCK_NAME = "background-worker"
DEFAULT_LOCK_TTL_S = 30
DEFAULT_LOCK_RENEW_INTERVAL_S = 10

DEFAULT_WATCHLIST_SYNC_BATCH_SIZE = 50
DEFAULT_WATCHLIST_SYNC_USER_DELAY_MS = 1_000
DEFAULT_WATCHLIST_SYNC_ERROR_LIMIT = 3
DEFAULT_WATCHLIST_SYNC_USER_LOCK_TTL_S = 600
DEFAULT_WATCHLIST_SYNC_INTERVAL_MINUTES = 60
DEFAULT_WATCHLIST_SCHEDULE_REFRESH_S = 60
DEFAULT_UPSTREAM_TIMEOUT_MS = 15_000
MIN_UPSTREAM_TIMEOUT_MS = 1_000
MAX_UPSTREAM_TIMEOUT_MS = 30_000

DEFAULT_ADMIN_RATE_LIMIT = 30
DEFAULT_ADMIN_RATE_WINDOW_S = 60

_QUEUE_POOL_PREFIX = "QUEUE_POOL_"

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge ``.env`` values with the process environment, environment winning."""

    env: dict[str, str] = {}
    path = Path(env_file) if env_file is not None else Path(".env")
    if path.is_file():
        env.update(_load_env_file(path))
    source = dict(base_env or os.environ)
    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Replace the cached runtime environment; ``None`` forces a reload."""

    global _RUNTIME_ENV_CACHE
    _RUNTIME_ENV_CACHE = None if runtime_env is None else dict(runtime_env)


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
) -> float:
    try:
        resolved = float(value) if value is not None else default
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    return resolved


def default_instance_id() -> str:
    """Return ``<hostname>-<pid>-<hex>`` identifying this process."""

    host = os.environ.get("HOSTNAME") or socket.gethostname() or "unknown"
    return f"{host}-{os.getpid()}-{secrets.token_hex(4)}"


def _job_type_from_pool_key(key: str) -> str:
    # QUEUE_POOL_WATCHLIST_SYNC_USER -> watchlist:sync:user
    return key[len(_QUEUE_POOL_PREFIX) :].lower().replace("_", ":")


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        return cls(level=(_env_value(env, "LOG_LEVEL") or "INFO").upper())


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> DatabaseConfig:
        return cls(url=_env_value(env, "DATABASE_URL") or DEFAULT_DATABASE_URL)


@dataclass(slots=True, frozen=True)
class QueueConfig:
    redis_url: str | None = None
    name: str = DEFAULT_QUEUE_NAME
    global_concurrency: int = DEFAULT_QUEUE_WORKER_CONCURRENCY
    pool_limits: dict[str, int] = field(default_factory=dict)
    default_attempts: int = DEFAULT_QUEUE_ATTEMPTS
    backoff_base_ms: int = DEFAULT_QUEUE_BACKOFF_BASE_MS
    jitter_pct: int = DEFAULT_QUEUE_JITTER_PCT
    poll_interval_ms: int = DEFAULT_QUEUE_POLL_INTERVAL_MS
    lease_timeout_s: int = DEFAULT_QUEUE_LEASE_TIMEOUT_S
    heartbeat_s: int = DEFAULT_QUEUE_HEARTBEAT_S
    completed_retention_s: int = DEFAULT_QUEUE_COMPLETED_RETENTION_S
    completed_max: int = DEFAULT_QUEUE_COMPLETED_MAX
    failed_retention_s: int = DEFAULT_QUEUE_FAILED_RETENTION_S
    maintenance_interval_s: int = DEFAULT_QUEUE_MAINTENANCE_INTERVAL_S
    max_stalled: int = DEFAULT_QUEUE_MAX_STALLED
    socket_timeout_s: int = DEFAULT_REDIS_SOCKET_TIMEOUT_S

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    def pool_limit(self, job_type: str) -> int:
        """Concurrency for ``job_type``; same-type jobs run one at a time by default."""

        return max(1, int(self.pool_limits.get(str(job_type), DEFAULT_QUEUE_POOL_LIMIT)))

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> QueueConfig:
        pool_limits: dict[str, int] = {}
        for key, raw in env.items():
            if not key.startswith(_QUEUE_POOL_PREFIX):
                continue
            pool_limits[_job_type_from_pool_key(key)] = _bounded_int(
                raw, default=DEFAULT_QUEUE_POOL_LIMIT, minimum=1
            )
        heartbeat_s = _bounded_int(
            env.get("QUEUE_HEARTBEAT_S"), default=DEFAULT_QUEUE_HEARTBEAT_S, minimum=1
        )
        return cls(
            redis_url=_env_value(env, "REDIS_URL"),
            name=_env_value(env, "QUEUE_NAME") or DEFAULT_QUEUE_NAME,
            global_concurrency=_bounded_int(
                env.get("QUEUE_WORKER_CONCURRENCY"),
                default=DEFAULT_QUEUE_WORKER_CONCURRENCY,
                minimum=1,
            ),
            pool_limits=pool_limits,
            default_attempts=_bounded_int(
                env.get("QUEUE_DEFAULT_ATTEMPTS"), default=DEFAULT_QUEUE_ATTEMPTS, minimum=1
            ),
            backoff_base_ms=_bounded_int(
                env.get("QUEUE_BACKOFF_BASE_MS"), default=DEFAULT_QUEUE_BACKOFF_BASE_MS, minimum=1
            ),
            jitter_pct=_bounded_int(
                env.get("QUEUE_JITTER_PCT"), default=DEFAULT_QUEUE_JITTER_PCT, minimum=0, maximum=100
            ),
            poll_interval_ms=_bounded_int(
                env.get("QUEUE_POLL_INTERVAL_MS"), default=DEFAULT_QUEUE_POLL_INTERVAL_MS, minimum=10
            ),
            lease_timeout_s=_bounded_int(
                env.get("QUEUE_LEASE_TIMEOUT_S"),
                default=DEFAULT_QUEUE_LEASE_TIMEOUT_S,
                minimum=heartbeat_s * 2,
            ),
            heartbeat_s=heartbeat_s,
            completed_retention_s=_bounded_int(
                env.get("QUEUE_COMPLETED_RETENTION_S"),
                default=DEFAULT_QUEUE_COMPLETED_RETENTION_S,
                minimum=0,
            ),
            completed_max=_bounded_int(
                env.get("QUEUE_COMPLETED_MAX"), default=DEFAULT_QUEUE_COMPLETED_MAX, minimum=0
            ),
            failed_retention_s=_bounded_int(
                env.get("QUEUE_FAILED_RETENTION_S"),
                default=DEFAULT_QUEUE_FAILED_RETENTION_S,
                minimum=0,
            ),
            maintenance_interval_s=_bounded_int(
                env.get("QUEUE_MAINTENANCE_INTERVAL_S"),
                default=DEFAULT_QUEUE_MAINTENANCE_INTERVAL_S,
                minimum=1,
            ),
            max_stalled=_bounded_int(
                env.get("QUEUE_MAX_STALLED"), default=DEFAULT_QUEUE_MAX_STALLED, minimum=0
            ),
            socket_timeout_s=_bounded_int(
                env.get("REDIS_SOCKET_TIMEOUT_S"), default=DEFAULT_REDIS_SOCKET_TIMEOUT_S, minimum=1
            ),
        )


@dataclass(slots=True, frozen=True)
class LockConfig:
    name: str = DEFAULT_LOCK_NAME
    ttl_s: int = DEFAULT_LOCK_TTL_S
    renew_interval_s: float = float(DEFAULT_LOCK_RENEW_INTERVAL_S)
    poll_interval_s: float = DEFAULT_LOCK_TTL_S / 3
    instance_id: str = field(default_factory=default_instance_id)

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LockConfig:
        ttl_s = _bounded_int(env.get("LOCK_TTL_S"), default=DEFAULT_LOCK_TTL_S, minimum=3)
        renew = _bounded_float(
            env.get("LOCK_RENEW_INTERVAL_S"),
            default=float(DEFAULT_LOCK_RENEW_INTERVAL_S),
            minimum=0.1,
        )
        # Renew at least twice per lease.
        renew = min(renew, ttl_s / 2)
        poll = _bounded_float(env.get("LOCK_POLL_INTERVAL_S"), default=ttl_s / 3, minimum=0.1)
        return cls(
            name=_env_value(env, "LOCK_NAME") or DEFAULT_LOCK_NAME,
            ttl_s=ttl_s,
            renew_interval_s=renew,
            poll_interval_s=poll,
            instance_id=_env_value(env, "INSTANCE_ID") or default_instance_id(),
        )


@dataclass(slots=True, frozen=True)
class WatchlistSyncConfig:
    enabled: bool = True
    batch_size: int = DEFAULT_WATCHLIST_SYNC_BATCH_SIZE
    user_delay_ms: int = DEFAULT_WATCHLIST_SYNC_USER_DELAY_MS
    error_limit: int = DEFAULT_WATCHLIST_SYNC_ERROR_LIMIT
    user_lock_ttl_s: int = DEFAULT_WATCHLIST_SYNC_USER_LOCK_TTL_S
    default_interval_minutes: int = DEFAULT_WATCHLIST_SYNC_INTERVAL_MINUTES
    schedule_refresh_s: int = DEFAULT_WATCHLIST_SCHEDULE_REFRESH_S
    plex_timeout_ms: int = DEFAULT_UPSTREAM_TIMEOUT_MS
    overseerr_timeout_ms: int = DEFAULT_UPSTREAM_TIMEOUT_MS
    plex_client_identifier: str = "portal-worker"

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> WatchlistSyncConfig:
        return cls(
            enabled=_as_bool(_env_value(env, "ENABLE_WATCHLIST_SYNC"), default=True),
            batch_size=_bounded_int(
                env.get("WATCHLIST_SYNC_BATCH_SIZE"),
                default=DEFAULT_WATCHLIST_SYNC_BATCH_SIZE,
                minimum=1,
            ),
            user_delay_ms=_bounded_int(
                env.get("WATCHLIST_SYNC_USER_DELAY_MS"),
                default=DEFAULT_WATCHLIST_SYNC_USER_DELAY_MS,
                minimum=0,
            ),
            error_limit=_bounded_int(
                env.get("WATCHLIST_SYNC_ERROR_LIMIT"),
                default=DEFAULT_WATCHLIST_SYNC_ERROR_LIMIT,
                minimum=1,
            ),
            user_lock_ttl_s=_bounded_int(
                env.get("WATCHLIST_SYNC_USER_LOCK_TTL_S"),
                default=DEFAULT_WATCHLIST_SYNC_USER_LOCK_TTL_S,
                minimum=30,
            ),
            schedule_refresh_s=_bounded_int(
                env.get("WATCHLIST_SCHEDULE_REFRESH_S"),
                default=DEFAULT_WATCHLIST_SCHEDULE_REFRESH_S,
                minimum=1,
            ),
            plex_timeout_ms=_bounded_int(
                env.get("PLEX_TIMEOUT_MS"),
                default=DEFAULT_UPSTREAM_TIMEOUT_MS,
                minimum=MIN_UPSTREAM_TIMEOUT_MS,
                maximum=MAX_UPSTREAM_TIMEOUT_MS,
            ),
            overseerr_timeout_ms=_bounded_int(
                env.get("OVERSEERR_TIMEOUT_MS"),
                default=DEFAULT_UPSTREAM_TIMEOUT_MS,
                minimum=MIN_UPSTREAM_TIMEOUT_MS,
                maximum=MAX_UPSTREAM_TIMEOUT_MS,
            ),
            plex_client_identifier=_env_value(env, "PLEX_CLIENT_IDENTIFIER") or "portal-worker",
        )


@dataclass(slots=True, frozen=True)
class AdminConfig:
    rate_limit: int = DEFAULT_ADMIN_RATE_LIMIT
    rate_window_s: int = DEFAULT_ADMIN_RATE_WINDOW_S

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> AdminConfig:
        return cls(
            rate_limit=_bounded_int(
                env.get("ADMIN_RATE_LIMIT"), default=DEFAULT_ADMIN_RATE_LIMIT, minimum=1
            ),
            rate_window_s=_bounded_int(
                env.get("ADMIN_RATE_WINDOW_S"), default=DEFAULT_ADMIN_RATE_WINDOW_S, minimum=1
            ),
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    logging: LoggingConfig
    database: DatabaseConfig
    queue: QueueConfig
    lock: LockConfig
    watchlist_sync: WatchlistSyncConfig
    admin: AdminConfig
    workers_enabled: bool = True


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the typed application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    return AppConfig(
        logging=LoggingConfig.from_env(env),
        database=DatabaseConfig.from_env(env),
        queue=QueueConfig.from_env(env),
        lock=LockConfig.from_env(env),
        watchlist_sync=WatchlistSyncConfig.from_env(env),
        admin=AdminConfig.from_env(env),
        workers_enabled=not _as_bool(_env_value(env, "PORTAL_DISABLE_WORKERS"), default=False),
    )


__all__ = [
    "AdminConfig",
    "AppConfig",
    "DatabaseConfig",
    "LockConfig",
    "LoggingConfig",
    "QueueConfig",
    "WatchlistSyncConfig",
    "default_instance_id",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
