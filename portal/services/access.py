"""Caller identity and per-admin rate limiting for actions."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from portal.errors import RateLimitedError, UnauthorizedError


@dataclass(slots=True, frozen=True)
class Actor:
    user_id: str
    is_admin: bool = False


def require_admin(actor: Actor | None) -> Actor:
    if actor is None or not actor.is_admin:
        raise UnauthorizedError("Unauthorized")
    return actor


def require_user(actor: Actor | None) -> Actor:
    if actor is None or not actor.user_id:
        raise UnauthorizedError("Not authenticated")
    return actor


class SlidingWindowRateLimiter:
    """Allow ``limit`` hits per key within a sliding ``window_seconds``."""

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = max(1, int(limit))
        self._window = max(1.0, float(window_seconds))
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = Lock()

    def check(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            entries = self._hits.setdefault(key, [])
            entries[:] = [stamp for stamp in entries if now - stamp < self._window]
            if len(entries) >= self._limit:
                retry_after_ms = int((self._window - (now - entries[0])) * 1000)
                raise RateLimitedError(retry_after_ms=max(0, retry_after_ms))
            entries.append(now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


__all__ = ["Actor", "SlidingWindowRateLimiter", "require_admin", "require_user"]
