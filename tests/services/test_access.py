import pytest

from portal.errors import RateLimitedError, UnauthorizedError
from portal.services.access import (
    Actor,
    SlidingWindowRateLimiter,
    require_admin,
    require_user,
)


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_require_admin_rejects_missing_and_regular_users() -> None:
    with pytest.raises(UnauthorizedError):
        require_admin(None)
    with pytest.raises(UnauthorizedError):
        require_admin(Actor(user_id="u1"))

    admin = Actor(user_id="a1", is_admin=True)
    assert require_admin(admin) is admin


def test_require_user_needs_an_identity() -> None:
    with pytest.raises(UnauthorizedError, match="Not authenticated"):
        require_user(Actor(user_id=""))

    assert require_user(Actor(user_id="u1")).user_id == "u1"


def test_rate_limiter_window_slides() -> None:
    clock = Clock()
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60, clock=clock)

    limiter.check("a1")
    clock.now += 30
    limiter.check("a1")
    with pytest.raises(RateLimitedError) as excinfo:
        limiter.check("a1")
    assert excinfo.value.meta == {"retry_after_ms": 30_000}

    limiter.check("a2")
    clock.now += 30
    limiter.check("a1")


def test_rate_limiter_reset_clears_history() -> None:
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=Clock())
    limiter.check("a1")

    limiter.reset()

    limiter.check("a1")
