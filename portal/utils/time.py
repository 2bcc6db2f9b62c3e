"""Clock helpers used by the queue, the lock manager and the sync service."""

from __future__ import annotations

from datetime import UTC, datetime
import time as _time

__all__ = ["from_epoch_ms", "now_ms", "to_epoch_ms", "utcnow"]


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in the database."""

    return datetime.now(UTC).replace(tzinfo=None)


def now_ms() -> int:
    """Return the current UNIX timestamp in milliseconds."""

    return int(_time.time() * 1000)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | float | str | None) -> datetime | None:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(float(value)) / 1000, tz=UTC)
