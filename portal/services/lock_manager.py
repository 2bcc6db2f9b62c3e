"""Lease-based distributed locks stored in the ``distributed_locks`` table."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.db import SessionFactory, run_session, session_scope
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.models import DistributedLock
from portal.utils.time import utcnow

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class LockState:
    lock_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    last_renewed_at: datetime
    expired: bool


class DistributedLockManager:
    """Compare-and-swap leases over a single database row per lock name.

    ``try_acquire`` claims a lock when no row exists, the row has expired, or
    the caller already holds it. ``renew`` and ``release`` only act on rows
    held by the caller, so an instance that lost its lease can never extend or
    delete another holder's lock.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        now_factory: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now = now_factory

    async def try_acquire(self, lock_name: str, holder_id: str, ttl_s: float) -> bool:
        now = self._now()
        expires_at = now + timedelta(seconds=float(ttl_s))

        def _claim(session: Session) -> bool | None:
            result = session.execute(
                update(DistributedLock)
                .where(DistributedLock.name == lock_name)
                .where(
                    or_(
                        DistributedLock.expires_at < now,
                        DistributedLock.holder_id == holder_id,
                    )
                )
                .values(
                    acquired_at=case(
                        (DistributedLock.holder_id == holder_id, DistributedLock.acquired_at),
                        else_=now,
                    ),
                    holder_id=holder_id,
                    expires_at=expires_at,
                    last_renewed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return True
            if session.get(DistributedLock, lock_name) is not None:
                return False
            return None

        claimed = await run_session(_claim, factory=self._session_factory)
        if claimed is None:
            claimed = await self._insert(lock_name, holder_id, now, expires_at)
        log_event(
            logger,
            "lock.acquire",
            lock_name=lock_name,
            holder_id=holder_id,
            status="acquired" if claimed else "held_elsewhere",
        )
        return claimed

    async def _insert(
        self, lock_name: str, holder_id: str, now: datetime, expires_at: datetime
    ) -> bool:
        def _create(session: Session) -> None:
            session.add(
                DistributedLock(
                    name=lock_name,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                    last_renewed_at=now,
                )
            )

        try:
            await run_session(_create, factory=self._session_factory)
        except IntegrityError:
            # Another instance inserted the row first.
            return False
        return True

    async def renew(self, lock_name: str, holder_id: str, ttl_s: float) -> bool:
        now = self._now()

        def _extend(session: Session) -> bool:
            result = session.execute(
                update(DistributedLock)
                .where(DistributedLock.name == lock_name)
                .where(DistributedLock.holder_id == holder_id)
                .where(DistributedLock.expires_at >= now)
                .values(
                    expires_at=now + timedelta(seconds=float(ttl_s)),
                    last_renewed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

        renewed = await run_session(_extend, factory=self._session_factory)
        if not renewed:
            log_event(logger, "lock.renew", lock_name=lock_name, holder_id=holder_id, status="lost")
        return renewed

    async def release(self, lock_name: str, holder_id: str) -> bool:
        def _delete(session: Session) -> bool:
            result = session.execute(
                delete(DistributedLock)
                .where(DistributedLock.name == lock_name)
                .where(DistributedLock.holder_id == holder_id)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

        released = await run_session(_delete, factory=self._session_factory)
        log_event(
            logger,
            "lock.release",
            lock_name=lock_name,
            holder_id=holder_id,
            status="released" if released else "not_held",
        )
        return released

    async def get_holder(self, lock_name: str) -> LockState | None:
        now = self._now()

        def _load(session: Session) -> LockState | None:
            record = session.get(DistributedLock, lock_name)
            if record is None:
                return None
            return LockState(
                lock_name=record.name,
                holder_id=record.holder_id,
                acquired_at=record.acquired_at,
                expires_at=record.expires_at,
                last_renewed_at=record.last_renewed_at,
                expired=record.expires_at < now,
            )

        return await run_session(_load, factory=self._session_factory)


__all__ = ["DistributedLockManager", "LockState"]
