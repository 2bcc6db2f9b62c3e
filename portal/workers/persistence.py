"""Redis persistence for queue jobs, recurring schedulers and queue state.

Every job lives in a hash under ``<prefix>:job:<id>`` and is indexed in exactly
one state set at a time:

* ``<prefix>:waiting:<type>`` sorted by priority, then insertion order
* ``<prefix>:delayed`` sorted by the epoch-ms at which it becomes eligible
* ``<prefix>:active`` sorted by lease expiry
* ``<prefix>:completed`` / ``<prefix>:failed`` sorted by finish time

State transitions run inside ``WATCH``/``MULTI`` transactions so that two
processes sharing the backend never move the same job twice. The client must
be created with ``decode_responses=True``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from portal.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MAX_TRANSACTION_RETRIES = 25
_PRIORITY_STRIDE = 10**12

STALLED_LIMIT_ERROR = "job stalled more than allowed limit"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATUSES = frozenset({JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE})
FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class QueueBackendError(RuntimeError):
    """Raised when the backend cannot complete a state transition."""


@dataclass(slots=True)
class StalledSweep:
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class QueueJobDTO:
    """Lightweight data transfer object for queue jobs."""

    id: str
    type: str
    payload: dict[str, Any]
    status: JobStatus
    priority: int = 0
    attempts: int = 1
    max_attempts: int = 1
    backoff_ms: int = 0
    dedup_key: str | None = None
    created_at_ms: int = 0
    available_at_ms: int = 0
    started_at_ms: int | None = None
    finished_at_ms: int | None = None
    lease_expires_at_ms: int | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    stalled_count: int = 0

    def to_metadata(self) -> dict[str, Any]:
        """Admin-facing view of the job."""

        return {
            "id": self.id,
            "name": self.type,
            "data": dict(self.payload),
            "status": self.status.value,
            "priority": self.priority,
            "attemptsMade": self.attempts,
            "maxAttempts": self.max_attempts,
            "timestamp": self.created_at_ms,
            "availableAt": self.available_at_ms,
            "processedOn": self.started_at_ms,
            "finishedOn": self.finished_at_ms,
            "failedReason": self.last_error,
            "returnValue": self.result,
        }


@dataclass(slots=True)
class SchedulerRecord:
    """A recurring trigger that materialises jobs when ``next_run_ms`` passes."""

    id: str
    job_type: str
    next_run_ms: int
    payload: dict[str, Any] = field(default_factory=dict)
    every_ms: int | None = None
    cron: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "job_type": self.job_type,
                "payload": self.payload,
                "every_ms": self.every_ms,
                "cron": self.cron,
                "next_run_ms": self.next_run_ms,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> SchedulerRecord:
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            job_type=str(data["job_type"]),
            payload=dict(data.get("payload") or {}),
            every_ms=int(data["every_ms"]) if data.get("every_ms") is not None else None,
            cron=data.get("cron"),
            next_run_ms=int(data["next_run_ms"]),
        )


def _opt_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    return int(float(value))


def _opt_json(value: str | None) -> dict[str, Any] | None:
    if value is None or value == "":
        return None
    decoded = json.loads(value)
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def _encode_job(job: QueueJobDTO) -> dict[str, str]:
    def _text(value: Any) -> str:
        return "" if value is None else str(value)

    return {
        "id": job.id,
        "type": job.type,
        "payload": json.dumps(job.payload),
        "status": job.status.value,
        "priority": str(job.priority),
        "attempts": str(job.attempts),
        "max_attempts": str(job.max_attempts),
        "backoff_ms": str(job.backoff_ms),
        "dedup_key": _text(job.dedup_key),
        "created_at": str(job.created_at_ms),
        "available_at": str(job.available_at_ms),
        "started_at": _text(job.started_at_ms),
        "finished_at": _text(job.finished_at_ms),
        "lease_expires_at": _text(job.lease_expires_at_ms),
        "last_error": _text(job.last_error),
        "result": "" if job.result is None else json.dumps(job.result),
        "stalled_count": str(job.stalled_count),
    }


def _decode_job(raw: Mapping[str, str]) -> QueueJobDTO:
    return QueueJobDTO(
        id=raw["id"],
        type=raw["type"],
        payload=_opt_json(raw.get("payload")) or {},
        status=JobStatus(raw["status"]),
        priority=int(raw.get("priority") or 0),
        attempts=int(raw.get("attempts") or 0),
        max_attempts=int(raw.get("max_attempts") or 1),
        backoff_ms=int(raw.get("backoff_ms") or 0),
        dedup_key=raw.get("dedup_key") or None,
        created_at_ms=int(raw.get("created_at") or 0),
        available_at_ms=int(raw.get("available_at") or 0),
        started_at_ms=_opt_int(raw.get("started_at")),
        finished_at_ms=_opt_int(raw.get("finished_at")),
        lease_expires_at_ms=_opt_int(raw.get("lease_expires_at")),
        last_error=raw.get("last_error") or None,
        result=_opt_json(raw.get("result")),
        stalled_count=int(raw.get("stalled_count") or 0),
    )


def waiting_score(priority: int, job_id: str) -> int:
    """Lower priority values run first; equal priorities run in insertion order."""

    return max(0, int(priority)) * _PRIORITY_STRIDE + int(job_id)


class RedisQueueStore:
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    @property
    def redis(self) -> Redis:
        return self._redis

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def _job_key(self, job_id: str) -> str:
        return self._key("job", str(job_id))

    def _waiting_key(self, job_type: str) -> str:
        return self._key("waiting", job_type)

    def _type_index_key(self, job_type: str) -> str:
        return self._key("type", job_type)

    def _dedup_key(self, dedup_key: str) -> str:
        return self._key("dedup", dedup_key)

    def _state_key(self, status: JobStatus) -> str:
        if status is JobStatus.WAITING:
            raise ValueError("waiting jobs are indexed per job type")
        return self._key(status.value)

    async def _transact(
        self,
        watch_keys: Sequence[str],
        body: Callable[[Pipeline], Awaitable[T]],
    ) -> T:
        for _ in range(_MAX_TRANSACTION_RETRIES):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*watch_keys)
                    return await body(pipe)
                except WatchError:
                    continue
        raise QueueBackendError(f"Transaction on {watch_keys[0]} kept conflicting")

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def job_types(self) -> list[str]:
        members = await self._redis.smembers(self._key("types"))
        return sorted(members)

    async def add(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        *,
        priority: int,
        max_attempts: int,
        backoff_ms: int,
        delay_ms: int,
        dedup_key: str | None,
        now_ms: int,
    ) -> tuple[QueueJobDTO, bool]:
        """Persist a new job, or return the pending job that owns ``dedup_key``."""

        job_id = str(await self._redis.incr(self._key("id")))
        if dedup_key:
            dedup = self._dedup_key(dedup_key)
            if not await self._redis.set(dedup, job_id, nx=True):
                existing_id = await self._redis.get(dedup)
                existing = await self.get(existing_id) if existing_id else None
                if existing is not None and existing.status in PENDING_STATUSES:
                    return existing, False
                await self._redis.set(dedup, job_id)

        delayed = delay_ms > 0
        job = QueueJobDTO(
            id=job_id,
            type=job_type,
            payload=dict(payload),
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            priority=int(priority),
            attempts=1,
            max_attempts=max(1, int(max_attempts)),
            backoff_ms=max(0, int(backoff_ms)),
            dedup_key=dedup_key,
            created_at_ms=now_ms,
            available_at_ms=now_ms + max(0, int(delay_ms)),
        )
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=_encode_job(job))
            pipe.zadd(self._key("all"), {job_id: int(job_id)})
            pipe.zadd(self._type_index_key(job_type), {job_id: int(job_id)})
            pipe.sadd(self._key("types"), job_type)
            if delayed:
                pipe.zadd(self._key("delayed"), {job_id: job.available_at_ms})
            else:
                pipe.zadd(self._waiting_key(job_type), {job_id: waiting_score(priority, job_id)})
            await pipe.execute()
        return job, True

    async def get(self, job_id: str) -> QueueJobDTO | None:
        raw = await self._redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return _decode_job(raw)

    async def get_many(self, job_ids: Sequence[str]) -> list[QueueJobDTO]:
        if not job_ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()
        return [_decode_job(row) for row in rows if row]

    async def claim(self, job_type: str, *, lease_ms: int, now_ms: int) -> QueueJobDTO | None:
        """Move the head of ``job_type``'s waiting set to active under a lease."""

        waiting = self._waiting_key(job_type)
        lease_expires = now_ms + lease_ms

        async def _body(pipe: Pipeline) -> str | None:
            head = await pipe.zrange(waiting, 0, 0)
            if not head:
                return None
            job_id = head[0]
            pipe.multi()
            pipe.zrem(waiting, job_id)
            pipe.zadd(self._key("active"), {job_id: lease_expires})
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "status": JobStatus.ACTIVE.value,
                    "started_at": str(now_ms),
                    "lease_expires_at": str(lease_expires),
                },
            )
            await pipe.execute()
            return job_id

        job_id = await self._transact([waiting], _body)
        if job_id is None:
            return None
        return await self.get(job_id)

    async def heartbeat(self, job_id: str, *, lease_ms: int, now_ms: int) -> bool:
        """Extend the lease of an active job; ``False`` means the lease was lost."""

        active = self._key("active")
        lease_expires = now_ms + lease_ms

        async def _body(pipe: Pipeline) -> bool:
            if await pipe.zscore(active, job_id) is None:
                return False
            pipe.multi()
            pipe.zadd(active, {job_id: lease_expires})
            pipe.hset(self._job_key(job_id), "lease_expires_at", str(lease_expires))
            await pipe.execute()
            return True

        return await self._transact([active, self._job_key(job_id)], _body)

    async def complete(self, job_id: str, *, result: Mapping[str, Any] | None, now_ms: int) -> bool:
        job_key = self._job_key(job_id)

        async def _body(pipe: Pipeline) -> str | None | bool:
            status, dedup_key = await pipe.hmget(job_key, "status", "dedup_key")
            if status != JobStatus.ACTIVE.value:
                return False
            pipe.multi()
            pipe.zrem(self._key("active"), job_id)
            pipe.zadd(self._key("completed"), {job_id: now_ms})
            pipe.hset(
                job_key,
                mapping={
                    "status": JobStatus.COMPLETED.value,
                    "finished_at": str(now_ms),
                    "lease_expires_at": "",
                    "result": "" if result is None else json.dumps(dict(result)),
                },
            )
            await pipe.execute()
            return dedup_key or None

        outcome = await self._transact([job_key], _body)
        if outcome is False:
            return False
        if outcome:
            await self._release_dedup(str(outcome), job_id)
        return True

    async def fail(
        self,
        job_id: str,
        *,
        error: str,
        retry_at_ms: int | None,
        now_ms: int,
    ) -> JobStatus | None:
        """Record a failed run; ``retry_at_ms`` schedules another attempt."""

        job_key = self._job_key(job_id)

        async def _body(pipe: Pipeline) -> tuple[JobStatus, str | None] | None:
            status, dedup_key = await pipe.hmget(job_key, "status", "dedup_key")
            if status != JobStatus.ACTIVE.value:
                return None
            pipe.multi()
            pipe.zrem(self._key("active"), job_id)
            if retry_at_ms is not None:
                pipe.zadd(self._key("delayed"), {job_id: retry_at_ms})
                pipe.hset(
                    job_key,
                    mapping={
                        "status": JobStatus.DELAYED.value,
                        "available_at": str(retry_at_ms),
                        "lease_expires_at": "",
                        "last_error": error,
                    },
                )
                pipe.hincrby(job_key, "attempts", 1)
                next_status = JobStatus.DELAYED
            else:
                pipe.zadd(self._key("failed"), {job_id: now_ms})
                pipe.hset(
                    job_key,
                    mapping={
                        "status": JobStatus.FAILED.value,
                        "finished_at": str(now_ms),
                        "lease_expires_at": "",
                        "last_error": error,
                    },
                )
                next_status = JobStatus.FAILED
            await pipe.execute()
            return next_status, dedup_key or None

        outcome = await self._transact([job_key], _body)
        if outcome is None:
            return None
        next_status, dedup_key = outcome
        if next_status is JobStatus.FAILED and dedup_key:
            await self._release_dedup(dedup_key, job_id)
        return next_status

    async def retry(self, job_id: str, *, now_ms: int) -> bool:
        """Move a failed job back to waiting and count the new attempt."""

        job_key = self._job_key(job_id)

        async def _body(pipe: Pipeline) -> str | None | bool:
            status, job_type, priority, dedup_key = await pipe.hmget(
                job_key, "status", "type", "priority", "dedup_key"
            )
            if status != JobStatus.FAILED.value:
                return False
            pipe.multi()
            pipe.zrem(self._key("failed"), job_id)
            pipe.zadd(self._waiting_key(job_type), {job_id: waiting_score(int(priority or 0), job_id)})
            pipe.hset(
                job_key,
                mapping={
                    "status": JobStatus.WAITING.value,
                    "available_at": str(now_ms),
                    "finished_at": "",
                },
            )
            pipe.hincrby(job_key, "attempts", 1)
            await pipe.execute()
            return dedup_key or None

        outcome = await self._transact([job_key], _body)
        if outcome is False:
            return False
        if outcome:
            await self._redis.set(self._dedup_key(str(outcome)), job_id, nx=True)
        return True

    async def remove(self, job_id: str) -> str:
        """Delete a job; returns ``removed``, ``missing`` or ``active``."""

        job_key = self._job_key(job_id)

        async def _body(pipe: Pipeline) -> tuple[str, str | None]:
            status, job_type, dedup_key = await pipe.hmget(job_key, "status", "type", "dedup_key")
            if status is None:
                return "missing", None
            if status == JobStatus.ACTIVE.value:
                return "active", None
            pipe.multi()
            self._queue_unindex(pipe, job_id, job_type)
            await pipe.execute()
            return "removed", dedup_key or None

        outcome, dedup_key = await self._transact([job_key], _body)
        if dedup_key:
            await self._release_dedup(dedup_key, job_id)
        return outcome

    def _queue_unindex(self, pipe: Pipeline, job_id: str, job_type: str) -> None:
        pipe.zrem(self._waiting_key(job_type), job_id)
        for status in (JobStatus.DELAYED, JobStatus.ACTIVE, JobStatus.COMPLETED, JobStatus.FAILED):
            pipe.zrem(self._state_key(status), job_id)
        pipe.zrem(self._key("all"), job_id)
        pipe.zrem(self._type_index_key(job_type), job_id)
        pipe.delete(self._job_key(job_id))

    async def _release_dedup(self, dedup_key: str, job_id: str) -> None:
        key = self._dedup_key(dedup_key)

        async def _body(pipe: Pipeline) -> None:
            if await pipe.get(key) != job_id:
                return None
            pipe.multi()
            pipe.delete(key)
            await pipe.execute()
            return None

        await self._transact([key], _body)

    async def promote_due(self, *, now_ms: int, limit: int = 100) -> int:
        """Move delayed jobs whose time has come into their waiting set."""

        delayed = self._key("delayed")
        due = await self._redis.zrangebyscore(delayed, "-inf", now_ms, start=0, num=limit)
        promoted = 0
        for job_id in due:

            async def _body(pipe: Pipeline, job_id: str = job_id) -> bool:
                score = await pipe.zscore(delayed, job_id)
                if score is None or score > now_ms:
                    return False
                job_type, priority = await pipe.hmget(self._job_key(job_id), "type", "priority")
                pipe.multi()
                pipe.zrem(delayed, job_id)
                if job_type is None:
                    await pipe.execute()
                    return False
                pipe.zadd(self._waiting_key(job_type), {job_id: waiting_score(int(priority or 0), job_id)})
                pipe.hset(self._job_key(job_id), "status", JobStatus.WAITING.value)
                await pipe.execute()
                return True

            if await self._transact([delayed, self._job_key(job_id)], _body):
                promoted += 1
        return promoted

    async def requeue_stalled(
        self, *, now_ms: int, max_stalled: int, limit: int = 100
    ) -> StalledSweep:
        """Return lapsed active jobs to waiting, or fail those past ``max_stalled``."""

        active = self._key("active")
        expired = await self._redis.zrangebyscore(active, "-inf", now_ms, start=0, num=limit)
        sweep = StalledSweep()
        for job_id in expired:
            job_key = self._job_key(job_id)

            async def _body(
                pipe: Pipeline, job_id: str = job_id, job_key: str = job_key
            ) -> tuple[JobStatus, str | None] | None:
                score = await pipe.zscore(active, job_id)
                if score is None or score > now_ms:
                    return None
                job_type, priority, stalled_count, dedup_key = await pipe.hmget(
                    job_key, "type", "priority", "stalled_count", "dedup_key"
                )
                pipe.multi()
                pipe.zrem(active, job_id)
                if job_type is None:
                    await pipe.execute()
                    return None
                pipe.hincrby(job_key, "stalled_count", 1)
                if int(stalled_count or 0) + 1 > max_stalled:
                    pipe.zadd(self._key("failed"), {job_id: now_ms})
                    pipe.hset(
                        job_key,
                        mapping={
                            "status": JobStatus.FAILED.value,
                            "finished_at": str(now_ms),
                            "lease_expires_at": "",
                            "last_error": STALLED_LIMIT_ERROR,
                        },
                    )
                    await pipe.execute()
                    return JobStatus.FAILED, dedup_key or None
                pipe.zadd(self._waiting_key(job_type), {job_id: waiting_score(int(priority or 0), job_id)})
                pipe.hset(
                    job_key,
                    mapping={"status": JobStatus.WAITING.value, "lease_expires_at": ""},
                )
                await pipe.execute()
                return JobStatus.WAITING, None

            outcome = await self._transact([active, job_key], _body)
            if outcome is None:
                continue
            next_status, dedup_key = outcome
            if next_status is JobStatus.FAILED:
                sweep.failed.append(job_id)
                if dedup_key:
                    await self._release_dedup(dedup_key, job_id)
            else:
                sweep.requeued.append(job_id)
        return sweep

    async def clean(
        self,
        status: JobStatus,
        *,
        finished_before_ms: int,
        keep: int | None = None,
        limit: int = 1000,
    ) -> int:
        """Delete finished jobs older than the cutoff, or beyond the newest ``keep``."""

        if status not in FINISHED_STATUSES:
            raise ValueError(f"Only finished jobs can be cleaned, not {status.value}")
        state_key = self._state_key(status)
        doomed = set(
            await self._redis.zrangebyscore(state_key, "-inf", finished_before_ms, start=0, num=limit)
        )
        if keep is not None:
            total = await self._redis.zcard(state_key)
            overflow = total - max(0, int(keep))
            if overflow > 0:
                doomed.update(await self._redis.zrange(state_key, 0, min(overflow, limit) - 1))
        if not doomed:
            return 0
        ids = sorted(doomed, key=int)
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in ids:
                pipe.hget(self._job_key(job_id), "type")
            types = await pipe.execute()
        async with self._redis.pipeline(transaction=True) as pipe:
            for job_id, job_type in zip(ids, types):
                pipe.zrem(state_key, job_id)
                pipe.zrem(self._key("all"), job_id)
                if job_type:
                    pipe.zrem(self._type_index_key(job_type), job_id)
                pipe.delete(self._job_key(job_id))
            await pipe.execute()
        return len(ids)

    async def counts(
        self,
        *,
        completed_since_ms: int,
        failed_since_ms: int,
    ) -> dict[str, int]:
        job_types = await self.job_types()
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_type in job_types:
                pipe.zcard(self._waiting_key(job_type))
            pipe.zcard(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.zcount(self._key("completed"), completed_since_ms, "+inf")
            pipe.zcount(self._key("failed"), failed_since_ms, "+inf")
            results = await pipe.execute()
        waiting = sum(int(value) for value in results[: len(job_types)])
        active, delayed, completed, failed = (int(value) for value in results[len(job_types) :])
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    async def iter_newest(
        self,
        *,
        job_type: str | None = None,
        chunk_size: int = 200,
    ) -> AsyncIterator[list[QueueJobDTO]]:
        """Yield jobs newest-first in chunks of at most ``chunk_size``."""

        index = self._type_index_key(job_type) if job_type else self._key("all")
        start = 0
        while True:
            ids = await self._redis.zrevrange(index, start, start + chunk_size - 1)
            if not ids:
                return
            yield await self.get_many(ids)
            if len(ids) < chunk_size:
                return
            start += chunk_size

    async def set_paused(self, paused: bool) -> None:
        await self._redis.hset(self._key("meta"), "paused", "1" if paused else "0")

    async def is_paused(self) -> bool:
        return await self._redis.hget(self._key("meta"), "paused") == "1"

    async def save_scheduler(self, record: SchedulerRecord) -> None:
        await self._redis.hset(self._key("schedulers"), record.id, record.to_json())

    async def get_scheduler(self, scheduler_id: str) -> SchedulerRecord | None:
        raw = await self._redis.hget(self._key("schedulers"), scheduler_id)
        return SchedulerRecord.from_json(raw) if raw else None

    async def delete_scheduler(self, scheduler_id: str) -> bool:
        return bool(await self._redis.hdel(self._key("schedulers"), scheduler_id))

    async def list_schedulers(self) -> list[SchedulerRecord]:
        raw = await self._redis.hgetall(self._key("schedulers"))
        records = [SchedulerRecord.from_json(value) for value in raw.values()]
        return sorted(records, key=lambda record: record.id)

    async def advance_scheduler(self, record: SchedulerRecord, *, next_run_ms: int) -> bool:
        """Move ``record`` to its next slot unless another process already did."""

        key = self._key("schedulers")

        async def _body(pipe: Pipeline) -> bool:
            raw = await pipe.hget(key, record.id)
            if not raw:
                return False
            current = SchedulerRecord.from_json(raw)
            if current.next_run_ms != record.next_run_ms:
                return False
            current.next_run_ms = next_run_ms
            pipe.multi()
            pipe.hset(key, record.id, current.to_json())
            await pipe.execute()
            return True

        return await self._transact([key], _body)


__all__ = [
    "FINISHED_STATUSES",
    "JobStatus",
    "PENDING_STATUSES",
    "QueueBackendError",
    "QueueJobDTO",
    "RedisQueueStore",
    "SchedulerRecord",
    "STALLED_LIMIT_ERROR",
    "StalledSweep",
    "waiting_score",
]
