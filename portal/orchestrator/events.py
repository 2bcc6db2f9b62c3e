"""Structured logging helpers for worker and leader components."""

from __future__ import annotations

from typing import Any

from portal.logging_events import log_event
from portal.workers.persistence import QueueJobDTO


def emit_job_event(
    logger: Any,
    job: QueueJobDTO,
    *,
    status: str,
    duration_ms: int | None = None,
    error: str | None = None,
    retry_in_ms: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "component": "orchestrator.worker",
        "job_id": job.id,
        "job_type": job.type,
        "status": status,
        "attempts": int(job.attempts),
        "max_attempts": int(job.max_attempts),
    }
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    if error is not None:
        payload["error"] = error
    if retry_in_ms is not None:
        payload["retry_in_ms"] = retry_in_ms
    log_event(logger, "worker.job", **payload)


def emit_heartbeat_event(logger: Any, job: QueueJobDTO, *, status: str) -> None:
    log_event(
        logger,
        "worker.heartbeat",
        component="orchestrator.worker",
        job_id=job.id,
        job_type=job.type,
        status=status,
    )


def emit_leader_event(logger: Any, *, lock_name: str, holder_id: str, status: str, **extra: Any) -> None:
    log_event(
        logger,
        "leader.state",
        component="orchestrator.leader",
        lock_name=lock_name,
        holder_id=holder_id,
        status=status,
        **{key: value for key, value in extra.items() if value is not None},
    )
