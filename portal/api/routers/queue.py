"""Admin routes for inspecting and controlling the background job queue."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from portal.dependencies import get_actor, get_queue_admin_service
from portal.errors import action_response
from portal.schemas import ActionEnvelope
from portal.services.access import Actor
from portal.services.queue_admin import QueueAdminService

router = APIRouter(
    prefix="/api/admin/queue",
    tags=["Queue"],
    responses={200: {"model": ActionEnvelope}},
)


@router.get("/dashboard")
async def queue_dashboard(
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.get_queue_dashboard_data(actor))


@router.get("/health")
async def queue_health(
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.get_queue_health(actor))


@router.get("/jobs")
async def list_queue_jobs(
    request: Request,
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.get_queue_jobs(actor, dict(request.query_params)))


@router.get("/jobs/{job_id}")
async def get_queue_job(
    job_id: str,
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.get_queue_job(actor, {"jobId": job_id}))


@router.post("/jobs/{job_id}/retry")
async def retry_queue_job(
    job_id: str,
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.retry_queue_job(actor, {"jobId": job_id}))


@router.delete("/jobs/{job_id}")
async def remove_queue_job(
    job_id: str,
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.remove_queue_job(actor, {"jobId": job_id}))


@router.post("/pause")
async def pause_queue(
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.pause_job_queue(actor))


@router.post("/resume")
async def resume_queue(
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.resume_job_queue(actor))


@router.post("/watchlist-sync")
async def trigger_watchlist_sync_job(
    payload: dict[str, Any] | None = Body(default=None),
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.trigger_watchlist_sync_job(actor, payload))


@router.get("/watchlist-sync/schedule")
async def watchlist_sync_schedule(
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.get_watchlist_sync_scheduler_status(actor))


@router.put("/watchlist-sync/schedule")
async def update_watchlist_sync_schedule(
    payload: dict[str, Any] | None = Body(default=None),
    actor: Actor | None = Depends(get_actor),
    service: QueueAdminService = Depends(get_queue_admin_service),
) -> JSONResponse:
    return action_response(await service.update_watchlist_sync_schedule(actor, payload))


__all__ = ["router"]
