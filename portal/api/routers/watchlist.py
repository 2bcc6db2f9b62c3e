"""Watchlist sync routes for users and administrators."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from portal.dependencies import get_actor, get_watchlist_actions
from portal.errors import action_response
from portal.schemas import ActionEnvelope
from portal.services.access import Actor
from portal.services.watchlist_actions import WatchlistActions

router = APIRouter(
    prefix="/api/watchlist",
    tags=["Watchlist"],
    responses={200: {"model": ActionEnvelope}},
)
admin_router = APIRouter(
    prefix="/api/admin/watchlist",
    tags=["Watchlist Admin"],
    responses={200: {"model": ActionEnvelope}},
)


@router.get("/settings")
async def get_sync_settings(
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.get_watchlist_sync_settings(actor))


@router.put("/settings")
async def update_sync_settings(
    payload: dict[str, Any] | None = Body(default=None),
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.update_watchlist_sync_settings(actor, payload))


@router.post("/sync")
async def trigger_sync(
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.trigger_watchlist_sync(actor))


@router.get("/history")
async def get_sync_history(
    request: Request,
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    query = dict(request.query_params)
    return action_response(await actions.get_watchlist_sync_history(actor, query))


@admin_router.get("/settings")
async def get_global_settings(
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.get_global_watchlist_sync_settings(actor))


@admin_router.put("/settings")
async def update_global_settings(
    payload: dict[str, Any] | None = Body(default=None),
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.update_global_watchlist_sync_settings(actor, payload))


@admin_router.get("/stats")
async def get_sync_stats(
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.get_watchlist_sync_stats(actor))


@admin_router.post("/users/{user_id}/sync")
async def force_user_sync(
    user_id: str,
    actor: Actor | None = Depends(get_actor),
    actions: WatchlistActions = Depends(get_watchlist_actions),
) -> JSONResponse:
    return action_response(await actions.force_user_watchlist_sync(actor, user_id))


__all__ = ["admin_router", "router"]
