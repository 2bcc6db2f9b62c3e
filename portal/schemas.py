"""Pydantic schemas for admin and user action inputs."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

JobStatusFilter = Literal["waiting", "active", "completed", "failed", "delayed"]
HistoryStatusFilter = Literal[
    "SYNCED",
    "REQUESTED",
    "ALREADY_AVAILABLE",
    "ALREADY_REQUESTED",
    "FAILED",
    "REMOVED_FROM_WATCHLIST",
]


class _Input(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class QueueJobsQuery(_Input):
    status: Optional[JobStatusFilter] = None
    job_type: Optional[str] = Field(default=None, alias="jobType")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=100)


class JobIdInput(_Input):
    job_id: str = Field(..., alias="jobId", min_length=1)

    @field_validator("job_id", mode="before")
    @classmethod
    def _coerce_job_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class TriggerSyncInput(_Input):
    user_id: Optional[str] = Field(default=None, alias="userId")


class UpdateScheduleInput(_Input):
    interval_minutes: int = Field(..., alias="intervalMinutes", ge=15, le=1440)


class GlobalWatchlistSyncSettingsInput(_Input):
    enabled: bool
    interval_minutes: int = Field(default=60, alias="intervalMinutes", ge=15, le=1440)


class UserWatchlistSyncSettingsInput(_Input):
    sync_enabled: bool = Field(..., alias="syncEnabled")


class WatchlistHistoryQuery(_Input):
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    status: Optional[HistoryStatusFilter] = None


class ActionEnvelope(BaseModel):
    """Response body shared by every action endpoint."""

    success: bool
    data: Optional[object] = None
    error: Optional[str] = None
    code: Optional[str] = None


__all__ = [
    "ActionEnvelope",
    "GlobalWatchlistSyncSettingsInput",
    "HistoryStatusFilter",
    "JobIdInput",
    "JobStatusFilter",
    "QueueJobsQuery",
    "TriggerSyncInput",
    "UpdateScheduleInput",
    "UserWatchlistSyncSettingsInput",
    "WatchlistHistoryQuery",
]
