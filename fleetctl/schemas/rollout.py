"""Firmware rollout schemas."""

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetctl.models.rollout import UpdateStatus

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class RolloutFiltersSchema(BaseModel):
    """Device filters; all given filters must match."""

    tags: list[str] = Field(default_factory=list, description="Tags a device must all carry")
    regions: list[str] = Field(default_factory=list, description="Allowed regions")
    device_list: list[str] = Field(default_factory=list, description="Explicit device keys")
    template_ids: list[str] = Field(default_factory=list, description="Allowed templates")


class TimeWindowSchema(BaseModel):
    """Local time window in which devices should install."""

    start: str = Field(..., description="HH:mm")
    end: str = Field(..., description="HH:mm")
    timezone: str | None = Field(None, description="IANA timezone name")

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not _TIME_PATTERN.match(v):
            raise ValueError("must be HH:mm")
        return v


class RolloutConstraintsSchema(BaseModel):
    """Install constraints forwarded to devices with the update offer."""

    min_battery: int | None = Field(None, ge=0, le=100, description="Minimum battery percentage")
    wifi_only: bool | None = Field(None, description="Only install over WiFi")
    time_window: TimeWindowSchema | None = None


class RolloutRollbackSchema(BaseModel):
    """Automatic rollback policy."""

    auto_rollback: bool = Field(False, description="Roll back when the failure threshold is crossed")
    failure_threshold: float | None = Field(
        None, ge=0, le=1, description="Tolerated failure rate (0-1)"
    )
    timeout_minutes: int | None = Field(
        None, gt=0, description="Roll back when still active after this long"
    )


class RolloutStrategySchema(BaseModel):
    """How a rollout selects and stages its targets."""

    type: Literal["percentage", "tag", "region", "schedule", "device_list"] = Field(
        "percentage", description="Strategy kind"
    )
    percentage: int | None = Field(None, ge=1, le=100, description="Share of candidates to target")
    increments: list[int] = Field(
        default_factory=list, description="Staged percentages, e.g. [10, 25, 50, 100]"
    )
    filters: RolloutFiltersSchema = Field(default_factory=RolloutFiltersSchema)
    constraints: RolloutConstraintsSchema = Field(default_factory=RolloutConstraintsSchema)
    rollback: RolloutRollbackSchema = Field(default_factory=RolloutRollbackSchema)

    @field_validator("increments")
    @classmethod
    def validate_increments(cls, v: list[int]) -> list[int]:
        if any(inc < 1 or inc > 100 for inc in v):
            raise ValueError("increments must be between 1 and 100")
        if any(b <= a for a, b in zip(v, v[1:], strict=False)):
            raise ValueError("increments must be strictly increasing")
        return v

    @model_validator(mode="after")
    def validate_targeting(self) -> "RolloutStrategySchema":
        if self.type == "device_list" and not self.filters.device_list:
            raise ValueError("device_list strategy requires filters.device_list")
        if self.type == "tag" and not self.filters.tags:
            raise ValueError("tag strategy requires filters.tags")
        if self.type == "region" and not self.filters.regions:
            raise ValueError("region strategy requires filters.regions")
        return self


class RolloutCreateSchema(BaseModel):
    """Request schema for creating a rollout."""

    firmware_id: int = Field(..., description="Published firmware to distribute")
    name: str = Field(..., min_length=1, max_length=255, description="Rollout name")
    description: str | None = Field(None, description="Free-form description")
    strategy: RolloutStrategySchema = Field(default_factory=RolloutStrategySchema)


class RolloutStatsSchema(BaseModel):
    """Task counts by bucket; the buckets partition total."""

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    pending: int = Field(0, description="PENDING and SCHEDULED")
    downloading: int = Field(0, description="DOWNLOADING and DOWNLOADED")
    installing: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0
    success_rate: float = Field(0.0, alias="successRate", description="success / (success + failed)")


class RolloutResponseSchema(BaseModel):
    """Response schema for rollout details."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Rollout ID")
    tenant_id: str = Field(..., description="Owning tenant")
    firmware_id: int = Field(..., description="Firmware being distributed")
    name: str = Field(..., description="Rollout name")
    description: str | None = Field(None, description="Free-form description")
    strategy: dict[str, Any] = Field(..., description="Strategy as created")
    status: str = Field(..., description="DRAFT, ACTIVE, PAUSED, ROLLBACK or COMPLETED")
    stats: RolloutStatsSchema = Field(..., description="Task statistics")
    current_percentage: int = Field(..., description="Share of candidates currently targeted")
    created_at: datetime = Field(..., description="Creation timestamp")
    started_at: datetime | None = Field(None, description="When the rollout was started")
    paused_at: datetime | None = Field(None, description="When the rollout was paused")
    completed_at: datetime | None = Field(None, description="When the rollout ended")


class RolloutListResponseSchema(BaseModel):
    """Response schema for rollout list."""

    rollouts: list[RolloutResponseSchema]
    count: int = Field(..., description="Total count of rollouts")


class RolloutRollbackRequestSchema(BaseModel):
    """Optional reason for an operator rollback."""

    reason: str | None = Field(None, max_length=500, description="Why the rollout is aborted")


class RolloutAdvanceResponseSchema(BaseModel):
    """Response schema for advancing a staged rollout."""

    rollout: RolloutResponseSchema
    increment: int = Field(..., description="Percentage now targeted")
    added_devices: int = Field(..., description="Devices targeted by this step")


class UpdateTaskSchema(BaseModel):
    """Per-device update task."""

    model_config = ConfigDict(from_attributes=True)

    device_key: str = Field(..., description="Device identifier")
    status: str = Field(..., description="Update status")
    progress: int = Field(..., description="Progress percentage")
    error: str | None = Field(None, description="Last reported error")
    started_at: datetime | None = Field(None, description="When downloading started")
    completed_at: datetime | None = Field(None, description="When the task reached a terminal status")
    updated_at: datetime = Field(..., description="Last update")

    @model_validator(mode="before")
    @classmethod
    def extract_device_key(cls, data: Any) -> Any:
        # ORM rows carry the key on the related device
        device = getattr(data, "device", None)
        if device is not None:
            return {
                "device_key": device.key,
                "status": data.status,
                "progress": data.progress,
                "error": data.error,
                "started_at": data.started_at,
                "completed_at": data.completed_at,
                "updated_at": data.updated_at,
            }
        return data


class UpdateTaskListResponseSchema(BaseModel):
    """Response schema for a rollout's tasks."""

    tasks: list[UpdateTaskSchema]
    count: int = Field(..., description="Number of tasks returned")


class DeviceProgressSchema(BaseModel):
    """Progress report for one device's update."""

    status: UpdateStatus = Field(..., description="New update status")
    progress: int = Field(0, ge=0, le=100, description="Progress percentage")
    error: str | None = Field(None, max_length=2000, description="Failure detail")

    @field_validator("status")
    @classmethod
    def reject_cancelled(cls, v: UpdateStatus) -> UpdateStatus:
        if v == UpdateStatus.CANCELLED:
            raise ValueError("CANCELLED is reserved for rollbacks")
        return v
