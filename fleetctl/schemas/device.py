"""Device schemas for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetctl.models.device import DeviceStatus


class DeviceUpdateSchema(BaseModel):
    """Request schema for operator-managed device attributes.

    Omitted fields are left unchanged; an empty string clears region or template.
    """

    name: str | None = Field(None, min_length=1, max_length=255, description="Display name")
    status: DeviceStatus | None = Field(None, description="Operational status")
    tags: list[str] | None = Field(None, description="Targeting tags (replaces existing)")
    region: str | None = Field(None, max_length=64, description="Region")
    template_id: str | None = Field(None, max_length=64, description="Configuration template")


class DeviceCapabilitySchema(BaseModel):
    """Capability declared by a device."""

    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., description="Capability name")
    version: str | None = Field(None, description="Capability version")
    params: dict[str, Any] = Field(default_factory=dict, description="Capability parameters")


class DeviceSummarySchema(BaseModel):
    """Summary schema for device list responses."""

    model_config = ConfigDict(from_attributes=True)

    key: str = Field(..., description="Device identifier within the tenant")
    name: str = Field(..., description="Display name")
    device_type: str = Field(..., description="Device type")
    status: str = Field(..., description="Operational status")
    firmware_version: str | None = Field(None, description="Running firmware version")
    tags: list[str] = Field(default_factory=list, description="Targeting tags")
    last_seen: datetime | None = Field(None, description="Last bootstrap")


class DeviceResponseSchema(BaseModel):
    """Response schema for device details."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Internal device ID")
    tenant_id: str = Field(..., description="Owning tenant")
    key: str = Field(..., description="Device identifier within the tenant")
    mac: str = Field(..., description="MAC address")
    device_type: str = Field(..., description="Device type")
    name: str = Field(..., description="Display name")
    status: str = Field(..., description="Operational status")
    firmware_version: str | None = Field(None, description="Running firmware version")
    firmware_build: str | None = Field(None, description="Running firmware build")
    firmware_min_required: str | None = Field(None, description="Minimum supported firmware")
    firmware_channel: str | None = Field(None, description="Release channel")
    hardware_version: str | None = Field(None, description="Hardware revision")
    hardware_serial: str | None = Field(None, description="Hardware serial number")
    region: str | None = Field(None, description="Region")
    template_id: str | None = Field(None, description="Configuration template")
    tags: list[str] = Field(default_factory=list, description="Targeting tags")
    capabilities: list[DeviceCapabilitySchema] = Field(default_factory=list)
    has_complete_info: bool = Field(..., description="Whether firmware/hardware details are complete")
    last_seen: datetime | None = Field(None, description="Last bootstrap")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class DeviceListResponseSchema(BaseModel):
    """Response schema for device list."""

    devices: list[DeviceSummarySchema]
    count: int = Field(..., description="Total count of devices")
