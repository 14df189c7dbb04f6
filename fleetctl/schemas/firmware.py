"""Firmware catalogue schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from fleetctl.models.firmware import FirmwareChannel


class FirmwareCreateSchema(BaseModel):
    """Request schema for registering a firmware image."""

    device_type: str = Field(..., min_length=1, max_length=64, description="Target device type")
    version: str = Field(..., min_length=1, max_length=64, description="Firmware version")
    url: str = Field(..., min_length=1, max_length=1024, description="Download URL")
    build: str | None = Field(None, max_length=64, description="Build identifier")
    channel: FirmwareChannel = Field(FirmwareChannel.STABLE, description="Release channel")
    checksum: str | None = Field(None, max_length=128, description="Image checksum")
    size: int | None = Field(None, ge=0, description="Image size in bytes")
    release_notes: str | None = Field(None, description="Release notes")


class FirmwareResponseSchema(BaseModel):
    """Response schema for firmware details."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Firmware ID")
    tenant_id: str = Field(..., description="Owning tenant")
    device_type: str = Field(..., description="Target device type")
    version: str = Field(..., description="Firmware version")
    build: str | None = Field(None, description="Build identifier")
    channel: str = Field(..., description="Release channel")
    url: str = Field(..., description="Download URL")
    checksum: str | None = Field(None, description="Image checksum")
    size: int | None = Field(None, description="Image size in bytes")
    release_notes: str | None = Field(None, description="Release notes")
    status: str = Field(..., description="DRAFT, PUBLISHED or ARCHIVED")
    published_at: datetime | None = Field(None, description="When the firmware was published")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class FirmwareListResponseSchema(BaseModel):
    """Response schema for firmware list."""

    firmware: list[FirmwareResponseSchema]
    count: int = Field(..., description="Total count of firmware images")
