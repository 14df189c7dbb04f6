"""Device shadow schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ShadowDesiredUpdateSchema(BaseModel):
    """Partial desired document; each top-level key replaces the stored value."""

    state: dict[str, Any] = Field(..., description="Top-level keys to replace")
    client_token: str | None = Field(
        None, max_length=128, description="Caller token echoed in the change notification"
    )


class ShadowReportedUpdateSchema(BaseModel):
    """Partial reported document; each top-level key replaces the stored value."""

    state: dict[str, Any] = Field(..., description="Top-level keys to replace")


class ShadowResponseSchema(BaseModel):
    """Response schema for a device shadow."""

    model_config = ConfigDict(from_attributes=True)

    desired: dict[str, Any] = Field(..., description="Operator intent")
    reported: dict[str, Any] = Field(..., description="Device observation")
    version: int = Field(..., description="Advanced by desired writes only")
    delta: dict[str, Any] = Field(..., description="Desired keys not matched by reported")
    updated_at: datetime = Field(..., description="Last write")


class ShadowHistoryEntrySchema(BaseModel):
    """One recorded shadow write."""

    model_config = ConfigDict(from_attributes=True)

    source: str = Field(..., description="desired or reported")
    version: int = Field(..., description="Shadow version after the write")
    desired: dict[str, Any] = Field(..., description="Desired document after the write")
    reported: dict[str, Any] = Field(..., description="Reported document after the write")
    client_token: str | None = Field(None, description="Token supplied with a desired write")
    created_at: datetime = Field(..., description="When the write happened")


class ShadowHistoryResponseSchema(BaseModel):
    """Response schema for shadow history, newest first."""

    entries: list[ShadowHistoryEntrySchema]
    count: int = Field(..., description="Number of entries returned")
