"""Tenant schemas for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TenantCreateSchema(BaseModel):
    """Request schema for registering a tenant."""

    id: str = Field(..., min_length=1, max_length=64, description="Tenant identifier used in topics")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    plan: str = Field("standard", description="Subscription plan")
    security_policy: dict[str, Any] = Field(
        default_factory=dict, description="Security policy flags, e.g. require_signature"
    )


class TenantResponseSchema(BaseModel):
    """Response schema for tenant details."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Tenant identifier")
    name: str = Field(..., description="Display name")
    plan: str = Field(..., description="Subscription plan")
    security_policy: dict[str, Any] = Field(..., description="Security policy flags")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class TenantListResponseSchema(BaseModel):
    """Response schema for tenant list."""

    tenants: list[TenantResponseSchema]
    count: int = Field(..., description="Total count of tenants")
