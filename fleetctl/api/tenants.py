"""Tenant management API endpoints."""

import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, request
from spectree import Response as SpectreeResponse

from fleetctl.schemas.error import ErrorResponseSchema
from fleetctl.schemas.tenant import (
    TenantCreateSchema,
    TenantListResponseSchema,
    TenantResponseSchema,
)
from fleetctl.services.container import ServiceContainer
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.tenant_service import TenantService
from fleetctl.utils.error_handling import handle_api_errors
from fleetctl.utils.spectree_config import api

tenants_bp = Blueprint("tenants", __name__, url_prefix="/tenants")


@tenants_bp.route("", methods=["GET"])
@api.validate(resp=SpectreeResponse(HTTP_200=TenantListResponseSchema))
@handle_api_errors(include_stack=True)
@inject
def list_tenants(
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """List all tenants."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenants = tenant_service.list_tenants()

        return TenantListResponseSchema(
            tenants=[TenantResponseSchema.model_validate(t) for t in tenants],
            count=len(tenants),
        ).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("list_tenants", status, duration)


@tenants_bp.route("", methods=["POST"])
@api.validate(
    json=TenantCreateSchema,
    resp=SpectreeResponse(
        HTTP_201=TenantResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def create_tenant(
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Register a tenant."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = TenantCreateSchema.model_validate(request.get_json())
        tenant = tenant_service.create_tenant(
            tenant_id=data.id,
            name=data.name,
            plan=data.plan,
            security_policy=data.security_policy,
        )

        return TenantResponseSchema.model_validate(tenant).model_dump(), 201

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("create_tenant", status, duration)


@tenants_bp.route("/<tenant_id>", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=TenantResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_tenant(
    tenant_id: str,
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Get a tenant by ID."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenant = tenant_service.get_tenant(tenant_id)
        return TenantResponseSchema.model_validate(tenant).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_tenant", status, duration)
