"""Device shadow API endpoints."""

import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, request
from spectree import Response as SpectreeResponse

from fleetctl.schemas.error import ErrorResponseSchema
from fleetctl.schemas.shadow import (
    ShadowDesiredUpdateSchema,
    ShadowHistoryEntrySchema,
    ShadowHistoryResponseSchema,
    ShadowReportedUpdateSchema,
    ShadowResponseSchema,
)
from fleetctl.services.container import ServiceContainer
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.shadow_service import ShadowService
from fleetctl.utils.error_handling import handle_api_errors
from fleetctl.utils.spectree_config import api

shadow_bp = Blueprint(
    "shadow", __name__, url_prefix="/tenants/<tenant_id>/devices/<device_key>/shadow"
)


@shadow_bp.route("", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=ShadowResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_shadow(
    tenant_id: str,
    device_key: str,
    shadow_service: ShadowService = Provide[ServiceContainer.shadow_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Get the device shadow with its current delta."""
    start_time = time.perf_counter()
    status = "success"

    try:
        state = shadow_service.get_shadow(tenant_id, device_key)
        return ShadowResponseSchema.model_validate(state).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_shadow", status, duration)


@shadow_bp.route("/desired", methods=["PATCH"])
@api.validate(
    json=ShadowDesiredUpdateSchema,
    resp=SpectreeResponse(
        HTTP_200=ShadowResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def update_desired(
    tenant_id: str,
    device_key: str,
    shadow_service: ShadowService = Provide[ServiceContainer.shadow_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Merge top-level desired keys and notify the device."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = ShadowDesiredUpdateSchema.model_validate(request.get_json())
        state = shadow_service.update_desired(
            tenant_id, device_key, data.state, client_token=data.client_token
        )

        return ShadowResponseSchema.model_validate(state).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("update_shadow_desired", status, duration)


@shadow_bp.route("/reported", methods=["PATCH"])
@api.validate(
    json=ShadowReportedUpdateSchema,
    resp=SpectreeResponse(
        HTTP_200=ShadowResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def update_reported(
    tenant_id: str,
    device_key: str,
    shadow_service: ShadowService = Provide[ServiceContainer.shadow_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Merge top-level reported keys."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = ShadowReportedUpdateSchema.model_validate(request.get_json())
        state = shadow_service.update_reported(tenant_id, device_key, data.state)

        return ShadowResponseSchema.model_validate(state).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("update_shadow_reported", status, duration)


@shadow_bp.route("/history", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=ShadowHistoryResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_shadow_history(
    tenant_id: str,
    device_key: str,
    shadow_service: ShadowService = Provide[ServiceContainer.shadow_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Recorded shadow writes, newest first."""
    start_time = time.perf_counter()
    status = "success"

    try:
        limit = request.args.get("limit", type=int)
        entries = shadow_service.get_history(tenant_id, device_key, limit=limit)

        return ShadowHistoryResponseSchema(
            entries=[ShadowHistoryEntrySchema.model_validate(e) for e in entries],
            count=len(entries),
        ).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_shadow_history", status, duration)
