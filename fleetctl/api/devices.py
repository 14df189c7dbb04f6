"""Device inventory API endpoints."""

import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, jsonify, request
from spectree import Response as SpectreeResponse

from fleetctl.exceptions import RecordNotFoundException
from fleetctl.schemas.bootstrap import BootstrapEnvelopeSchema
from fleetctl.schemas.device import (
    DeviceListResponseSchema,
    DeviceResponseSchema,
    DeviceSummarySchema,
    DeviceUpdateSchema,
)
from fleetctl.schemas.error import ErrorResponseSchema
from fleetctl.services.bootstrap_service import BootstrapService
from fleetctl.services.container import ServiceContainer
from fleetctl.services.device_service import DeviceService
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.tenant_service import TenantService
from fleetctl.utils.error_handling import handle_api_errors
from fleetctl.utils.spectree_config import api

devices_bp = Blueprint("devices", __name__, url_prefix="/tenants/<tenant_id>/devices")


@devices_bp.route("", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=DeviceListResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def list_devices(
    tenant_id: str,
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    device_service: DeviceService = Provide[ServiceContainer.device_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """List a tenant's devices, optionally filtered by status or tag."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenant_service.get_tenant(tenant_id)
        devices = device_service.list_devices(
            tenant_id,
            status=request.args.get("status"),
            tag=request.args.get("tag"),
        )

        return DeviceListResponseSchema(
            devices=[DeviceSummarySchema.model_validate(d) for d in devices],
            count=len(devices),
        ).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("list_devices", status, duration)


@devices_bp.route("/<device_key>", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=DeviceResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_device(
    tenant_id: str,
    device_key: str,
    device_service: DeviceService = Provide[ServiceContainer.device_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Get a device with its capabilities."""
    start_time = time.perf_counter()
    status = "success"

    try:
        device = device_service.get_device(tenant_id, device_key)
        return DeviceResponseSchema.model_validate(device).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_device", status, duration)


@devices_bp.route("/<device_key>", methods=["PATCH"])
@api.validate(
    json=DeviceUpdateSchema,
    resp=SpectreeResponse(
        HTTP_200=DeviceResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def update_device(
    tenant_id: str,
    device_key: str,
    device_service: DeviceService = Provide[ServiceContainer.device_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Update operator-managed attributes (status, tags, region, template, name)."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = DeviceUpdateSchema.model_validate(request.get_json())
        device = device_service.update_device(
            tenant_id,
            device_key,
            status=data.status.value if data.status is not None else None,
            tags=data.tags,
            region=data.region,
            template_id=data.template_id,
            name=data.name,
        )

        return DeviceResponseSchema.model_validate(device).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("update_device", status, duration)


@devices_bp.route("/<device_key>/bootstrap", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=BootstrapEnvelopeSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_bootstrap_envelope(
    tenant_id: str,
    device_key: str,
    device_service: DeviceService = Provide[ServiceContainer.device_service],
    bootstrap_service: BootstrapService = Provide[ServiceContainer.bootstrap_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Last bootstrap envelope issued to the device, while it is still cached."""
    start_time = time.perf_counter()
    status = "success"

    try:
        device_service.get_device(tenant_id, device_key)
        envelope = bootstrap_service.get_cached_envelope(tenant_id, device_key)
        if envelope is None:
            raise RecordNotFoundException("Bootstrap configuration", device_key)

        return jsonify(envelope)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_bootstrap_envelope", status, duration)
