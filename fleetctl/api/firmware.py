"""Firmware catalogue API endpoints."""

import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, request
from spectree import Response as SpectreeResponse

from fleetctl.schemas.error import ErrorResponseSchema
from fleetctl.schemas.firmware import (
    FirmwareCreateSchema,
    FirmwareListResponseSchema,
    FirmwareResponseSchema,
)
from fleetctl.services.container import ServiceContainer
from fleetctl.services.firmware_service import FirmwareService
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.tenant_service import TenantService
from fleetctl.utils.error_handling import handle_api_errors
from fleetctl.utils.spectree_config import api

firmware_bp = Blueprint(
    "firmware", __name__, url_prefix="/tenants/<tenant_id>/firmware"
)


@firmware_bp.route("", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=FirmwareListResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def list_firmware(
    tenant_id: str,
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    firmware_service: FirmwareService = Provide[ServiceContainer.firmware_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """List a tenant's firmware, optionally for one device type."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenant_service.get_tenant(tenant_id)
        firmware = firmware_service.list_firmware(
            tenant_id, device_type=request.args.get("device_type")
        )

        return FirmwareListResponseSchema(
            firmware=[FirmwareResponseSchema.model_validate(f) for f in firmware],
            count=len(firmware),
        ).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("list_firmware", status, duration)


@firmware_bp.route("", methods=["POST"])
@api.validate(
    json=FirmwareCreateSchema,
    resp=SpectreeResponse(
        HTTP_201=FirmwareResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def create_firmware(
    tenant_id: str,
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    firmware_service: FirmwareService = Provide[ServiceContainer.firmware_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Register a firmware image in DRAFT state."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenant_service.get_tenant(tenant_id)
        data = FirmwareCreateSchema.model_validate(request.get_json())
        firmware = firmware_service.create_firmware(
            tenant_id=tenant_id,
            device_type=data.device_type,
            version=data.version,
            url=data.url,
            build=data.build,
            channel=data.channel.value,
            checksum=data.checksum,
            size=data.size,
            release_notes=data.release_notes,
        )

        return FirmwareResponseSchema.model_validate(firmware).model_dump(), 201

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("create_firmware", status, duration)


@firmware_bp.route("/<int:firmware_id>", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=FirmwareResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_firmware(
    tenant_id: str,
    firmware_id: int,
    firmware_service: FirmwareService = Provide[ServiceContainer.firmware_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Get firmware by ID."""
    start_time = time.perf_counter()
    status = "success"

    try:
        firmware = firmware_service.get_firmware(tenant_id, firmware_id)
        return FirmwareResponseSchema.model_validate(firmware).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_firmware", status, duration)


@firmware_bp.route("/<int:firmware_id>/publish", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=FirmwareResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def publish_firmware(
    tenant_id: str,
    firmware_id: int,
    firmware_service: FirmwareService = Provide[ServiceContainer.firmware_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Publish a DRAFT firmware so rollouts and bootstrap offers can use it."""
    start_time = time.perf_counter()
    status = "success"

    try:
        firmware = firmware_service.publish_firmware(tenant_id, firmware_id)
        return FirmwareResponseSchema.model_validate(firmware).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("publish_firmware", status, duration)


@firmware_bp.route("/<int:firmware_id>/archive", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=FirmwareResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def archive_firmware(
    tenant_id: str,
    firmware_id: int,
    firmware_service: FirmwareService = Provide[ServiceContainer.firmware_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Archive firmware; it is no longer offered."""
    start_time = time.perf_counter()
    status = "success"

    try:
        firmware = firmware_service.archive_firmware(tenant_id, firmware_id)
        return FirmwareResponseSchema.model_validate(firmware).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("archive_firmware", status, duration)
