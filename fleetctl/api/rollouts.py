"""Firmware rollout API endpoints.

Operators drive the rollout state machine here. Devices (or the gateway
acting for them) report per-device update progress through the progress
endpoint, which is also where automatic rollback and completion are
evaluated.
"""

import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, request
from spectree import Response as SpectreeResponse

from fleetctl.models.rollout import FirmwareRollout
from fleetctl.schemas.error import ErrorResponseSchema
from fleetctl.schemas.rollout import (
    DeviceProgressSchema,
    RolloutAdvanceResponseSchema,
    RolloutCreateSchema,
    RolloutListResponseSchema,
    RolloutResponseSchema,
    RolloutRollbackRequestSchema,
    RolloutStatsSchema,
    UpdateTaskListResponseSchema,
    UpdateTaskSchema,
)
from fleetctl.services.container import ServiceContainer
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.rollout_service import RolloutService
from fleetctl.services.tenant_service import TenantService
from fleetctl.utils.error_handling import handle_api_errors
from fleetctl.utils.spectree_config import api

rollouts_bp = Blueprint("rollouts", __name__, url_prefix="/tenants/<tenant_id>/rollouts")


def _rollout_response(rollout: FirmwareRollout) -> dict[str, Any]:
    return RolloutResponseSchema.model_validate(rollout).model_dump(by_alias=True)


@rollouts_bp.route("", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutListResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def list_rollouts(
    tenant_id: str,
    tenant_service: TenantService = Provide[ServiceContainer.tenant_service],
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """List a tenant's rollouts, newest first."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tenant_service.get_tenant(tenant_id)
        rollouts = rollout_service.list_rollouts(tenant_id, status=request.args.get("status"))

        return RolloutListResponseSchema(
            rollouts=[RolloutResponseSchema.model_validate(r) for r in rollouts],
            count=len(rollouts),
        ).model_dump(by_alias=True)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("list_rollouts", status, duration)


@rollouts_bp.route("", methods=["POST"])
@api.validate(
    json=RolloutCreateSchema,
    resp=SpectreeResponse(
        HTTP_201=RolloutResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def create_rollout(
    tenant_id: str,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Create a DRAFT rollout for a published firmware."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = RolloutCreateSchema.model_validate(request.get_json())
        rollout = rollout_service.create_rollout(
            tenant_id=tenant_id,
            firmware_id=data.firmware_id,
            name=data.name,
            strategy=data.strategy.model_dump(mode="json"),
            description=data.description,
        )

        return _rollout_response(rollout), 201

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("create_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Get a rollout by ID."""
    start_time = time.perf_counter()
    status = "success"

    try:
        rollout = rollout_service.get_rollout(tenant_id, rollout_id)
        return _rollout_response(rollout)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/start", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def start_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Target matching devices and activate the rollout."""
    start_time = time.perf_counter()
    status = "success"

    try:
        rollout = rollout_service.start_rollout(tenant_id, rollout_id)
        return _rollout_response(rollout)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("start_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/pause", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def pause_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Pause an active rollout."""
    start_time = time.perf_counter()
    status = "success"

    try:
        rollout = rollout_service.pause_rollout(tenant_id, rollout_id)
        return _rollout_response(rollout)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("pause_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/resume", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def resume_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Resume a paused rollout."""
    start_time = time.perf_counter()
    status = "success"

    try:
        rollout = rollout_service.resume_rollout(tenant_id, rollout_id)
        return _rollout_response(rollout)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("resume_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/rollback", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def rollback_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Abort a rollout and cancel its outstanding tasks."""
    start_time = time.perf_counter()
    status = "success"

    try:
        # The body is optional; an empty POST rolls back without a reason
        data = RolloutRollbackRequestSchema.model_validate(request.get_json(silent=True) or {})
        rollout = rollout_service.rollback_rollout(tenant_id, rollout_id, reason=data.reason)
        return _rollout_response(rollout)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("rollback_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/advance", methods=["POST"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutAdvanceResponseSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def advance_rollout(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Expand a staged rollout to its next increment."""
    start_time = time.perf_counter()
    status = "success"

    try:
        rollout, increment, added = rollout_service.advance_to_next_increment(
            tenant_id, rollout_id
        )

        return RolloutAdvanceResponseSchema(
            rollout=RolloutResponseSchema.model_validate(rollout),
            increment=increment,
            added_devices=added,
        ).model_dump(by_alias=True)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("advance_rollout", status, duration)


@rollouts_bp.route("/<int:rollout_id>/stats", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=RolloutStatsSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def get_rollout_stats(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Task statistics recomputed from the rollout's tasks."""
    start_time = time.perf_counter()
    status = "success"

    try:
        stats = rollout_service.get_stats(tenant_id, rollout_id)
        return RolloutStatsSchema.model_validate(stats).model_dump(by_alias=True)

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("get_rollout_stats", status, duration)


@rollouts_bp.route("/<int:rollout_id>/tasks", methods=["GET"])
@api.validate(
    resp=SpectreeResponse(
        HTTP_200=UpdateTaskListResponseSchema,
        HTTP_404=ErrorResponseSchema,
    )
)
@handle_api_errors(include_stack=True)
@inject
def list_rollout_tasks(
    tenant_id: str,
    rollout_id: int,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Per-device update tasks, optionally filtered by status."""
    start_time = time.perf_counter()
    status = "success"

    try:
        tasks = rollout_service.list_tasks(
            tenant_id, rollout_id, status=request.args.get("status")
        )

        return UpdateTaskListResponseSchema(
            tasks=[UpdateTaskSchema.model_validate(t) for t in tasks],
            count=len(tasks),
        ).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("list_rollout_tasks", status, duration)


@rollouts_bp.route("/<int:rollout_id>/devices/<device_key>/progress", methods=["POST"])
@api.validate(
    json=DeviceProgressSchema,
    resp=SpectreeResponse(
        HTTP_200=UpdateTaskSchema,
        HTTP_400=ErrorResponseSchema,
        HTTP_404=ErrorResponseSchema,
        HTTP_409=ErrorResponseSchema,
    ),
)
@handle_api_errors(include_stack=True)
@inject
def report_device_progress(
    tenant_id: str,
    rollout_id: int,
    device_key: str,
    rollout_service: RolloutService = Provide[ServiceContainer.rollout_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
) -> Any:
    """Record a device's update progress."""
    start_time = time.perf_counter()
    status = "success"

    try:
        data = DeviceProgressSchema.model_validate(request.get_json())
        task = rollout_service.update_device_progress(
            tenant_id,
            rollout_id,
            device_key,
            status=data.status.value,
            progress=data.progress,
            error=data.error,
        )

        return UpdateTaskSchema.model_validate(task).model_dump()

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("report_device_progress", status, duration)
