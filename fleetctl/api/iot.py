"""Device-facing provisioning endpoint.

Devices call this without an operator session. The response is always a
bootstrap envelope; the HTTP status mirrors the envelope code.
"""

import logging
import time
from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, jsonify, request

from fleetctl.config import Settings
from fleetctl.services.bootstrap_service import BootstrapService
from fleetctl.services.container import ServiceContainer
from fleetctl.services.metrics_service import MetricsService
from fleetctl.utils.error_handling import handle_api_errors

logger = logging.getLogger(__name__)

iot_bp = Blueprint("iot", __name__, url_prefix="/iot")

TENANT_HEADER = "X-Tenant-ID"


def resolve_tenant_id(payload: Any, default_tenant_id: str) -> str:
    """Tenant from the header, then the request body, then the default."""
    header_value = request.headers.get(TENANT_HEADER, "").strip()
    if header_value:
        return header_value
    if isinstance(payload, dict):
        body_value = payload.get("tenantId")
        if isinstance(body_value, str) and body_value.strip():
            return body_value.strip()
    return default_tenant_id


@iot_bp.route("/bootstrap", methods=["POST"])
@handle_api_errors
@inject
def bootstrap(
    bootstrap_service: BootstrapService = Provide[ServiceContainer.bootstrap_service],
    metrics_service: MetricsService = Provide[ServiceContainer.metrics_service],
    config: Settings = Provide[ServiceContainer.config],
) -> Any:
    """Provision a device: credentials, topics, shadow defaults and OTA offer."""
    start_time = time.perf_counter()
    status = "success"

    try:
        payload = request.get_json(silent=True)
        tenant_id = resolve_tenant_id(payload, config.default_tenant_id)

        envelope = bootstrap_service.process_bootstrap(payload, tenant_id)
        if envelope["code"] != 200:
            status = "error"

        return jsonify(envelope), envelope["code"]

    except Exception:
        status = "error"
        raise

    finally:
        duration = time.perf_counter() - start_time
        metrics_service.record_operation("bootstrap", status, duration)
