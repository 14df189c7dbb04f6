"""Health check endpoint for Kubernetes probes."""

from typing import Any

from dependency_injector.wiring import Provide, inject
from flask import Blueprint, jsonify

from fleetctl.config import Settings
from fleetctl.database import check_db_connection
from fleetctl.services.cache_service import CacheService
from fleetctl.services.container import ServiceContainer
from fleetctl.services.mqtt_service import MqttService

health_bp = Blueprint("health", __name__, url_prefix="/health")


@health_bp.route("", methods=["GET"])
@inject
def health_check(
    cache_service: CacheService = Provide[ServiceContainer.cache_service],
    mqtt_service: MqttService = Provide[ServiceContainer.mqtt_service],
    config: Settings = Provide[ServiceContainer.config],
) -> Any:
    """Health check endpoint for Kubernetes probes.

    Returns 200 when the database and cache are reachable and, if MQTT is
    configured, the broker connection is up. Returns 503 otherwise.
    """
    db_connected = check_db_connection()
    cache_connected = cache_service.ping()

    if not config.mqtt_url:
        mqtt_state = "disabled"
    else:
        mqtt_state = "connected" if mqtt_service.enabled else "disconnected"

    errors = []
    if not db_connected:
        errors.append("database not connected")
    if not cache_connected:
        errors.append("cache not connected")
    if mqtt_state == "disconnected":
        errors.append("MQTT not connected")

    is_healthy = not errors

    response: dict[str, Any] = {
        "status": "healthy" if is_healthy else "unhealthy",
        "database": "connected" if db_connected else "disconnected",
        "cache": "connected" if cache_connected else "disconnected",
        "mqtt": mqtt_state,
    }
    if errors:
        response["error"] = ", ".join(errors)

    return jsonify(response), 200 if is_healthy else 503
