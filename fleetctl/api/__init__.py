"""API blueprints for the fleet control plane."""

from flask import Blueprint

# Create main API blueprint
api_bp = Blueprint("api", __name__, url_prefix="/api")


def register_blueprints(api_bp: Blueprint) -> None:
    """Register child blueprints on api_bp (under the /api prefix).

    Flask does not allow modifying a blueprint after its first registration,
    so child blueprints are only registered once. Test suites call
    create_app() repeatedly with the module-level api_bp.
    """
    if api_bp._got_registered_once:  # type: ignore[attr-defined]
        return

    from fleetctl.api.devices import devices_bp
    from fleetctl.api.firmware import firmware_bp
    from fleetctl.api.health import health_bp
    from fleetctl.api.iot import iot_bp
    from fleetctl.api.rollouts import rollouts_bp
    from fleetctl.api.shadow import shadow_bp
    from fleetctl.api.tenants import tenants_bp

    api_bp.register_blueprint(health_bp)
    api_bp.register_blueprint(iot_bp)
    api_bp.register_blueprint(tenants_bp)
    api_bp.register_blueprint(firmware_bp)
    api_bp.register_blueprint(devices_bp)
    api_bp.register_blueprint(shadow_bp)
    api_bp.register_blueprint(rollouts_bp)
