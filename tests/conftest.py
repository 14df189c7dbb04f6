"""Pytest configuration and fixtures."""

import sqlite3
from collections.abc import Generator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from fleetctl.services.device_service import DeviceService
    from fleetctl.services.rollout_service import RolloutService
    from fleetctl.services.shadow_service import ShadowService
from flask import Flask
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from fleetctl import create_app
from fleetctl.config import Settings
from fleetctl.database import upgrade_database
from fleetctl.services.container import ServiceContainer
from fleetctl.utils import epoch_ms


@pytest.fixture(autouse=True)
def clear_prometheus_registry() -> Generator[None, None, None]:
    """Clear Prometheus registry before and after each test to ensure isolation.

    Every app instance builds its own MetricsService and MqttService, whose
    collectors cannot be registered twice in the same registry.
    """
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        try:
            REGISTRY.unregister(collector)
        except (KeyError, ValueError):
            pass
    yield
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        try:
            REGISTRY.unregister(collector)
        except (KeyError, ValueError):
            pass


def _build_test_settings() -> Settings:
    """Construct base Settings object for tests.

    Tests build Settings directly instead of using Settings.load(). MQTT is
    left unconfigured so no broker connection is attempted.
    """
    return Settings(
        # Flask settings
        secret_key="test-secret-key",
        flask_env="testing",
        debug=True,
        cors_origins=["http://localhost:3000"],
        # Database settings
        database_url="sqlite:///:memory:",
        # In-process cache
        cache_url=None,
        # MQTT settings
        mqtt_url=None,
        device_mqtt_url="mqtts://broker.example.com:8883",
        mqtt_client_id="fleetctl-test",
        mqtt_ca_cert_fingerprint="AB:CD:EF",
        # Secrets
        credential_secret="test-credential-secret",
        bootstrap_secret="test-bootstrap-secret",
        # Bootstrap
        default_tenant_id="default",
        credential_ttl_hours=24,
        session_expiry_hours=168,
        mqtt_keepalive_seconds=60,
        bootstrap_config_ttl_hours=24,
        idempotency_ttl_seconds=3600,
        timestamp_skew_seconds=30,
        websocket_url="wss://ws.example.com/devices",
        websocket_enabled=True,
        # Shadow
        shadow_cache_ttl_seconds=60,
        shadow_history_limit=100,
        # Graceful shutdown timeout
        graceful_shutdown_timeout=30,
    )


def _override_settings_for_sqlite(settings: Settings, conn: sqlite3.Connection) -> Settings:
    """Create a copy of settings configured for SQLite with static pool."""
    return settings.model_copy(
        update={
            "database_url": "sqlite://",
            "sqlalchemy_engine_options": {
                "poolclass": StaticPool,
                "creator": lambda: conn,
            },
        }
    )


@pytest.fixture(scope="session")
def template_connection() -> Generator[sqlite3.Connection, None, None]:
    """Create a template SQLite database once and apply migrations."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)

    settings = _override_settings_for_sqlite(_build_test_settings(), conn)

    template_app = create_app(settings)
    with template_app.app_context():
        upgrade_database(recreate=True)

    yield conn

    conn.close()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with in-memory database."""
    return _build_test_settings()


@pytest.fixture
def app(test_settings: Settings, template_connection: sqlite3.Connection) -> Generator[Flask, None, None]:
    """Create Flask app for testing using a fresh copy of the template database."""
    clone_conn = sqlite3.connect(":memory:", check_same_thread=False)
    template_connection.backup(clone_conn)

    settings = _override_settings_for_sqlite(test_settings, clone_conn)

    app = create_app(settings)

    try:
        yield app
    finally:
        with app.app_context():
            from fleetctl.extensions import db as flask_db

            flask_db.session.remove()

        clone_conn.close()


@pytest.fixture
def session(container: ServiceContainer) -> Generator[Session, None, None]:
    """Create a new database session for a test."""
    session = container.db_session()

    exc = None
    try:
        yield session
    except Exception as e:
        exc = e

    if exc:
        session.rollback()
    else:
        session.commit()
    session.close()

    container.db_session.reset()


@pytest.fixture
def client(app: Flask) -> Any:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def container(app: Flask) -> ServiceContainer:
    """Access to the DI container for testing with session provided."""
    container = app.container

    with app.app_context():
        from sqlalchemy.orm import sessionmaker

        from fleetctl.extensions import db as flask_db

        SessionLocal = sessionmaker(
            bind=flask_db.engine, autoflush=True, expire_on_commit=False
        )

    container.session_maker.override(SessionLocal)

    return container


@pytest.fixture
def device_service(container: ServiceContainer) -> "DeviceService":
    """Create DeviceService instance via the container."""
    return container.device_service()


@pytest.fixture
def shadow_service(container: ServiceContainer) -> "ShadowService":
    """Create ShadowService instance via the container."""
    return container.shadow_service()


@pytest.fixture
def rollout_service(container: ServiceContainer) -> "RolloutService":
    """Create RolloutService instance via the container."""
    return container.rollout_service()


@pytest.fixture
def make_tenant(container: ServiceContainer) -> Any:
    """Factory fixture for creating tenants; returns the existing one if present.

    Usage:
        tenant = make_tenant("acme", security_policy={"require_signature": True})
    """
    from fleetctl.models.tenant import Tenant

    def _make(
        tenant_id: str = "default",
        name: str | None = None,
        security_policy: dict[str, Any] | None = None,
    ) -> Tenant:
        service = container.tenant_service()
        existing = service.find_tenant(tenant_id)
        if existing is not None:
            return existing
        return service.create_tenant(
            tenant_id=tenant_id,
            name=name or tenant_id.title(),
            security_policy=security_policy,
        )

    return _make


@pytest.fixture
def make_device(container: ServiceContainer, make_tenant: Any) -> Any:
    """Factory fixture for creating device records in tests.

    Usage:
        device = make_device("meter-0001", status="online", tags=["pilot"])
    """
    from fleetctl.models.device import Device, DeviceStatus

    counter = {"n": 0}

    def _make(
        key: str,
        tenant_id: str = "default",
        device_type: str = "smart-meter",
        status: str = DeviceStatus.ONLINE.value,
        tags: list[str] | None = None,
        region: str | None = None,
        template_id: str | None = None,
        firmware_version: str | None = "1.0.0",
    ) -> Device:
        make_tenant(tenant_id)
        counter["n"] += 1
        mac = "AA:BB:CC:{:02X}:{:02X}:{:02X}".format(
            (counter["n"] >> 16) & 0xFF, (counter["n"] >> 8) & 0xFF, counter["n"] & 0xFF
        )
        device = Device(
            tenant_id=tenant_id,
            key=key,
            mac=mac,
            device_type=device_type,
            name=f"{device_type}-{key}",
            status=status,
            tags=sorted(tags or []),
            region=region,
            template_id=template_id,
            firmware_version=firmware_version,
        )
        session = container.db_session()
        session.add(device)
        session.flush()
        return device

    return _make


@pytest.fixture
def make_firmware(container: ServiceContainer, make_tenant: Any) -> Any:
    """Factory fixture for creating firmware, published unless asked otherwise.

    Usage:
        firmware = make_firmware("2.0.0", channel="beta")
    """
    from fleetctl.models.firmware import Firmware

    def _make(
        version: str = "2.0.0",
        tenant_id: str = "default",
        device_type: str = "smart-meter",
        channel: str = "stable",
        publish: bool = True,
    ) -> Firmware:
        make_tenant(tenant_id)
        service = container.firmware_service()
        firmware = service.create_firmware(
            tenant_id=tenant_id,
            device_type=device_type,
            version=version,
            url=f"https://firmware.example.com/{device_type}/{version}.bin",
            build=f"b{version.replace('.', '')}",
            channel=channel,
            checksum="sha256:0123abcd",
            size=1024,
        )
        if publish:
            service.publish_firmware(tenant_id, firmware.id)
        return firmware

    return _make


@pytest.fixture
def bootstrap_payload() -> Any:
    """Factory for bootstrap request bodies with complete device details.

    Usage:
        payload = bootstrap_payload("meter-0001", channel="beta", messageId="m-1")
    """

    def _make(
        device_id: str = "meter-0001",
        device_type: str = "smart-meter",
        channel: str = "stable",
        current: str = "1.0.0",
        **extra: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "deviceId": device_id,
            "mac": "AA:BB:CC:DD:EE:01",
            "deviceType": device_type,
            "firmware": {
                "current": current,
                "build": "20240301",
                "minRequired": "0.9.0",
                "channel": channel,
            },
            "hardware": {"version": "rev-c", "serial": f"SN-{device_id}"},
            "capabilities": [{"name": "energy", "version": "1.0", "params": {"phases": 1}}],
            "timestamp": epoch_ms(),
        }
        payload.update(extra)
        return payload

    return _make
