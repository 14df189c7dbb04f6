"""Dependency injection container for services."""

from collections.abc import Callable, Sequence
from typing import Any

from dependency_injector import containers, providers
from sqlalchemy.orm import sessionmaker

from fleetctl.config import Settings
from fleetctl.services.bootstrap_service import BootstrapService
from fleetctl.services.cache_service import CacheService
from fleetctl.services.credential_service import CredentialService
from fleetctl.services.device_profile_service import DeviceProfileService
from fleetctl.services.device_service import DeviceService
from fleetctl.services.firmware_service import FirmwareService
from fleetctl.services.metrics_service import MetricsService
from fleetctl.services.mqtt_service import MqttService
from fleetctl.services.notification_service import NotificationService
from fleetctl.services.rollout_service import RolloutService
from fleetctl.services.shadow_service import ShadowService
from fleetctl.services.tenant_service import TenantService
from fleetctl.services.test_data_service import TestDataService
from fleetctl.utils.lifecycle import LifecycleCoordinator

# Background service startup registry. Services register named starters here
# (co-located with their provider definitions); start_background_services()
# runs them in dependency order.
_background_starters: list[tuple[str, Callable[[Any], None], tuple[str, ...]]] = []


def register_for_background_startup(
    name: str, fn: Callable[[Any], None], depends_on: Sequence[str] = ()
) -> None:
    """Register a callable to be invoked during background service startup."""
    _background_starters.append((name, fn, tuple(depends_on)))


class ServiceContainer(containers.DeclarativeContainer):
    """Container for service dependency injection."""

    # Configuration providers
    config = providers.Dependency(instance_of=Settings)
    session_maker = providers.Dependency(instance_of=sessionmaker)
    db_session = providers.ContextLocalSingleton(
        session_maker.provided.call()
    )

    # Lifecycle coordinator - ordered startup and graceful shutdown
    lifecycle_coordinator = providers.Singleton(
        LifecycleCoordinator,
        graceful_shutdown_timeout=config.provided.graceful_shutdown_timeout,
    )

    metrics_service = providers.Singleton(MetricsService)

    # CacheService - Singleton; Redis client or in-process store
    cache_service = providers.Singleton(
        CacheService,
        config=config,
        metrics_service=metrics_service,
    )

    # NotificationService - Singleton event bus with a dispatch worker
    notification_service = providers.Singleton(
        NotificationService,
        metrics_service=metrics_service,
    )
    register_for_background_startup(
        "notifications", lambda c: c.notification_service().startup()
    )

    # MqttService - Singleton to maintain persistent MQTT connection
    mqtt_service = providers.Singleton(MqttService, config=config)
    register_for_background_startup(
        "mqtt",
        lambda c: (
            c.mqtt_service().bind_notifications(c.notification_service()),
            c.mqtt_service().startup(),
        ),
        depends_on=["notifications"],
    )

    credential_service = providers.Singleton(CredentialService, config=config)
    device_profile_service = providers.Singleton(DeviceProfileService, config=config)

    # Request-scoped services - Factory creates new instance per request with database session
    tenant_service = providers.Factory(TenantService, db=db_session)
    device_service = providers.Factory(DeviceService, db=db_session)
    firmware_service = providers.Factory(FirmwareService, db=db_session)
    test_data_service = providers.Factory(TestDataService, db=db_session)

    shadow_service = providers.Factory(
        ShadowService,
        db=db_session,
        config=config,
        cache_service=cache_service,
        notification_service=notification_service,
        device_profile_service=device_profile_service,
        device_service=device_service,
    )

    bootstrap_service = providers.Factory(
        BootstrapService,
        db=db_session,
        config=config,
        metrics_service=metrics_service,
        cache_service=cache_service,
        credential_service=credential_service,
        device_profile_service=device_profile_service,
        tenant_service=tenant_service,
        device_service=device_service,
        firmware_service=firmware_service,
        shadow_service=shadow_service,
    )

    rollout_service = providers.Factory(
        RolloutService,
        db=db_session,
        metrics_service=metrics_service,
        notification_service=notification_service,
        device_service=device_service,
        firmware_service=firmware_service,
    )


def start_background_services(container: Any) -> None:
    """Start registered background services in dependency order.

    Shutdown hooks are registered in startup order so they run in reverse.
    """
    coordinator: LifecycleCoordinator = container.lifecycle_coordinator()
    for name, starter, depends_on in _background_starters:
        coordinator.register_startup(name, lambda s=starter: s(container), depends_on)

    coordinator.register_shutdown(
        "notifications",
        lambda: container.notification_service().shutdown(),
    )
    coordinator.register_shutdown("mqtt", lambda: container.mqtt_service().shutdown())

    coordinator.start()
