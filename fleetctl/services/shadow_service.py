"""Device shadow service.

A shadow holds the operator's desired configuration and the device's
reported configuration. Writes are shallow merges: each top-level key in a
partial document replaces the stored value outright. Only desired writes
advance the version. The delta is derived on every read and never stored.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from fleetctl.exceptions import RecordNotFoundException
from fleetctl.models.device import Device
from fleetctl.models.shadow import DeviceShadow, DeviceShadowHistory, ShadowSource
from fleetctl.services.notification_service import ShadowDesiredChanged, ShadowReportedChanged
from fleetctl.utils import utcnow
from fleetctl.utils.signing import canonical_json

if TYPE_CHECKING:
    from fleetctl.config import Settings
    from fleetctl.services.cache_service import CacheService
    from fleetctl.services.device_profile_service import DeviceProfileService
    from fleetctl.services.device_service import DeviceService
    from fleetctl.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def compute_delta(desired: dict[str, Any], reported: dict[str, Any]) -> dict[str, Any]:
    """Keys of desired whose value differs from reported (or is missing there).

    Values are compared as canonical JSON, so key order inside nested
    objects does not matter. Keys present only in reported never appear.
    """
    return {
        key: value
        for key, value in desired.items()
        if key not in reported or canonical_json(value) != canonical_json(reported[key])
    }


def shadow_cache_key(tenant_id: str, device_key: str) -> str:
    return f"shadow:{tenant_id}:{device_key}"


@dataclass(frozen=True)
class ShadowState:
    """Read model of a shadow with its derived delta."""

    desired: dict[str, Any]
    reported: dict[str, Any]
    version: int
    delta: dict[str, Any]
    updated_at: datetime

    def to_cache(self) -> dict[str, Any]:
        return {
            "desired": self.desired,
            "reported": self.reported,
            "version": self.version,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "ShadowState":
        return cls.build(
            data["desired"],
            data["reported"],
            data["version"],
            datetime.fromisoformat(data["updatedAt"]),
        )

    @classmethod
    def from_model(cls, shadow: DeviceShadow) -> "ShadowState":
        return cls.build(shadow.desired, shadow.reported, shadow.version, shadow.updated_at)

    @classmethod
    def build(
        cls,
        desired: dict[str, Any],
        reported: dict[str, Any],
        version: int,
        updated_at: datetime,
    ) -> "ShadowState":
        return cls(
            desired=dict(desired),
            reported=dict(reported),
            version=version,
            delta=compute_delta(desired, reported),
            updated_at=updated_at,
        )


class ShadowService:
    """Service for reading and merging device shadows."""

    def __init__(
        self,
        db: Session,
        config: "Settings",
        cache_service: "CacheService",
        notification_service: "NotificationService",
        device_profile_service: "DeviceProfileService",
        device_service: "DeviceService",
    ) -> None:
        """Initialize service with dependencies.

        Args:
            db: SQLAlchemy database session
            config: Application settings
            cache_service: Read-through cache for shadow reads
            notification_service: Event bus for shadow change events
            device_profile_service: Source of per-type desired schemas
            device_service: Device lookup
        """
        self.db = db
        self.config = config
        self.cache_service = cache_service
        self.notification_service = notification_service
        self.device_profile_service = device_profile_service
        self.device_service = device_service

    def _find_shadow(self, device: Device) -> DeviceShadow | None:
        stmt = select(DeviceShadow).where(DeviceShadow.device_id == device.id)
        return self.db.scalars(stmt).one_or_none()

    def _get_or_create_shadow(self, device: Device) -> DeviceShadow:
        shadow = self._find_shadow(device)
        if shadow is None:
            now = utcnow()
            shadow = DeviceShadow(
                device_id=device.id,
                desired={},
                reported={},
                version=0,
                created_at=now,
                updated_at=now,
            )
            self.db.add(shadow)
            self.db.flush()
        return shadow

    def find_shadow_state(self, tenant_id: str, device_key: str) -> ShadowState | None:
        """Current shadow state, or None if the device has no shadow yet.

        Raises:
            RecordNotFoundException: If the device doesn't exist
        """
        cache_key = shadow_cache_key(tenant_id, device_key)
        cached = self.cache_service.get_json(cache_key)
        if cached is not None:
            try:
                return ShadowState.from_cache(cached)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding malformed cached shadow %s: %s", cache_key, e)
                self.cache_service.delete(cache_key)

        device = self.device_service.get_device(tenant_id, device_key)
        shadow = self._find_shadow(device)
        if shadow is None:
            return None

        state = ShadowState.from_model(shadow)
        self.cache_service.set_json(
            cache_key, state.to_cache(), self.config.shadow_cache_ttl_seconds
        )
        return state

    def get_shadow(self, tenant_id: str, device_key: str) -> ShadowState:
        """Get a device's shadow.

        Raises:
            RecordNotFoundException: If the device or its shadow doesn't exist
        """
        state = self.find_shadow_state(tenant_id, device_key)
        if state is None:
            raise RecordNotFoundException("Shadow", device_key)
        return state

    def update_desired(
        self,
        tenant_id: str,
        device_key: str,
        partial: dict[str, Any],
        client_token: str | None = None,
    ) -> ShadowState:
        """Merge a partial desired document and advance the version.

        Raises:
            RecordNotFoundException: If the device doesn't exist
            ValidationException: If the merged document violates the device profile schema
        """
        device = self.device_service.get_device(tenant_id, device_key)
        shadow = self._get_or_create_shadow(device)

        desired = {**shadow.desired, **partial}
        self.device_profile_service.validate_desired(tenant_id, device.device_type, desired)

        # Assign new objects; JSON columns don't track in-place mutation
        shadow.desired = desired
        shadow.version = shadow.version + 1
        shadow.client_token = client_token
        shadow.updated_at = utcnow()
        self._append_history(device, shadow, ShadowSource.DESIRED)
        self.db.flush()

        self._invalidate_cache(tenant_id, device_key)

        state = ShadowState.from_model(shadow)
        self.notification_service.publish(
            ShadowDesiredChanged(
                tenant_id=tenant_id,
                device_key=device_key,
                device_type=device.device_type,
                version=state.version,
                desired=state.desired,
                delta=state.delta,
                client_token=client_token,
            )
        )

        logger.info(
            "Updated desired shadow of %s/%s to version %d", tenant_id, device_key, state.version
        )
        return state

    def update_reported(
        self, tenant_id: str, device_key: str, partial: dict[str, Any]
    ) -> ShadowState:
        """Merge a partial reported document. The version is left untouched.

        Raises:
            RecordNotFoundException: If the device doesn't exist
        """
        device = self.device_service.get_device(tenant_id, device_key)
        shadow = self._get_or_create_shadow(device)

        shadow.reported = {**shadow.reported, **partial}
        shadow.updated_at = utcnow()
        self._append_history(device, shadow, ShadowSource.REPORTED)
        self.db.flush()

        self._invalidate_cache(tenant_id, device_key)

        state = ShadowState.from_model(shadow)
        self.notification_service.publish(
            ShadowReportedChanged(
                tenant_id=tenant_id,
                device_key=device_key,
                device_type=device.device_type,
                version=state.version,
                reported=state.reported,
                delta=state.delta,
            )
        )

        logger.debug("Updated reported shadow of %s/%s", tenant_id, device_key)
        return state

    def get_history(
        self, tenant_id: str, device_key: str, limit: int | None = None
    ) -> list[DeviceShadowHistory]:
        """Shadow history entries, newest first.

        The limit is capped at the configured history limit.
        """
        device = self.device_service.get_device(tenant_id, device_key)

        cap = self.config.shadow_history_limit
        limit = cap if limit is None else max(1, min(limit, cap))

        stmt = (
            select(DeviceShadowHistory)
            .where(DeviceShadowHistory.device_id == device.id)
            .order_by(DeviceShadowHistory.id.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def _invalidate_cache(self, tenant_id: str, device_key: str) -> None:
        """Drop the cached read now and again once the write is committed.

        Until the commit, concurrent readers still see the old row and may
        put it back into the cache.
        """
        cache_key = shadow_cache_key(tenant_id, device_key)
        self.cache_service.delete(cache_key)
        event.listen(
            self.db, "after_commit", lambda _session: self.cache_service.delete(cache_key), once=True
        )

    def _append_history(self, device: Device, shadow: DeviceShadow, source: ShadowSource) -> None:
        self.db.add(
            DeviceShadowHistory(
                device_id=device.id,
                source=source.value,
                version=shadow.version,
                desired=dict(shadow.desired),
                reported=dict(shadow.reported),
                client_token=shadow.client_token if source == ShadowSource.DESIRED else None,
                created_at=utcnow(),
            )
        )
