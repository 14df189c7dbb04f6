"""Device service for the tenant-scoped device registry."""

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetctl.exceptions import RecordNotFoundException, ValidationException
from fleetctl.models.device import (
    ROLLOUT_ELIGIBLE_STATUSES,
    Device,
    DeviceCapability,
    DeviceStatus,
)
from fleetctl.utils import utcnow

logger = logging.getLogger(__name__)


class DeviceService:
    """Service for looking up, registering and targeting devices.

    Devices are created by their first bootstrap (auto-registration) and
    updated on every following one. Operators can adjust the targeting
    attributes (status, tags, region, template) used by rollouts.
    """

    def __init__(self, db: Session) -> None:
        """Initialize service with a database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    def list_devices(
        self,
        tenant_id: str,
        status: str | None = None,
        tag: str | None = None,
    ) -> list[Device]:
        """List a tenant's non-deleted devices.

        Args:
            tenant_id: Owning tenant
            status: Optional status filter
            tag: Optional tag the device must carry

        Returns:
            Devices ordered by key
        """
        stmt = select(Device).where(
            Device.tenant_id == tenant_id, Device.is_deleted.is_(False)
        )
        if status is not None:
            stmt = stmt.where(Device.status == status)
        stmt = stmt.order_by(Device.key)

        devices = list(self.db.scalars(stmt).all())
        if tag is not None:
            # Tags live in a JSON column; filter portably in Python
            devices = [d for d in devices if tag in (d.tags or [])]
        return devices

    def find_device(self, tenant_id: str, key: str) -> Device | None:
        stmt = select(Device).where(Device.tenant_id == tenant_id, Device.key == key)
        return self.db.scalars(stmt).one_or_none()

    def get_device(self, tenant_id: str, key: str) -> Device:
        """Get a device by its tenant-scoped key.

        Raises:
            RecordNotFoundException: If the device doesn't exist
        """
        device = self.find_device(tenant_id, key)
        if device is None:
            raise RecordNotFoundException("Device", key)
        return device

    def update_device(
        self,
        tenant_id: str,
        key: str,
        status: str | None = None,
        tags: list[str] | None = None,
        region: str | None = None,
        template_id: str | None = None,
        name: str | None = None,
    ) -> Device:
        """Update operator-managed device attributes. None leaves a field as is."""
        device = self.get_device(tenant_id, key)

        if status is not None:
            try:
                device.status = DeviceStatus(status).value
            except ValueError as e:
                raise ValidationException(f"Unknown device status '{status}'") from e
        if tags is not None:
            device.tags = sorted(set(tags))
        if region is not None:
            device.region = region or None
        if template_id is not None:
            device.template_id = template_id or None
        if name is not None:
            device.name = name

        self.db.flush()

        logger.info("Updated device %s/%s", tenant_id, key)
        return device

    def upsert_from_bootstrap(
        self,
        tenant_id: str,
        key: str,
        mac: str,
        device_type: str,
        firmware: dict[str, Any] | None = None,
        hardware: dict[str, Any] | None = None,
    ) -> tuple[Device, bool]:
        """Create or refresh a device from a bootstrap request.

        Unknown devices are registered on the spot. Firmware and hardware
        fields are only overwritten when the request carries them.

        Returns:
            Tuple of (device, created)
        """
        firmware = firmware or {}
        hardware = hardware or {}

        device = self.find_device(tenant_id, key)
        created = device is None
        if device is None:
            suffix = "".join(c for c in mac if c.isalnum())[-6:].lower()
            device = Device(
                tenant_id=tenant_id,
                key=key,
                mac=mac,
                device_type=device_type,
                name=f"{device_type}-{suffix}",
                status=DeviceStatus.OFFLINE.value,
                tags=[],
            )
            self.db.add(device)
        else:
            device.mac = mac
            device.device_type = device_type

        for attr, value in (
            ("firmware_version", firmware.get("current")),
            ("firmware_build", firmware.get("build")),
            ("firmware_min_required", firmware.get("min_required")),
            ("firmware_channel", firmware.get("channel")),
            ("hardware_version", hardware.get("version")),
            ("hardware_serial", hardware.get("serial")),
        ):
            if value:
                setattr(device, attr, value)

        device.last_seen = utcnow()
        self.db.flush()

        if created:
            logger.info("Auto-registered device %s/%s (%s)", tenant_id, key, device_type)
        return device, created

    def upsert_capabilities(
        self, device: Device, capabilities: Iterable[dict[str, Any]]
    ) -> None:
        """Insert or update declared capabilities by (device, name)."""
        existing = {cap.name: cap for cap in device.capabilities}
        for declared in capabilities:
            name = declared["name"]
            capability = existing.get(name)
            if capability is None:
                capability = DeviceCapability(name=name)
                device.capabilities.append(capability)
                existing[name] = capability
            capability.version = declared.get("version")
            capability.params = declared.get("params") or {}

        self.db.flush()

    def select_rollout_candidates(
        self, tenant_id: str, filters: dict[str, Any] | None = None
    ) -> list[Device]:
        """Select the devices a rollout may target.

        Only non-deleted ONLINE/OFFLINE devices qualify. Filters intersect:
        a device must carry every listed tag and match the template, region
        and explicit key lists when given.

        Returns:
            Candidates ordered by primary key, so positional slices are stable
        """
        filters = filters or {}

        stmt = select(Device).where(
            Device.tenant_id == tenant_id,
            Device.is_deleted.is_(False),
            Device.status.in_(ROLLOUT_ELIGIBLE_STATUSES),
        )
        if filters.get("template_ids"):
            stmt = stmt.where(Device.template_id.in_(filters["template_ids"]))
        if filters.get("regions"):
            stmt = stmt.where(Device.region.in_(filters["regions"]))
        if filters.get("device_list"):
            stmt = stmt.where(Device.key.in_(filters["device_list"]))
        stmt = stmt.order_by(Device.id)

        candidates = list(self.db.scalars(stmt).all())

        required_tags = set(filters.get("tags") or [])
        if required_tags:
            candidates = [d for d in candidates if required_tags.issubset(d.tags or [])]

        return candidates
