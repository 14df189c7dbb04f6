"""Device and capability models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleetctl.extensions import db

if TYPE_CHECKING:
    from fleetctl.models.shadow import DeviceShadow
    from fleetctl.models.tenant import Tenant


class DeviceStatus(StrEnum):
    """Operational status of a device.

    Only ONLINE and OFFLINE devices are eligible for firmware rollouts.
    """

    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"
    MAINTENANCE = "maintenance"


ROLLOUT_ELIGIBLE_STATUSES = (DeviceStatus.ONLINE.value, DeviceStatus.OFFLINE.value)


class Device(db.Model):  # type: ignore[name-defined]
    """SQLAlchemy model for fleet devices.

    Devices are identified by a device-supplied key that is unique within the
    tenant. They are created by the first bootstrap (or pre-provisioned) and
    are never hard-deleted; decommissioning sets is_deleted.
    """

    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_devices_tenant_key"),)

    # Surrogate primary key (auto-increment); also the stable rollout ordering
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Device identifier as reported by the device
    key: Mapped[str] = mapped_column(String(128), nullable=False)

    mac: Mapped[str] = mapped_column(String(17), nullable=False)
    device_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeviceStatus.OFFLINE.value
    )

    # Firmware and hardware details from the last bootstrap
    firmware_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    firmware_build: Mapped[str | None] = mapped_column(String(64), nullable=True)
    firmware_min_required: Mapped[str | None] = mapped_column(String(64), nullable=True)
    firmware_channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    hardware_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hardware_serial: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Rollout targeting attributes
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    tenant: Mapped[Tenant] = relationship("Tenant", back_populates="devices")
    capabilities: Mapped[list[DeviceCapability]] = relationship(
        "DeviceCapability",
        back_populates="device",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DeviceCapability.name",
    )
    shadow: Mapped[DeviceShadow | None] = relationship(
        "DeviceShadow",
        back_populates="device",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="select",
    )

    @property
    def has_complete_info(self) -> bool:
        return bool(
            self.firmware_version
            and self.firmware_build
            and self.hardware_version
            and self.hardware_serial
        )

    def __repr__(self) -> str:
        return f"<Device(id={self.id}, tenant='{self.tenant_id}', key='{self.key}')>"


class DeviceCapability(db.Model):  # type: ignore[name-defined]
    """Capability declared by a device; one row per (device, name)."""

    __tablename__ = "device_capabilities"
    __table_args__ = (
        UniqueConstraint("device_id", "name", name="uq_device_capabilities_device_name"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    device: Mapped[Device] = relationship("Device", back_populates="capabilities")

    def __repr__(self) -> str:
        return f"<DeviceCapability(device_id={self.device_id}, name='{self.name}')>"
