"""Firmware catalogue model."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from fleetctl.extensions import db


class FirmwareStatus(StrEnum):
    """Firmware lifecycle: DRAFT -> PUBLISHED -> ARCHIVED."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class FirmwareChannel(StrEnum):
    """Release channels a device can follow."""

    STABLE = "stable"
    BETA = "beta"
    DEV = "dev"


# Channels whose devices are offered updates during bootstrap
OTA_OFFER_CHANNELS = (FirmwareChannel.BETA.value, FirmwareChannel.DEV.value)


class Firmware(db.Model):  # type: ignore[name-defined]
    """A firmware image owned by a tenant for one device type."""

    __tablename__ = "firmware"
    __table_args__ = (
        UniqueConstraint("tenant_id", "device_type", "version", name="uq_firmware_tenant_type_version"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_type: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    build: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FirmwareChannel.STABLE.value
    )

    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    release_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FirmwareStatus.DRAFT.value
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_published(self) -> bool:
        return self.status == FirmwareStatus.PUBLISHED.value

    def __repr__(self) -> str:
        return f"<Firmware(id={self.id}, type='{self.device_type}', version='{self.version}')>"
