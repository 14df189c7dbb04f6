"""Device shadow models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleetctl.extensions import db

if TYPE_CHECKING:
    from fleetctl.models.device import Device


class ShadowSource(StrEnum):
    """Which side of the shadow a history entry records."""

    DESIRED = "desired"
    REPORTED = "reported"


class DeviceShadow(db.Model):  # type: ignore[name-defined]
    """Desired and reported configuration documents for one device.

    The version only moves on desired writes. The delta is derived on read.
    """

    __tablename__ = "device_shadows"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    desired: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    reported: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    client_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    device: Mapped[Device] = relationship("Device", back_populates="shadow")

    def __repr__(self) -> str:
        return f"<DeviceShadow(device_id={self.device_id}, version={self.version})>"


class DeviceShadowHistory(db.Model):  # type: ignore[name-defined]
    """Snapshot of a shadow taken after each write."""

    __tablename__ = "device_shadow_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    desired: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    reported: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    client_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
