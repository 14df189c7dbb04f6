"""Firmware rollout models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleetctl.extensions import db

if TYPE_CHECKING:
    from fleetctl.models.device import Device
    from fleetctl.models.firmware import Firmware


class RolloutStatus(StrEnum):
    """Rollout state machine states.

    DRAFT: Created, no devices targeted yet
    ACTIVE: Tasks issued, devices are updating
    PAUSED: Operator hold; existing tasks continue
    ROLLBACK: Aborted, outstanding tasks cancelled (terminal)
    COMPLETED: Every task reached a terminal status (terminal)
    """

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ROLLBACK = "ROLLBACK"
    COMPLETED = "COMPLETED"


TERMINAL_ROLLOUT_STATUSES = (RolloutStatus.ROLLBACK.value, RolloutStatus.COMPLETED.value)


class UpdateStatus(StrEnum):
    """Per-device update task states, in forward order."""

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    DOWNLOADING = "DOWNLOADING"
    DOWNLOADED = "DOWNLOADED"
    INSTALLING = "INSTALLING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_UPDATE_STATUSES = (
    UpdateStatus.SUCCESS.value,
    UpdateStatus.FAILED.value,
    UpdateStatus.CANCELLED.value,
)

# Tasks a rollback cancels
CANCELLABLE_UPDATE_STATUSES = (
    UpdateStatus.PENDING.value,
    UpdateStatus.SCHEDULED.value,
    UpdateStatus.DOWNLOADING.value,
)

# Position in the forward-only progression; SUCCESS and FAILED share the last step
UPDATE_STATUS_ORDER: dict[str, int] = {
    UpdateStatus.PENDING.value: 0,
    UpdateStatus.SCHEDULED.value: 1,
    UpdateStatus.DOWNLOADING.value: 2,
    UpdateStatus.DOWNLOADED.value: 3,
    UpdateStatus.INSTALLING.value: 4,
    UpdateStatus.SUCCESS.value: 5,
    UpdateStatus.FAILED.value: 5,
}


class FirmwareRollout(db.Model):  # type: ignore[name-defined]
    """A strategy-driven distribution of one firmware to a tenant's fleet."""

    __tablename__ = "firmware_rollouts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    firmware_id: Mapped[int] = mapped_column(
        ForeignKey("firmware.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    strategy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RolloutStatus.DRAFT.value
    )
    stats: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Share of the candidate set currently targeted (staged rollouts)
    current_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    firmware: Mapped[Firmware] = relationship("Firmware", lazy="selectin")
    tasks: Mapped[list[FirmwareUpdateStatus]] = relationship(
        "FirmwareUpdateStatus",
        back_populates="rollout",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def __repr__(self) -> str:
        return f"<FirmwareRollout(id={self.id}, tenant='{self.tenant_id}', status='{self.status}')>"


class FirmwareUpdateStatus(db.Model):  # type: ignore[name-defined]
    """Update task for one device within one rollout."""

    __tablename__ = "firmware_update_status"
    __table_args__ = (
        UniqueConstraint("rollout_id", "device_id", name="uq_firmware_update_status_rollout_device"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    rollout_id: Mapped[int] = mapped_column(
        ForeignKey("firmware_rollouts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UpdateStatus.PENDING.value
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    rollout: Mapped[FirmwareRollout] = relationship("FirmwareRollout", back_populates="tasks")
    device: Mapped[Device] = relationship("Device", lazy="selectin")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UPDATE_STATUSES

    def __repr__(self) -> str:
        return f"<FirmwareUpdateStatus(rollout_id={self.rollout_id}, device_id={self.device_id}, status='{self.status}')>"
