"""Tenant model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleetctl.extensions import db

if TYPE_CHECKING:
    from fleetctl.models.device import Device


class Tenant(db.Model):  # type: ignore[name-defined]
    """A customer account; owns devices, firmware and rollouts."""

    __tablename__ = "tenants"

    # Slug-style identifier, also used in topics and credentials
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="standard")

    # Security policy flags, e.g. {"require_signature": true}
    security_policy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    devices: Mapped[list[Device]] = relationship(
        "Device", back_populates="tenant", lazy="select"
    )

    @property
    def requires_signature(self) -> bool:
        return bool((self.security_policy or {}).get("require_signature", False))

    def __repr__(self) -> str:
        return f"<Tenant(id='{self.id}', plan='{self.plan}')>"
