"""Firmware catalogue service."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetctl.exceptions import (
    RecordExistsException,
    RecordNotFoundException,
    StateConflictException,
    ValidationException,
)
from fleetctl.models.firmware import Firmware, FirmwareChannel, FirmwareStatus
from fleetctl.utils import utcnow

logger = logging.getLogger(__name__)


class FirmwareService:
    """Service for tenant-owned firmware images.

    Firmware moves DRAFT -> PUBLISHED -> ARCHIVED. Only published firmware
    can be rolled out or offered during bootstrap.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_firmware(
        self,
        tenant_id: str,
        device_type: str,
        version: str,
        url: str,
        build: str | None = None,
        channel: str = FirmwareChannel.STABLE.value,
        checksum: str | None = None,
        size: int | None = None,
        release_notes: str | None = None,
    ) -> Firmware:
        """Register a firmware image in DRAFT state.

        Raises:
            ValidationException: If the channel is unknown
            RecordExistsException: If the version already exists for the type
        """
        try:
            channel = FirmwareChannel(channel).value
        except ValueError as e:
            raise ValidationException(f"Unknown firmware channel '{channel}'") from e

        stmt = select(Firmware).where(
            Firmware.tenant_id == tenant_id,
            Firmware.device_type == device_type,
            Firmware.version == version,
        )
        if self.db.scalars(stmt).one_or_none() is not None:
            raise RecordExistsException("Firmware", f"{device_type} {version}")

        firmware = Firmware(
            tenant_id=tenant_id,
            device_type=device_type,
            version=version,
            build=build,
            channel=channel,
            url=url,
            checksum=checksum,
            size=size,
            release_notes=release_notes,
            status=FirmwareStatus.DRAFT.value,
        )
        self.db.add(firmware)
        self.db.flush()

        logger.info("Created firmware %s %s for tenant %s", device_type, version, tenant_id)
        return firmware

    def get_firmware(self, tenant_id: str, firmware_id: int) -> Firmware:
        """Get firmware owned by the tenant.

        Raises:
            RecordNotFoundException: If it doesn't exist or belongs to another tenant
        """
        firmware = self.db.get(Firmware, firmware_id)
        if firmware is None or firmware.tenant_id != tenant_id:
            raise RecordNotFoundException("Firmware", firmware_id)
        return firmware

    def list_firmware(
        self, tenant_id: str, device_type: str | None = None
    ) -> list[Firmware]:
        stmt = select(Firmware).where(Firmware.tenant_id == tenant_id)
        if device_type is not None:
            stmt = stmt.where(Firmware.device_type == device_type)
        stmt = stmt.order_by(Firmware.device_type, Firmware.id.desc())
        return list(self.db.scalars(stmt).all())

    def publish_firmware(self, tenant_id: str, firmware_id: int) -> Firmware:
        firmware = self.get_firmware(tenant_id, firmware_id)
        if firmware.status != FirmwareStatus.DRAFT.value:
            raise StateConflictException("publish firmware", firmware.status)

        firmware.status = FirmwareStatus.PUBLISHED.value
        firmware.published_at = utcnow()
        self.db.flush()

        logger.info("Published firmware %s %s", firmware.device_type, firmware.version)
        return firmware

    def archive_firmware(self, tenant_id: str, firmware_id: int) -> Firmware:
        firmware = self.get_firmware(tenant_id, firmware_id)
        if firmware.status == FirmwareStatus.ARCHIVED.value:
            raise StateConflictException("archive firmware", firmware.status)

        firmware.status = FirmwareStatus.ARCHIVED.value
        self.db.flush()

        logger.info("Archived firmware %s %s", firmware.device_type, firmware.version)
        return firmware

    def latest_published(self, tenant_id: str, device_type: str) -> Firmware | None:
        """Most recently published firmware for a device type, if any."""
        stmt = (
            select(Firmware)
            .where(
                Firmware.tenant_id == tenant_id,
                Firmware.device_type == device_type,
                Firmware.status == FirmwareStatus.PUBLISHED.value,
            )
            .order_by(Firmware.published_at.desc(), Firmware.id.desc())
            .limit(1)
        )
        return self.db.scalars(stmt).first()
