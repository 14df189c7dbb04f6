"""Tests for FirmwareService."""

import pytest
from flask import Flask

from fleetctl.exceptions import (
    RecordExistsException,
    RecordNotFoundException,
    StateConflictException,
    ValidationException,
)
from fleetctl.services.container import ServiceContainer


class TestFirmwareLifecycle:
    """Tests for the DRAFT -> PUBLISHED -> ARCHIVED lifecycle."""

    def test_created_firmware_is_draft(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0", publish=False)

            assert firmware.status == "DRAFT"
            assert firmware.is_published is False
            assert firmware.published_at is None

    def test_publish_then_archive(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0", publish=False)
            service = container.firmware_service()

            service.publish_firmware("default", firmware.id)
            assert firmware.status == "PUBLISHED"
            assert firmware.published_at is not None

            service.archive_firmware("default", firmware.id)
            assert firmware.status == "ARCHIVED"

    def test_publish_twice_conflicts(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0")

            with pytest.raises(StateConflictException):
                container.firmware_service().publish_firmware("default", firmware.id)

    def test_duplicate_version_rejected(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            make_firmware("2.0.0")

            with pytest.raises(RecordExistsException):
                make_firmware("2.0.0")

    def test_unknown_channel_rejected(
        self, app: Flask, container: ServiceContainer, make_tenant
    ) -> None:
        with app.app_context():
            make_tenant("default")

            with pytest.raises(ValidationException):
                container.firmware_service().create_firmware(
                    tenant_id="default",
                    device_type="smart-meter",
                    version="2.0.0",
                    url="https://firmware.example.com/x.bin",
                    channel="nightly",
                )


class TestFirmwareQueries:
    """Tests for firmware lookups."""

    def test_other_tenants_firmware_not_found(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0", tenant_id="acme")

            with pytest.raises(RecordNotFoundException):
                container.firmware_service().get_firmware("default", firmware.id)

    def test_latest_published_ignores_drafts(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            make_firmware("2.0.0")
            make_firmware("3.0.0", publish=False)

            latest = container.firmware_service().latest_published("default", "smart-meter")

            assert latest is not None
            assert latest.version == "2.0.0"

    def test_list_filters_by_device_type(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            make_firmware("2.0.0", device_type="smart-meter")
            make_firmware("1.5.0", device_type="thermostat")

            listed = container.firmware_service().list_firmware("default", device_type="thermostat")

            assert [f.version for f in listed] == ["1.5.0"]
