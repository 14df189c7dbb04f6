"""Tests for TestDataService."""

from flask import Flask

from fleetctl.services.container import ServiceContainer


class TestLoadTestData:
    """Tests for loading fixture data."""

    def test_load_all(self, app: Flask, container: ServiceContainer) -> None:
        with app.app_context():
            counts = container.test_data_service().load_all()

            assert counts["tenants"] == 2
            assert counts["firmware"] > 0
            assert counts["devices"] > 0

            tenants = container.tenant_service().list_tenants()
            assert [t.id for t in tenants] == ["acme", "default"]
            assert tenants[0].requires_signature is True

            devices = [
                d
                for tenant in tenants
                for d in container.device_service().list_devices(tenant.id)
            ]
            assert len(devices) == counts["devices"]

    def test_clear_all_data(self, app: Flask, container: ServiceContainer) -> None:
        with app.app_context():
            service = container.test_data_service()
            service.load_all()

            service.clear_all_data()

            assert container.tenant_service().list_tenants() == []
