"""Tests for the device bootstrap endpoint."""

from flask import Flask
from flask.testing import FlaskClient

from fleetctl.services.container import ServiceContainer


class TestBootstrapEndpoint:
    """Tests for POST /api/iot/bootstrap."""

    def test_bootstrap_success(
        self, app: Flask, client: FlaskClient, container: ServiceContainer, make_tenant, bootstrap_payload
    ) -> None:
        with app.app_context():
            make_tenant("default")

        response = client.post("/api/iot/bootstrap", json=bootstrap_payload("meter-0001"))

        assert response.status_code == 200
        data = response.get_json()
        assert data["code"] == 200
        assert data["data"]["cfg"]["tenant"] == "default"
        assert data["data"]["mqtt"]["username"] == "iot_default_smart-meter_meter-0001"

        with app.app_context():
            device = container.device_service().get_device("default", "meter-0001")
            assert device.device_type == "smart-meter"

    def test_tenant_header_takes_precedence(
        self, app: Flask, client: FlaskClient, make_tenant, bootstrap_payload
    ) -> None:
        with app.app_context():
            make_tenant("acme")

        response = client.post(
            "/api/iot/bootstrap",
            json=bootstrap_payload(tenantId="default"),
            headers={"X-Tenant-ID": "acme"},
        )

        assert response.status_code == 200
        assert response.get_json()["data"]["cfg"]["tenant"] == "acme"

    def test_tenant_from_body(
        self, app: Flask, client: FlaskClient, make_tenant, bootstrap_payload
    ) -> None:
        with app.app_context():
            make_tenant("acme")

        response = client.post("/api/iot/bootstrap", json=bootstrap_payload(tenantId="acme"))

        assert response.get_json()["data"]["cfg"]["tenant"] == "acme"

    def test_unknown_tenant_returns_error_envelope(
        self, client: FlaskClient, bootstrap_payload
    ) -> None:
        response = client.post(
            "/api/iot/bootstrap",
            json=bootstrap_payload(),
            headers={"X-Tenant-ID": "nobody"},
        )

        assert response.status_code == 500
        data = response.get_json()
        assert data["code"] == 500
        assert data["errorCode"] == "TENANT_ERROR"
        assert data["signature"] == ""
        assert "stack" not in str(data)

    def test_invalid_json_returns_error_envelope(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/iot/bootstrap", data="not json", content_type="application/json"
        )

        assert response.status_code == 500
        assert response.get_json()["errorCode"] == "VALIDATION_FAILED"

    def test_failed_bootstrap_does_not_register_device(
        self, app: Flask, client: FlaskClient, container: ServiceContainer, make_tenant, bootstrap_payload
    ) -> None:
        with app.app_context():
            make_tenant("acme", security_policy={"require_signature": True})
            container.db_session().commit()

        response = client.post(
            "/api/iot/bootstrap", json=bootstrap_payload("meter-0042", tenantId="acme")
        )

        assert response.get_json()["errorCode"] == "SIGNATURE_INVALID"
        with app.app_context():
            assert container.device_service().find_device("acme", "meter-0042") is None

    def test_bootstrap_records_operation_metric(
        self, app: Flask, client: FlaskClient, container: ServiceContainer, make_tenant, bootstrap_payload
    ) -> None:
        with app.app_context():
            make_tenant("default")

        client.post("/api/iot/bootstrap", json=bootstrap_payload())

        text = container.metrics_service().get_metrics_text()
        assert 'fleet_operations_total{operation="bootstrap",status="success"} 1.0' in text
        assert 'fleet_bootstrap_requests_total{result="success"} 1.0' in text
