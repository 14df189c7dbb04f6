"""Tests for health and metrics endpoints."""

from unittest.mock import patch

from flask.testing import FlaskClient


class TestHealthEndpoint:
    """Tests for GET /api/health."""

    def test_healthy_without_mqtt(self, client: FlaskClient) -> None:
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.get_json() == {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "mqtt": "disabled",
        }

    def test_database_down_is_unhealthy(self, client: FlaskClient) -> None:
        with patch("fleetctl.api.health.check_db_connection", return_value=False):
            response = client.get("/api/health")

        assert response.status_code == 503
        data = response.get_json()
        assert data["status"] == "unhealthy"
        assert data["error"] == "database not connected"


class TestMetricsEndpoint:
    """Tests for GET /metrics."""

    def test_metrics_exposed_in_prometheus_format(self, client: FlaskClient) -> None:
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.content_type.startswith("text/plain")
        assert "fleet_operations_total" in response.get_data(as_text=True)
