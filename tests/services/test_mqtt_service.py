"""Tests for MqttService."""

import json
from unittest.mock import MagicMock

from fleetctl.services.container import ServiceContainer
from fleetctl.services.mqtt_service import MqttService
from fleetctl.services.notification_service import (
    OtaUpdateAvailable,
    ShadowDesiredChanged,
)
from fleetctl.utils.topics import Channel


def _connected(service: MqttService) -> MagicMock:
    client = MagicMock()
    client.publish.return_value = MagicMock(rc=0)
    service.client = client
    service.enabled = True
    return client


class TestMqttServiceDisabled:
    """Tests for MqttService without a broker."""

    def test_startup_without_url_stays_disabled(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()

        service.startup()

        assert service.enabled is False
        assert service.client is None

    def test_publish_when_disabled_is_noop(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        service.publish("iot/default/smart-meter/meter-0001/cmd", "{}")

    def test_shutdown_is_idempotent(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        service.shutdown()
        service.shutdown()


class TestMqttServicePublish:
    """Tests for publishing with a mocked paho client."""

    def test_publish_to_device_uses_channel_policy(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        client = _connected(service)

        service.publish_to_device(
            "default", "smart-meter", "meter-0001", Channel.SHADOW_DESIRED, {"version": 2}
        )

        client.publish.assert_called_once_with(
            "iot/default/smart-meter/meter-0001/shadow/desired",
            '{"version":2}',
            qos=1,
            retain=True,
        )

    def test_publish_exception_is_swallowed(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        client = _connected(service)
        client.publish.side_effect = RuntimeError("socket closed")

        service.publish("iot/default/smart-meter/meter-0001/cmd", "{}")

    def test_shadow_notification_forwarded(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        client = _connected(service)
        notifications = container.notification_service()
        service.bind_notifications(notifications)

        notifications.publish(
            ShadowDesiredChanged(
                tenant_id="default",
                device_key="meter-0001",
                device_type="smart-meter",
                version=3,
                desired={"a": 1},
                delta={"a": 1},
                client_token="tok",
            )
        )

        topic, payload = client.publish.call_args.args
        assert topic == "iot/default/smart-meter/meter-0001/shadow/desired"
        assert json.loads(payload) == {
            "version": 3,
            "state": {"a": 1},
            "delta": {"a": 1},
            "clientToken": "tok",
        }

    def test_ota_offer_sent_as_command(self, container: ServiceContainer) -> None:
        service = container.mqtt_service()
        client = _connected(service)
        notifications = container.notification_service()
        service.bind_notifications(notifications)

        notifications.publish(
            OtaUpdateAvailable(
                tenant_id="default",
                device_key="meter-0001",
                device_type="smart-meter",
                rollout_id=7,
                firmware={"version": "2.0.0"},
            )
        )

        topic, payload = client.publish.call_args.args
        assert topic == "iot/default/smart-meter/meter-0001/cmd"
        assert client.publish.call_args.kwargs == {"qos": 1, "retain": False}
        assert json.loads(payload)["type"] == "ota.available"
