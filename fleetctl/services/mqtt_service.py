"""MQTT service for pushing notifications to devices.

This is a singleton service that maintains a single persistent MQTT v5
connection to the broker and forwards device-addressed notification events
to the device's topics, honouring each channel's QoS/retain policy.
"""

import atexit
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from paho.mqtt.client import Client as MqttClient
from paho.mqtt.client import ConnectFlags, DisconnectFlags
from paho.mqtt.enums import CallbackAPIVersion, MQTTProtocolVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode
from prometheus_client import Counter, Gauge, Histogram

from fleetctl.services.notification_service import (
    OtaProgressChanged,
    OtaUpdateAvailable,
    ShadowDesiredChanged,
)
from fleetctl.utils.mqtt import parse_mqtt_url
from fleetctl.utils.topics import CHANNEL_POLICIES, Channel, build_topic

if TYPE_CHECKING:
    from fleetctl.config import Settings
    from fleetctl.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class MqttService:
    """Singleton MQTT publisher.

    The service is optional: if MQTT_URL is not configured, publishing
    silently does nothing. Publishing is fire-and-forget; persisted state
    (shadow rows, update tasks) stays the source of truth.
    """

    def __init__(self, config: "Settings") -> None:
        """Initialize MQTT service state without connecting.

        Connection is deferred to startup() which runs from
        start_background_services(). This keeps CLI commands and tests
        offline.
        """
        self.config = config

        self.enabled = False
        self.client: MqttClient | None = None
        self._shutdown_called = False

        self._initialize_metrics()

    def startup(self) -> None:
        """Connect to the MQTT broker and start the network loop. Idempotent."""
        if self.client is not None:
            return

        if not self.config.mqtt_url:
            logger.info("MQTT not configured (MQTT_URL is None), skipping connection")
            self.mqtt_enabled_gauge.set(0)
            return

        try:
            host, port, use_tls = parse_mqtt_url(self.config.mqtt_url)
        except ValueError as e:
            logger.error("Failed to parse MQTT_URL '%s': %s", self.config.mqtt_url, e)
            self.mqtt_enabled_gauge.set(0)
            return

        try:
            self.client = MqttClient(
                callback_api_version=CallbackAPIVersion.VERSION2,
                protocol=MQTTProtocolVersion.MQTTv5,
                client_id=self.config.mqtt_client_id,
            )

            if self.config.mqtt_username and self.config.mqtt_password:
                self.client.username_pw_set(self.config.mqtt_username, self.config.mqtt_password)

            if use_tls:
                self.client.tls_set()

            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect

            logger.info(
                "Connecting to MQTT broker at %s:%d with client_id=%s",
                host,
                port,
                self.config.mqtt_client_id,
            )

            connect_properties = Properties(PacketTypes.CONNECT)
            connect_properties.SessionExpiryInterval = 3600

            self.client.connect_async(
                host, port, clean_start=False, properties=connect_properties
            )
            self.client.loop_start()

            # enabled flips to True in _on_connect once the broker accepts us
            self.mqtt_enabled_gauge.set(1)

            atexit.register(self.shutdown)

        except Exception as e:
            logger.error("Failed to initialize MQTT client: %s", e)
            self.enabled = False
            self.mqtt_enabled_gauge.set(0)

    def _initialize_metrics(self) -> None:
        """Initialize Prometheus metrics for MQTT operations."""
        if hasattr(self, "mqtt_publish_total"):
            return

        self.mqtt_publish_total = Counter(
            "fleet_mqtt_publish_total",
            "Total MQTT publish attempts",
            ["channel", "status"],
        )
        self.mqtt_connection_state = Gauge(
            "fleet_mqtt_connection_state",
            "MQTT connection state (0=disconnected, 1=connected)",
        )
        self.mqtt_publish_duration_seconds = Histogram(
            "fleet_mqtt_publish_duration_seconds",
            "Duration of MQTT publish operations in seconds",
            ["channel"],
        )
        self.mqtt_enabled_gauge = Gauge(
            "fleet_mqtt_enabled",
            "MQTT service enabled state (0=disabled, 1=enabled)",
        )

        self.mqtt_connection_state.set(0)
        self.mqtt_enabled_gauge.set(0)

    def _on_connect(
        self,
        client: MqttClient,
        userdata: Any,
        connect_flags: ConnectFlags,
        reason_code: ReasonCode,
        properties: Any,
    ) -> None:
        if reason_code.is_failure:
            logger.error("Failed to connect to MQTT broker: %s", reason_code)
            self.mqtt_connection_state.set(0)
            self.enabled = False
        else:
            logger.info("Connected to MQTT broker successfully")
            self.mqtt_connection_state.set(1)
            self.enabled = True

    def _on_disconnect(
        self,
        client: MqttClient,
        userdata: Any,
        disconnect_flags: DisconnectFlags,
        reason_code: ReasonCode,
        properties: Any,
    ) -> None:
        logger.warning("Disconnected from MQTT broker: %s", reason_code)
        self.mqtt_connection_state.set(0)
        # paho-mqtt reconnects automatically

    def bind_notifications(self, notification_service: "NotificationService") -> None:
        """Forward device-addressed notifications to device topics."""
        notification_service.subscribe(ShadowDesiredChanged, self._on_shadow_desired)
        notification_service.subscribe(OtaUpdateAvailable, self._on_ota_available)
        notification_service.subscribe(OtaProgressChanged, self._on_ota_progress)

    def _on_shadow_desired(self, event: ShadowDesiredChanged) -> None:
        self.publish_to_device(
            event.tenant_id,
            event.device_type,
            event.device_key,
            Channel.SHADOW_DESIRED,
            {
                "version": event.version,
                "state": event.desired,
                "delta": event.delta,
                "clientToken": event.client_token,
            },
        )

    def _on_ota_available(self, event: OtaUpdateAvailable) -> None:
        # Devices only subscribe to cmd/shadow/cfg, so OTA offers travel as commands
        self.publish_to_device(
            event.tenant_id,
            event.device_type,
            event.device_key,
            Channel.CMD,
            {"type": "ota.available", "rolloutId": event.rollout_id, "firmware": event.firmware},
        )

    def _on_ota_progress(self, event: OtaProgressChanged) -> None:
        self.publish_to_device(
            event.tenant_id,
            event.device_type,
            event.device_key,
            Channel.OTA_STATUS,
            {"rolloutId": event.rollout_id, "status": event.status, "progress": event.progress},
        )

    def publish_to_device(
        self,
        tenant_id: str,
        device_type: str,
        device_key: str,
        channel: Channel,
        payload: dict[str, Any],
    ) -> None:
        """Publish a JSON payload on one of a device's channels."""
        policy = CHANNEL_POLICIES[channel]
        topic = build_topic(tenant_id, device_type, device_key, channel)
        self.publish(
            topic,
            json.dumps(payload, separators=(",", ":")),
            qos=policy.qos,
            retain=policy.retain,
            channel=channel.value,
        )

    def publish(
        self,
        topic: str,
        payload: str,
        qos: int = 1,
        retain: bool = False,
        channel: str = "other",
    ) -> None:
        """Publish an MQTT message.

        This is a fire-and-forget operation. Errors are logged but not raised.

        Args:
            topic: MQTT topic to publish to
            payload: Serialized payload
            qos: Quality of service level
            retain: Whether the broker keeps the message for new subscribers
            channel: Metric label for the channel
        """
        if not self.enabled or self.client is None:
            return

        start_time = time.perf_counter()

        try:
            result = self.client.publish(topic, payload, qos=qos, retain=retain)

            if result.rc == 0:
                self.mqtt_publish_total.labels(channel=channel, status="success").inc()
            else:
                logger.warning(
                    "MQTT publish failed for topic '%s': return code %d",
                    topic,
                    result.rc,
                )
                self.mqtt_publish_total.labels(channel=channel, status="failure").inc()

        except Exception as e:
            logger.error("Exception during MQTT publish to topic '%s': %s", topic, e)
            self.mqtt_publish_total.labels(channel=channel, status="failure").inc()

        finally:
            duration = time.perf_counter() - start_time
            self.mqtt_publish_duration_seconds.labels(channel=channel).observe(duration)

    def shutdown(self) -> None:
        """Gracefully shutdown MQTT connection. Idempotent."""
        if self._shutdown_called:
            return

        self._shutdown_called = True

        if self.client is not None:
            try:
                logger.info("Shutting down MQTT service")
                self.client.disconnect()
                # Give the DISCONNECT packet time to leave
                time.sleep(0.1)
                self.client.loop_stop()
                self.mqtt_connection_state.set(0)
                self.enabled = False
                logger.info("MQTT service shutdown complete")
            except Exception as e:
                logger.error("Error during MQTT shutdown: %s", e)
