"""Device bootstrap (provisioning) service.

Each request runs a fixed sequence: idempotency check, structural
validation, signature check, tenant check, device and capability upsert,
response assembly, response signing and caching. Nothing in between is
persisted as a state. Any failure is turned into the uniform error envelope
so devices always receive something they can parse and back off on.

Concurrent first-time bootstraps of the same device are not serialized.
The loser of the race hits the (tenant, key) unique constraint, gets an
error envelope and retries.
"""

import copy
import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fleetctl.exceptions import (
    BusinessLogicException,
    PersistenceException,
    SignatureException,
    ValidationException,
)
from fleetctl.models.device import Device
from fleetctl.models.firmware import OTA_OFFER_CHANNELS, FirmwareChannel
from fleetctl.schemas.bootstrap import BootstrapRequestSchema
from fleetctl.services.device_profile_service import DEFAULT_SHADOW_DESIRED
from fleetctl.utils import epoch_ms
from fleetctl.utils.mqtt import parse_mqtt_url
from fleetctl.utils.signing import (
    derive_device_secret,
    sign_response,
    verify_request_signature,
)
from fleetctl.utils.topics import Channel, build_topic, device_topic_map

if TYPE_CHECKING:
    from fleetctl.config import Settings
    from fleetctl.services.cache_service import CacheService
    from fleetctl.services.credential_service import CredentialService
    from fleetctl.services.device_profile_service import DeviceProfileService
    from fleetctl.services.device_service import DeviceService
    from fleetctl.services.firmware_service import FirmwareService
    from fleetctl.services.metrics_service import MetricsService
    from fleetctl.services.shadow_service import ShadowService
    from fleetctl.services.tenant_service import TenantService

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1.0.0"
SUCCESS_MESSAGE = "Bootstrap configuration generated successfully"
DEFAULT_ERROR_CODE = "BOOTSTRAP_ERROR"

MQTT_BACKOFF = {"baseMs": 1000, "maxMs": 60000, "jitter": True}
OTA_RETRY = {"baseMs": 5000, "maxMs": 60000}
WEBSOCKET_TIMING = {"reconnectMs": 5000, "heartbeatMs": 30000, "timeoutMs": 60000}
INGEST_LIMITS = {"telemetryQps": 10, "statusQps": 1}
RETENTION = {"telemetryDays": 30, "statusDays": 7, "eventsDays": 14}


def bootstrap_cache_key(tenant_id: str, device_id: str) -> str:
    return f"bootstrap:{tenant_id}:{device_id}"


def idempotency_cache_key(tenant_id: str, device_id: str, message_id: str) -> str:
    return f"idempotency:{tenant_id}:{device_id}:{message_id}"


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"]) or "request"
        parts.append(f"{location}: {item['msg']}")
    return "Bootstrap request validation failed: " + "; ".join(parts)


class BootstrapService:
    """Service turning device bootstrap requests into signed envelopes."""

    def __init__(
        self,
        db: Session,
        config: "Settings",
        metrics_service: "MetricsService",
        cache_service: "CacheService",
        credential_service: "CredentialService",
        device_profile_service: "DeviceProfileService",
        tenant_service: "TenantService",
        device_service: "DeviceService",
        firmware_service: "FirmwareService",
        shadow_service: "ShadowService",
    ) -> None:
        """Initialize service with dependencies.

        Args:
            db: SQLAlchemy database session
            config: Application settings
            metrics_service: Bootstrap and signing metrics
            cache_service: Envelope and idempotency cache
            credential_service: Broker credential and ACL derivation
            device_profile_service: Per-type shadow defaults and keepalive
            tenant_service: Tenant lookup
            device_service: Device registry
            firmware_service: Firmware catalogue for OTA offers
            shadow_service: Stored desired state
        """
        self.db = db
        self.config = config
        self.metrics_service = metrics_service
        self.cache_service = cache_service
        self.credential_service = credential_service
        self.device_profile_service = device_profile_service
        self.tenant_service = tenant_service
        self.device_service = device_service
        self.firmware_service = firmware_service
        self.shadow_service = shadow_service

    def process_bootstrap(self, payload: Any, tenant_id: str) -> dict[str, Any]:
        """Run the bootstrap sequence for one request.

        Args:
            payload: Raw decoded JSON body as sent by the device
            tenant_id: Tenant resolved by the caller

        Returns:
            Success envelope (code 200) or error envelope (code 500). Never raises.
        """
        start_time = time.perf_counter()
        raw = payload if isinstance(payload, dict) else {}
        raw_device_id = raw.get("deviceId") if isinstance(raw.get("deviceId"), str) else ""
        result = "error"

        try:
            message_id = raw.get("messageId")
            if isinstance(message_id, str) and message_id.strip() and raw_device_id:
                cached = self._check_idempotency(tenant_id, raw_device_id, message_id)
                if cached is not None:
                    result = "replayed"
                    logger.info(
                        "Replaying bootstrap envelope for %s/%s message %s",
                        tenant_id,
                        raw_device_id,
                        message_id,
                    )
                    return cached

            if not isinstance(payload, dict):
                raise ValidationException("Bootstrap request must be a JSON object")
            request = self._validate_request(raw)
            self._check_signature(raw, request, tenant_id)
            tenant = self.tenant_service.require_tenant(tenant_id)
            if tenant.requires_signature and request.signature is None:
                raise SignatureException("Tenant requires signed bootstrap requests")

            device, created = self.device_service.upsert_from_bootstrap(
                tenant_id,
                request.device_id,
                request.mac,
                request.device_type,
                firmware=request.firmware.model_dump() if request.firmware else None,
                hardware=request.hardware.model_dump() if request.hardware else None,
            )
            self.device_service.upsert_capabilities(
                device, [c.model_dump() for c in request.capabilities]
            )

            data = self._build_response_data(request, device, tenant_id, created)
            envelope = {
                "code": 200,
                "message": SUCCESS_MESSAGE,
                "timestamp": data["serverTime"]["timestamp"],
                "signature": self._sign_response(data, tenant_id, request.device_id),
                "data": data,
            }

            self._cache_envelope(tenant_id, request.device_id, request.message_id, envelope)

            result = "success"
            logger.info(
                "Bootstrapped device %s/%s (%s)",
                tenant_id,
                request.device_id,
                "new" if created else "known",
            )
            return envelope

        except SQLAlchemyError as e:
            logger.error("Persistence failure during bootstrap of %s/%s: %s", tenant_id, raw_device_id, e)
            return self._fail(PersistenceException("bootstrap device", str(e)), raw_device_id, tenant_id)
        except BusinessLogicException as e:
            return self._fail(e, raw_device_id, tenant_id)
        except Exception as e:
            logger.exception("Unexpected bootstrap failure for %s/%s", tenant_id, raw_device_id)
            return self._fail(e, raw_device_id, tenant_id)
        finally:
            self.metrics_service.record_bootstrap(result, time.perf_counter() - start_time)

    def get_cached_envelope(self, tenant_id: str, device_id: str) -> dict[str, Any] | None:
        """Last envelope issued to a device, if still cached."""
        cached = self.cache_service.get_json(bootstrap_cache_key(tenant_id, device_id))
        return cached if isinstance(cached, dict) else None

    def build_error_envelope(
        self, error: Exception, device_id: str, tenant_id: str
    ) -> dict[str, Any]:
        """Uniform failure envelope. Stack traces never cross the device boundary."""
        error_code = (
            error.error_code if isinstance(error, BusinessLogicException) else DEFAULT_ERROR_CODE
        )
        message = str(error) if isinstance(error, BusinessLogicException) else "Bootstrap failed"
        return {
            "code": 500,
            "message": message,
            "timestamp": epoch_ms(),
            "signature": "",
            "errorCode": error_code,
            "errorDetails": {"deviceId": device_id, "tenantId": tenant_id},
        }

    def _fail(self, error: Exception, device_id: str, tenant_id: str) -> dict[str, Any]:
        # Undo partial device/capability writes when the request commits
        self.db.info["needs_rollback"] = True
        if isinstance(error, BusinessLogicException):
            logger.warning(
                "Bootstrap rejected for %s/%s: %s", tenant_id, device_id, error.message
            )
        return self.build_error_envelope(error, device_id, tenant_id)

    def _check_idempotency(
        self, tenant_id: str, device_id: str, message_id: str
    ) -> dict[str, Any] | None:
        cached = self.cache_service.get_json(idempotency_cache_key(tenant_id, device_id, message_id))
        if not isinstance(cached, dict) or cached.get("code") != 200:
            return None
        try:
            expires_at = int(cached["data"]["cfg"]["expiresAt"])
        except (KeyError, TypeError, ValueError):
            return None
        return cached if expires_at > epoch_ms() else None

    def _validate_request(self, raw: dict[str, Any]) -> BootstrapRequestSchema:
        try:
            request = BootstrapRequestSchema.model_validate(raw)
        except ValidationError as e:
            raise ValidationException(_format_validation_error(e)) from e

        max_timestamp = epoch_ms() + self.config.timestamp_skew_seconds * 1000
        if request.timestamp > max_timestamp:
            raise ValidationException("Bootstrap request timestamp is in the future")

        if not request.has_complete_info:
            logger.info(
                "Device %s sent partial firmware/hardware details, using minimal configuration",
                request.device_id,
            )
        return request

    def _device_secret(self, tenant_id: str, device_id: str) -> str:
        return derive_device_secret(self.config.bootstrap_secret, tenant_id, device_id)

    def _check_signature(
        self, raw: dict[str, Any], request: BootstrapRequestSchema, tenant_id: str
    ) -> None:
        if request.signature is None:
            return

        try:
            secret = self._device_secret(tenant_id, request.device_id)
        except ValueError as e:
            raise SignatureException(f"Cannot verify request signature: {e}") from e

        # Verify over the payload exactly as sent, not the parsed model
        if not verify_request_signature(raw, request.signature, secret):
            logger.warning(
                "Rejected bootstrap with invalid signature from %s/%s", tenant_id, request.device_id
            )
            raise SignatureException()

    def _sign_response(self, data: dict[str, Any], tenant_id: str, device_id: str) -> str:
        try:
            secret = self._device_secret(tenant_id, device_id)
        except ValueError as e:
            if self.config.strict_response_signing:
                raise SignatureException(f"Cannot derive response signing key: {e}") from e
            logger.error(
                "SECURITY: device secret derivation failed for %s/%s (%s); "
                "signing bootstrap response with the global application secret",
                tenant_id,
                device_id,
                e,
            )
            self.metrics_service.record_signing_fallback()
            secret = self.config.secret_key
        return sign_response(data, tenant_id, device_id, secret)

    def _cache_envelope(
        self,
        tenant_id: str,
        device_id: str,
        message_id: str | None,
        envelope: dict[str, Any],
    ) -> None:
        ttl = (envelope["data"]["cfg"]["expiresAt"] - epoch_ms()) // 1000
        self.cache_service.set_json(bootstrap_cache_key(tenant_id, device_id), envelope, ttl)
        if message_id:
            self.cache_service.set_json(
                idempotency_cache_key(tenant_id, device_id, message_id),
                envelope,
                self.config.idempotency_ttl_seconds,
            )

    def _build_response_data(
        self,
        request: BootstrapRequestSchema,
        device: Device,
        tenant_id: str,
        created: bool,
    ) -> dict[str, Any]:
        now = epoch_ms()
        complete = request.has_complete_info

        return {
            "cfg": {
                "ver": CONFIG_VERSION,
                "issuedAt": now,
                "expiresAt": now + self.config.bootstrap_config_ttl_hours * 3600 * 1000,
                "tenant": tenant_id,
                "device": {
                    "id": request.device_id,
                    "type": request.device_type,
                    "uniqueId": request.mac,
                    "fw": (
                        request.firmware.model_dump(by_alias=True, exclude_none=True)
                        if request.firmware
                        else {}
                    ),
                    "hw": request.hardware.version if request.hardware and request.hardware.version else "unknown",
                    "capabilities": [c.name for c in request.capabilities],
                },
            },
            "mqtt": self._build_mqtt_config(request, tenant_id, now),
            "shadowDesired": (
                self._build_shadow_desired(request, tenant_id, created)
                if complete
                else copy.deepcopy(DEFAULT_SHADOW_DESIRED)
            ),
            "ota": self._build_ota_config(request, tenant_id) if complete else {
                "available": False,
                "retry": dict(OTA_RETRY),
            },
            "policies": {"ingestLimits": dict(INGEST_LIMITS), "retention": dict(RETENTION)},
            "serverTime": {"timestamp": now, "timezoneOffset": 0},
            "websocket": {
                "enabled": self.config.websocket_enabled,
                "url": self.config.websocket_url or "",
                **WEBSOCKET_TIMING,
            },
        }

    def _build_mqtt_config(
        self, request: BootstrapRequestSchema, tenant_id: str, now: int
    ) -> dict[str, Any]:
        device_id = request.device_id
        device_type = request.device_type

        credentials = self.credential_service.issue(tenant_id, device_id, device_type, now_ms=now)
        acl = self.credential_service.acl(tenant_id, device_type, device_id)
        acl_dict = acl.to_dict()

        broker_url = self.config.device_mqtt_url or self.config.mqtt_url or ""
        use_tls = False
        if broker_url:
            try:
                use_tls = parse_mqtt_url(broker_url).use_tls
            except ValueError:
                logger.warning("Device MQTT URL '%s' is not a valid broker URL", broker_url)

        return {
            "brokers": [{"url": broker_url, "priority": 1}],
            "clientId": f"{tenant_id}_{device_id}_{now}",
            "username": credentials.username,
            "password": credentials.password,
            "passwordExpiresAt": credentials.expires_at,
            "keepalive": self.device_profile_service.keepalive(tenant_id, device_type),
            "cleanStart": False,
            "sessionExpiry": self.config.session_expiry_hours * 3600,
            "tls": {
                "enabled": use_tls,
                "caCertFingerprint": self.config.mqtt_ca_cert_fingerprint or "",
            },
            "lwt": {
                "topic": build_topic(tenant_id, device_type, device_id, Channel.STATUS),
                "qos": 1,
                "retain": True,
                "payload": {
                    "ts": datetime.fromtimestamp(now / 1000, tz=UTC).isoformat(),
                    "online": False,
                    "reason": "connection_lost",
                },
            },
            "topics": device_topic_map(tenant_id, device_type, device_id),
            "qosRetainPolicy": acl_dict["qosRetainPolicy"],
            "acl": {"publish": acl_dict["publish"], "subscribe": acl_dict["subscribe"]},
            "backoff": dict(MQTT_BACKOFF),
        }

    def _build_shadow_desired(
        self, request: BootstrapRequestSchema, tenant_id: str, created: bool
    ) -> dict[str, Any]:
        desired = self.device_profile_service.shadow_defaults(tenant_id, request.device_type)
        if created:
            return desired

        state = self.shadow_service.find_shadow_state(tenant_id, request.device_id)
        if state is not None:
            desired.update(state.desired)
        return desired

    def _build_ota_config(
        self, request: BootstrapRequestSchema, tenant_id: str
    ) -> dict[str, Any]:
        channel = (request.firmware.channel if request.firmware else None) or FirmwareChannel.STABLE.value
        ota: dict[str, Any] = {"available": channel in OTA_OFFER_CHANNELS, "retry": dict(OTA_RETRY)}
        if not ota["available"]:
            return ota

        firmware = self.firmware_service.latest_published(tenant_id, request.device_type)
        current = request.firmware.current if request.firmware else None
        if firmware is not None and firmware.version != current:
            ota["firmware"] = {
                "version": firmware.version,
                "build": firmware.build,
                "channel": firmware.channel,
                "url": firmware.url,
                "checksum": firmware.checksum,
                "size": firmware.size,
            }
        return ota
