"""Bootstrap request schemas.

Devices speak camelCase on the wire; fields are exposed in snake_case and
aliased to the device names.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleetctl.models.firmware import FirmwareChannel
from fleetctl.utils.credentials import is_username_component
from fleetctl.utils.signing import is_hex_signature
from fleetctl.utils.topics import is_valid_segment

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")


class _DeviceWireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FirmwareInfoSchema(_DeviceWireModel):
    """Firmware a device reports running."""

    current: str | None = Field(None, description="Running firmware version")
    build: str | None = Field(None, description="Firmware build identifier")
    min_required: str | None = Field(None, alias="minRequired", description="Minimum supported version")
    channel: str | None = Field(None, description="Release channel: stable, beta or dev")

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            return FirmwareChannel(v).value
        except ValueError as e:
            raise ValueError(f"unknown firmware channel '{v}'") from e


class HardwareInfoSchema(_DeviceWireModel):
    """Hardware details reported by a device."""

    version: str | None = Field(None, description="Hardware revision")
    serial: str | None = Field(None, description="Hardware serial number")
    description: str | None = Field(None, description="Free-form description")


class CapabilitySchema(_DeviceWireModel):
    """A capability declared by a device."""

    name: str = Field(..., min_length=1, description="Capability name")
    version: str | None = Field(None, description="Capability version")
    params: dict[str, Any] | None = Field(None, description="Capability parameters")


class BootstrapRequestSchema(_DeviceWireModel):
    """Bootstrap request sent by a device."""

    device_id: str = Field(..., alias="deviceId", description="Device identifier within the tenant")
    mac: str = Field(..., description="MAC address")
    device_type: str = Field(..., alias="deviceType", description="Device type")
    firmware: FirmwareInfoSchema | None = Field(None, description="Running firmware")
    hardware: HardwareInfoSchema | None = Field(None, description="Hardware details")
    capabilities: list[CapabilitySchema] = Field(default_factory=list)
    tenant_id: str | None = Field(None, alias="tenantId", description="Tenant identifier")
    timestamp: int = Field(..., gt=0, description="Device clock in epoch milliseconds")
    signature: str | None = Field(None, description="Hex HMAC-SHA256 of the canonical request")
    message_id: str | None = Field(None, alias="messageId", description="Idempotency key")

    @field_validator("device_id", "device_type")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        if not is_valid_segment(v):
            raise ValueError("must not contain '/', '+', '#' or whitespace")
        return v

    @field_validator("device_type")
    @classmethod
    def validate_device_type(cls, v: str) -> str:
        if not is_username_component(v):
            raise ValueError("must not contain '_'")
        return v

    @field_validator("mac")
    @classmethod
    def validate_mac(cls, v: str) -> str:
        v = v.strip()
        if not MAC_PATTERN.match(v):
            raise ValueError("must be six hex octets separated by ':' or '-'")
        return v

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: str | None) -> str | None:
        if v is not None and not is_hex_signature(v):
            raise ValueError("must be an even-length hex string")
        return v

    @field_validator("message_id")
    @classmethod
    def validate_message_id(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("must not be empty")
        return v

    @property
    def has_complete_info(self) -> bool:
        """Whether firmware and hardware details are complete enough for full defaults."""
        return bool(
            self.firmware
            and self.firmware.current
            and self.firmware.build
            and self.hardware
            and self.hardware.version
            and self.hardware.serial
        )


class BootstrapEnvelopeSchema(BaseModel):
    """Bootstrap response envelope, success or failure."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    code: int = Field(..., description="200 on success, 500 on failure")
    message: str = Field(..., description="Human-readable outcome")
    timestamp: int = Field(..., description="Server time in epoch milliseconds")
    signature: str = Field(..., description="Hex HMAC-SHA256 over the data block; empty on failure")
    data: dict[str, Any] | None = Field(None, description="Configuration bundle")
    error_code: str | None = Field(None, alias="errorCode")
    error_details: dict[str, Any] | None = Field(None, alias="errorDetails")
