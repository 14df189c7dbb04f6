"""SQLAlchemy models for the fleet control plane."""

from fleetctl.models.device import Device, DeviceCapability, DeviceStatus
from fleetctl.models.firmware import Firmware, FirmwareChannel, FirmwareStatus
from fleetctl.models.rollout import (
    FirmwareRollout,
    FirmwareUpdateStatus,
    RolloutStatus,
    UpdateStatus,
)
from fleetctl.models.shadow import DeviceShadow, DeviceShadowHistory, ShadowSource
from fleetctl.models.tenant import Tenant

__all__ = [
    "Device",
    "DeviceCapability",
    "DeviceShadow",
    "DeviceShadowHistory",
    "DeviceStatus",
    "Firmware",
    "FirmwareChannel",
    "FirmwareRollout",
    "FirmwareStatus",
    "FirmwareUpdateStatus",
    "RolloutStatus",
    "ShadowSource",
    "Tenant",
    "UpdateStatus",
]
