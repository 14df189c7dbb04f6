"""Device topic grammar and ACL generation.

Every device owns the subtree iot/<tenant>/<deviceType>/<device>/ and may
only touch a closed set of channels beneath it. ACLs are derived from the
device identity alone and never from request content.
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from fleetctl.utils.mqtt import topic_matches

TOPIC_ROOT = "iot"

# Identifier segments must not break out of the device subtree
_SEGMENT_PATTERN = re.compile(r"^[^/+#\s\x00]{1,128}$")


class Channel(StrEnum):
    """Fixed set of per-device channels."""

    TELEMETRY = "telemetry"
    STATUS = "status"
    EVENT = "event"
    CMD = "cmd"
    CMDRES = "cmdres"
    SHADOW_DESIRED = "shadow/desired"
    SHADOW_REPORTED = "shadow/reported"
    CFG = "cfg"
    OTA_PROGRESS = "ota/progress"
    OTA_STATUS = "ota/status"


class AclAction(StrEnum):
    """Broker actions an ACL grants."""

    PUBLISH = "publish"
    SUBSCRIBE = "subscribe"


@dataclass(frozen=True)
class ChannelPolicy:
    """Delivery policy for a channel."""

    qos: int
    retain: bool


# Channels carrying state are retained; channels carrying events are not
CHANNEL_POLICIES: dict[Channel, ChannelPolicy] = {
    Channel.TELEMETRY: ChannelPolicy(qos=1, retain=False),
    Channel.STATUS: ChannelPolicy(qos=1, retain=True),
    Channel.EVENT: ChannelPolicy(qos=1, retain=False),
    Channel.CMD: ChannelPolicy(qos=1, retain=False),
    Channel.CMDRES: ChannelPolicy(qos=1, retain=False),
    Channel.SHADOW_DESIRED: ChannelPolicy(qos=1, retain=True),
    Channel.SHADOW_REPORTED: ChannelPolicy(qos=1, retain=True),
    Channel.CFG: ChannelPolicy(qos=1, retain=True),
    Channel.OTA_PROGRESS: ChannelPolicy(qos=1, retain=False),
    Channel.OTA_STATUS: ChannelPolicy(qos=1, retain=True),
}

DEVICE_PUBLISH_CHANNELS: tuple[Channel, ...] = (
    Channel.TELEMETRY,
    Channel.STATUS,
    Channel.EVENT,
    Channel.CMDRES,
    Channel.SHADOW_REPORTED,
    Channel.OTA_PROGRESS,
)

DEVICE_SUBSCRIBE_CHANNELS: tuple[Channel, ...] = (
    Channel.CMD,
    Channel.SHADOW_DESIRED,
    Channel.CFG,
)

# Keys of the topics map handed to devices in the bootstrap envelope
TOPIC_MAP_KEYS: dict[str, Channel] = {
    "telemetryPub": Channel.TELEMETRY,
    "statusPub": Channel.STATUS,
    "eventPub": Channel.EVENT,
    "cmdSub": Channel.CMD,
    "cmdresPub": Channel.CMDRES,
    "shadowDesiredSub": Channel.SHADOW_DESIRED,
    "shadowReportedPub": Channel.SHADOW_REPORTED,
    "cfgSub": Channel.CFG,
    "otaProgressPub": Channel.OTA_PROGRESS,
}

_CHANNEL_LOOKUP = {channel.value: channel for channel in Channel}


@dataclass(frozen=True)
class DeviceTopic:
    """A topic parsed back into its components."""

    tenant_id: str
    device_type: str
    device_id: str
    channel: Channel


@dataclass
class DeviceAcl:
    """Publish/subscribe grants for a single device identity."""

    publish: list[str] = field(default_factory=list)
    subscribe: list[str] = field(default_factory=list)
    qos_retain_policy: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "publish": list(self.publish),
            "subscribe": list(self.subscribe),
            "qosRetainPolicy": {topic: dict(policy) for topic, policy in self.qos_retain_policy.items()},
        }


def is_valid_segment(value: str) -> bool:
    """Check that an identifier can be used as a single topic level."""
    return bool(value) and _SEGMENT_PATTERN.match(value) is not None


def topic_prefix(tenant_id: str, device_type: str, device_id: str) -> str:
    """Return the device subtree prefix, including the trailing slash.

    Raises:
        ValueError: If any identifier is not a valid topic level
    """
    for name, value in (("tenant", tenant_id), ("device type", device_type), ("device", device_id)):
        if not is_valid_segment(value):
            raise ValueError(f"Invalid {name} identifier for topic: {value!r}")
    return f"{TOPIC_ROOT}/{tenant_id}/{device_type}/{device_id}/"


def build_topic(tenant_id: str, device_type: str, device_id: str, channel: Channel) -> str:
    return topic_prefix(tenant_id, device_type, device_id) + channel.value


def parse_topic(topic: str) -> DeviceTopic | None:
    """Parse a device topic; returns None for anything outside the grammar."""
    parts = topic.split("/")
    if len(parts) < 5 or parts[0] != TOPIC_ROOT:
        return None

    _root, tenant_id, device_type, device_id, *rest = parts
    channel = _CHANNEL_LOOKUP.get("/".join(rest))
    if channel is None:
        return None
    if not all(is_valid_segment(p) for p in (tenant_id, device_type, device_id)):
        return None

    return DeviceTopic(tenant_id, device_type, device_id, channel)


def generate_acl(tenant_id: str, device_type: str, device_id: str) -> DeviceAcl:
    """Generate the ACL for a device identity.

    Args:
        tenant_id: Owning tenant
        device_type: Device type
        device_id: Device identifier within the tenant

    Returns:
        DeviceAcl with publish/subscribe topic lists and per-topic QoS/retain
    """
    prefix = topic_prefix(tenant_id, device_type, device_id)

    acl = DeviceAcl(
        publish=[prefix + channel.value for channel in DEVICE_PUBLISH_CHANNELS],
        subscribe=[prefix + channel.value for channel in DEVICE_SUBSCRIBE_CHANNELS],
    )
    for channel, policy in CHANNEL_POLICIES.items():
        acl.qos_retain_policy[prefix + channel.value] = {"qos": policy.qos, "retain": policy.retain}

    return acl


def device_topic_map(tenant_id: str, device_type: str, device_id: str) -> dict[str, str]:
    """Named topics for the bootstrap envelope."""
    prefix = topic_prefix(tenant_id, device_type, device_id)
    return {key: prefix + channel.value for key, channel in TOPIC_MAP_KEYS.items()}


def is_topic_allowed(acl: DeviceAcl, topic: str, action: AclAction) -> bool:
    """Check a publish or subscribe request against an ACL.

    Grants are exact topics, so wildcard filters are always rejected: any
    filter broader than a single granted topic could reach other devices.
    """
    if "+" in topic or "#" in topic:
        return False

    granted = acl.publish if action == AclAction.PUBLISH else acl.subscribe
    return any(topic_matches(grant, topic) for grant in granted)
