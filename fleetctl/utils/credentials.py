"""Self-verifying broker credentials.

The password is an HMAC of the username, expiry and device type keyed with
the service credential secret, so the broker (or anything holding the
secret) can verify a login without a credential store. Rotating the secret
invalidates every outstanding credential at once.
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass

from fleetctl.utils import epoch_ms

USERNAME_PREFIX = "iot"
USERNAME_SEPARATOR = "_"
PASSWORD_LENGTH = 32


@dataclass(frozen=True)
class DeviceCredentials:
    """Broker login for one device."""

    username: str
    password: str
    expires_at: int  # epoch milliseconds


def is_username_component(value: str) -> bool:
    """Tenant IDs and device types must not contain the username separator."""
    return USERNAME_SEPARATOR not in value


def build_username(tenant_id: str, device_type: str, device_id: str) -> str:
    """Join identity parts into the broker username.

    The device ID is last and may contain underscores, so keeping them out of
    the tenant and type makes every username map back to one identity.

    Raises:
        ValueError: If the tenant ID or device type contains an underscore
    """
    for label, value in (("tenant ID", tenant_id), ("device type", device_type)):
        if not is_username_component(value):
            raise ValueError(f"{label} '{value}' must not contain '{USERNAME_SEPARATOR}'")
    return USERNAME_SEPARATOR.join((USERNAME_PREFIX, tenant_id, device_type, device_id))


def compute_password(secret: str, username: str, expires_at: int, device_type: str) -> str:
    """HMAC-SHA256 over username, expiry and type, base64 encoded and truncated."""
    if not secret:
        raise ValueError("Credential secret is not configured")
    message = f"{username}_{expires_at}_{device_type}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")[:PASSWORD_LENGTH]


def derive_credentials(
    tenant_id: str,
    device_id: str,
    device_type: str,
    ttl_seconds: int,
    secret: str,
    now_ms: int | None = None,
) -> DeviceCredentials:
    """Derive broker credentials for a device.

    Args:
        tenant_id: Owning tenant
        device_id: Device identifier within the tenant
        device_type: Device type
        ttl_seconds: Credential lifetime
        secret: Service credential secret
        now_ms: Issue time in epoch milliseconds (defaults to now)

    Returns:
        DeviceCredentials; identical inputs always yield identical output
    """
    issued_at = epoch_ms() if now_ms is None else now_ms
    expires_at = issued_at + ttl_seconds * 1000
    username = build_username(tenant_id, device_type, device_id)
    password = compute_password(secret, username, expires_at, device_type)
    return DeviceCredentials(username=username, password=password, expires_at=expires_at)


def verify_credentials(
    username: str,
    password: str,
    expires_at: int,
    device_type: str,
    secret: str,
    now_ms: int | None = None,
) -> bool:
    """Verify a credential by recomputing its HMAC.

    Expired credentials never verify, even with a matching password.
    """
    current = epoch_ms() if now_ms is None else now_ms
    if expires_at <= current:
        return False
    expected = compute_password(secret, username, expires_at, device_type)
    return hmac.compare_digest(expected, password)
