"""HMAC signing helpers for bootstrap requests and responses.

Requests are canonicalized as compact JSON with sorted keys and the
signature field removed. Responses are signed over
"<device>:<tenant>:<canonical data>" so a captured envelope cannot be
replayed to another device.
"""

import hashlib
import hmac
import json
import re
from typing import Any

SIGNATURE_FIELD = "signature"

_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")


def canonical_json(payload: Any) -> str:
    """Serialize a JSON value deterministically."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_request(payload: dict[str, Any]) -> str:
    """Canonical form of a request, excluding its signature."""
    return canonical_json({k: v for k, v in payload.items() if k != SIGNATURE_FIELD})


def hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def derive_device_secret(global_secret: str, tenant_id: str, device_id: str) -> str:
    """Derive the per-device signing secret from the global secret.

    Raises:
        ValueError: If the global secret or an identifier is missing
    """
    if not global_secret:
        raise ValueError("Global bootstrap secret is not configured")
    if not tenant_id or not device_id:
        raise ValueError("Tenant and device identifiers are required to derive a device secret")
    return hmac_hex(global_secret, f"{tenant_id}:{device_id}")


def is_hex_signature(value: str) -> bool:
    """Signatures are even-length hex strings."""
    return bool(value) and len(value) % 2 == 0 and _HEX_PATTERN.match(value) is not None


def sign_request(payload: dict[str, Any], secret: str) -> str:
    return hmac_hex(secret, canonical_request(payload))


def verify_request_signature(payload: dict[str, Any], signature: str, secret: str) -> bool:
    """Recompute the request HMAC and compare in constant time."""
    expected = sign_request(payload, secret)
    return hmac.compare_digest(expected, signature.lower())


def sign_response(data: dict[str, Any], tenant_id: str, device_id: str, secret: str) -> str:
    return hmac_hex(secret, f"{device_id}:{tenant_id}:{canonical_json(data)}")
