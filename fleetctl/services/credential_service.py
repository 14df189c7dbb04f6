"""Credential and ACL issuing service."""

import logging
from typing import TYPE_CHECKING

from fleetctl.utils import epoch_ms
from fleetctl.utils.credentials import DeviceCredentials, derive_credentials, verify_credentials
from fleetctl.utils.topics import AclAction, DeviceAcl, generate_acl, is_topic_allowed

if TYPE_CHECKING:
    from fleetctl.config import Settings

logger = logging.getLogger(__name__)


class CredentialService:
    """Singleton binding the credential scheme to the configured secret.

    Credentials are self-verifying: nothing is stored, and verification
    recomputes the same HMAC. Rotating CREDENTIAL_SECRET invalidates every
    outstanding credential at once.
    """

    def __init__(self, config: "Settings") -> None:
        self.config = config

    @property
    def ttl_seconds(self) -> int:
        return self.config.credential_ttl_hours * 3600

    def issue(
        self,
        tenant_id: str,
        device_id: str,
        device_type: str,
        now_ms: int | None = None,
    ) -> DeviceCredentials:
        """Derive broker credentials valid for the configured TTL."""
        return derive_credentials(
            tenant_id,
            device_id,
            device_type,
            self.ttl_seconds,
            self.config.credential_secret,
            now_ms=now_ms,
        )

    def verify(
        self,
        username: str,
        password: str,
        expires_at: int,
        device_type: str,
        now_ms: int | None = None,
    ) -> bool:
        valid = verify_credentials(
            username,
            password,
            expires_at,
            device_type,
            self.config.credential_secret,
            now_ms=now_ms if now_ms is not None else epoch_ms(),
        )
        if not valid:
            logger.warning("Rejected broker credentials for %s", username)
        return valid

    def acl(self, tenant_id: str, device_type: str, device_id: str) -> DeviceAcl:
        return generate_acl(tenant_id, device_type, device_id)

    def authorize(
        self,
        tenant_id: str,
        device_type: str,
        device_id: str,
        topic: str,
        action: AclAction,
    ) -> bool:
        """Whether the device may perform action on topic."""
        return is_topic_allowed(self.acl(tenant_id, device_type, device_id), topic, action)
