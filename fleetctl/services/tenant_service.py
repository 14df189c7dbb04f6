"""Tenant service."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetctl.exceptions import (
    RecordExistsException,
    RecordNotFoundException,
    TenantException,
    ValidationException,
)
from fleetctl.models.tenant import Tenant
from fleetctl.utils.credentials import is_username_component
from fleetctl.utils.topics import is_valid_segment

logger = logging.getLogger(__name__)


class TenantService:
    """Service for tenant lookup and registration."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def list_tenants(self) -> list[Tenant]:
        stmt = select(Tenant).order_by(Tenant.id)
        return list(self.db.scalars(stmt).all())

    def find_tenant(self, tenant_id: str) -> Tenant | None:
        return self.db.get(Tenant, tenant_id)

    def get_tenant(self, tenant_id: str) -> Tenant:
        """Get a tenant by ID.

        Raises:
            RecordNotFoundException: If the tenant doesn't exist
        """
        tenant = self.find_tenant(tenant_id)
        if tenant is None:
            raise RecordNotFoundException("Tenant", tenant_id)
        return tenant

    def require_tenant(self, tenant_id: str) -> Tenant:
        """Get a tenant for a device-facing flow.

        Raises:
            TenantException: If the tenant doesn't exist
        """
        tenant = self.find_tenant(tenant_id)
        if tenant is None:
            raise TenantException(tenant_id)
        return tenant

    def create_tenant(
        self,
        tenant_id: str,
        name: str,
        plan: str = "standard",
        security_policy: dict[str, Any] | None = None,
    ) -> Tenant:
        """Register a new tenant.

        Raises:
            ValidationException: If the ID cannot be used in topics or broker usernames
            RecordExistsException: If the ID is taken
        """
        if not is_valid_segment(tenant_id) or not is_username_component(tenant_id):
            raise ValidationException(
                f"Tenant ID '{tenant_id}' is not a valid identifier (no '/', '+', '#', '_' or whitespace)"
            )

        if self.find_tenant(tenant_id) is not None:
            raise RecordExistsException("Tenant", tenant_id)

        tenant = Tenant(
            id=tenant_id,
            name=name,
            plan=plan,
            security_policy=security_policy or {},
        )
        self.db.add(tenant)
        self.db.flush()

        logger.info("Created tenant %s (%s plan)", tenant_id, plan)
        return tenant
