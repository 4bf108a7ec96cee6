# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant lookups used by the backup and restore flows."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolvault.infrastructure.database.models import Tenant

logger = logging.getLogger(__name__)


class TenantServiceError(Exception):
    """Base exception for tenant service errors."""

    pass


class TenantNotFoundError(TenantServiceError):
    """Raised when a tenant does not exist."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class TenantInactiveError(TenantServiceError):
    """Raised when a tenant exists but is deactivated."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant is inactive: {tenant_id}")
        self.tenant_id = tenant_id


class TenantService:
    """Read access to the tenant registry.

    Attributes:
        db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        """Get a tenant by ID, or None."""
        result = await self.db.execute(select(Tenant).where(Tenant.id == tenant_id))
        return result.scalar_one_or_none()

    async def get_existing_tenant(self, tenant_id: str) -> Tenant:
        """Get a tenant by ID.

        Raises:
            TenantNotFoundError: If no such tenant exists.
        """
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def get_active_tenant(self, tenant_id: str) -> Tenant:
        """Get a tenant that is allowed to receive writes.

        Args:
            tenant_id: Tenant identifier.

        Returns:
            The active tenant.

        Raises:
            TenantNotFoundError: If no such tenant exists.
            TenantInactiveError: If the tenant is deactivated.
        """
        tenant = await self.get_existing_tenant(tenant_id)
        if not tenant.is_active:
            logger.info("Rejected write to inactive tenant: %s", tenant_id)
            raise TenantInactiveError(tenant_id)
        return tenant
