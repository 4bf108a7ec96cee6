# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI dependency injection definitions.

Dependencies are used to:
- Get the database session factory
- Get authenticated users and their tenant scope
- Get service instances

Example:
    @router.get("/backups")
    async def list_backups(
        service: BackupService = Depends(get_backup_service),
        current_user: CurrentUser = Depends(require_platform_admin),
    ):
        ...
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolvault.api.middleware.auth import CurrentUser, get_current_user
from schoolvault.core.config import get_settings
from schoolvault.domains.backup.service import AccessScope, BackupService
from schoolvault.infrastructure.database.connection import (
    DatabaseError,
    close_database,
    get_sessionmaker,
    init_database,
)

logger = logging.getLogger(__name__)


async def init_db() -> None:
    """Initialize the database connection pool."""
    await init_database(get_settings())


async def close_db() -> None:
    """Close the database connection pool."""
    await close_database()


def get_db_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the application session factory.

    Raises:
        HTTPException: If the database is not initialized.
    """
    try:
        return get_sessionmaker()
    except DatabaseError as e:
        logger.error("Database unavailable: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not initialized",
        )


def get_backup_service(
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_db_sessionmaker),
) -> BackupService:
    """Get a backup service bound to the application database."""
    return BackupService(sessionmaker, get_settings().backup)


# =========================================================================
# Authentication Dependencies
# =========================================================================


def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user.

    Raises:
        HTTPException: If not authenticated.
    """
    user = get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_platform_admin(request: Request) -> CurrentUser:
    """Require a platform operator.

    Raises:
        HTTPException: If not authenticated or not a platform admin.
    """
    user = require_auth(request)
    if not user.is_platform_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin access required",
        )
    return user


def get_access_scope(
    current_user: CurrentUser = Depends(require_platform_admin),
) -> AccessScope:
    """Build the tenant scope of the calling operator."""
    return AccessScope(
        actor_id=current_user.id,
        actor_role=current_user.user_type,
        tenant_ids=current_user.tenant_ids,
    )
