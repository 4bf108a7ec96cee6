# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant backup API endpoints.

This module provides endpoints for tenant snapshots:
- POST / - Snapshot a tenant
- GET / - List a tenant's backups (newest first, no payload)
- GET /{backup_id} - Get backup metadata
- GET /{backup_id}/download - Download the full snapshot
- POST /{backup_id}/restore - Restore a backup (MERGE or REPLACE)

All endpoints require a platform admin. The tenant is taken from the
``tenant_id`` query parameter, falling back to the caller's own tenant.
A backup is only readable in the context of the tenant it belongs to.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from schoolvault.api.dependencies import get_access_scope, get_backup_service, require_platform_admin
from schoolvault.api.middleware.auth import CurrentUser
from schoolvault.core.config import get_settings
from schoolvault.domains.backup.errors import (
    BackupConflictError,
    BackupNotFoundError,
    BackupScopeError,
    BackupServiceError,
    ConfirmationRequiredError,
    InvalidBackupPayloadError,
    InvalidRestoreModeError,
    RestoreFailedError,
    UnsupportedSnapshotVersionError,
)
from schoolvault.domains.backup.service import AccessScope, BackupService
from schoolvault.domains.tenant.service import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantServiceError,
)
from schoolvault.infrastructure.database.connection import DatabaseError
from schoolvault.models.backup import (
    BackupListResponse,
    BackupSummary,
    RestoreRequest,
    RestoreResult,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_BAD_REQUEST_ERRORS = (
    InvalidBackupPayloadError,
    UnsupportedSnapshotVersionError,
    InvalidRestoreModeError,
    ConfirmationRequiredError,
)


def _resolve_tenant(tenant_id: str | None, current_user: CurrentUser) -> str:
    """Pick the tenant a request is about.

    Raises:
        HTTPException: If neither the query nor the token names a tenant.
    """
    resolved = tenant_id or current_user.tenant_id
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="tenant_id is required",
        )
    return resolved


def _to_http_exception(error: Exception) -> HTTPException:
    """Translate a domain error into an HTTP error."""
    if isinstance(error, (BackupNotFoundError, TenantNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))

    if isinstance(error, BackupConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))

    if isinstance(error, _BAD_REQUEST_ERRORS):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

    if isinstance(error, (BackupScopeError, TenantInactiveError)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))

    if isinstance(error, RestoreFailedError):
        detail: dict = {"message": "Restore failed"}
        if not get_settings().is_production:
            detail["debug"] = error.diagnostic
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

    if isinstance(error, DatabaseError):
        logger.error("Database error in backup operation: %s", str(error))
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )

    logger.error("Unhandled backup error: %s", str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Backup operation failed",
    )


@router.post(
    "",
    response_model=BackupSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Create backup",
    description="Snapshot a tenant's data. Requires platform admin access.",
)
async def create_backup(
    tenant_id: str | None = Query(None, description="Tenant to snapshot"),
    current_user: CurrentUser = Depends(require_platform_admin),
    scope: AccessScope = Depends(get_access_scope),
    service: BackupService = Depends(get_backup_service),
) -> BackupSummary:
    """Snapshot a tenant into a new READY backup."""
    target = _resolve_tenant(tenant_id, current_user)
    logger.info("Creating backup of tenant %s by %s", target, current_user.id)

    try:
        return await service.create_snapshot(scope, target)
    except (BackupServiceError, TenantServiceError, DatabaseError) as e:
        raise _to_http_exception(e) from e


@router.get(
    "",
    response_model=BackupListResponse,
    summary="List backups",
    description="List a tenant's backups, newest first, without payloads.",
)
async def list_backups(
    tenant_id: str | None = Query(None, description="Tenant whose backups to list"),
    current_user: CurrentUser = Depends(require_platform_admin),
    scope: AccessScope = Depends(get_access_scope),
    service: BackupService = Depends(get_backup_service),
) -> BackupListResponse:
    """List backups of a tenant."""
    target = _resolve_tenant(tenant_id, current_user)
    limit = get_settings().backup.list_limit

    try:
        items = await service.list_snapshots(scope, target, limit)
    except (BackupServiceError, DatabaseError) as e:
        raise _to_http_exception(e) from e

    return BackupListResponse(items=items, limit=limit)


@router.get(
    "/{backup_id}",
    response_model=BackupSummary,
    summary="Get backup",
    description="Get backup metadata without the payload.",
)
async def get_backup(
    backup_id: str,
    tenant_id: str | None = Query(None, description="Tenant the caller is acting for"),
    current_user: CurrentUser = Depends(require_platform_admin),
    scope: AccessScope = Depends(get_access_scope),
    service: BackupService = Depends(get_backup_service),
) -> BackupSummary:
    """Get a backup's metadata."""
    try:
        return await service.get_snapshot(
            scope, backup_id, tenant_id=_resolve_tenant(tenant_id, current_user)
        )
    except (BackupServiceError, DatabaseError) as e:
        raise _to_http_exception(e) from e


@router.get(
    "/{backup_id}/download",
    summary="Download backup",
    description="Download the full snapshot as a JSON attachment.",
)
async def download_backup(
    backup_id: str,
    tenant_id: str | None = Query(None, description="Tenant the caller is acting for"),
    current_user: CurrentUser = Depends(require_platform_admin),
    scope: AccessScope = Depends(get_access_scope),
    service: BackupService = Depends(get_backup_service),
) -> JSONResponse:
    """Download a backup including its payload."""
    try:
        download = await service.get_snapshot(
            scope,
            backup_id,
            with_payload=True,
            tenant_id=_resolve_tenant(tenant_id, current_user),
        )
    except (BackupServiceError, DatabaseError) as e:
        raise _to_http_exception(e) from e

    return JSONResponse(
        content=jsonable_encoder(download),
        headers={"Content-Disposition": f'attachment; filename="backup-{backup_id}.json"'},
    )


@router.post(
    "/{backup_id}/restore",
    response_model=RestoreResult,
    summary="Restore backup",
    description=(
        "Restore a backup into its tenant or another one. REPLACE wipes the "
        "destination first and requires the confirmation literal."
    ),
)
async def restore_backup(
    backup_id: str,
    data: RestoreRequest,
    current_user: CurrentUser = Depends(require_platform_admin),
    scope: AccessScope = Depends(get_access_scope),
    service: BackupService = Depends(get_backup_service),
) -> RestoreResult:
    """Restore a backup."""
    logger.info(
        "Restore of backup %s requested by %s: mode=%s destination=%s",
        backup_id,
        current_user.id,
        data.mode,
        data.destination_tenant_id,
    )

    try:
        return await service.restore_snapshot(
            scope,
            backup_id,
            mode=data.mode,
            destination_tenant_id=data.destination_tenant_id,
            confirmation=data.confirmation,
        )
    except (BackupServiceError, TenantServiceError, DatabaseError) as e:
        raise _to_http_exception(e) from e
