# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Backup service: the operator-facing entry point for snapshots and restores.

This module provides the BackupService class for:
- Creating, listing, inspecting and downloading tenant snapshots
- Restoring a snapshot in MERGE or REPLACE mode
- Tenant scope checks for the calling operator
- One audit event per mutating or payload-exposing call
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolvault.core.config.settings import BackupSettings
from schoolvault.domains.audit.service import AuditService
from schoolvault.domains.auth.password import PasswordHasher
from schoolvault.domains.backup.errors import BackupScopeError, RestoreFailedError
from schoolvault.domains.backup.restore import RestoreEngine, parse_restore_mode
from schoolvault.domains.backup.snapshot import SnapshotBuilder
from schoolvault.domains.backup.store import BackupStore
from schoolvault.infrastructure.database.connection import DatabaseError, session_scope
from schoolvault.models.backup import (
    BackupDownload,
    BackupSummary,
    RestoreMode,
    RestoreResult,
)

logger = logging.getLogger(__name__)

BACKUP_TARGET = "backup"


@dataclass(frozen=True)
class AccessScope:
    """The tenants an operator may act on.

    Attributes:
        actor_id: Operator user ID.
        actor_role: Caller category, recorded in audit events.
        tenant_ids: Tenants the operator is restricted to. Empty means
            unrestricted.
    """

    actor_id: str | None = None
    actor_role: str | None = None
    tenant_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_unrestricted(self) -> bool:
        return not self.tenant_ids

    def allows(self, tenant_id: str | None) -> bool:
        """Check whether the operator may act on a tenant."""
        if self.is_unrestricted:
            return True
        return tenant_id is not None and tenant_id in self.tenant_ids

    def require(self, tenant_id: str | None) -> None:
        """Raise BackupScopeError unless the tenant is allowed."""
        if not self.allows(tenant_id):
            raise BackupScopeError(f"Tenant {tenant_id} is outside the caller's scope")


class BackupService:
    """Service for tenant snapshots and restores.

    Attributes:
        _sessionmaker: Session factory for the shared database.
        _settings: Backup settings.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        settings: BackupSettings,
        hasher: PasswordHasher | None = None,
    ) -> None:
        """Initialize backup service.

        Args:
            sessionmaker: Session factory for the shared database.
            settings: Backup settings.
            hasher: bcrypt hasher for temporary secrets; built from
                settings when omitted.
        """
        self._sessionmaker = sessionmaker
        self._settings = settings
        self._snapshots = SnapshotBuilder(sessionmaker)
        self._engine = RestoreEngine(sessionmaker, settings, hasher)

    async def create_snapshot(self, scope: AccessScope, tenant_id: str) -> BackupSummary:
        """Snapshot a tenant.

        Raises:
            BackupScopeError: If the tenant is outside the caller's scope.
            TenantNotFoundError: If the tenant does not exist.
            TenantInactiveError: If the tenant is deactivated.
        """
        scope.require(tenant_id)

        backup = await self._snapshots.create(tenant_id, scope.actor_id)
        summary = BackupSummary.model_validate(backup)

        await self._audit(
            scope,
            "BACKUP_CREATED",
            tenant_id,
            backup.id,
            {"counts": (backup.meta or {}).get("counts")},
        )
        return summary

    async def list_snapshots(
        self,
        scope: AccessScope,
        tenant_id: str,
        limit: int | None = None,
    ) -> list[BackupSummary]:
        """List a tenant's backups newest first, without payloads.

        Raises:
            BackupScopeError: If the tenant is outside the caller's scope.
        """
        scope.require(tenant_id)

        async with session_scope(self._sessionmaker) as session:
            backups = await BackupStore(session).list(
                tenant_id, limit or self._settings.list_limit
            )
            return [BackupSummary.model_validate(backup) for backup in backups]

    async def get_snapshot(
        self,
        scope: AccessScope,
        backup_id: str,
        with_payload: bool = False,
        tenant_id: str | None = None,
    ) -> BackupSummary | BackupDownload:
        """Get a backup, optionally with its payload.

        Payload access is audited as a download.

        Args:
            scope: Calling operator's scope.
            backup_id: Backup to fetch.
            with_payload: Include the snapshot payload.
            tenant_id: Tenant the caller is acting for. When given, the
                backup must belong to it.

        Raises:
            BackupNotFoundError: If the backup does not exist.
            BackupScopeError: If the backup's tenant is outside the scope
                or differs from ``tenant_id``.
        """
        async with session_scope(self._sessionmaker) as session:
            backup = await BackupStore(session).get(backup_id, with_payload=with_payload)
            scope.require(backup.tenant_id)
            if tenant_id is not None and backup.tenant_id != tenant_id:
                raise BackupScopeError(f"Backup {backup_id} does not belong to tenant {tenant_id}")
            if with_payload:
                result: BackupSummary | BackupDownload = BackupDownload.model_validate(backup)
            else:
                result = BackupSummary.model_validate(backup)

        if with_payload:
            await self._audit(scope, "BACKUP_DOWNLOADED", backup.tenant_id, backup_id, None)
        return result

    async def restore_snapshot(
        self,
        scope: AccessScope,
        backup_id: str,
        mode: str | RestoreMode | None = None,
        destination_tenant_id: str | None = None,
        confirmation: str | None = None,
    ) -> RestoreResult:
        """Restore a backup into its own tenant or another one.

        Both the backup's tenant and the destination must be in scope.

        Raises:
            BackupScopeError: If either tenant is outside the scope.
            RestoreFailedError: If the restore transaction failed.
            BackupServiceError: For any precondition failure.
            TenantServiceError: If the destination is missing or inactive.
        """
        async with session_scope(self._sessionmaker) as session:
            backup = await BackupStore(session).get(backup_id)
            source_tenant_id = backup.tenant_id

        destination = destination_tenant_id or source_tenant_id
        scope.require(source_tenant_id)
        scope.require(destination)

        try:
            result = await self._engine.restore(
                backup_id,
                mode=mode,
                destination_tenant_id=destination,
                confirmation=confirmation,
                actor_id=scope.actor_id,
            )
        except RestoreFailedError as e:
            await self._audit(
                scope,
                "BACKUP_RESTORE_FAILED",
                destination,
                backup_id,
                {
                    "mode": parse_restore_mode(mode).value,
                    "source_tenant_id": source_tenant_id,
                    "error_type": e.diagnostic.get("error_type"),
                },
            )
            raise

        await self._audit(
            scope,
            f"BACKUP_RESTORED_{result.mode.value}",
            result.destination_tenant_id,
            backup_id,
            {
                "source_tenant_id": source_tenant_id,
                "created_handles": [item.handle for item in result.created_identities],
                "skipped_handles": [item.handle for item in result.skipped_identities],
                "counts": result.snapshot_counts.model_dump(),
                "restored_links": result.restored_links.model_dump(),
            },
        )
        return result

    async def _audit(
        self,
        scope: AccessScope,
        action: str,
        tenant_id: str | None,
        backup_id: str,
        details: dict[str, Any] | None,
    ) -> None:
        # Audit write failures are logged, never raised
        try:
            async with session_scope(self._sessionmaker) as session:
                await AuditService(session).record(
                    action,
                    actor_id=scope.actor_id,
                    actor_role=scope.actor_role,
                    tenant_id=tenant_id,
                    target_type=BACKUP_TARGET,
                    target_id=backup_id,
                    details={"backup_id": backup_id, **(details or {})},
                )
        except DatabaseError:
            logger.exception("Failed to record audit event %s for backup %s", action, backup_id)
