# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Backup record persistence and status state machine.

Backup records are written once by the snapshot builder. Afterwards only
``status`` changes, and only along ``ALLOWED_TRANSITIONS``. Every status
change is a single conditional UPDATE, so two callers racing for the same
record cannot both win.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import defer

from schoolvault.domains.backup.errors import (
    BackupNotFoundError,
    InvalidStatusTransitionError,
)
from schoolvault.infrastructure.database.models import Backup
from schoolvault.models.backup import BACKUP_TYPE, BackupStatus

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50

ALLOWED_TRANSITIONS: dict[BackupStatus, frozenset[BackupStatus]] = {
    BackupStatus.READY: frozenset({BackupStatus.RESTORING}),
    BackupStatus.FAILED: frozenset({BackupStatus.RESTORING}),
    BackupStatus.RESTORING: frozenset({BackupStatus.READY, BackupStatus.FAILED}),
}


def check_transition(current: str | BackupStatus, target: str | BackupStatus) -> None:
    """Validate a status change against the transition table.

    Raises:
        InvalidStatusTransitionError: If the change is not allowed.
    """
    try:
        current_status = BackupStatus(current)
        target_status = BackupStatus(target)
    except ValueError:
        raise InvalidStatusTransitionError(str(current), str(target))

    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidStatusTransitionError(current_status.value, target_status.value)


def _sources_of(target: BackupStatus) -> list[str]:
    return [
        source.value
        for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets
    ]


class BackupStore:
    """Repository for backup records.

    Attributes:
        db: Async database session. The caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self,
        tenant_id: str,
        meta: dict[str, Any],
        payload: dict[str, Any],
        created_by: str | None = None,
    ) -> Backup:
        """Persist a new READY backup record.

        Args:
            tenant_id: Tenant the snapshot was taken from.
            meta: Snapshot summary.
            payload: Full snapshot payload.
            created_by: Operator who requested the snapshot.

        Returns:
            The flushed Backup record.
        """
        backup = Backup(
            tenant_id=tenant_id,
            type=BACKUP_TYPE,
            status=BackupStatus.READY.value,
            meta=meta,
            payload=payload,
            created_by=created_by,
        )
        self.db.add(backup)
        await self.db.flush()

        logger.info("Backup record created: %s for tenant %s", backup.id, tenant_id)
        return backup

    async def list(self, tenant_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[Backup]:
        """List a tenant's backups newest first, without payloads.

        Args:
            tenant_id: Tenant to list backups for.
            limit: Maximum number of records, capped at 50.

        Returns:
            Backup records whose payload attribute is not loaded.
        """
        limit = max(1, min(limit, DEFAULT_LIST_LIMIT))
        stmt = (
            select(Backup)
            .options(defer(Backup.payload, raiseload=True))
            .where(Backup.tenant_id == tenant_id)
            .order_by(Backup.created_at.desc(), Backup.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get(self, backup_id: str, with_payload: bool = False) -> Backup:
        """Get a backup record.

        Unless ``with_payload`` is set the payload column is never fetched
        and reading ``backup.payload`` raises.

        Raises:
            BackupNotFoundError: If the record does not exist.
        """
        stmt = select(Backup).where(Backup.id == backup_id)
        if with_payload:
            stmt = stmt.execution_options(populate_existing=True)
        else:
            stmt = stmt.options(defer(Backup.payload, raiseload=True))

        result = await self.db.execute(stmt)
        backup = result.scalar_one_or_none()
        if backup is None:
            raise BackupNotFoundError(backup_id)
        return backup

    async def get_status(self, backup_id: str) -> BackupStatus | None:
        """Read the current status of a backup, or None if it does not exist."""
        result = await self.db.execute(select(Backup.status).where(Backup.id == backup_id))
        status = result.scalar_one_or_none()
        return BackupStatus(status) if status is not None else None

    async def acquire_for_restore(self, backup_id: str) -> bool:
        """Atomically move a READY or FAILED backup to RESTORING.

        Returns:
            True if this caller acquired the backup, False if it was
            missing or already being restored.
        """
        acquired = await self._transition(backup_id, BackupStatus.RESTORING)
        if acquired:
            logger.info("Backup %s acquired for restore", backup_id)
        return acquired

    async def release(self, backup_id: str, status: BackupStatus) -> None:
        """Move a RESTORING backup to its terminal status.

        Args:
            backup_id: Backup being restored.
            status: READY after success, FAILED after a failure.

        Raises:
            InvalidStatusTransitionError: If the target is not terminal or
                the backup is not RESTORING.
            BackupNotFoundError: If the backup does not exist.
        """
        check_transition(BackupStatus.RESTORING, status)

        if await self._transition(backup_id, BackupStatus(status)):
            logger.info("Backup %s released as %s", backup_id, BackupStatus(status).value)
            return

        current = await self.get_status(backup_id)
        if current is None:
            raise BackupNotFoundError(backup_id)
        raise InvalidStatusTransitionError(current.value, BackupStatus(status).value)

    async def _transition(self, backup_id: str, target: BackupStatus) -> bool:
        stmt = (
            update(Backup)
            .where(Backup.id == backup_id, Backup.status.in_(_sources_of(target)))
            .values(status=target.value)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
