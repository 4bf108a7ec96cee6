# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant snapshot and restore domain.

Example:
    >>> service = BackupService(get_sessionmaker(), get_settings().backup)
    >>> summary = await service.create_snapshot(scope, tenant_id)
    >>> result = await service.restore_snapshot(
    ...     scope, summary.id, mode="REPLACE", confirmation="DELETE SCHOOL DATA"
    ... )
"""

from schoolvault.domains.backup.errors import (
    BackupConflictError,
    BackupNotFoundError,
    BackupScopeError,
    BackupServiceError,
    ConfirmationRequiredError,
    InvalidBackupPayloadError,
    InvalidRestoreModeError,
    InvalidStatusTransitionError,
    RestoreFailedError,
    UnsupportedSnapshotVersionError,
)
from schoolvault.domains.backup.identity import IdentityReconciler, IdentityScope
from schoolvault.domains.backup.remap import EntityRemapper
from schoolvault.domains.backup.restore import RestoreEngine
from schoolvault.domains.backup.service import AccessScope, BackupService
from schoolvault.domains.backup.snapshot import SnapshotBuilder
from schoolvault.domains.backup.store import BackupStore
from schoolvault.domains.backup.wipe import TenantWipe, missing_wipe_entries, wipe_order

__all__ = [
    "AccessScope",
    "BackupConflictError",
    "BackupNotFoundError",
    "BackupScopeError",
    "BackupService",
    "BackupServiceError",
    "BackupStore",
    "ConfirmationRequiredError",
    "EntityRemapper",
    "IdentityReconciler",
    "IdentityScope",
    "InvalidBackupPayloadError",
    "InvalidRestoreModeError",
    "InvalidStatusTransitionError",
    "RestoreEngine",
    "RestoreFailedError",
    "SnapshotBuilder",
    "TenantWipe",
    "UnsupportedSnapshotVersionError",
    "missing_wipe_entries",
    "wipe_order",
]
