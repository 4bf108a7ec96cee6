# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exceptions raised by the backup domain."""

from typing import Any


class BackupServiceError(Exception):
    """Base exception for backup and restore errors."""

    pass


class BackupNotFoundError(BackupServiceError):
    """Raised when a backup record does not exist."""

    def __init__(self, backup_id: str) -> None:
        super().__init__(f"Backup not found: {backup_id}")
        self.backup_id = backup_id


class BackupConflictError(BackupServiceError):
    """Raised when a backup is already being restored."""

    pass


class InvalidStatusTransitionError(BackupServiceError):
    """Raised on a backup status change outside the allowed transitions."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid backup status transition: {current} -> {target}")
        self.current = current
        self.target = target


class InvalidBackupPayloadError(BackupServiceError):
    """Raised when a backup payload is structurally invalid."""

    pass


class UnsupportedSnapshotVersionError(BackupServiceError):
    """Raised when a payload version is not the supported one."""

    def __init__(self, version: Any) -> None:
        super().__init__(f"Unsupported snapshot version: {version!r}")
        self.version = version


class InvalidRestoreModeError(BackupServiceError):
    """Raised for a restore mode other than MERGE or REPLACE."""

    def __init__(self, mode: Any) -> None:
        super().__init__(f"Invalid restore mode: {mode!r}. Use MERGE or REPLACE.")
        self.mode = mode


class ConfirmationRequiredError(BackupServiceError):
    """Raised when a REPLACE restore lacks the exact confirmation literal."""

    pass


class BackupScopeError(BackupServiceError):
    """Raised when the caller may not act on a tenant."""

    pass


class RestoreFailedError(BackupServiceError):
    """Raised when the restore transaction failed and was rolled back.

    Attributes:
        diagnostic: Error details for non-production responses.
    """

    def __init__(self, message: str, diagnostic: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic or {}
