# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Backup and restore request/response models.

This module defines the constants of the snapshot format, the backup
status and restore mode enumerations, and the Pydantic models returned by
the backup service and API.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SNAPSHOT_VERSION = 1
BACKUP_TYPE = "TENANT_SNAPSHOT"
REPLACE_CONFIRMATION = "DELETE SCHOOL DATA"


class BackupStatus(str, Enum):
    """Lifecycle status of a backup record."""

    READY = "READY"
    RESTORING = "RESTORING"
    FAILED = "FAILED"


class RestoreMode(str, Enum):
    """Consistency model of a restore."""

    MERGE = "MERGE"
    REPLACE = "REPLACE"


class SnapshotCounts(BaseModel):
    """Number of rows per collection in a snapshot."""

    identities: int = 0
    staff_profiles: int = 0
    classes: int = 0
    students: int = 0
    subjects: int = 0
    teaching_assignments: int = 0
    class_teacher_links: int = 0
    subscription: int = Field(default=0, ge=0, le=1)
    settings: int = Field(default=0, ge=0, le=1)


class BackupSummary(BaseModel):
    """Backup record without its payload."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Backup ID")
    tenant_id: str | None = Field(None, description="Tenant the snapshot was taken from")
    type: str = Field(..., description="Backup type")
    status: BackupStatus = Field(..., description="Current status")
    meta: dict[str, Any] | None = Field(None, description="Snapshot summary")
    created_by: str | None = Field(None, description="Operator who created the backup")
    created_at: datetime = Field(..., description="Creation timestamp")


class BackupListResponse(BaseModel):
    """Newest-first backup listing."""

    items: list[BackupSummary] = Field(..., description="Backups, newest first")
    limit: int = Field(..., description="Maximum number of items returned")


class BackupDownload(BackupSummary):
    """Backup record including its payload."""

    payload: dict[str, Any] = Field(..., description="Snapshot payload")


class RestoreRequest(BaseModel):
    """Request to restore a backup."""

    mode: str = Field(
        default=RestoreMode.MERGE.value,
        description="MERGE (non-destructive) or REPLACE (wipe then reinsert)",
    )
    destination_tenant_id: str | None = Field(
        None,
        description="Tenant to restore into; defaults to the backup's tenant",
    )
    confirmation: str | None = Field(
        None,
        description=f"Required for REPLACE: the literal '{REPLACE_CONFIRMATION}'",
    )


class CreatedIdentity(BaseModel):
    """Login identity created by a restore, with its one-time secret."""

    handle: str
    temp_secret: str


class SkippedIdentity(BaseModel):
    """Login identity a restore did not write."""

    handle: str
    reason: str


class RowError(BaseModel):
    """A snapshot row that failed to restore."""

    key: str | None = Field(None, description="Natural key of the row")
    error: str = Field(..., description="Failure description")


class RestoreWarnings(BaseModel):
    """Recoverable per-row failures collected during a restore."""

    student_errors: list[RowError] = Field(default_factory=list)
    subject_errors: list[RowError] = Field(default_factory=list)


class RestoredLinks(BaseModel):
    """Number of relational rows recreated (REPLACE only)."""

    staff_profiles: int = 0
    teaching_assignments: int = 0
    class_teacher_links: int = 0


class RestoreResult(BaseModel):
    """Outcome of a successful restore."""

    mode: RestoreMode
    backup_id: str
    destination_tenant_id: str
    created_identities: list[CreatedIdentity] = Field(default_factory=list)
    skipped_identities: list[SkippedIdentity] = Field(default_factory=list)
    snapshot_counts: SnapshotCounts = Field(default_factory=SnapshotCounts)
    restored_links: RestoredLinks = Field(default_factory=RestoredLinks)
    warnings: RestoreWarnings = Field(default_factory=RestoreWarnings)
    notes: list[str] = Field(default_factory=list)
