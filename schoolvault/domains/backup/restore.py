# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Restore of a tenant snapshot into a destination tenant.

Two consistency models are supported:

    MERGE    non-destructive; natural-key upserts into existing data.
             Staff profiles and link rows are not restored.
    REPLACE  destructive; the destination is wiped in dependency order
             and the snapshot is reinserted, links included.

A restore runs in three phases:

1. Preconditions. Every check happens before any write, and the backup
   is then acquired with one atomic status change (READY/FAILED ->
   RESTORING). Losing that race is a conflict.
2. Credential preparation. Temporary secrets are generated and hashed
   in a worker thread while no transaction is open.
3. One transaction with a time limit. Any exception rolls everything
   back and the backup ends FAILED; success ends READY.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolvault.core.config.settings import BackupSettings
from schoolvault.domains.auth.password import PasswordHasher
from schoolvault.domains.backup.errors import (
    BackupConflictError,
    ConfirmationRequiredError,
    InvalidBackupPayloadError,
    InvalidRestoreModeError,
    RestoreFailedError,
    UnsupportedSnapshotVersionError,
)
from schoolvault.domains.backup.identity import IdentityReconciler, PreparedIdentities
from schoolvault.domains.backup.remap import EntityRemapper
from schoolvault.domains.backup.snapshot import SNAPSHOT_COLLECTIONS, count_collections
from schoolvault.domains.backup.store import BackupStore
from schoolvault.domains.backup.wipe import TenantWipe
from schoolvault.domains.tenant.service import TenantService
from schoolvault.infrastructure.database.connection import DatabaseError, session_scope
from schoolvault.infrastructure.database.models import Subscription, TenantSettings
from schoolvault.models.backup import (
    REPLACE_CONFIRMATION,
    SNAPSHOT_VERSION,
    BackupStatus,
    RestoredLinks,
    RestoreMode,
    RestoreResult,
    RestoreWarnings,
)
from schoolvault.utils.datetime import parse_iso

logger = logging.getLogger(__name__)

# Serialization failure, deadlock and lock-not-available
LOCK_CONTENTION_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

SETTINGS_FIELDS = (
    "enable_class_teachers",
    "enable_subject_assignments",
    "current_academic_year",
    "term1_label",
    "term2_label",
    "term3_label",
)
NULLABLE_SETTINGS_FIELDS = frozenset({"current_academic_year"})

SUBSCRIPTION_DEFAULTS: dict[str, Any] = {
    "plan_code": "FREE",
    "status": "TRIAL",
    "max_students": 0,
    "max_teachers": 0,
    "max_classes": 0,
}

MERGE_NOTE = (
    "MERGE does not restore staff profiles, teaching assignments or class "
    "teacher links; their snapshot references cannot be safely remapped."
)
REPLACE_NOTE = "REPLACE restored the full dataset."


def parse_restore_mode(mode: str | RestoreMode | None) -> RestoreMode:
    """Parse a restore mode case-insensitively; None means MERGE.

    Raises:
        InvalidRestoreModeError: For anything but MERGE or REPLACE.
    """
    if mode is None:
        return RestoreMode.MERGE
    if isinstance(mode, RestoreMode):
        return mode
    if not isinstance(mode, str):
        raise InvalidRestoreModeError(mode)
    try:
        return RestoreMode(mode.strip().upper())
    except ValueError:
        raise InvalidRestoreModeError(mode)


def validate_payload(payload: Any) -> dict[str, Any]:
    """Check a snapshot payload's structure and version.

    Args:
        payload: Stored payload of a backup record.

    Returns:
        The payload's ``data`` section with every collection normalized
        to a list of mappings.

    Raises:
        InvalidBackupPayloadError: If the payload is malformed.
        UnsupportedSnapshotVersionError: If the version is not supported.
    """
    if not isinstance(payload, Mapping) or not isinstance(payload.get("data"), Mapping):
        raise InvalidBackupPayloadError("Backup payload is missing its data section")

    version = payload.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version != SNAPSHOT_VERSION:
        raise UnsupportedSnapshotVersionError(version)

    raw = payload["data"]
    data: dict[str, Any] = {}
    for key, _, _ in SNAPSHOT_COLLECTIONS:
        rows = raw.get(key) or []
        if not isinstance(rows, list) or not all(isinstance(row, Mapping) for row in rows):
            raise InvalidBackupPayloadError(f"Backup collection {key} is malformed")
        data[key] = rows

    for key in ("subscription", "settings"):
        value = raw.get(key)
        if value is not None and not isinstance(value, Mapping):
            raise InvalidBackupPayloadError(f"Backup section {key} is malformed")
        data[key] = value

    return data


def check_confirmation(mode: RestoreMode, confirmation: str | None) -> None:
    """Require the exact confirmation literal for REPLACE.

    Raises:
        ConfirmationRequiredError: If REPLACE is not confirmed.
    """
    if mode is RestoreMode.REPLACE and confirmation != REPLACE_CONFIRMATION:
        raise ConfirmationRequiredError(
            f"REPLACE requires the confirmation '{REPLACE_CONFIRMATION}'"
        )


def describe_failure(exc: BaseException, timeout_seconds: float | None = None) -> dict[str, Any]:
    """Build the diagnostic attached to a failed restore."""
    if isinstance(exc, TimeoutError):
        message = f"Restore exceeded the {timeout_seconds} second time limit"
    elif isinstance(exc, DBAPIError) and exc.orig is not None:
        message = str(exc.orig)
    else:
        message = str(exc)

    diagnostic: dict[str, Any] = {"error": message, "error_type": type(exc).__name__}

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        diagnostic["sqlstate"] = sqlstate
    return diagnostic


def is_lock_contention(error: BaseException | None) -> bool:
    """Tell whether a database error means another writer holds the lock."""
    if isinstance(error, DatabaseError):
        error = error.original_error
    if not isinstance(error, DBAPIError):
        return False

    sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    if sqlstate in LOCK_CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(error.orig).lower()


@dataclass(frozen=True)
class RestorePlan:
    """A validated restore request that holds the backup."""

    backup_id: str
    mode: RestoreMode
    destination_tenant_id: str
    data: dict[str, Any]


class RestoreEngine:
    """Reconciles a snapshot into a destination tenant.

    Attributes:
        _sessionmaker: Factory for the precondition, restore and status
            sessions.
        _settings: Backup settings (time limit, secrets, default stream).
        _identities: Login identity reconciler.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        settings: BackupSettings,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._settings = settings
        hasher = hasher or PasswordHasher(rounds=settings.temp_secret_hash_rounds)
        self._identities = IdentityReconciler(hasher, settings.temp_secret_length)

    async def restore(
        self,
        backup_id: str,
        mode: str | RestoreMode | None = None,
        destination_tenant_id: str | None = None,
        confirmation: str | None = None,
        actor_id: str | None = None,
    ) -> RestoreResult:
        """Restore a backup.

        Args:
            backup_id: Backup to restore.
            mode: MERGE (default) or REPLACE, case-insensitive.
            destination_tenant_id: Tenant to restore into. Defaults to the
                tenant the snapshot was taken from.
            confirmation: Literal required for REPLACE.
            actor_id: Operator performing the restore, for logging.

        Returns:
            The restore result with one-time secrets of created identities.

        Raises:
            BackupNotFoundError: If the backup does not exist.
            BackupConflictError: If the backup is already being restored.
            InvalidBackupPayloadError: If the payload is malformed.
            UnsupportedSnapshotVersionError: If the payload version is wrong.
            TenantNotFoundError: If the destination does not exist.
            TenantInactiveError: If the destination is deactivated.
            InvalidRestoreModeError: If the mode is unknown.
            ConfirmationRequiredError: If REPLACE is unconfirmed.
            RestoreFailedError: If the transaction failed and was rolled back.
            DatabaseError: If the backup status could not be reset after a
                committed restore.
        """
        plan = await self._acquire(backup_id, mode, destination_tenant_id, confirmation)

        logger.info(
            "Restore started: backup=%s mode=%s destination=%s actor=%s",
            backup_id,
            plan.mode.value,
            plan.destination_tenant_id,
            actor_id,
        )

        try:
            prepared = await self._identities.prepare(plan.data["identities"])
            result = await self._apply(plan, prepared)
        except asyncio.CancelledError:
            await asyncio.shield(self._release(backup_id, BackupStatus.FAILED))
            raise
        except Exception as e:
            diagnostic = describe_failure(e, self._settings.restore_timeout_seconds)
            logger.error(
                "Restore failed: backup=%s destination=%s error=%s",
                backup_id,
                plan.destination_tenant_id,
                diagnostic,
            )
            try:
                await self._release(backup_id, BackupStatus.FAILED)
            except DatabaseError:
                logger.exception(
                    "Backup %s could not be marked FAILED and stays RESTORING", backup_id
                )
            raise RestoreFailedError("Restore failed", diagnostic) from e

        try:
            await self._release(backup_id, BackupStatus.READY)
        except DatabaseError:
            logger.exception(
                "Restore of backup %s committed but the backup stays RESTORING", backup_id
            )
            raise

        logger.info(
            "Restore finished: backup=%s created=%d skipped=%d",
            backup_id,
            len(result.created_identities),
            len(result.skipped_identities),
        )
        return result

    async def _acquire(
        self,
        backup_id: str,
        mode: str | RestoreMode | None,
        destination_tenant_id: str | None,
        confirmation: str | None,
    ) -> RestorePlan:
        async with session_scope(self._sessionmaker) as session:
            store = BackupStore(session)
            backup = await store.get(backup_id, with_payload=True)
            if backup.status not in (BackupStatus.READY.value, BackupStatus.FAILED.value):
                raise BackupConflictError(f"Backup {backup_id} is already being restored")

            data = validate_payload(backup.payload)

            destination = (
                destination_tenant_id
                or backup.payload.get("tenant_id")
                or backup.tenant_id
            )
            if not destination:
                raise InvalidBackupPayloadError("Backup does not name a tenant to restore into")
            await TenantService(session).get_active_tenant(destination)

            restore_mode = parse_restore_mode(mode)
            check_confirmation(restore_mode, confirmation)

        try:
            async with session_scope(self._sessionmaker) as session:
                acquired = await BackupStore(session).acquire_for_restore(backup_id)
        except DatabaseError as e:
            if not is_lock_contention(e):
                raise
            logger.info("Backup %s is locked by a concurrent restore", backup_id)
            acquired = False

        if not acquired:
            raise BackupConflictError(f"Backup {backup_id} is already being restored")

        return RestorePlan(
            backup_id=backup_id,
            mode=restore_mode,
            destination_tenant_id=destination,
            data=data,
        )

    async def _apply(self, plan: RestorePlan, prepared: PreparedIdentities) -> RestoreResult:
        data = plan.data
        tenant_id = plan.destination_tenant_id
        links = RestoredLinks()

        async with self._sessionmaker() as session:
            async with asyncio.timeout(self._settings.restore_timeout_seconds):
                async with session.begin():
                    if plan.mode is RestoreMode.REPLACE:
                        await TenantWipe(session).wipe(tenant_id)

                    await self._restore_settings(session, tenant_id, data["settings"])
                    await self._restore_subscription(session, tenant_id, data["subscription"])

                    identities = await self._identities.reconcile(
                        session, prepared, tenant_id, plan.mode
                    )

                    remapper = EntityRemapper(
                        session, tenant_id, self._settings.default_class_stream
                    )
                    await remapper.upsert_classes(data["classes"])
                    await remapper.upsert_subjects(data["subjects"])
                    await remapper.upsert_students(data["students"])

                    if plan.mode is RestoreMode.REPLACE:
                        links = await remapper.restore_links(
                            data["staff_profiles"],
                            data["teaching_assignments"],
                            data["class_teacher_links"],
                            identities.id_map,
                        )

        notes = [REPLACE_NOTE if plan.mode is RestoreMode.REPLACE else MERGE_NOTE]
        if remapper.dropped_subject_codes:
            notes.append(
                "Subject codes already used by other subjects were dropped: "
                + ", ".join(remapper.dropped_subject_codes)
            )

        return RestoreResult(
            mode=plan.mode,
            backup_id=plan.backup_id,
            destination_tenant_id=tenant_id,
            created_identities=identities.created,
            skipped_identities=identities.skipped,
            snapshot_counts=count_collections(data),
            restored_links=links,
            warnings=RestoreWarnings(
                student_errors=remapper.student_errors,
                subject_errors=remapper.subject_errors,
            ),
            notes=notes,
        )

    async def _restore_settings(
        self,
        db: AsyncSession,
        tenant_id: str,
        snapshot: Mapping[str, Any] | None,
    ) -> None:
        if not snapshot:
            return

        values = {
            key: snapshot[key]
            for key in SETTINGS_FIELDS
            if key in snapshot
            and (snapshot[key] is not None or key in NULLABLE_SETTINGS_FIELDS)
        }

        result = await db.execute(
            select(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
        )
        settings = result.scalar_one_or_none()
        if settings is None:
            db.add(TenantSettings(tenant_id=tenant_id, **values))
        else:
            for key, value in values.items():
                setattr(settings, key, value)
        await db.flush()

    async def _restore_subscription(
        self,
        db: AsyncSession,
        tenant_id: str,
        snapshot: Mapping[str, Any] | None,
    ) -> None:
        if not snapshot:
            return

        values = {
            key: snapshot.get(key) if snapshot.get(key) is not None else default
            for key, default in SUBSCRIPTION_DEFAULTS.items()
        }
        db.add(
            Subscription(
                tenant_id=tenant_id,
                current_period_end=parse_iso(snapshot.get("current_period_end")),
                entitlements=snapshot.get("entitlements"),
                limits=snapshot.get("limits"),
                **values,
            )
        )
        await db.flush()

    async def _release(self, backup_id: str, status: BackupStatus) -> None:
        async with session_scope(self._sessionmaker) as session:
            await BackupStore(session).release(backup_id, status)
