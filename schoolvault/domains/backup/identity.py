# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Login identity reconciliation for restores.

Login handles (e-mail addresses) are unique across the whole platform,
but every identity belongs to exactly one tenant and must stay there.
Before anything is written, each snapshot handle is classified against
the destination tenant:

    IN_SCOPE      the destination already owns the handle -> refresh it
    ABSENT        nobody owns the handle -> create it
    OUT_OF_SCOPE  another tenant owns the handle -> skip and report

An out-of-scope handle is never created, updated or rebound, in either
restore mode.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolvault.domains.auth.password import PasswordHasher, generate_temp_secret
from schoolvault.infrastructure.database.models import USER_ROLES, User, new_id
from schoolvault.models.backup import CreatedIdentity, RestoreMode, SkippedIdentity

logger = logging.getLogger(__name__)

CROSS_TENANT_REASON = (
    "Login handle already belongs to another tenant; "
    "skipped to prevent cross-tenant takeover."
)
INVALID_HANDLE_REASON = "Missing or invalid login handle."
DUPLICATE_HANDLE_REASON = "Login handle appears more than once in the snapshot."
INVALID_ROLE_REASON = "Unknown role."

# Keeps IN (...) lists well below driver parameter limits
_LOOKUP_CHUNK = 500


class IdentityScope(str, Enum):
    """Ownership of a login handle relative to the destination tenant."""

    IN_SCOPE = "IN_SCOPE"
    ABSENT = "ABSENT"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"


def normalize_handle(value: Any) -> str | None:
    """Trim and lower-case a login handle; None if it is not an address."""
    if not isinstance(value, str):
        return None
    handle = value.strip().lower()
    return handle if "@" in handle else None


@dataclass(frozen=True)
class PreparedIdentity:
    """A snapshot identity with its freshly generated credentials."""

    snapshot_id: str | None
    handle: str
    role: str
    is_active: bool
    temp_secret: str
    password_hash: str


@dataclass
class PreparedIdentities:
    """Output of the credential preparation step."""

    items: list[PreparedIdentity] = field(default_factory=list)
    skipped: list[SkippedIdentity] = field(default_factory=list)


@dataclass
class IdentityOutcome:
    """What a reconciliation did.

    Attributes:
        id_map: Snapshot identity ID -> destination identity ID.
        created: Newly created identities with their one-time secrets.
        updated: Handles of refreshed existing identities.
        skipped: Identities that were not written, with the reason.
    """

    id_map: dict[str, str] = field(default_factory=dict)
    created: list[CreatedIdentity] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[SkippedIdentity] = field(default_factory=list)


class IdentityReconciler:
    """Creates and refreshes login identities without crossing tenants.

    Attributes:
        _hasher: bcrypt hasher for temporary secrets.
        _secret_length: Length of generated temporary secrets.
    """

    def __init__(self, hasher: PasswordHasher, secret_length: int = 16) -> None:
        self._hasher = hasher
        self._secret_length = secret_length

    async def prepare(self, identities: Iterable[Mapping[str, Any]]) -> PreparedIdentities:
        """Validate snapshot identities and hash a temporary secret for each.

        Hashing runs in a worker thread and must happen before the restore
        transaction is opened.

        Args:
            identities: ``data["identities"]`` rows of a snapshot.

        Returns:
            Prepared identities plus the rows rejected during validation.
        """
        prepared = PreparedIdentities()
        candidates: list[tuple[str | None, str, str, bool]] = []
        seen: set[str] = set()

        for row in identities:
            raw_handle = row.get("email")
            handle = normalize_handle(raw_handle)
            if handle is None:
                prepared.skipped.append(
                    SkippedIdentity(handle=str(raw_handle or ""), reason=INVALID_HANDLE_REASON)
                )
                continue
            if handle in seen:
                prepared.skipped.append(
                    SkippedIdentity(handle=handle, reason=DUPLICATE_HANDLE_REASON)
                )
                continue

            role = str(row.get("role") or "").strip().upper()
            if role not in USER_ROLES:
                prepared.skipped.append(SkippedIdentity(handle=handle, reason=INVALID_ROLE_REASON))
                continue

            seen.add(handle)
            snapshot_id = row.get("id")
            candidates.append(
                (
                    str(snapshot_id) if snapshot_id else None,
                    handle,
                    role,
                    bool(row.get("is_active", True)),
                )
            )

        temp_secrets = [generate_temp_secret(self._secret_length) for _ in candidates]
        hashes = await asyncio.to_thread(self._hasher.hash_many, temp_secrets)

        for (snapshot_id, handle, role, is_active), secret, hashed in zip(
            candidates, temp_secrets, hashes
        ):
            prepared.items.append(
                PreparedIdentity(
                    snapshot_id=snapshot_id,
                    handle=handle,
                    role=role,
                    is_active=is_active,
                    temp_secret=secret,
                    password_hash=hashed,
                )
            )

        logger.debug(
            "Prepared %d identities (%d rejected)",
            len(prepared.items),
            len(prepared.skipped),
        )
        return prepared

    async def classify(
        self,
        db: AsyncSession,
        handles: list[str],
        tenant_id: str,
    ) -> dict[str, tuple[IdentityScope, str | None]]:
        """Classify handles against the global identity table.

        Args:
            db: Session inside the restore transaction.
            handles: Normalized login handles.
            tenant_id: Destination tenant.

        Returns:
            Handle -> (scope, existing identity ID when IN_SCOPE).
        """
        owners: dict[str, tuple[str, str | None]] = {}
        for start in range(0, len(handles), _LOOKUP_CHUNK):
            chunk = handles[start:start + _LOOKUP_CHUNK]
            result = await db.execute(
                select(User.email, User.id, User.tenant_id).where(User.email.in_(chunk))
            )
            for email, user_id, owner in result.all():
                owners[email] = (user_id, owner)

        scopes: dict[str, tuple[IdentityScope, str | None]] = {}
        for handle in handles:
            if handle not in owners:
                scopes[handle] = (IdentityScope.ABSENT, None)
                continue
            user_id, owner = owners[handle]
            if owner == tenant_id:
                scopes[handle] = (IdentityScope.IN_SCOPE, user_id)
            else:
                scopes[handle] = (IdentityScope.OUT_OF_SCOPE, None)
        return scopes

    async def reconcile(
        self,
        db: AsyncSession,
        prepared: PreparedIdentities,
        tenant_id: str,
        mode: RestoreMode,
    ) -> IdentityOutcome:
        """Apply prepared identities to the destination tenant.

        Args:
            db: Session inside the restore transaction.
            prepared: Output of ``prepare``.
            tenant_id: Destination tenant.
            mode: REPLACE reuses snapshot identity IDs when they are free;
                MERGE always assigns new IDs.

        Returns:
            The reconciliation outcome including the identity ID map.

        Raises:
            IntegrityError: If a create fails for a reason other than the
                handle having been claimed by another tenant meanwhile.
        """
        outcome = IdentityOutcome(skipped=list(prepared.skipped))
        scopes = await self.classify(db, [item.handle for item in prepared.items], tenant_id)

        free_ids: set[str] = set()
        if mode is RestoreMode.REPLACE:
            free_ids = await self._free_ids(
                db, [item.snapshot_id for item in prepared.items if item.snapshot_id]
            )

        for item in prepared.items:
            scope, existing_id = scopes[item.handle]

            if scope is IdentityScope.OUT_OF_SCOPE:
                self._skip_foreign(outcome, item, tenant_id)
                continue

            if scope is IdentityScope.IN_SCOPE:
                await self._refresh(db, existing_id, item, tenant_id)
                self._record(outcome, item, existing_id)
                outcome.updated.append(item.handle)
                continue

            user_id = item.snapshot_id if item.snapshot_id in free_ids else new_id()
            await self._create(db, item, tenant_id, user_id, outcome)

        logger.info(
            "Identities reconciled for tenant %s: created=%d updated=%d skipped=%d",
            tenant_id,
            len(outcome.created),
            len(outcome.updated),
            len(outcome.skipped),
        )
        return outcome

    async def _create(
        self,
        db: AsyncSession,
        item: PreparedIdentity,
        tenant_id: str,
        user_id: str,
        outcome: IdentityOutcome,
    ) -> None:
        try:
            async with db.begin_nested():
                db.add(
                    User(
                        id=user_id,
                        tenant_id=tenant_id,
                        email=item.handle,
                        password_hash=item.password_hash,
                        role=item.role,
                        is_active=item.is_active,
                        must_change_password=True,
                        failed_login_attempts=0,
                        lock_until=None,
                        last_login_at=None,
                    )
                )
                await db.flush()
        except IntegrityError:
            # The handle was claimed after classification
            scope, existing_id = (await self.classify(db, [item.handle], tenant_id))[item.handle]
            if scope is IdentityScope.OUT_OF_SCOPE:
                self._skip_foreign(outcome, item, tenant_id)
                return
            if scope is IdentityScope.IN_SCOPE:
                await self._refresh(db, existing_id, item, tenant_id)
                self._record(outcome, item, existing_id)
                outcome.updated.append(item.handle)
                return
            raise

        self._record(outcome, item, user_id)
        outcome.created.append(CreatedIdentity(handle=item.handle, temp_secret=item.temp_secret))

    async def _refresh(
        self,
        db: AsyncSession,
        user_id: str | None,
        item: PreparedIdentity,
        tenant_id: str,
    ) -> None:
        # Never touches tenant, handle or secret
        await db.execute(
            update(User)
            .where(User.id == user_id, User.tenant_id == tenant_id)
            .values(
                role=item.role,
                is_active=item.is_active,
                must_change_password=True,
                failed_login_attempts=0,
                lock_until=None,
                last_login_at=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def _free_ids(self, db: AsyncSession, candidate_ids: list[str]) -> set[str]:
        taken: set[str] = set()
        for start in range(0, len(candidate_ids), _LOOKUP_CHUNK):
            chunk = candidate_ids[start:start + _LOOKUP_CHUNK]
            result = await db.execute(select(User.id).where(User.id.in_(chunk)))
            taken.update(result.scalars().all())
        return set(candidate_ids) - taken

    @staticmethod
    def _record(outcome: IdentityOutcome, item: PreparedIdentity, user_id: str | None) -> None:
        if item.snapshot_id and user_id:
            outcome.id_map[item.snapshot_id] = user_id

    @staticmethod
    def _skip_foreign(outcome: IdentityOutcome, item: PreparedIdentity, tenant_id: str) -> None:
        logger.warning(
            "Skipped identity %s for tenant %s: handle owned by another tenant",
            item.handle,
            tenant_id,
        )
        outcome.skipped.append(SkippedIdentity(handle=item.handle, reason=CROSS_TENANT_REASON))
