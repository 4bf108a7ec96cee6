# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Audit trail for sensitive operations.

Details are redacted before they are stored: any key that looks like a
credential is replaced, at any nesting depth.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from schoolvault.infrastructure.database.models import AuditLog

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "password",
    "password_hash",
    "temp_secret",
    "secret",
    "token",
    "access_token",
})


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with credential-like keys masked."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class AuditService:
    """Writes audit log entries.

    Attributes:
        db: Async database session. The caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(
        self,
        action: str,
        actor_id: str | None = None,
        actor_role: str | None = None,
        tenant_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Append one audit event.

        Args:
            action: Action code, e.g. ``BACKUP_CREATED``.
            actor_id: User who performed the action.
            actor_role: Caller category of the actor.
            tenant_id: Tenant the action applies to.
            target_type: Kind of object acted on.
            target_id: ID of the object acted on.
            details: Extra metadata; redacted before storage.

        Returns:
            The flushed audit entry.
        """
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            tenant_id=tenant_id,
            target_type=target_type,
            target_id=target_id,
            details=redact(details) if details else None,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info("Audit %s: actor=%s tenant=%s target=%s", action, actor_id, tenant_id, target_id)
        return entry
