# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Backup records and the audit trail.

Both tables are tenant-tagged but survive a tenant wipe.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from schoolvault.infrastructure.database.models.base import (
    Base,
    JSONType,
    UUIDPrimaryKeyMixin,
)
from schoolvault.utils.datetime import utc_now


class Backup(UUIDPrimaryKeyMixin, Base):
    """A versioned snapshot of one tenant's data.

    Immutable except for ``status``.
    """

    __tablename__ = "backups"
    __table_args__ = (
        Index("ix_backups_tenant_created", "tenant_id", "created_at"),
    )

    tenant_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(30), default="TENANT_SNAPSHOT", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="READY", nullable=False)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Backup(id={self.id}, tenant={self.tenant_id}, status={self.status})>"


class AuditLog(UUIDPrimaryKeyMixin, Base):
    """Audit trail entry for a mutating or sensitive operation."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_logs_action_created", "action", "created_at"),
    )

    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(30), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
