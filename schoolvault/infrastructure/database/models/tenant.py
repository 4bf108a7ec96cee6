# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant (school) registry, per-tenant settings and subscription history."""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from schoolvault.infrastructure.database.models.base import (
    Base,
    JSONType,
    TenantScopedMixin,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)


class Tenant(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """An isolated customer organization (a school)."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)
    short_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name}, active={self.is_active})>"


class TenantSettings(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """Singleton settings row of a tenant."""

    __tablename__ = "tenant_settings"
    __table_args__ = (
        Index("uq_tenant_settings_tenant", "tenant_id", unique=True),
    )

    enable_class_teachers: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enable_subject_assignments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    current_academic_year: Mapped[str | None] = mapped_column(String(20), nullable=True)
    term1_label: Mapped[str] = mapped_column(String(50), default="Term 1", nullable=False)
    term2_label: Mapped[str] = mapped_column(String(50), default="Term 2", nullable=False)
    term3_label: Mapped[str] = mapped_column(String(50), default="Term 3", nullable=False)


class Subscription(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """Subscription history entry; the newest row is the current plan.

    Rows are append-only: plan changes and restores insert new rows.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_tenant_created", "tenant_id", "created_at"),
    )

    plan_code: Mapped[str] = mapped_column(String(20), default="FREE", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="TRIAL", nullable=False)
    max_students: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_teachers: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_classes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    entitlements: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    limits: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
