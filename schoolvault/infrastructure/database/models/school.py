# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""School operational models: login identities, staff, classes, students,
subjects and the link tables between them.

Foreign keys between these tables are declared without cascading deletes;
bulk removal of a tenant's rows follows the explicit order in
``schoolvault.domains.backup.wipe``.
"""

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from schoolvault.infrastructure.database.models.base import (
    Base,
    TenantScopedMixin,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)

USER_ROLES = frozenset({"ADMIN", "TEACHER", "STUDENT"})


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Login identity.

    The e-mail handle is unique across the whole platform, not per tenant.
    ``tenant_id`` is set once at creation and never rebound.
    """

    __tablename__ = "users"

    tenant_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("tenants.id"),
        index=True,
        nullable=True,
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="ADMIN", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, tenant={self.tenant_id})>"


class StaffProfile(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """Teacher profile attached to a login identity."""

    __tablename__ = "staff_profiles"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)


class Class(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """A class/stream in an academic year.

    ``stream`` is part of the natural key and is never NULL.
    """

    __tablename__ = "classes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", "stream", "year", name="uq_classes_natural_key"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    stream: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Student(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """Enrolled student, identified by admission number within a tenant."""

    __tablename__ = "students"
    __table_args__ = (
        UniqueConstraint("tenant_id", "admission_no", name="uq_students_admission_no"),
    )

    admission_no: Mapped[str] = mapped_column(String(50), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    dob: Mapped[date | None] = mapped_column(Date, nullable=True)
    class_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("classes.id"),
        nullable=True,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        unique=True,
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Subject(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """Taught subject. ``name`` is the natural key; ``code`` is optional."""

    __tablename__ = "subjects"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_subjects_name"),
        UniqueConstraint("tenant_id", "code", name="uq_subjects_code"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TeachingAssignment(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """A teacher teaching a subject to a class."""

    __tablename__ = "teaching_assignments"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "teacher_id",
            "class_id",
            "subject_id",
            name="uq_teaching_assignments_link",
        ),
    )

    teacher_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staff_profiles.id"), nullable=False
    )
    class_id: Mapped[str] = mapped_column(String(36), ForeignKey("classes.id"), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), ForeignKey("subjects.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ClassTeacher(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    """The class teacher of a class (one per class)."""

    __tablename__ = "class_teachers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "class_id", name="uq_class_teachers_class"),
    )

    class_id: Mapped[str] = mapped_column(String(36), ForeignKey("classes.id"), nullable=False)
    teacher_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staff_profiles.id"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
