# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy ORM models.

Importing this package registers every table on ``Base.metadata``.
"""

from schoolvault.infrastructure.database.models.backup import AuditLog, Backup
from schoolvault.infrastructure.database.models.base import (
    Base,
    JSONType,
    TenantScopedMixin,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
    new_id,
)
from schoolvault.infrastructure.database.models.school import (
    USER_ROLES,
    Class,
    ClassTeacher,
    StaffProfile,
    Student,
    Subject,
    TeachingAssignment,
    User,
)
from schoolvault.infrastructure.database.models.tenant import (
    Subscription,
    Tenant,
    TenantSettings,
)

__all__ = [
    "AuditLog",
    "Backup",
    "Base",
    "Class",
    "ClassTeacher",
    "JSONType",
    "StaffProfile",
    "Student",
    "Subject",
    "Subscription",
    "TeachingAssignment",
    "Tenant",
    "TenantScopedMixin",
    "TenantSettings",
    "TimestampMixin",
    "USER_ROLES",
    "UUIDPrimaryKeyMixin",
    "User",
    "new_id",
]
