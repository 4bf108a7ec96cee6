# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dependency-ordered removal of a tenant's rows.

Foreign keys are declared without cascading deletes, so the deletion order
is spelled out here. ``WIPE_DEPENDENCIES`` maps every tenant-scoped model
to the models whose rows must already be gone before it can be deleted.
Adding a tenant-scoped table without an entry makes
``missing_wipe_entries`` report it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy import MetaData, delete
from sqlalchemy.ext.asyncio import AsyncSession

from schoolvault.infrastructure.database.models import (
    Base,
    Class,
    ClassTeacher,
    StaffProfile,
    Student,
    Subject,
    Subscription,
    TeachingAssignment,
    TenantSettings,
    User,
)

logger = logging.getLogger(__name__)

WIPE_DEPENDENCIES: dict[type[Base], tuple[type[Base], ...]] = {
    ClassTeacher: (),
    TeachingAssignment: (),
    Student: (ClassTeacher, TeachingAssignment),
    Class: (Student, ClassTeacher, TeachingAssignment),
    StaffProfile: (Class, ClassTeacher, TeachingAssignment),
    Subject: (StaffProfile, TeachingAssignment),
    TenantSettings: (Subject,),
    Subscription: (TenantSettings,),
    User: (Student, StaffProfile, Subscription),
}

# Tenant-tagged tables that outlive a wipe
WIPE_EXEMPT_TABLES = frozenset({"backups", "audit_logs"})


def wipe_order(
    dependencies: Mapping[type[Base], tuple[type[Base], ...]] | None = None,
) -> list[type[Base]]:
    """Resolve the dependency table into a deletion order.

    The result is a topological order; among models that are ready at the
    same time, the one declared first in the table wins, so the order is
    stable across runs.

    Args:
        dependencies: Table to resolve. Defaults to ``WIPE_DEPENDENCIES``.

    Returns:
        Models in the order their rows must be deleted.

    Raises:
        ValueError: If the table references an undeclared model or
            contains a cycle.
    """
    table = WIPE_DEPENDENCIES if dependencies is None else dependencies

    for model, before in table.items():
        unknown = [dep.__name__ for dep in before if dep not in table]
        if unknown:
            raise ValueError(f"{model.__name__} depends on undeclared models: {unknown}")

    ordered: list[type[Base]] = []
    done: set[type[Base]] = set()
    pending = list(table)

    while pending:
        for model in pending:
            if all(dep in done for dep in table[model]):
                break
        else:
            names = ", ".join(m.__name__ for m in pending)
            raise ValueError(f"Wipe dependency cycle among: {names}")

        pending.remove(model)
        done.add(model)
        ordered.append(model)

    return ordered


WIPE_ORDER: tuple[type[Base], ...] = tuple(wipe_order())


def missing_wipe_entries(metadata: MetaData | None = None) -> list[str]:
    """List tenant-scoped tables that the wipe plan does not cover.

    A table is tenant-scoped when it has a ``tenant_id`` column.

    Args:
        metadata: Schema to inspect. Defaults to the application models.

    Returns:
        Sorted table names; empty when the plan is complete.
    """
    metadata = metadata if metadata is not None else Base.metadata
    planned = {model.__tablename__ for model in WIPE_DEPENDENCIES}

    return sorted(
        table.name
        for table in metadata.tables.values()
        if "tenant_id" in table.columns
        and table.name not in planned
        and table.name not in WIPE_EXEMPT_TABLES
    )


class TenantWipe:
    """Deletes every wipeable row of one tenant.

    Runs inside the caller's transaction; nothing is committed here.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def wipe(self, tenant_id: str) -> dict[str, int]:
        """Delete the tenant's rows table by table in ``WIPE_ORDER``.

        Args:
            tenant_id: Tenant whose rows are removed.

        Returns:
            Number of deleted rows per table name.
        """
        counts: dict[str, int] = {}
        for model in WIPE_ORDER:
            result = await self.db.execute(
                delete(model)
                .where(model.tenant_id == tenant_id)
                .execution_options(synchronize_session=False)
            )
            counts[model.__tablename__] = result.rowcount

        logger.info(
            "Wiped tenant %s: %s",
            tenant_id,
            ", ".join(f"{name}={count}" for name, count in counts.items()),
        )
        return counts
