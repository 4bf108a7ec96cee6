# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant snapshot export.

A snapshot is a versioned, JSON-serializable copy of one tenant's
operational rows:

    {
        "version": 1,
        "tenant_id": "...",
        "exported_at": "2025-01-31T10:00:00+00:00",
        "data": {
            "identities": [...],
            "staff_profiles": [...],
            "classes": [...],
            "students": [...],
            "subjects": [...],
            "teaching_assignments": [...],
            "class_teacher_links": [...],
            "subscription": {...} | None,
            "settings": {...} | None,
        },
    }

Collections are read concurrently, each in its own session and without a
shared transaction, so the export is a best-effort point-in-time view.
Password hashes never leave the database.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolvault.domains.backup.store import BackupStore
from schoolvault.domains.tenant.service import TenantService
from schoolvault.infrastructure.database.connection import session_scope
from schoolvault.infrastructure.database.models import (
    Backup,
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
from schoolvault.models.backup import SNAPSHOT_VERSION, SnapshotCounts
from schoolvault.utils.datetime import format_iso, utc_now

logger = logging.getLogger(__name__)

# (payload key, model, optional)
SNAPSHOT_COLLECTIONS: tuple[tuple[str, type[Base], bool], ...] = (
    ("identities", User, False),
    ("staff_profiles", StaffProfile, False),
    ("classes", Class, False),
    ("students", Student, False),
    ("subjects", Subject, True),
    ("teaching_assignments", TeachingAssignment, True),
    ("class_teacher_links", ClassTeacher, True),
)

SECRET_FIELDS = frozenset({"password_hash"})

SNAPSHOT_NOTES = "Core school data snapshot. Passwords are excluded."


def serialize_row(obj: Base, exclude: frozenset[str] = frozenset()) -> dict[str, Any]:
    """Convert an ORM row into a JSON-serializable dict of its columns."""
    row: dict[str, Any] = {}
    for attr in inspect(type(obj)).column_attrs:
        if attr.key in exclude:
            continue
        value = getattr(obj, attr.key)
        if isinstance(value, (datetime, date)):
            value = format_iso(value)
        row[attr.key] = value
    return row


def count_collections(data: dict[str, Any]) -> SnapshotCounts:
    """Summarize a snapshot's ``data`` section."""
    counts = {key: len(data.get(key) or []) for key, _, _ in SNAPSHOT_COLLECTIONS}
    return SnapshotCounts(
        **counts,
        subscription=1 if data.get("subscription") else 0,
        settings=1 if data.get("settings") else 0,
    )


class SnapshotBuilder:
    """Exports a tenant into a new READY backup record.

    Attributes:
        _sessionmaker: Factory for the independent read sessions.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def create(self, tenant_id: str, actor_id: str | None = None) -> Backup:
        """Snapshot a tenant and persist the result.

        Args:
            tenant_id: Tenant to export.
            actor_id: Operator requesting the snapshot.

        Returns:
            The committed READY backup record.

        Raises:
            TenantNotFoundError: If the tenant does not exist.
            TenantInactiveError: If the tenant is deactivated.
        """
        async with session_scope(self._sessionmaker) as session:
            tenant = await TenantService(session).get_active_tenant(tenant_id)
            tenant_name = tenant.name

        data = await self.export(tenant_id)
        exported_at = format_iso(utc_now())

        payload = {
            "version": SNAPSHOT_VERSION,
            "tenant_id": tenant_id,
            "exported_at": exported_at,
            "data": data,
        }
        meta = {
            "version": SNAPSHOT_VERSION,
            "tenant": {"id": tenant_id, "name": tenant_name},
            "created_at": exported_at,
            "counts": count_collections(data).model_dump(),
            "notes": SNAPSHOT_NOTES,
        }

        async with session_scope(self._sessionmaker) as session:
            backup = await BackupStore(session).create(
                tenant_id=tenant_id,
                meta=meta,
                payload=payload,
                created_by=actor_id,
            )

        logger.info(
            "Snapshot %s created for tenant %s: %s",
            backup.id,
            tenant_id,
            meta["counts"],
        )
        return backup

    async def export(self, tenant_id: str) -> dict[str, Any]:
        """Read every collection of a tenant into a payload ``data`` dict."""
        readers = [
            self._read_collection(model, tenant_id, optional, key)
            for key, model, optional in SNAPSHOT_COLLECTIONS
        ]
        readers.append(self._read_latest_subscription(tenant_id))
        readers.append(self._read_settings(tenant_id))

        *collections, subscription, settings = await asyncio.gather(*readers)

        data: dict[str, Any] = {
            key: rows for (key, _, _), rows in zip(SNAPSHOT_COLLECTIONS, collections)
        }
        data["subscription"] = subscription
        data["settings"] = settings
        return data

    async def _read_collection(
        self,
        model: type[Base],
        tenant_id: str,
        optional: bool,
        key: str,
    ) -> list[dict[str, Any]]:
        exclude = SECRET_FIELDS if model is User else frozenset()
        stmt = (
            select(model)
            .where(model.tenant_id == tenant_id)
            .order_by(model.created_at.asc(), model.id.asc())
        )
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [serialize_row(obj, exclude) for obj in result.scalars()]
        except (ProgrammingError, OperationalError) as e:
            if not optional:
                raise
            logger.warning(
                "Collection %s unavailable for tenant %s, exporting it empty: %s",
                key,
                tenant_id,
                e.orig,
            )
            return []

    async def _read_latest_subscription(self, tenant_id: str) -> dict[str, Any] | None:
        stmt = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        async with self._sessionmaker() as session:
            subscription = (await session.execute(stmt)).scalar_one_or_none()
            return serialize_row(subscription) if subscription is not None else None

    async def _read_settings(self, tenant_id: str) -> dict[str, Any] | None:
        stmt = select(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
        async with self._sessionmaker() as session:
            settings = (await session.execute(stmt)).scalar_one_or_none()
            return serialize_row(settings) if settings is not None else None
