# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Natural-key upserts with snapshot-to-destination identifier maps.

Snapshot rows carry the identifiers of the tenant they were exported
from. Parents (classes, subjects) are matched in the destination by
natural key; the resulting ``old id -> new id`` maps are then used to
rewrite every child reference before the child is written.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolvault.infrastructure.database.models import (
    Base,
    Class,
    ClassTeacher,
    StaffProfile,
    Student,
    Subject,
    TeachingAssignment,
)
from schoolvault.models.backup import RestoredLinks, RowError
from schoolvault.utils.datetime import parse_iso_date

logger = logging.getLogger(__name__)


def clean_str(value: Any) -> str | None:
    """Strip a scalar to a string; None when empty."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_stream(value: Any, default: str) -> str:
    """Return the class stream, falling back to ``default`` when empty."""
    return clean_str(value) or default


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _mapped(id_map: Mapping[str, str], value: Any) -> str | None:
    if value is None:
        return None
    return id_map.get(str(value))


def describe_row_error(exc: Exception) -> str:
    """Short description of a failed row write."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


class EntityRemapper:
    """Upserts snapshot rows into one destination tenant.

    Must run inside the restore transaction; per-row SAVEPOINTs isolate
    recoverable failures.

    Attributes:
        db: Session inside the restore transaction.
        tenant_id: Destination tenant.
        class_map: Snapshot class ID -> destination class ID.
        subject_map: Snapshot subject ID -> destination subject ID.
        staff_map: Snapshot staff profile ID -> destination ID.
        student_errors: Students that failed to restore.
        subject_errors: Subjects that failed to restore.
        dropped_subject_codes: Codes dropped because another subject uses them.
    """

    def __init__(self, db: AsyncSession, tenant_id: str, default_stream: str = "A") -> None:
        self.db = db
        self.tenant_id = tenant_id
        self.default_stream = default_stream
        self.class_map: dict[str, str] = {}
        self.subject_map: dict[str, str] = {}
        self.staff_map: dict[str, str] = {}
        self.student_errors: list[RowError] = []
        self.subject_errors: list[RowError] = []
        self.dropped_subject_codes: list[str] = []

    async def upsert_classes(self, rows: Iterable[Mapping[str, Any]]) -> dict[str, str]:
        """Upsert classes by (name, stream, year).

        Rows without a name or a numeric year are ignored. A class write
        failure aborts the restore.

        Returns:
            The class ID map.
        """
        for row in rows:
            name = clean_str(row.get("name"))
            year = _as_int(row.get("year"))
            if not name or year is None:
                logger.debug("Ignoring class row without name or year: %s", row.get("id"))
                continue
            stream = normalize_stream(row.get("stream"), self.default_stream)
            is_active = bool(row.get("is_active", True))

            result = await self.db.execute(
                select(Class).where(
                    Class.tenant_id == self.tenant_id,
                    Class.name == name,
                    Class.stream == stream,
                    Class.year == year,
                )
            )
            class_ = result.scalar_one_or_none()
            if class_ is None:
                class_ = Class(
                    tenant_id=self.tenant_id,
                    name=name,
                    stream=stream,
                    year=year,
                    is_active=is_active,
                )
                self.db.add(class_)
            else:
                class_.is_active = is_active
            await self.db.flush()

            if row.get("id"):
                self.class_map[str(row["id"])] = class_.id

        return self.class_map

    async def upsert_subjects(self, rows: Iterable[Mapping[str, Any]]) -> dict[str, str]:
        """Upsert subjects by name.

        A snapshot code is applied only if no other destination subject
        holds it; otherwise it is dropped and the subject is still written.

        Returns:
            The subject ID map.
        """
        result = await self.db.execute(
            select(Subject.name, Subject.code).where(Subject.tenant_id == self.tenant_id)
        )
        code_owners = {code: name for name, code in result.all() if code}

        for row in rows:
            name = clean_str(row.get("name"))
            if not name:
                continue
            is_active = bool(row.get("is_active", True))

            code = clean_str(row.get("code"))
            if code and code_owners.get(code, name) != name:
                logger.info(
                    "Dropping subject code %s for %s: used by %s",
                    code,
                    name,
                    code_owners[code],
                )
                self.dropped_subject_codes.append(code)
                code = None

            try:
                async with self.db.begin_nested():
                    result = await self.db.execute(
                        select(Subject).where(
                            Subject.tenant_id == self.tenant_id,
                            Subject.name == name,
                        )
                    )
                    subject = result.scalar_one_or_none()
                    previous_code = subject.code if subject is not None else None
                    if subject is None:
                        subject = Subject(
                            tenant_id=self.tenant_id,
                            name=name,
                            code=code,
                            is_active=is_active,
                        )
                        self.db.add(subject)
                    else:
                        subject.is_active = is_active
                        if code:
                            subject.code = code
                    await self.db.flush()
            except DBAPIError as e:
                logger.warning("Subject %s not restored: %s", name, describe_row_error(e))
                self.subject_errors.append(RowError(key=name, error=describe_row_error(e)))
                continue

            if code:
                if previous_code and previous_code != code:
                    code_owners.pop(previous_code, None)
                code_owners[code] = name
            if row.get("id"):
                self.subject_map[str(row["id"])] = subject.id

        return self.subject_map

    async def upsert_students(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Upsert students by admission number.

        The class reference is rewritten through the class map and cleared
        when unmapped. The login identity link is always cleared.

        Returns:
            Number of students written.
        """
        written = 0
        for row in rows:
            admission_no = clean_str(row.get("admission_no"))
            if not admission_no:
                continue

            try:
                values = {
                    "first_name": row.get("first_name"),
                    "last_name": row.get("last_name"),
                    "gender": row.get("gender"),
                    "dob": parse_iso_date(row.get("dob")),
                    "class_id": _mapped(self.class_map, row.get("class_id")),
                    "is_active": bool(row.get("is_active", True)),
                    "user_id": None,
                }
                async with self.db.begin_nested():
                    result = await self.db.execute(
                        select(Student).where(
                            Student.tenant_id == self.tenant_id,
                            Student.admission_no == admission_no,
                        )
                    )
                    student = result.scalar_one_or_none()
                    if student is None:
                        self.db.add(
                            Student(tenant_id=self.tenant_id, admission_no=admission_no, **values)
                        )
                    else:
                        for key, value in values.items():
                            setattr(student, key, value)
                    await self.db.flush()
            except (DBAPIError, ValueError, TypeError) as e:
                logger.warning("Student %s not restored: %s", admission_no, describe_row_error(e))
                self.student_errors.append(RowError(key=admission_no, error=describe_row_error(e)))
                continue

            written += 1

        return written

    async def restore_links(
        self,
        staff_profiles: Iterable[Mapping[str, Any]],
        teaching_assignments: Iterable[Mapping[str, Any]],
        class_teacher_links: Iterable[Mapping[str, Any]],
        identity_map: Mapping[str, str],
    ) -> RestoredLinks:
        """Recreate staff profiles and link rows with remapped references.

        Rows referencing anything that was not restored are skipped. Each
        insert has its own SAVEPOINT; a failing row is logged and dropped.

        Args:
            staff_profiles: Snapshot staff profile rows.
            teaching_assignments: Snapshot teaching assignment rows.
            class_teacher_links: Snapshot class teacher rows.
            identity_map: Snapshot identity ID -> destination identity ID.

        Returns:
            Counts of recreated rows.
        """
        links = RestoredLinks()

        for row in staff_profiles:
            user_id = _mapped(identity_map, row.get("user_id"))
            if user_id is None:
                continue
            profile = StaffProfile(
                tenant_id=self.tenant_id,
                user_id=user_id,
                first_name=row.get("first_name"),
                last_name=row.get("last_name"),
                phone=row.get("phone"),
            )
            if not await self._insert_link(profile):
                continue
            links.staff_profiles += 1
            if row.get("id"):
                self.staff_map[str(row["id"])] = profile.id

        for row in teaching_assignments:
            teacher_id = _mapped(self.staff_map, row.get("teacher_id"))
            class_id = _mapped(self.class_map, row.get("class_id"))
            subject_id = _mapped(self.subject_map, row.get("subject_id"))
            if not (teacher_id and class_id and subject_id):
                continue
            assignment = TeachingAssignment(
                tenant_id=self.tenant_id,
                teacher_id=teacher_id,
                class_id=class_id,
                subject_id=subject_id,
                is_active=bool(row.get("is_active", True)),
            )
            if await self._insert_link(assignment):
                links.teaching_assignments += 1

        for row in class_teacher_links:
            class_id = _mapped(self.class_map, row.get("class_id"))
            teacher_id = _mapped(self.staff_map, row.get("teacher_id"))
            if not (class_id and teacher_id):
                continue
            link = ClassTeacher(
                tenant_id=self.tenant_id,
                class_id=class_id,
                teacher_id=teacher_id,
                is_active=bool(row.get("is_active", True)),
            )
            if await self._insert_link(link):
                links.class_teacher_links += 1

        return links

    async def _insert_link(self, obj: Base) -> bool:
        try:
            async with self.db.begin_nested():
                self.db.add(obj)
                await self.db.flush()
        except DBAPIError as e:
            logger.debug(
                "Skipped %s row: %s",
                obj.__tablename__,
                describe_row_error(e),
            )
            return False
        return True
