# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the restore engine.

Covers both consistency models end to end against a real database:
round trips, idempotent merges, the no-takeover rule for login
identities, natural-key remapping and the all-or-nothing guarantee.
"""

import asyncio
import logging
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import (
    TEST_HASH_ROUNDS,
    SeededSchool,
    count_rows,
    create_tenant,
    tenant_counts,
)
from schoolvault.core.config.settings import BackupSettings
from schoolvault.domains.auth.password import PasswordHasher
from schoolvault.domains.backup.errors import (
    BackupConflictError,
    BackupNotFoundError,
    ConfirmationRequiredError,
    InvalidBackupPayloadError,
    InvalidRestoreModeError,
    RestoreFailedError,
    UnsupportedSnapshotVersionError,
)
from schoolvault.domains.backup.identity import CROSS_TENANT_REASON
from schoolvault.domains.backup.remap import EntityRemapper
from schoolvault.domains.backup.restore import (
    MERGE_NOTE,
    REPLACE_NOTE,
    RestoreEngine,
    is_lock_contention,
    parse_restore_mode,
    validate_payload,
)
from schoolvault.domains.backup.snapshot import SnapshotBuilder
from schoolvault.domains.backup.store import BackupStore
from schoolvault.domains.backup.wipe import TenantWipe
from schoolvault.domains.tenant.service import TenantInactiveError, TenantNotFoundError
from schoolvault.infrastructure.database.connection import DatabaseError
from schoolvault.infrastructure.database.models import (
    Class,
    ClassTeacher,
    Student,
    Subject,
    Subscription,
    TeachingAssignment,
    TenantSettings,
    User,
)
from schoolvault.models.backup import (
    REPLACE_CONFIRMATION,
    BackupStatus,
    RestoreMode,
    RestoreResult,
)


def make_payload(tenant_id: str | None, version: Any = 1, **data: Any) -> dict[str, Any]:
    """Build a snapshot payload with empty defaults for every collection."""
    sections: dict[str, Any] = {
        "identities": [],
        "staff_profiles": [],
        "classes": [],
        "students": [],
        "subjects": [],
        "teaching_assignments": [],
        "class_teacher_links": [],
        "subscription": None,
        "settings": None,
    }
    sections.update(data)
    return {
        "version": version,
        "tenant_id": tenant_id,
        "exported_at": "2025-01-31T10:00:00+00:00",
        "data": sections,
    }


async def store_backup(
    sessionmaker: async_sessionmaker[AsyncSession],
    tenant_id: str | None,
    payload: Any,
) -> str:
    """Persist a READY backup with an arbitrary payload."""
    async with sessionmaker() as session:
        backup = await BackupStore(session).create(tenant_id, meta={}, payload=payload)
        await session.commit()
        return backup.id


async def backup_status(sessionmaker: async_sessionmaker[AsyncSession], backup_id: str) -> BackupStatus:
    async with sessionmaker() as session:
        return await BackupStore(session).get_status(backup_id)


async def snapshot(sessionmaker: async_sessionmaker[AsyncSession], tenant_id: str) -> str:
    backup = await SnapshotBuilder(sessionmaker).create(tenant_id)
    return backup.id


async def wipe(sessionmaker: async_sessionmaker[AsyncSession], tenant_id: str) -> None:
    async with sessionmaker() as session:
        async with session.begin():
            await TenantWipe(session).wipe(tenant_id)


def without_subscriptions(counts: dict[str, int]) -> dict[str, int]:
    return {table: count for table, count in counts.items() if table != "subscriptions"}


@pytest.fixture
def engine(
    sessionmaker: async_sessionmaker[AsyncSession],
    backup_settings: BackupSettings,
    hasher: PasswordHasher,
) -> RestoreEngine:
    """Restore engine bound to the test database."""
    return RestoreEngine(sessionmaker, backup_settings, hasher)


class TestParseRestoreMode:
    """Tests for parse_restore_mode."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, RestoreMode.MERGE),
            ("merge", RestoreMode.MERGE),
            (" Replace ", RestoreMode.REPLACE),
            (RestoreMode.REPLACE, RestoreMode.REPLACE),
        ],
    )
    def test_valid_modes(self, value: Any, expected: RestoreMode) -> None:
        """Test that modes parse case-insensitively with MERGE as default."""
        assert parse_restore_mode(value) is expected

    @pytest.mark.parametrize("value", ["", "UPSERT", 1])
    def test_invalid_modes(self, value: Any) -> None:
        """Test that anything else is rejected."""
        with pytest.raises(InvalidRestoreModeError):
            parse_restore_mode(value)


class TestValidatePayload:
    """Tests for validate_payload."""

    def test_normalizes_missing_collections(self) -> None:
        """Test that absent collections become empty lists."""
        data = validate_payload({"version": 1, "data": {"classes": [{"name": "G1"}]}})

        assert data["classes"] == [{"name": "G1"}]
        assert data["students"] == []
        assert data["subscription"] is None

    @pytest.mark.parametrize("version", [None, 0, 2, "1", 1.5, True])
    def test_rejects_other_versions(self, version: Any) -> None:
        """Test that only the integer version 1 is accepted."""
        with pytest.raises(UnsupportedSnapshotVersionError):
            validate_payload(make_payload("t1", version=version))

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            {"version": 1},
            {"version": 1, "data": []},
            make_payload("t1", classes={"name": "G1"}),
            make_payload("t1", students=["ADM1"]),
            make_payload("t1", settings=["x"]),
        ],
    )
    def test_rejects_malformed_payloads(self, payload: Any) -> None:
        """Test that structurally invalid payloads are rejected."""
        with pytest.raises(InvalidBackupPayloadError):
            validate_payload(payload)


class TestReplaceRestore:
    """Tests for REPLACE restores."""

    @pytest.mark.asyncio
    async def test_round_trip_restores_every_entity(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that snapshot then REPLACE into the same tenant reproduces its counts."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        before = await tenant_counts(sessionmaker, school.tenant_id)

        result = await engine.restore(
            backup_id,
            mode="replace",
            confirmation=REPLACE_CONFIRMATION,
            actor_id="op-1",
        )

        assert await tenant_counts(sessionmaker, school.tenant_id) == before
        assert result.mode is RestoreMode.REPLACE
        assert result.destination_tenant_id == school.tenant_id
        assert len(result.created_identities) == 4
        assert result.skipped_identities == []
        assert result.restored_links.model_dump() == {
            "staff_profiles": 2,
            "teaching_assignments": 2,
            "class_teacher_links": 1,
        }
        assert result.snapshot_counts.students == 3
        assert result.warnings.student_errors == []
        assert result.notes == [REPLACE_NOTE]
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_restored_identities_get_fresh_credentials(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        hasher: PasswordHasher,
        school: SeededSchool,
    ) -> None:
        """Test that recreated identities keep their IDs and must change their secret."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        result = await engine.restore(backup_id, mode="REPLACE", confirmation=REPLACE_CONFIRMATION)

        secrets = {item.handle: item.temp_secret for item in result.created_identities}
        async with sessionmaker() as session:
            users = (
                await session.execute(select(User).where(User.tenant_id == school.tenant_id))
            ).scalars().all()

        assert {user.id for user in users} == set(school.user_ids.values())
        for user in users:
            assert user.must_change_password is True
            assert user.failed_login_attempts == 0
            assert hasher.verify(secrets[user.email], user.password_hash)

    @pytest.mark.asyncio
    async def test_links_are_remapped_and_student_logins_cleared(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that link rows point at restored rows and students lose their login link."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        await engine.restore(backup_id, mode="REPLACE", confirmation=REPLACE_CONFIRMATION)

        async with sessionmaker() as session:
            students = (
                await session.execute(select(Student).where(Student.tenant_id == school.tenant_id))
            ).scalars().all()
            link = (
                await session.execute(
                    select(ClassTeacher).where(ClassTeacher.tenant_id == school.tenant_id)
                )
            ).scalar_one()
            grade1 = (
                await session.execute(
                    select(Class).where(Class.tenant_id == school.tenant_id, Class.name == "Grade 1")
                )
            ).scalar_one()
            assignments = (
                await session.execute(
                    select(TeachingAssignment).where(TeachingAssignment.tenant_id == school.tenant_id)
                )
            ).scalars().all()
            settings = (
                await session.execute(
                    select(TenantSettings).where(TenantSettings.tenant_id == school.tenant_id)
                )
            ).scalar_one()

        assert all(student.user_id is None for student in students)
        by_admission = {student.admission_no: student for student in students}
        assert by_admission["ADM001"].class_id == grade1.id
        assert by_admission["ADM003"].class_id is None
        assert link.class_id == grade1.id
        assert link.teacher_id not in school.staff_ids.values()
        assert {assignment.class_id for assignment in assignments} <= {
            student.class_id for student in students if student.class_id
        }
        assert settings.term1_label == "Autumn"
        assert settings.enable_class_teachers is False

    @pytest.mark.asyncio
    async def test_replace_into_other_tenant_never_takes_over_identities(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that REPLACE skips handles owned elsewhere and drops links it cannot map."""
        other = await create_tenant(sessionmaker, "Clone")
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        source_before = await tenant_counts(sessionmaker, school.tenant_id)

        result = await engine.restore(
            backup_id,
            mode="REPLACE",
            destination_tenant_id=other,
            confirmation=REPLACE_CONFIRMATION,
        )

        assert result.created_identities == []
        assert {skip.reason for skip in result.skipped_identities} == {CROSS_TENANT_REASON}
        assert result.restored_links.model_dump() == {
            "staff_profiles": 0,
            "teaching_assignments": 0,
            "class_teacher_links": 0,
        }
        assert await tenant_counts(sessionmaker, school.tenant_id) == source_before
        counts = await tenant_counts(sessionmaker, other)
        assert counts["users"] == 0
        assert counts["classes"] == 2
        assert counts["students"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confirmation", [None, "", "delete school data", "DELETE SCHOOL DATA "])
    async def test_unconfirmed_replace_writes_nothing(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        confirmation: str | None,
    ) -> None:
        """Test that REPLACE without the exact literal fails before any write."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        before = await tenant_counts(sessionmaker, school.tenant_id)

        with pytest.raises(ConfirmationRequiredError):
            await engine.restore(backup_id, mode="REPLACE", confirmation=confirmation)

        assert await tenant_counts(sessionmaker, school.tenant_id) == before
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY


class TestMergeRestore:
    """Tests for MERGE restores."""

    @pytest.mark.asyncio
    async def test_merge_twice_is_idempotent(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that a second merge into an emptied tenant only updates."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        await wipe(sessionmaker, school.tenant_id)

        first = await engine.restore(backup_id, mode="MERGE")
        after_first = await tenant_counts(sessionmaker, school.tenant_id)
        second = await engine.restore(backup_id)
        after_second = await tenant_counts(sessionmaker, school.tenant_id)

        assert len(first.created_identities) == 4
        assert second.created_identities == []
        assert second.skipped_identities == []
        assert without_subscriptions(after_second) == without_subscriptions(after_first)
        assert after_first["users"] == 4
        assert after_first["classes"] == 2
        assert after_first["subjects"] == 2
        assert after_first["students"] == 3
        assert after_first["tenant_settings"] == 1

    @pytest.mark.asyncio
    async def test_merge_skips_link_entities(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that MERGE leaves staff profiles and link rows alone and says so."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        await wipe(sessionmaker, school.tenant_id)

        result = await engine.restore(backup_id, mode="MERGE")

        counts = await tenant_counts(sessionmaker, school.tenant_id)
        assert counts["staff_profiles"] == 0
        assert counts["teaching_assignments"] == 0
        assert counts["class_teachers"] == 0
        assert result.restored_links.staff_profiles == 0
        assert result.notes == [MERGE_NOTE]

    @pytest.mark.asyncio
    async def test_merge_into_other_tenant_never_takes_over_identities(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that handles owned by the source tenant stay there."""
        other = await create_tenant(sessionmaker, "Clone")
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        result = await engine.restore(backup_id, destination_tenant_id=other)

        assert result.created_identities == []
        assert sorted(skip.handle for skip in result.skipped_identities) == sorted(
            f"{key}@alpha.test" for key in school.user_ids
        )
        assert await count_rows(sessionmaker, User, other) == 0
        assert await count_rows(sessionmaker, User, school.tenant_id) == 4
        assert await count_rows(sessionmaker, Student, other) == 3

    @pytest.mark.asyncio
    async def test_merge_refreshes_existing_identity(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that an identity owned by the destination is updated in place."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        result = await engine.restore(backup_id)

        assert result.created_identities == []
        async with sessionmaker() as session:
            admin = await session.get(User, school.user_ids["admin"])
        assert admin.tenant_id == school.tenant_id
        assert admin.password_hash == "x"
        assert admin.must_change_password is True

    @pytest.mark.asyncio
    async def test_missing_stream_uses_default_and_matches_existing_class(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
    ) -> None:
        """Test that null or blank streams normalize before natural-key matching."""
        tenant_id = await create_tenant(sessionmaker, "Gamma")
        async with sessionmaker() as session:
            existing = Class(tenant_id=tenant_id, name="Grade 1", stream="A", year=2025)
            session.add(existing)
            await session.commit()
            existing_id = existing.id

        payload = make_payload(
            tenant_id,
            classes=[
                {"id": "c1", "name": "Grade 1", "stream": None, "year": 2025},
                {"id": "c2", "name": "Grade 2", "stream": "  ", "year": "2025"},
                {"id": "c3", "name": "", "stream": "B", "year": 2025},
            ],
            students=[
                {"admission_no": "S1", "first_name": "A", "last_name": "One", "class_id": "c1"},
                {"admission_no": "S2", "first_name": "B", "last_name": "Two", "class_id": "c2"},
                {"admission_no": "S3", "first_name": "C", "last_name": "Three", "class_id": "gone"},
            ],
        )
        backup_id = await store_backup(sessionmaker, tenant_id, payload)

        await engine.restore(backup_id)

        async with sessionmaker() as session:
            classes = (
                await session.execute(select(Class).where(Class.tenant_id == tenant_id))
            ).scalars().all()
            students = {
                student.admission_no: student
                for student in (
                    await session.execute(select(Student).where(Student.tenant_id == tenant_id))
                ).scalars()
            }

        assert sorted((c.name, c.stream) for c in classes) == [("Grade 1", "A"), ("Grade 2", "A")]
        assert students["S1"].class_id == existing_id
        assert students["S2"].class_id is not None
        assert students["S3"].class_id is None

    @pytest.mark.asyncio
    async def test_colliding_subject_codes_are_dropped(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
    ) -> None:
        """Test that a code held by another subject is dropped without failing."""
        tenant_id = await create_tenant(sessionmaker, "Gamma")
        async with sessionmaker() as session:
            session.add(Subject(tenant_id=tenant_id, name="Science", code="SCI"))
            await session.commit()

        payload = make_payload(
            tenant_id,
            subjects=[
                {"id": "s1", "name": "Physics", "code": "SCI"},
                {"id": "s2", "name": "Science", "code": "SCI"},
                {"id": "s3", "name": "Biology", "code": "BIO"},
                {"id": "s4", "name": "Botany", "code": "BIO"},
            ],
        )
        backup_id = await store_backup(sessionmaker, tenant_id, payload)

        result = await engine.restore(backup_id)

        async with sessionmaker() as session:
            codes = {
                subject.name: subject.code
                for subject in (
                    await session.execute(select(Subject).where(Subject.tenant_id == tenant_id))
                ).scalars()
            }

        assert codes == {"Science": "SCI", "Physics": None, "Biology": "BIO", "Botany": None}
        assert result.warnings.subject_errors == []
        assert any("SCI" in note and "BIO" in note for note in result.notes)

    @pytest.mark.asyncio
    async def test_bad_student_rows_become_warnings(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
    ) -> None:
        """Test that one broken student does not abort the restore."""
        tenant_id = await create_tenant(sessionmaker, "Gamma")
        payload = make_payload(
            tenant_id,
            students=[
                {"admission_no": "OK1", "first_name": "A", "last_name": "B", "dob": "2014-05-06"},
                {"admission_no": "BAD1", "first_name": None, "last_name": "B"},
                {"admission_no": "BAD2", "first_name": "A", "last_name": "B", "dob": "not-a-date"},
                {"admission_no": "", "first_name": "A", "last_name": "B"},
            ],
        )
        backup_id = await store_backup(sessionmaker, tenant_id, payload)

        result = await engine.restore(backup_id)

        assert sorted(error.key for error in result.warnings.student_errors) == ["BAD1", "BAD2"]
        assert await count_rows(sessionmaker, Student, tenant_id) == 1
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_settings_and_subscription(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that settings are upserted by known fields and subscriptions appended."""
        payload = make_payload(
            school.tenant_id,
            settings={
                "term2_label": "Spring",
                "current_academic_year": None,
                "enable_class_teachers": None,
                "unknown_flag": True,
            },
            subscription={"plan_code": None, "status": "ACTIVE", "limits": {"sms": 5}},
        )
        backup_id = await store_backup(sessionmaker, school.tenant_id, payload)

        await engine.restore(backup_id)

        async with sessionmaker() as session:
            settings = (
                await session.execute(
                    select(TenantSettings).where(TenantSettings.tenant_id == school.tenant_id)
                )
            ).scalar_one()
            plans = (
                await session.execute(
                    select(Subscription.plan_code).where(Subscription.tenant_id == school.tenant_id)
                )
            ).scalars().all()

        assert settings.term2_label == "Spring"
        assert settings.term1_label == "Autumn"
        assert settings.current_academic_year is None
        assert settings.enable_class_teachers is False
        assert sorted(plans) == ["FREE", "PRO"]


class TestRestorePreconditions:
    """Tests for checks that must fail before any write."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version", [2, "1", None])
    async def test_unsupported_version_writes_nothing(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        version: Any,
    ) -> None:
        """Test that a version mismatch fails and leaves the backup READY."""
        payload = make_payload(
            school.tenant_id,
            version=version,
            classes=[{"id": "c9", "name": "Grade 9", "stream": "A", "year": 2025}],
        )
        backup_id = await store_backup(sessionmaker, school.tenant_id, payload)
        before = await tenant_counts(sessionmaker, school.tenant_id)

        with pytest.raises(UnsupportedSnapshotVersionError):
            await engine.restore(backup_id, mode="REPLACE", confirmation=REPLACE_CONFIRMATION)

        assert await tenant_counts(sessionmaker, school.tenant_id) == before
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_invalid_mode_writes_nothing(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that an unknown mode fails before acquiring the backup."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        with pytest.raises(InvalidRestoreModeError):
            await engine.restore(backup_id, mode="OVERWRITE")

        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_missing_backup(self, engine: RestoreEngine) -> None:
        """Test that an unknown backup ID raises BackupNotFoundError."""
        with pytest.raises(BackupNotFoundError):
            await engine.restore("missing")

    @pytest.mark.asyncio
    async def test_missing_destination(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that restoring into an unknown tenant fails."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        with pytest.raises(TenantNotFoundError):
            await engine.restore(backup_id, destination_tenant_id="no-such-tenant")

        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_inactive_destination(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that restoring into a deactivated tenant fails."""
        closed = await create_tenant(sessionmaker, "Closed", is_active=False)
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        with pytest.raises(TenantInactiveError):
            await engine.restore(backup_id, destination_tenant_id=closed)

    @pytest.mark.asyncio
    async def test_restoring_backup_is_a_conflict(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that a backup already being restored cannot be restored again."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        async with sessionmaker() as session:
            await BackupStore(session).acquire_for_restore(backup_id)
            await session.commit()

        with pytest.raises(BackupConflictError):
            await engine.restore(backup_id)

        assert await backup_status(sessionmaker, backup_id) is BackupStatus.RESTORING


class TestRestoreFailure:
    """Tests for the all-or-nothing guarantee."""

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_marks_failed(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that an error after the wipe leaves the tenant untouched."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        before = await tenant_counts(sessionmaker, school.tenant_id)

        async def explode(self: EntityRemapper, rows: Any) -> int:
            raise RuntimeError("boom")

        monkeypatch.setattr(EntityRemapper, "upsert_students", explode)

        with pytest.raises(RestoreFailedError) as exc_info:
            await engine.restore(backup_id, mode="REPLACE", confirmation=REPLACE_CONFIRMATION)

        assert exc_info.value.diagnostic["error"] == "boom"
        assert exc_info.value.diagnostic["error_type"] == "RuntimeError"
        assert await tenant_counts(sessionmaker, school.tenant_id) == before
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_backup_can_be_retried(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a FAILED backup restores successfully on the next attempt."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        async def explode(self: EntityRemapper, rows: Any) -> int:
            raise RuntimeError("boom")

        with monkeypatch.context() as patch:
            patch.setattr(EntityRemapper, "upsert_students", explode)
            with pytest.raises(RestoreFailedError):
                await engine.restore(backup_id)

        result = await engine.restore(backup_id)

        assert result.mode is RestoreMode.MERGE
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_timeout_rolls_back_and_marks_failed(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that exceeding the time limit aborts the whole transaction."""
        settings = BackupSettings(
            restore_timeout_seconds=0.2,
            temp_secret_hash_rounds=TEST_HASH_ROUNDS,
        )
        engine = RestoreEngine(sessionmaker, settings)
        backup_id = await snapshot(sessionmaker, school.tenant_id)
        before = await tenant_counts(sessionmaker, school.tenant_id)

        async def stall(self: EntityRemapper, rows: Any) -> dict[str, str]:
            await asyncio.sleep(5)
            return {}

        monkeypatch.setattr(EntityRemapper, "upsert_classes", stall)

        with pytest.raises(RestoreFailedError) as exc_info:
            await engine.restore(backup_id, mode="REPLACE", confirmation=REPLACE_CONFIRMATION)

        assert exc_info.value.diagnostic["error_type"] == "TimeoutError"
        assert "0.2" in exc_info.value.diagnostic["error"]
        assert await tenant_counts(sessionmaker, school.tenant_id) == before
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.FAILED


class FakeDriverError(Exception):
    """Driver exception carrying an optional SQLSTATE."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def wrapped_db_error(message: str, sqlstate: str | None = None) -> DatabaseError:
    original = OperationalError("UPDATE backups", {}, FakeDriverError(message, sqlstate))
    return DatabaseError("Database operation failed", original)


class TestLockContention:
    """Tests for is_lock_contention."""

    @pytest.mark.parametrize(
        ("message", "sqlstate"),
        [
            ("database is locked", None),
            ("could not serialize access", "40001"),
            ("deadlock detected", "40P01"),
            ("could not obtain lock on row", "55P03"),
        ],
    )
    def test_contention_errors(self, message: str, sqlstate: str | None) -> None:
        """Test that lock and serialization failures are recognized."""
        error = wrapped_db_error(message, sqlstate)

        assert is_lock_contention(error) is True
        assert is_lock_contention(error.original_error) is True

    def test_other_errors(self) -> None:
        """Test that unrelated failures are not treated as contention."""
        assert is_lock_contention(wrapped_db_error("disk I/O error")) is False
        assert is_lock_contention(wrapped_db_error("syntax error", "42601")) is False
        assert is_lock_contention(DatabaseError("Database not initialized")) is False
        assert is_lock_contention(RuntimeError("database is locked")) is False


class TestSingleFlight:
    """Tests for concurrent restores of the same backup."""

    @pytest.mark.asyncio
    async def test_concurrent_restores_run_once(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
    ) -> None:
        """Test that of two simultaneous restores one runs and one conflicts."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        results = await asyncio.gather(
            engine.restore(backup_id, "MERGE"),
            engine.restore(backup_id, "MERGE"),
            return_exceptions=True,
        )

        assert sum(isinstance(item, RestoreResult) for item in results) == 1
        assert sum(isinstance(item, BackupConflictError) for item in results) == 1
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_locked_acquire_is_a_conflict(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a lock held by another restore is reported as a conflict."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        async def locked(self: BackupStore, backup_id: str) -> bool:
            raise OperationalError("UPDATE backups", {}, FakeDriverError("database is locked"))

        monkeypatch.setattr(BackupStore, "acquire_for_restore", locked)

        with pytest.raises(BackupConflictError):
            await engine.restore(backup_id)

        assert await backup_status(sessionmaker, backup_id) is BackupStatus.READY

    @pytest.mark.asyncio
    async def test_other_acquire_errors_propagate(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that database failures other than contention are not hidden."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        async def broken(self: BackupStore, backup_id: str) -> bool:
            raise OperationalError("UPDATE backups", {}, FakeDriverError("disk I/O error"))

        monkeypatch.setattr(BackupStore, "acquire_for_restore", broken)

        with pytest.raises(DatabaseError):
            await engine.restore(backup_id)


class TestStatusRelease:
    """Tests for status release failures after a restore."""

    @pytest.mark.asyncio
    async def test_release_failure_keeps_restore_error(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that the restore failure is logged and raised even if release fails."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        async def explode(self: EntityRemapper, rows: Any) -> int:
            raise RuntimeError("boom")

        async def unreachable(self: RestoreEngine, backup_id: str, status: BackupStatus) -> None:
            raise DatabaseError("Database operation failed")

        monkeypatch.setattr(EntityRemapper, "upsert_students", explode)
        monkeypatch.setattr(RestoreEngine, "_release", unreachable)

        with caplog.at_level(logging.ERROR, logger="schoolvault.domains.backup.restore"):
            with pytest.raises(RestoreFailedError) as exc_info:
                await engine.restore(backup_id)

        assert exc_info.value.diagnostic["error"] == "boom"
        messages = [record.getMessage() for record in caplog.records]
        assert any("Restore failed" in message and "boom" in message for message in messages)
        assert any("stays RESTORING" in message for message in messages)

    @pytest.mark.asyncio
    async def test_release_failure_after_success_is_raised(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: RestoreEngine,
        school: SeededSchool,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that a committed restore whose status cannot be reset is reported."""
        backup_id = await snapshot(sessionmaker, school.tenant_id)

        async def unreachable(self: RestoreEngine, backup_id: str, status: BackupStatus) -> None:
            raise DatabaseError("Database operation failed")

        monkeypatch.setattr(RestoreEngine, "_release", unreachable)

        with caplog.at_level(logging.ERROR, logger="schoolvault.domains.backup.restore"):
            with pytest.raises(DatabaseError):
                await engine.restore(backup_id)

        assert any("committed" in record.getMessage() for record in caplog.records)
        assert await backup_status(sessionmaker, backup_id) is BackupStatus.RESTORING
