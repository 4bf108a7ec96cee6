# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Database tests run against a file-backed SQLite database per test, with
foreign keys enforced and real SAVEPOINT support. Sessions opened by
tests are short-lived so they never hold a lock while the code under
test writes.
"""

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from schoolvault.core.config.settings import BackupSettings
from schoolvault.domains.auth.password import PasswordHasher
from schoolvault.infrastructure.database.connection import configure_sqlite_engine
from schoolvault.infrastructure.database.models import (
    Base,
    Class,
    ClassTeacher,
    StaffProfile,
    Student,
    Subject,
    Subscription,
    TeachingAssignment,
    Tenant,
    TenantSettings,
    User,
)

# Minimum bcrypt cost keeps restore tests fast
TEST_HASH_ROUNDS = 4


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (database or HTTP stack)"
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'schoolvault.db'}")
    configure_sqlite_engine(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sessionmaker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory configured like the application's."""
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def backup_settings() -> BackupSettings:
    """Backup settings with a cheap hash cost."""
    return BackupSettings(temp_secret_hash_rounds=TEST_HASH_ROUNDS)


@pytest.fixture
def hasher() -> PasswordHasher:
    """Fast bcrypt hasher."""
    return PasswordHasher(rounds=TEST_HASH_ROUNDS)


# =============================================================================
# Seed Data
# =============================================================================


@dataclass
class SeededSchool:
    """IDs of a tenant populated by ``seed_school``."""

    tenant_id: str
    domain: str
    user_ids: dict[str, str] = field(default_factory=dict)
    staff_ids: dict[str, str] = field(default_factory=dict)
    class_ids: dict[str, str] = field(default_factory=dict)
    subject_ids: dict[str, str] = field(default_factory=dict)
    student_ids: dict[str, str] = field(default_factory=dict)


async def create_tenant(
    sessionmaker: async_sessionmaker[AsyncSession],
    name: str,
    is_active: bool = True,
) -> str:
    """Insert an empty tenant and return its ID."""
    async with sessionmaker() as session:
        tenant = Tenant(name=name, is_active=is_active)
        session.add(tenant)
        await session.commit()
        return tenant.id


async def seed_school(
    sessionmaker: async_sessionmaker[AsyncSession],
    name: str = "Alpha Academy",
    domain: str = "alpha.test",
) -> SeededSchool:
    """Create a tenant with a small but complete data set.

    Contents: 4 identities, 2 staff profiles, 2 classes, 2 subjects,
    3 students, 2 teaching assignments, 1 class teacher link,
    1 subscription and a settings row.
    """
    tenant_id = await create_tenant(sessionmaker, name)
    school = SeededSchool(tenant_id=tenant_id, domain=domain)

    async with sessionmaker() as session:
        users = {
            "admin": User(tenant_id=tenant_id, email=f"admin@{domain}", password_hash="x", role="ADMIN"),
            "teacher1": User(tenant_id=tenant_id, email=f"teacher1@{domain}", password_hash="x", role="TEACHER"),
            "teacher2": User(tenant_id=tenant_id, email=f"teacher2@{domain}", password_hash="x", role="TEACHER"),
            "pupil": User(tenant_id=tenant_id, email=f"pupil@{domain}", password_hash="x", role="STUDENT"),
        }
        session.add_all(users.values())
        await session.flush()

        staff = {
            "teacher1": StaffProfile(tenant_id=tenant_id, user_id=users["teacher1"].id, first_name="Tia", last_name="One"),
            "teacher2": StaffProfile(tenant_id=tenant_id, user_id=users["teacher2"].id, first_name="Tom", last_name="Two"),
        }
        classes = {
            "grade1": Class(tenant_id=tenant_id, name="Grade 1", stream="A", year=2025),
            "grade2": Class(tenant_id=tenant_id, name="Grade 2", stream="B", year=2025),
        }
        subjects = {
            "math": Subject(tenant_id=tenant_id, name="Math", code="MTH"),
            "english": Subject(tenant_id=tenant_id, name="English", code="ENG"),
        }
        session.add_all([*staff.values(), *classes.values(), *subjects.values()])
        await session.flush()

        students = {
            "ADM001": Student(
                tenant_id=tenant_id,
                admission_no="ADM001",
                first_name="Ada",
                last_name="Lovelace",
                gender="F",
                dob=date(2015, 3, 9),
                class_id=classes["grade1"].id,
                user_id=users["pupil"].id,
            ),
            "ADM002": Student(
                tenant_id=tenant_id,
                admission_no="ADM002",
                first_name="Alan",
                last_name="Turing",
                class_id=classes["grade2"].id,
            ),
            "ADM003": Student(
                tenant_id=tenant_id,
                admission_no="ADM003",
                first_name="Grace",
                last_name="Hopper",
            ),
        }
        session.add_all(students.values())
        session.add_all(
            [
                TeachingAssignment(
                    tenant_id=tenant_id,
                    teacher_id=staff["teacher1"].id,
                    class_id=classes["grade1"].id,
                    subject_id=subjects["math"].id,
                ),
                TeachingAssignment(
                    tenant_id=tenant_id,
                    teacher_id=staff["teacher2"].id,
                    class_id=classes["grade2"].id,
                    subject_id=subjects["english"].id,
                ),
                ClassTeacher(
                    tenant_id=tenant_id,
                    class_id=classes["grade1"].id,
                    teacher_id=staff["teacher1"].id,
                ),
                Subscription(
                    tenant_id=tenant_id,
                    plan_code="PRO",
                    status="ACTIVE",
                    max_students=500,
                    max_teachers=50,
                    max_classes=20,
                    current_period_end=datetime(2026, 12, 31, tzinfo=timezone.utc),
                    entitlements={"exams": True},
                    limits={"sms": 100},
                ),
                TenantSettings(
                    tenant_id=tenant_id,
                    enable_class_teachers=False,
                    current_academic_year="2025",
                    term1_label="Autumn",
                ),
            ]
        )
        await session.commit()

        school.user_ids = {key: user.id for key, user in users.items()}
        school.staff_ids = {key: profile.id for key, profile in staff.items()}
        school.class_ids = {key: class_.id for key, class_ in classes.items()}
        school.subject_ids = {key: subject.id for key, subject in subjects.items()}
        school.student_ids = {key: student.id for key, student in students.items()}

    return school


async def count_rows(
    sessionmaker: async_sessionmaker[AsyncSession],
    model: type[Base],
    tenant_id: str,
) -> int:
    """Count a tenant's rows in one table."""
    async with sessionmaker() as session:
        result = await session.execute(
            select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
        )
        return result.scalar_one()


TENANT_TABLES: tuple[type[Base], ...] = (
    User,
    StaffProfile,
    Class,
    Subject,
    Student,
    TeachingAssignment,
    ClassTeacher,
    Subscription,
    TenantSettings,
)


async def tenant_counts(
    sessionmaker: async_sessionmaker[AsyncSession],
    tenant_id: str,
) -> dict[str, int]:
    """Row counts of every tenant-scoped table."""
    return {
        model.__tablename__: await count_rows(sessionmaker, model, tenant_id)
        for model in TENANT_TABLES
    }


@pytest_asyncio.fixture
async def school(sessionmaker: async_sessionmaker[AsyncSession]) -> SeededSchool:
    """A populated tenant."""
    return await seed_school(sessionmaker)
