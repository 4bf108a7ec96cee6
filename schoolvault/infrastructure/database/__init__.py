# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the shared PostgreSQL database.

All tenants live in one database; tenant-scoped tables carry a
``tenant_id`` column.

Example:
    from schoolvault.infrastructure.database import get_session

    async with get_session() as session:
        result = await session.execute(select(Tenant))
"""

from schoolvault.infrastructure.database.connection import (
    DatabaseError,
    check_database_connection,
    close_database,
    configure_sqlite_engine,
    get_engine,
    get_session,
    get_sessionmaker,
    init_database,
    session_scope,
)

__all__ = [
    "DatabaseError",
    "check_database_connection",
    "close_database",
    "configure_sqlite_engine",
    "get_engine",
    "get_session",
    "get_sessionmaker",
    "init_database",
    "session_scope",
]
