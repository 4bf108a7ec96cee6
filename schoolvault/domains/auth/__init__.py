# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Authentication helpers: bcrypt hashing and JWT validation."""

from schoolvault.domains.auth.jwt import (
    InvalidTokenError,
    JWTError,
    JWTManager,
    TokenExpiredError,
    TokenPayload,
)
from schoolvault.domains.auth.password import PasswordHasher, generate_temp_secret

__all__ = [
    "InvalidTokenError",
    "JWTError",
    "JWTManager",
    "PasswordHasher",
    "TokenExpiredError",
    "TokenPayload",
    "generate_temp_secret",
]
