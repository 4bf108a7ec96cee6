# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Password hashing and temporary secret generation using bcrypt.

Example:
    >>> hasher = PasswordHasher(rounds=10)
    >>> secret = generate_temp_secret()
    >>> hashed = hasher.hash(secret)
    >>> hasher.verify(secret, hashed)
    True
"""

import logging
import secrets

import bcrypt

logger = logging.getLogger(__name__)

DEFAULT_TEMP_SECRET_LENGTH = 16


class PasswordHasher:
    """Salted one-way hashing with bcrypt.

    Attributes:
        rounds: bcrypt cost factor used for new hashes.
    """

    def __init__(self, rounds: int = 12) -> None:
        """Initialize the password hasher.

        Args:
            rounds: bcrypt cost factor (4-31). Restores hash many temporary
                secrets at once and use a lower cost than interactive logins.
        """
        if not 4 <= rounds <= 31:
            raise ValueError(f"bcrypt rounds must be between 4 and 31, got {rounds}")
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a password.

        Args:
            password: Plain text password to hash.

        Returns:
            bcrypt hash string with the salt embedded.

        Raises:
            ValueError: If password is empty.
        """
        if not password:
            raise ValueError("Password cannot be empty")

        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        """Check a password against a stored hash.

        Malformed hashes verify as False.
        """
        if not password or not password_hash:
            return False

        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError as e:
            logger.warning("Password verification failed: %s", str(e))
            return False

    def hash_many(self, passwords: list[str]) -> list[str]:
        """Hash a batch of passwords, preserving order."""
        return [self.hash(password) for password in passwords]


def generate_temp_secret(length: int = DEFAULT_TEMP_SECRET_LENGTH) -> str:
    """Generate a random URL-safe temporary password.

    Args:
        length: Number of characters to return.

    Returns:
        A string of exactly ``length`` characters drawn from the URL-safe
        base64 alphabet.
    """
    if length < 8:
        raise ValueError("Temporary secrets must be at least 8 characters")

    secret = ""
    while len(secret) < length:
        secret += secrets.token_urlsafe(length)
    return secret[:length]
