# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""JWT access token handling using python-jose.

Tokens are issued by the platform's identity service; this module
validates them and can mint tokens for operators and tests.

Example:
    >>> from schoolvault.core.config import get_settings
    >>> jwt_manager = JWTManager(get_settings().jwt)
    >>> token = jwt_manager.create_access_token(user_id="op-1", user_type="platform_admin")
    >>> claims = jwt_manager.decode_token(token)
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Literal

from jose import ExpiredSignatureError, JWTError as JoseJWTError, jwt
from pydantic import BaseModel, ValidationError

from schoolvault.core.config.settings import JWTSettings

logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    """JWT token payload structure.

    Attributes:
        sub: Subject (user ID).
        type: Token type.
        tenant_id: Home tenant of the caller, if any.
        tenant_ids: Tenants an operator is restricted to. Empty means
            unrestricted.
        user_type: Caller category (``platform_admin`` for operators).
        roles: Role codes.
        exp: Expiration timestamp.
        iat: Issued at timestamp.
        jti: JWT ID for token tracking.
    """

    sub: str
    type: Literal["access"]
    tenant_id: str | None = None
    tenant_ids: list[str] = []
    user_type: str | None = None
    roles: list[str] = []
    exp: int
    iat: int
    jti: str


class JWTError(Exception):
    """Base exception for JWT operations."""

    pass


class TokenExpiredError(JWTError):
    """Raised when a token has expired."""

    pass


class InvalidTokenError(JWTError):
    """Raised when a token is invalid."""

    pass


class JWTManager:
    """JWT access token creation and validation.

    Attributes:
        _settings: JWT configuration settings.
    """

    def __init__(self, settings: JWTSettings) -> None:
        self._settings = settings

    def create_access_token(
        self,
        user_id: str,
        tenant_id: str | None = None,
        tenant_ids: list[str] | None = None,
        user_type: str | None = None,
        roles: list[str] | None = None,
        expires_in: timedelta | None = None,
    ) -> str:
        """Create a signed access token.

        Args:
            user_id: User identifier.
            tenant_id: Home tenant identifier.
            tenant_ids: Tenants the caller is restricted to.
            user_type: Caller category.
            roles: List of role codes.
            expires_in: Lifetime override; defaults to the configured expiry.

        Returns:
            JWT access token string.
        """
        now = datetime.now(timezone.utc)
        lifetime = expires_in or timedelta(minutes=self._settings.access_token_expire_minutes)

        payload = {
            "sub": str(user_id),
            "type": "access",
            "tenant_id": tenant_id,
            "tenant_ids": list(tenant_ids or []),
            "user_type": user_type,
            "roles": roles or [],
            "exp": int((now + lifetime).timestamp()),
            "iat": int(now.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }

        return jwt.encode(
            payload,
            self._settings.secret_key.get_secret_value(),
            algorithm=self._settings.algorithm,
        )

    def decode_token(self, token: str) -> TokenPayload:
        """Decode and validate an access token.

        Args:
            token: JWT token string.

        Returns:
            TokenPayload with decoded claims.

        Raises:
            TokenExpiredError: If the token has expired.
            InvalidTokenError: If the token is invalid or malformed.
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key.get_secret_value(),
                algorithms=[self._settings.algorithm],
            )
        except ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except JoseJWTError as e:
            logger.warning("Token decode failed: %s", str(e))
            raise InvalidTokenError(f"Invalid token: {str(e)}")

        try:
            return TokenPayload.model_validate(payload)
        except ValidationError as e:
            logger.warning("Token claims rejected: %s", str(e))
            raise InvalidTokenError("Invalid token claims")

    def verify_token(self, token: str) -> bool:
        """Return True if the token decodes and validates."""
        try:
            self.decode_token(token)
            return True
        except JWTError:
            return False
