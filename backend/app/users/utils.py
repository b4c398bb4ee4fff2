"""Utilities for password hashing and JWT handling."""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from backend.app.config import AuthJWTConfig

PASSWORD_CONTEXT = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class JWTManager:
    """Helper for encoding and decoding access and refresh credentials.

    Access and refresh credentials are signed with separate secrets and carry a
    ``type`` claim, so one can never be presented in place of the other.
    """

    def __init__(self, config: AuthJWTConfig) -> None:
        self._config = config

    @property
    def config(self) -> AuthJWTConfig:
        """Return the signing configuration."""

        return self._config

    def _encode(
        self,
        claims: Dict[str, Any],
        secret: str,
        ttl: timedelta,
        issued_at: Optional[datetime],
    ) -> str:
        now = issued_at or datetime.now(timezone.utc)
        expire_at = now + ttl
        payload: Dict[str, Any] = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int(expire_at.timestamp()),
        }
        return jwt.encode(payload, secret, algorithm=self._config.algorithm)

    def _decode(self, token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        payload = jwt.decode(token, secret, algorithms=[self._config.algorithm])
        if payload.get("type") != expected_type:
            raise JWTError(f"Expected a {expected_type} token")
        if not payload.get("sub"):
            raise JWTError("Token subject is missing")
        return payload

    def create_access_token(
        self,
        subject: str,
        *,
        username: str,
        email: str,
        expires_delta: Optional[timedelta] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """Create a signed short-lived access token."""

        claims = {
            "sub": subject,
            "username": username,
            "email": email,
            "type": ACCESS_TOKEN_TYPE,
        }
        ttl = expires_delta or self._config.access_token_ttl
        return self._encode(claims, self._config.access_token_secret, ttl, issued_at)

    def create_refresh_token(
        self,
        subject: str,
        *,
        expires_delta: Optional[timedelta] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """Create a signed long-lived refresh token."""

        # jti keeps two tokens minted within the same second distinct
        claims = {
            "sub": subject,
            "type": REFRESH_TOKEN_TYPE,
            "jti": secrets.token_urlsafe(16),
        }
        ttl = expires_delta or self._config.refresh_token_ttl
        return self._encode(claims, self._config.refresh_token_secret, ttl, issued_at)

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        """Decode and validate an access token."""

        return self._decode(token, self._config.access_token_secret, ACCESS_TOKEN_TYPE)

    def decode_refresh_token(self, token: str) -> Dict[str, Any]:
        """Decode and validate a refresh token."""

        return self._decode(token, self._config.refresh_token_secret, REFRESH_TOKEN_TYPE)


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "JWTError",
    "JWTManager",
    "PASSWORD_CONTEXT",
    "REFRESH_TOKEN_TYPE",
]
