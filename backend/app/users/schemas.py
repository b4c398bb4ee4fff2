"""Pydantic schemas for the account APIs."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# bcrypt only reads the first 72 bytes of a password.
PASSWORD_MAX_BYTES = 72


def _check_password_bytes(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
    return value


class _CamelModel(BaseModel):
    """Base schema exchanging camelCase field names with clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenModel(_CamelModel):
    """Base immutable schema."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class UserRecord(_FrozenModel):
    """Sanitized user record; never carries the password or refresh token."""

    id: str = Field(..., min_length=1)
    name: str
    username: str
    email: str
    avatar: str = ""
    created_at: datetime
    updated_at: datetime


class TokenPair(_FrozenModel):
    """Access and refresh credentials returned after authentication."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class LoginResult(_FrozenModel):
    """Payload returned after a successful login."""

    user: UserRecord
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class ApiResponse(_FrozenModel):
    """Uniform success envelope."""

    status_code: int = Field(..., ge=100, le=599)
    data: Any = None
    message: str = "Success"
    success: bool = True

    @classmethod
    def build(cls, status_code: int, data: Any, message: str = "Success") -> "ApiResponse":
        return cls(status_code=status_code, data=data, message=message, success=status_code < 400)


class ApiErrorResponse(_FrozenModel):
    """Uniform error envelope."""

    status_code: int = Field(..., ge=400, le=599)
    message: str
    success: bool = False


class RegisterRequest(_CamelModel):
    """Validated registration fields."""

    name: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=64)
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("password")
    @classmethod
    def _password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(_CamelModel):
    """Login request payload; the identifier may be a username or an email."""

    username_or_email: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    @property
    def identifier(self) -> Optional[str]:
        for candidate in (self.username_or_email, self.username, self.email):
            if candidate is not None and candidate.strip():
                return candidate.strip()
        return None


class RefreshRequest(_CamelModel):
    """Refresh token request payload."""

    refresh_token: Optional[str] = None


class ChangePasswordRequest(_CamelModel):
    """Password change payload."""

    old_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def _password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class UpdateDetailsRequest(_CamelModel):
    """Partial account details update; absent or blank fields are ignored."""

    name: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[EmailStr] = None

    @field_validator("name", "username", "email", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


__all__ = [
    "ApiErrorResponse",
    "ApiResponse",
    "ChangePasswordRequest",
    "LoginRequest",
    "LoginResult",
    "RefreshRequest",
    "RegisterRequest",
    "TokenPair",
    "UpdateDetailsRequest",
    "UserRecord",
]
