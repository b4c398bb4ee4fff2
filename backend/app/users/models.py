"""SQLAlchemy ORM model for user accounts."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, String, event, inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from backend.app.users.utils import PASSWORD_CONTEXT


class AccountsBase(DeclarativeBase):
    """Base declarative class for account models."""


class User(AccountsBase):
    """Persisted application user."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255))
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True)
    password: Mapped[str] = mapped_column(String(255))
    avatar: Mapped[str] = mapped_column(String(1024), default="")
    refresh_token: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @validates("username", "email")
    def _normalize_identifier(self, _key: str, value: str) -> str:
        return value.strip().lower()

    @validates("name")
    def _normalize_name(self, _key: str, value: str) -> str:
        return value.strip()

    def is_password_correct(self, plain_password: str) -> bool:
        """Return whether ``plain_password`` matches the stored hash."""

        if not self.password:
            return False
        return PASSWORD_CONTEXT.verify(plain_password, self.password)


def _hash_password_if_modified(target: User, *, inserting: bool) -> None:
    """Replace a freshly assigned plaintext password with its bcrypt hash."""

    if target.password is None:
        return
    if not inserting:
        history = inspect(target).attrs.password.history
        if not history.has_changes():
            return
    target.password = PASSWORD_CONTEXT.hash(target.password)


@event.listens_for(User, "before_insert")
def _hash_on_insert(_mapper, _connection, target: User) -> None:
    _hash_password_if_modified(target, inserting=True)


@event.listens_for(User, "before_update")
def _hash_on_update(_mapper, _connection, target: User) -> None:
    _hash_password_if_modified(target, inserting=False)


__all__ = ["AccountsBase", "User"]
