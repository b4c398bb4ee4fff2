"""Repository handling persistence for user accounts."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.users.models import User


def _normalize(value: str) -> str:
    return value.strip().lower()


class UserRepository:
    """Provide database access helpers for account workflows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Return the underlying SQLAlchemy session."""

        return self._session

    async def create_user(
        self,
        *,
        name: str,
        username: str,
        email: str,
        password: str,
        avatar: str = "",
    ) -> User:
        """Persist a new user; the plaintext password is hashed on flush."""

        user = User(name=name, username=username, email=email, password=password, avatar=avatar)
        self._session.add(user)
        await self._session.flush()
        return user

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Retrieve a user record by identifier."""

        result = await self._session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_username_or_email(self, identifier: str) -> Optional[User]:
        """Retrieve a user whose username or email equals ``identifier``."""

        normalized = _normalize(identifier)
        result = await self._session.execute(
            select(User).where(or_(User.username == normalized, User.email == normalized))
        )
        return result.scalars().first()

    async def find_conflicting_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        """Return a user already holding ``username`` or ``email``, if any."""

        clauses = []
        if username:
            clauses.append(User.username == _normalize(username))
        if email:
            clauses.append(User.email == _normalize(email))
        if not clauses:
            return None
        statement = select(User).where(or_(*clauses))
        result = await self._session.execute(statement)
        return result.scalars().first()

    async def set_refresh_token(self, user: User, token: Optional[str]) -> None:
        """Store or clear the single active refresh credential of ``user``."""

        user.refresh_token = token
        await self._session.flush()

    async def flush(self) -> None:
        """Flush pending changes to the database."""

        await self._session.flush()

    async def commit(self) -> None:
        """Commit the current transaction."""

        await self._session.commit()

    async def rollback(self) -> None:
        """Rollback the current transaction."""

        await self._session.rollback()


__all__ = ["UserRepository"]
