"""Service layer orchestrating account workflows."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import UploadFile
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from backend.app.config import StorageConfig
from backend.app.users.errors import AccountServiceError, first_error_message
from backend.app.users.models import User
from backend.app.users.repository import UserRepository
from backend.app.users.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResult,
    RegisterRequest,
    TokenPair,
    UpdateDetailsRequest,
    UserRecord,
)
from backend.app.users.storage import AvatarStorageProtocol, UploadTooLargeError, temporary_upload
from backend.app.users.utils import JWTError, JWTManager

LOGGER = logging.getLogger(__name__)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class AccountService:
    """Coordinate repository operations, JWT generation, and avatar storage."""

    def __init__(
        self,
        storage_config: StorageConfig,
        repository: UserRepository,
        jwt_manager: JWTManager,
        storage: Optional[AvatarStorageProtocol] = None,
    ) -> None:
        self._storage_config = storage_config
        self._repository = repository
        self._jwt_manager = jwt_manager
        self._storage = storage

    @staticmethod
    def to_record(user: User) -> UserRecord:
        """Convert ORM user model into the sanitized API schema."""

        return UserRecord(
            id=user.id,
            name=user.name,
            username=user.username,
            email=user.email,
            avatar=user.avatar or "",
            created_at=user.created_at,
            updated_at=user.updated_at,
        )

    async def _require_user(self, user_id: str) -> User:
        user = await self._repository.get_user_by_id(user_id)
        if user is None:
            raise AccountServiceError("User does not exist", reason="not_found")
        return user

    async def _commit(self, conflict_message: str = "User with email or username already exists") -> None:
        try:
            await self._repository.commit()
        except IntegrityError as exc:
            await self._repository.rollback()
            raise AccountServiceError(conflict_message, reason="conflict") from exc
        except Exception:
            await self._repository.rollback()
            raise

    async def _upload_avatar(self, upload: UploadFile) -> str:
        """Upload ``upload`` to media storage and return its URL."""

        content_type = upload.content_type or ""
        if content_type not in self._storage_config.allowed_content_types:
            raise AccountServiceError(
                f"Unsupported avatar content type: {content_type or 'unknown'}",
                reason="bad_request",
            )
        if self._storage is None:
            LOGGER.warning("Avatar upload attempted while storage is disabled")
            raise AccountServiceError("Error while uploading avatar", reason="internal")

        loop = asyncio.get_running_loop()
        try:
            async with temporary_upload(
                upload,
                max_bytes=self._storage_config.max_avatar_bytes,
                temp_dir=self._storage_config.temp_dir,
            ) as path:
                url = await loop.run_in_executor(None, self._storage.store, path, content_type)
        except UploadTooLargeError as exc:
            raise AccountServiceError(str(exc), reason="bad_request") from exc
        except Exception as exc:
            LOGGER.exception("Avatar upload failed")
            raise AccountServiceError("Error while uploading avatar", reason="internal") from exc
        if not url:
            raise AccountServiceError("Error while uploading avatar", reason="internal")
        return url

    async def register_user(
        self,
        *,
        name: Optional[str],
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        avatar: Optional[UploadFile] = None,
    ) -> UserRecord:
        """Validate registration fields, upload the avatar, and persist the user."""

        if any(_is_blank(field) for field in (name, username, email, password)):
            raise AccountServiceError("All fields are required", reason="bad_request")
        try:
            payload = RegisterRequest(
                name=name.strip(),
                username=username.strip(),
                email=email.strip(),
                password=password,
            )
        except ValidationError as exc:
            raise AccountServiceError(first_error_message(exc.errors()), reason="bad_request") from exc

        existing = await self._repository.find_conflicting_user(
            username=payload.username, email=payload.email
        )
        if existing is not None:
            raise AccountServiceError(
                "User with email or username already exists", reason="conflict"
            )

        avatar_url = ""
        if avatar is not None and avatar.filename:
            avatar_url = await self._upload_avatar(avatar)

        try:
            user = await self._repository.create_user(
                name=payload.name,
                username=payload.username,
                email=payload.email,
                password=payload.password,
                avatar=avatar_url,
            )
        except IntegrityError as exc:
            await self._repository.rollback()
            raise AccountServiceError(
                "User with email or username already exists", reason="conflict"
            ) from exc
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit()

        created = await self._repository.get_user_by_id(user.id)
        if created is None:
            raise AccountServiceError(
                "Something went wrong while registering the user", reason="internal"
            )
        LOGGER.info("Registered user %s", created.id)
        return self.to_record(created)

    async def issue_tokens(self, user: User) -> TokenPair:
        """Mint an access/refresh pair and store the refresh credential on ``user``."""

        access_token = self._jwt_manager.create_access_token(
            user.id, username=user.username, email=user.email
        )
        refresh_token = self._jwt_manager.create_refresh_token(user.id)
        try:
            await self._repository.set_refresh_token(user, refresh_token)
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit()
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def login(self, payload: LoginRequest) -> LoginResult:
        """Check credentials and start a session."""

        identifier = payload.identifier
        if identifier is None:
            raise AccountServiceError("Username or email is required", reason="bad_request")

        user = await self._repository.get_user_by_username_or_email(identifier)
        if user is None:
            raise AccountServiceError("User does not exist", reason="not_found")
        if not payload.password or not user.is_password_correct(payload.password):
            raise AccountServiceError("Invalid user credentials", reason="unauthorized")

        tokens = await self.issue_tokens(user)
        LOGGER.info("User %s logged in", user.id)
        return LoginResult(
            user=self.to_record(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )

    async def logout(self, user_id: str) -> None:
        """Forget the stored refresh credential of ``user_id``."""

        user = await self._repository.get_user_by_id(user_id)
        if user is None:
            return
        try:
            await self._repository.set_refresh_token(user, None)
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit()
        LOGGER.info("User %s logged out", user_id)

    async def refresh_tokens(
        self, token: Optional[str], *, current_user_id: Optional[str] = None
    ) -> TokenPair:
        """Exchange the current refresh credential for a new pair."""

        if _is_blank(token):
            raise AccountServiceError("Unauthorized request", reason="unauthorized")
        try:
            payload = self._jwt_manager.decode_refresh_token(token)
        except JWTError as exc:
            LOGGER.warning("Rejected refresh attempt with an invalid token")
            raise AccountServiceError("Invalid refresh token", reason="unauthorized") from exc

        user = await self._repository.get_user_by_id(payload["sub"])
        if user is None:
            raise AccountServiceError("Invalid refresh token", reason="unauthorized")
        if current_user_id is not None and current_user_id != user.id:
            LOGGER.warning("Refresh token subject does not match the authenticated user")
            raise AccountServiceError("Invalid refresh token", reason="unauthorized")
        if user.refresh_token != token:
            LOGGER.warning("Rejected superseded refresh token for user %s", user.id)
            raise AccountServiceError("Refresh token is expired or used", reason="unauthorized")

        tokens = await self.issue_tokens(user)
        LOGGER.info("Refreshed tokens for user %s", user.id)
        return tokens

    async def authenticate(self, token: str) -> UserRecord:
        """Validate an access token and load the associated user."""

        try:
            payload = self._jwt_manager.decode_access_token(token)
        except JWTError as exc:
            raise AccountServiceError("Invalid access token", reason="unauthorized") from exc

        user = await self._repository.get_user_by_id(payload["sub"])
        if user is None:
            raise AccountServiceError("Invalid access token", reason="unauthorized")
        return self.to_record(user)

    async def change_password(self, user_id: str, payload: ChangePasswordRequest) -> None:
        """Replace the password after verifying the old one."""

        old_password = payload.old_password
        new_password = payload.new_password
        if _is_blank(old_password) or _is_blank(new_password) or _is_blank(payload.confirm_password):
            raise AccountServiceError("All password fields are required", reason="bad_request")
        if old_password == new_password:
            raise AccountServiceError(
                "New password must differ from the old password", reason="bad_request"
            )
        if new_password != payload.confirm_password:
            raise AccountServiceError(
                "New password and confirmation do not match", reason="bad_request"
            )

        user = await self._require_user(user_id)
        if not user.is_password_correct(old_password):
            raise AccountServiceError("Invalid old password", reason="bad_request")

        # Only the password column is touched; the model hook re-hashes it on flush.
        user.password = new_password
        try:
            await self._repository.flush()
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit()
        LOGGER.info("Password changed for user %s", user_id)

    async def update_account_details(
        self, user_id: str, payload: UpdateDetailsRequest
    ) -> UserRecord:
        """Apply the supplied subset of name, username, and email."""

        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise AccountServiceError("At least one field is required", reason="bad_request")

        user = await self._require_user(user_id)
        # The caller's own record counts as a holder, so an unchanged value conflicts.
        if "username" in changes:
            holder = await self._repository.find_conflicting_user(username=changes["username"])
            if holder is not None:
                raise AccountServiceError("Username is already taken", reason="conflict")
        if "email" in changes:
            holder = await self._repository.find_conflicting_user(email=changes["email"])
            if holder is not None:
                raise AccountServiceError("Email is already taken", reason="conflict")

        for field, value in changes.items():
            setattr(user, field, value)
        try:
            await self._repository.flush()
        except IntegrityError as exc:
            await self._repository.rollback()
            raise AccountServiceError("Username or email is already taken", reason="conflict") from exc
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit("Username or email is already taken")
        LOGGER.info("Updated account details for user %s (%s)", user_id, ", ".join(sorted(changes)))
        return self.to_record(user)

    async def update_avatar(self, user_id: str, avatar: Optional[UploadFile]) -> UserRecord:
        """Upload a new avatar and store its URL."""

        if avatar is None or not avatar.filename:
            raise AccountServiceError("Avatar file is missing", reason="bad_request")
        user = await self._require_user(user_id)
        url = await self._upload_avatar(avatar)
        user.avatar = url
        try:
            await self._repository.flush()
        except Exception:
            await self._repository.rollback()
            raise
        await self._commit()
        LOGGER.info("Updated avatar for user %s", user_id)
        return self.to_record(user)


__all__ = ["AccountService", "AccountServiceError"]
