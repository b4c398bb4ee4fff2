"""FastAPI router for account endpoints."""
from __future__ import annotations

from typing import Any, AsyncIterator, Optional, cast

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.config import AppConfig, AuthConfig
from backend.app.users.errors import AccountServiceError
from backend.app.users.repository import UserRepository
from backend.app.users.schemas import (
    ApiResponse,
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    TokenPair,
    UpdateDetailsRequest,
    UserRecord,
)
from backend.app.users.service import AccountService
from backend.app.users.storage import AvatarStorageProtocol
from backend.app.users.utils import JWTManager

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

router = APIRouter(tags=["users"])

bearer_scheme = OAuth2PasswordBearer(tokenUrl="login", auto_error=False)


def get_app_config(request: Request) -> AppConfig:
    """Resolve the application configuration from the application state."""

    return request.app.state.app_config


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield a database session scoped to the request."""

    session_factory = cast(async_sessionmaker[AsyncSession], request.app.state.session_factory)
    async with session_factory() as session:
        yield session


def get_jwt_manager(request: Request) -> JWTManager:
    """Return the JWT manager stored on the app state."""

    return request.app.state.jwt_manager


def get_avatar_storage(request: Request) -> Optional[AvatarStorageProtocol]:
    """Return the avatar storage stored on the app state, if configured."""

    return getattr(request.app.state, "avatar_storage", None)


async def get_account_service(
    session: AsyncSession = Depends(get_session),
    config: AppConfig = Depends(get_app_config),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
    storage: Optional[AvatarStorageProtocol] = Depends(get_avatar_storage),
) -> AccountService:
    """Construct an AccountService for the current request."""

    return AccountService(
        storage_config=config.storage,
        repository=UserRepository(session),
        jwt_manager=jwt_manager,
        storage=storage,
    )


def _presented_access_token(request: Request, bearer_token: Optional[str]) -> Optional[str]:
    cookie_token = request.cookies.get(ACCESS_COOKIE)
    if cookie_token:
        return cookie_token
    return bearer_token or None


async def get_current_user(
    request: Request,
    bearer_token: Optional[str] = Depends(bearer_scheme),
    service: AccountService = Depends(get_account_service),
) -> UserRecord:
    """Authenticate the access token from the cookie or the Authorization header."""

    token = _presented_access_token(request, bearer_token)
    if token is None:
        raise AccountServiceError("Unauthorized request", reason="unauthorized")
    return await service.authenticate(token)


async def get_optional_user(
    request: Request,
    bearer_token: Optional[str] = Depends(bearer_scheme),
    service: AccountService = Depends(get_account_service),
) -> Optional[UserRecord]:
    """Authenticate a presented access token; ``None`` when absent or invalid."""

    token = _presented_access_token(request, bearer_token)
    if token is None:
        return None
    try:
        return await service.authenticate(token)
    except AccountServiceError as exc:
        if exc.reason == "unauthorized":
            return None
        raise


def _envelope(status_code: int, data: Any, message: str) -> JSONResponse:
    body = ApiResponse.build(status_code, data, message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, mode="json"))


def _set_auth_cookies(response: JSONResponse, tokens: TokenPair, config: AuthConfig) -> None:
    cookies = config.cookies
    lifetimes = (
        (ACCESS_COOKIE, tokens.access_token, config.jwt.access_token_ttl),
        (REFRESH_COOKIE, tokens.refresh_token, config.jwt.refresh_token_ttl),
    )
    for key, value, ttl in lifetimes:
        response.set_cookie(
            key,
            value,
            max_age=int(ttl.total_seconds()),
            httponly=cookies.http_only,
            secure=cookies.secure,
            samesite=cookies.same_site,
        )


def _clear_auth_cookies(response: JSONResponse, config: AuthConfig) -> None:
    cookies = config.cookies
    for key in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            key,
            httponly=cookies.http_only,
            secure=cookies.secure,
            samesite=cookies.same_site,
        )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    name: Optional[str] = Form(default=None),
    username: Optional[str] = Form(default=None),
    email: Optional[str] = Form(default=None),
    password: Optional[str] = Form(default=None),
    avatar: Optional[UploadFile] = File(default=None),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Register a new user account with an optional avatar image."""

    form = await request.form()
    if len(form.getlist("avatar")) > 1:
        raise AccountServiceError("Only one avatar file is allowed", reason="bad_request")
    record = await service.register_user(
        name=name, username=username, email=email, password=password, avatar=avatar
    )
    return _envelope(status.HTTP_201_CREATED, record, "User registered successfully")


@router.post("/login")
async def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_account_service),
    config: AppConfig = Depends(get_app_config),
) -> JSONResponse:
    """Authenticate with a username or email and a password."""

    result = await service.login(payload)
    response = _envelope(status.HTTP_200_OK, result, "User logged in successfully")
    tokens = TokenPair(access_token=result.access_token, refresh_token=result.refresh_token)
    _set_auth_cookies(response, tokens, config.auth)
    return response


@router.post("/logout")
async def logout(
    current_user: UserRecord = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
    config: AppConfig = Depends(get_app_config),
) -> JSONResponse:
    """Drop the stored refresh token and clear both credential cookies."""

    await service.logout(current_user.id)
    response = _envelope(status.HTTP_200_OK, {}, "User logged out")
    _clear_auth_cookies(response, config.auth)
    return response


@router.post("/refresh-token")
async def refresh_access_token(
    request: Request,
    payload: Optional[RefreshRequest] = Body(default=None),
    current_user: Optional[UserRecord] = Depends(get_optional_user),
    service: AccountService = Depends(get_account_service),
    config: AppConfig = Depends(get_app_config),
) -> JSONResponse:
    """Exchange the refresh token from the cookie or body for a new pair."""

    if config.auth.refresh_requires_access_token and current_user is None:
        raise AccountServiceError("Unauthorized request", reason="unauthorized")
    token = request.cookies.get(REFRESH_COOKIE) or (payload.refresh_token if payload else None)
    tokens = await service.refresh_tokens(
        token, current_user_id=current_user.id if current_user else None
    )
    response = _envelope(status.HTTP_200_OK, tokens, "Access token refreshed")
    _set_auth_cookies(response, tokens, config.auth)
    return response


@router.get("/user")
async def read_current_user(current_user: UserRecord = Depends(get_current_user)) -> JSONResponse:
    """Return the authenticated user's record."""

    return _envelope(status.HTTP_200_OK, current_user, "Current user fetched successfully")


@router.post("/update-password")
async def update_password(
    payload: ChangePasswordRequest,
    current_user: UserRecord = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Change the authenticated user's password."""

    await service.change_password(current_user.id, payload)
    return _envelope(status.HTTP_200_OK, {}, "Password changed successfully")


@router.post("/update-user-details")
async def update_user_details(
    payload: UpdateDetailsRequest,
    current_user: UserRecord = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Update any subset of name, username, and email."""

    record = await service.update_account_details(current_user.id, payload)
    return _envelope(status.HTTP_200_OK, record, "Account details updated successfully")


@router.post("/update-avatar")
async def update_avatar(
    avatar: Optional[UploadFile] = File(default=None),
    current_user: UserRecord = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Replace the authenticated user's avatar image."""

    record = await service.update_avatar(current_user.id, avatar)
    return _envelope(status.HTTP_200_OK, record, "Avatar updated successfully")


__all__ = [
    "ACCESS_COOKIE",
    "REFRESH_COOKIE",
    "get_account_service",
    "get_app_config",
    "get_current_user",
    "get_optional_user",
    "get_session",
    "router",
]
