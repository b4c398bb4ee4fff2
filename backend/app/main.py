"""FastAPI application factory for the accounts backend."""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.app.config import AppConfig, load_config
from backend.app.users.errors import error_response, install_exception_handlers
from backend.app.users.models import AccountsBase
from backend.app.users.router import router as users_router
from backend.app.users.storage import AvatarStorageProtocol, build_minio_avatar_storage
from backend.app.users.utils import JWTManager

LOGGER = logging.getLogger(__name__)

LIMITED_CONTENT_TYPES = ("application/json", "application/x-www-form-urlencoded")


class JsonBodyLimitMiddleware:
    """Reject JSON and url-encoded bodies larger than ``max_bytes`` with a 413 envelope.

    The body is buffered up to the limit, so requests without a
    ``Content-Length`` header (chunked transfer) are capped as well. Multipart
    bodies pass through untouched; the avatar size limit bounds them instead.
    """

    def __init__(self, app: ASGIApp, max_bytes: int) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        headers = Headers(scope=scope)
        if not headers.get("content-type", "").startswith(LIMITED_CONTENT_TYPES):
            await self.app(scope, receive, send)
            return

        content_length = headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > self.max_bytes:
            await self._reject(scope, receive, send)
            return

        buffered: List[Message] = []
        received = 0
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self.max_bytes:
                await self._reject(scope, receive, send)
                return
            if not message.get("more_body", False):
                break

        pending = iter(buffered)

        async def replay() -> Message:
            message = next(pending, None)
            if message is None:
                return await receive()
            return message

        await self.app(scope, replay, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        LOGGER.warning("Rejected request body larger than %d bytes", self.max_bytes)
        response = error_response(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Request body too large")
        await response(scope, receive, send)


def create_app(
    config: AppConfig | None = None,
    storage: Optional[AvatarStorageProtocol] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Optional pre-loaded configuration. If omitted, the default
            configuration defined in config.yaml is used.
        storage: Optional avatar storage. When omitted the factory builds a
            MinIO client from ``AVATAR_STORAGE_*`` environment variables; when
            those are missing, avatar uploads fail with ``500``.

    Returns:
        FastAPI: Configured FastAPI application.
    """

    resolved_config = config or load_config()
    app = FastAPI(title=resolved_config.service.name, version=resolved_config.service.version)
    app.state.app_config = resolved_config

    engine: AsyncEngine = create_async_engine(resolved_config.auth.database_url, future=True)
    app.state.engine = engine
    app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
    app.state.jwt_manager = JWTManager(resolved_config.auth.jwt)
    app.state.avatar_storage = (
        storage if storage is not None else build_minio_avatar_storage(resolved_config.storage)
    )

    @app.on_event("startup")
    async def _init_schema() -> None:
        async with engine.begin() as connection:
            await connection.run_sync(AccountsBase.metadata.create_all)
        LOGGER.info("Account schema ready")

    @app.on_event("shutdown")
    async def _dispose_engine() -> None:
        await engine.dispose()

    app.add_middleware(
        JsonBodyLimitMiddleware,
        max_bytes=resolved_config.service.json_body_limit_kb * 1024,
    )
    # CORS stays outermost so 413 responses carry CORS headers.
    allowed_origins = resolved_config.service.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    install_exception_handlers(app)

    @app.get("/health", tags=["system"], summary="Service health probe")
    def health() -> dict[str, str]:
        """Return service health information."""

        return {"status": "ok", "version": resolved_config.service.version}

    app.include_router(users_router, prefix=resolved_config.service.api_prefix)
    return app
