"""Application error type and the handlers rendering it as an error envelope."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from backend.app.users.schemas import ApiErrorResponse

LOGGER = logging.getLogger(__name__)

_REASON_STATUS = {
    "bad_request": status.HTTP_400_BAD_REQUEST,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AccountServiceError(RuntimeError):
    """Raised when an account operation fails."""

    def __init__(self, message: str, reason: str = "bad_request") -> None:
        super().__init__(message)
        self.reason = reason

    @property
    def status_code(self) -> int:
        return status_from_reason(self.reason)


def status_from_reason(reason: str) -> int:
    """Translate service error reasons into HTTP status codes."""

    return _REASON_STATUS.get(reason, status.HTTP_400_BAD_REQUEST)


def error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    """Render the error envelope."""

    body = ApiErrorResponse(status_code=status_code, message=message)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True),
        headers=headers,
    )


def first_error_message(errors: Sequence[Mapping[str, Any]]) -> str:
    """Summarise the first pydantic error as ``field: message``."""

    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg", "Invalid value"))
    return f"{location}: {message}" if location else message


def install_exception_handlers(app: FastAPI) -> None:
    """Convert every failure raised while serving a request into the error envelope."""

    @app.exception_handler(AccountServiceError)
    async def _handle_service_error(_request: Request, exc: AccountServiceError) -> JSONResponse:
        return error_response(exc.status_code, str(exc))

    @app.exception_handler(HTTPException)
    async def _handle_http_error(_request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(exc.status_code, str(exc.detail), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(status.HTTP_400_BAD_REQUEST, first_error_message(exc.errors()))

    @app.exception_handler(Exception)
    async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error while serving %s %s", request.method, request.url.path)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


__all__ = [
    "AccountServiceError",
    "error_response",
    "first_error_message",
    "install_exception_handlers",
    "status_from_reason",
]
