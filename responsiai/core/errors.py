"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from responsiai.core.logging import get_request_id

logger = logging.getLogger("responsiai.errors")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class LimitExceededError(AppError):
    """Raised on the analysis path when the user's monthly quota is used up."""
    code = "limit_exceeded"
    status_code = 429


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


class UpstreamError(AppError):
    """An external service (payment processor, analyzed website) failed."""
    code = "upstream_error"
    status_code = 502


class StoreError(AppError):
    """Base class for persistence failures."""
    code = "store_error"
    status_code = 500


class TransientStoreError(StoreError):
    """Store call failed in a way worth retrying (connection loss, lock timeout, lost race)."""
    code = "store_transient"
    status_code = 503


class ConcurrentModificationError(TransientStoreError):
    """Optimistic version check failed; re-read and retry."""
    code = "store_conflict"


class UnrecoverableStoreError(StoreError):
    code = "store_unrecoverable"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _render(request: Request, status_code: int, code: str, message: str, request_id: Optional[str] = None) -> JSONResponse:
    rid = request_id or _request_id(request)
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": rid},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"{exc.code}: {exc.message}", extra={"error_code": exc.code, "status": exc.status_code})
    return _render(request, exc.status_code, exc.code, exc.message, exc.request_id)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning(f"{code}: {request.url.path}", extra={"error_code": code, "status": exc.status_code})
    return _render(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
    return _render(request, 422, ValidationError.code, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled exception", exc_info=exc, extra={"error_code": "internal_error"})
    return _render(request, 500, "internal_error", "Unexpected error")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
