"""
Application error types and their JSON rendering.

Services raise ``AppError`` subclasses; the handlers installed by
``install_error_handlers`` turn them into::

    {"error": {"kind": "...", "message": "...", "details": ...}}

Anything else is logged with the request context and rendered as a
generic ``internal_error``.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError

from blog_api.config import settings
from blog_api.middleware import request_id_var

logger = logging.getLogger(__name__)


class AppError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, details=None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(AppError):
    kind = "validation_error"
    status_code = 400


class AuthenticationFailed(AppError):
    kind = "authentication_error"
    status_code = 401


class PermissionDenied(AppError):
    kind = "authorization_error"
    status_code = 403


class NotFound(AppError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier=None) -> None:
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} not found: {identifier}"
        super().__init__(message)
        self.resource = resource


class Conflict(AppError):
    kind = "conflict"
    status_code = 409


class RateLimited(AppError):
    kind = "rate_limited"
    status_code = 429


class UpstreamUnavailable(AppError):
    kind = "upstream_error"
    status_code = 503


class ImageProcessingError(AppError):
    kind = "upstream_error"
    status_code = 422


def error_body(kind: str, message: str, details=None) -> dict:
    body = {"kind": kind, "message": message}
    if details is not None:
        body["details"] = details
    return {"error": body}


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.kind, exc.message, exc.details),
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=error_body("validation_error", "Request validation failed", details),
    )


async def _integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.info("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content=error_body("conflict", "Resource conflicts with existing data"),
    )


async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=RateLimited.status_code,
        content=error_body(RateLimited.kind, f"Too many requests: {exc.detail}"),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[%s] Unhandled error on %s %s", request_id_var.get(), request.method, request.url.path)
    message = str(exc) if settings.DEBUG else "Internal server error"
    return JSONResponse(status_code=500, content=error_body("internal_error", message))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(IntegrityError, _integrity_error_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
