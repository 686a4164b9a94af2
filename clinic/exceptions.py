"""
Domain errors raised by the service layer and their HTTP translation.

Services raise; the handlers registered on the FastAPI app turn every error
into ``{"ok": false, "error": {"code": ..., "message": ...}}``.
"""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .logger import get_logger

logger = get_logger(__name__)


class ClinicError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ClinicError, LookupError):
    status_code = 404
    code = "not_found"


class BusinessRuleError(ClinicError, ValueError):
    status_code = 400
    code = "business_rule"


class AuthenticationError(ClinicError):
    status_code = 401
    code = "unauthorized"


class PermissionDeniedError(ClinicError):
    status_code = 403
    code = "forbidden"


class RateLimitError(ClinicError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, reset_in: int):
        super().__init__(message)
        self.reset_in = reset_in


def _error_body(code: str, message: str) -> dict:
    return {"ok": False, "error": {"code": code, "message": message}}


async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    if exc.status_code >= 401:
        logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.reset_in)}
    return JSONResponse(_error_body(exc.code, exc.message), status_code=exc.status_code, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(_error_body("server_error", "Internal server error"), status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ClinicError, clinic_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
