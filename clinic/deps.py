from __future__ import annotations

from typing import Callable

from fastapi import Depends, Header, Request

from . import config
from .auth_models import Role
from .auth_service import CurrentUser, verify_session


def get_session_token(request: Request, authorization: str | None = Header(default=None)) -> str | None:
    """Session token from `Authorization: Bearer <token>`, else from the session cookie."""
    if authorization and authorization.lower().startswith("bearer "):
        # stray spaces / quotes pasted with the token
        return authorization[7:].strip().strip('"').strip("'")
    return request.cookies.get(config.SESSION_COOKIE_NAME)


def get_current_user(token: str | None = Depends(get_session_token)) -> CurrentUser:
    return verify_session(token)


def require_roles(*roles: Role) -> Callable[..., CurrentUser]:
    def dependency(token: str | None = Depends(get_session_token)) -> CurrentUser:
        return verify_session(token, roles)

    return dependency


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


require_admin = require_roles(Role.ADMIN)
require_doctor = require_roles(Role.DOCTOR)
require_patient = require_roles(Role.PATIENT)
require_pharmacy = require_roles(Role.ADMIN, Role.PHARMACIST)
require_staff = require_roles(Role.ADMIN, Role.DOCTOR, Role.PHARMACIST)
