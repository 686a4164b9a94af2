from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from pydantic import BaseModel, EmailStr, Field

from . import config
from .api_appointments import router as appointments_router
from .api_billing import router as billing_router
from .api_inventory import router as inventory_router
from .api_patient import router as patient_router
from .api_pharmacy import router as pharmacy_router
from .auth_models import Role
from .auth_service import (
    CurrentUser,
    change_password,
    cleanup_expired,
    create_user,
    get_user,
    list_users,
    login_staff,
    revoke_session,
    send_otp,
    session_info,
    update_user,
    verify_otp,
)
from .deps import client_ip, get_current_user, get_session_token, require_admin, require_staff
from .exceptions import BusinessRuleError, register_exception_handlers
from .logger import get_logger
from .notifications import list_notifications, mark_all_read, mark_read, unread_count
from .rate_limit import login_limiter, otp_send_limiter, otp_verify_limiter
from .seed import seed_base
from .services import book_public_appointment, init_db, list_doctors_flat, list_patients_flat, patient_records

logger = get_logger(__name__)

app = FastAPI(title="Clinic API", version="1.0.0")
register_exception_handlers(app)

app.include_router(appointments_router)
app.include_router(patient_router)
app.include_router(pharmacy_router)
app.include_router(inventory_router)
app.include_router(billing_router)


# Startup

@app.on_event("startup")
def startup() -> None:
    # tables + base data (idempotent)
    init_db()
    seed_base()


# Auth schemas

class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class OtpSendIn(BaseModel):
    email: EmailStr


class OtpVerifyIn(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6)


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


# Domain schemas

class UserCreateIn(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1)
    role: Role
    password: str | None = None
    phone: str | None = None
    age: int | None = Field(default=None, ge=0, le=150)
    sex: str | None = None
    address: str | None = None
    state: str | None = None
    # doctor / pharmacist profile
    specialization: str | None = None
    qualification: str | None = None
    experience_years: int | None = Field(default=None, ge=0)
    consultation_fee: Decimal | None = Field(default=None, ge=0)
    license_number: str | None = None


class UserUpdateIn(BaseModel):
    full_name: str | None = None
    phone: str | None = None
    age: int | None = Field(default=None, ge=0, le=150)
    sex: str | None = None
    address: str | None = None
    state: str | None = None
    is_active: bool | None = None
    specialization: str | None = None
    qualification: str | None = None
    experience_years: int | None = Field(default=None, ge=0)
    consultation_fee: Decimal | None = Field(default=None, ge=0)
    license_number: str | None = None


class PublicBookingIn(BaseModel):
    # booking without login (creates the patient on the fly)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=5)
    appointment_date: date
    appointment_time: time
    age: int | None = Field(default=None, ge=0, le=150)
    sex: str | None = None
    service: str | None = None
    reason: str | None = None
    doctor_id: str | None = None


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.SESSION_COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
    )


# AUTH endpoints

@app.post("/api/auth/login")
def login(payload: LoginIn, request: Request, response: Response) -> dict[str, Any]:
    key = f"{client_ip(request)}:{payload.email.lower()}"
    login_limiter.hit(key)
    session = login_staff(payload.email, payload.password, client_ip(request))
    login_limiter.reset(key)
    _set_session_cookie(response, session["token"])
    return {"ok": True, **session}


@app.post("/api/auth/logout")
def logout(response: Response, token: str | None = Depends(get_session_token)) -> dict[str, Any]:
    revoked = revoke_session(token)
    response.delete_cookie(config.SESSION_COOKIE_NAME)
    return {"ok": True, "revoked": revoked}


@app.get("/api/auth/session")
def current_session(token: str | None = Depends(get_session_token)) -> dict[str, Any]:
    return session_info(token)


@app.post("/api/auth/otp/send")
def otp_send(payload: OtpSendIn, request: Request) -> dict[str, Any]:
    otp_send_limiter.hit(f"{client_ip(request)}:{payload.email.lower()}")
    return {"ok": True, **send_otp(payload.email)}


@app.post("/api/auth/otp/verify")
def otp_verify(payload: OtpVerifyIn, request: Request, response: Response) -> dict[str, Any]:
    key = f"{client_ip(request)}:{payload.email.lower()}"
    otp_verify_limiter.hit(key)
    session = verify_otp(payload.email, payload.code, client_ip(request))
    otp_verify_limiter.reset(key)
    _set_session_cookie(response, session["token"])
    return {"ok": True, **session}


@app.post("/api/auth/change-password")
def api_change_password(
    payload: ChangePasswordIn,
    user: CurrentUser = Depends(get_current_user),
    token: str | None = Depends(get_session_token),
) -> dict[str, Any]:
    revoked = change_password(user.id, payload.current_password, payload.new_password, keep_token=token)
    return {"ok": True, "sessions_revoked": revoked}


@app.post("/api/auth/cleanup")
def api_cleanup(user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return {"ok": True, **cleanup_expired()}


# PUBLIC endpoints (no session)

@app.get("/api/health")
def health() -> dict[str, Any]:
    return {"ok": True, "time": datetime.now()}


@app.get("/api/doctors")
def api_doctors() -> list[dict]:
    return list_doctors_flat()


@app.post("/api/public/appointments")
def public_booking(payload: PublicBookingIn) -> dict[str, Any]:
    """
    Booking without login:
    - finds or creates the patient by email
    - creates a pending appointment the admins will confirm
    """
    result = book_public_appointment(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        phone=payload.phone,
        scheduled_at=datetime.combine(payload.appointment_date, payload.appointment_time),
        age=payload.age,
        sex=payload.sex,
        service=payload.service,
        reason=payload.reason,
        doctor_id=payload.doctor_id,
    )
    return {
        "ok": result.ok,
        "message": result.message,
        "appointment_id": result.appointment_id,
        "patient_id": result.patient_id,
        "created_patient": result.created_patient,
    }


# ADMIN: users and patients

@app.get("/api/admin/users")
def api_list_users(
    role: Role | None = None,
    search: str | None = None,
    active: bool | None = None,
    user: CurrentUser = Depends(require_admin),
) -> list[dict]:
    return list_users(role=role, search=search, active=active)


@app.post("/api/admin/users")
def api_create_user(payload: UserCreateIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    data = payload.model_dump(exclude={"email", "full_name", "role", "password", "phone"}, exclude_none=True)
    created = create_user(payload.email, payload.full_name, payload.role, payload.password, payload.phone, **data)
    return {"ok": True, "user": created}


@app.get("/api/admin/users/{user_id}")
def api_get_user(user_id: str, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return get_user(user_id)


@app.patch("/api/admin/users/{user_id}")
def api_update_user(user_id: str, payload: UserUpdateIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    if user_id == user.id and payload.is_active is False:
        raise BusinessRuleError("You cannot deactivate your own account.")
    return {"ok": True, "user": update_user(user_id, **payload.model_dump(exclude_none=True))}


@app.get("/api/admin/patients")
def api_patients(search: str | None = None, user: CurrentUser = Depends(require_staff)) -> list[dict]:
    return list_patients_flat(search)


@app.get("/api/admin/patients/{patient_id}/records")
def api_patient_records(patient_id: str, user: CurrentUser = Depends(require_staff)) -> list[dict]:
    return patient_records(patient_id)


# Notifications (any signed-in user, own only)

@app.get("/api/notifications")
def api_notifications(
    unread_only: bool = False, limit: int = 50, user: CurrentUser = Depends(get_current_user)
) -> list[dict]:
    return list_notifications(user.id, unread_only=unread_only, limit=limit)


@app.get("/api/notifications/unread-count")
def api_unread_count(user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return {"count": unread_count(user.id)}


@app.post("/api/notifications/{notification_id}/read")
def api_mark_read(notification_id: int, user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return mark_read(user.id, notification_id)


@app.post("/api/notifications/read-all")
def api_mark_all_read(user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return {"ok": True, "updated": mark_all_read(user.id)}
