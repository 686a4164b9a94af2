from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from sqlalchemy import delete, or_, select, update

from . import config
from .auth_models import STAFF_ROLES, DoctorProfile, OtpCode, PharmacistProfile, Role, User, UserSession
from .auth_security import (
    generate_otp,
    generate_session_token,
    hash_password,
    normalize_email,
    password_problems,
    verify_password,
)
from .db import db_session, utcnow
from .exceptions import AuthenticationError, BusinessRuleError, NotFoundError, PermissionDeniedError
from .logger import get_logger
from .models import NotificationType
from .notifications import _notify

logger = get_logger(__name__)


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    full_name: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def _as_role(role: Role | str) -> Role:
    try:
        return role if isinstance(role, Role) else Role(role)
    except ValueError:
        raise BusinessRuleError(f"Unknown role: {role}")


def user_flat(u: User) -> dict:
    data = {
        "id": u.id,
        "email": u.email,
        "full_name": u.full_name,
        "phone": u.phone,
        "role": u.role.value,
        "is_active": u.is_active,
        "age": u.age,
        "sex": u.sex,
        "address": u.address,
        "state": u.state,
        "last_login": u.last_login,
        "created_at": u.created_at,
    }
    if u.role == Role.DOCTOR and u.doctor_profile:
        p = u.doctor_profile
        data["doctor"] = {
            "specialization": p.specialization,
            "qualification": p.qualification,
            "experience_years": p.experience_years,
            "consultation_fee": p.consultation_fee,
            "license_number": p.license_number,
        }
    if u.role == Role.PHARMACIST and u.pharmacist_profile:
        data["pharmacist"] = {"license_number": u.pharmacist_profile.license_number}
    return data


def _check_password_policy(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise BusinessRuleError("Password must contain " + ", ".join(problems) + ".")


# =========================
# Users
# =========================
def _create_user(
    s,
    email: str,
    full_name: str,
    role: Role,
    password: str | None = None,
    phone: str | None = None,
    **profile,
) -> User:
    email = normalize_email(email)
    full_name = (full_name or "").strip()
    if not email or not full_name:
        raise BusinessRuleError("Email and full name are required.")

    if s.execute(select(User.id).where(User.email == email)).first():
        raise BusinessRuleError("Email already registered.")

    if role in STAFF_ROLES:
        if not password:
            raise BusinessRuleError("Staff accounts require a password.")
        _check_password_policy(password)

    u = User(
        email=email,
        full_name=full_name,
        phone=phone,
        role=role,
        password_hash=hash_password(password) if password else None,
        is_active=True,
        age=profile.get("age"),
        sex=profile.get("sex"),
        address=profile.get("address"),
        state=profile.get("state"),
    )
    if role == Role.DOCTOR:
        u.doctor_profile = DoctorProfile(
            specialization=profile.get("specialization") or "General Medicine",
            qualification=profile.get("qualification"),
            experience_years=profile.get("experience_years"),
            consultation_fee=Decimal(str(profile.get("consultation_fee") or 0)),
            license_number=profile.get("license_number"),
        )
    elif role == Role.PHARMACIST:
        u.pharmacist_profile = PharmacistProfile(license_number=profile.get("license_number"))

    s.add(u)
    s.flush()
    logger.info("User created: %s (%s)", u.email, role.value)
    return u


def create_user(email: str, full_name: str, role: Role | str, password: str | None = None,
                phone: str | None = None, **profile) -> dict:
    with db_session() as s:
        u = _create_user(s, email, full_name, _as_role(role), password, phone, **profile)
        return user_flat(u)


def get_user(user_id: str) -> dict:
    with db_session() as s:
        u = s.get(User, user_id)
        if not u:
            raise NotFoundError("User not found.")
        return user_flat(u)


def list_users(role: Role | str | None = None, search: str | None = None, active: bool | None = None) -> list[dict]:
    with db_session() as s:
        q = select(User)
        if role:
            q = q.where(User.role == _as_role(role))
        if active is not None:
            q = q.where(User.is_active.is_(active))
        if search:
            like = f"%{search.strip()}%"
            q = q.where(or_(User.full_name.ilike(like), User.email.ilike(like), User.phone.ilike(like)))
        return [user_flat(u) for u in s.scalars(q.order_by(User.full_name))]


_USER_FIELDS = ("full_name", "phone", "age", "sex", "address", "state")
_DOCTOR_FIELDS = ("specialization", "qualification", "experience_years", "consultation_fee", "license_number")


def update_user(user_id: str, **fields) -> dict:
    """
    Admin update of a user. Deactivating a user revokes every session.
    Doctor profile fields are applied to the doctor profile.
    """
    with db_session() as s:
        u = s.get(User, user_id)
        if not u:
            raise NotFoundError("User not found.")

        for f in _USER_FIELDS:
            if fields.get(f) is not None:
                setattr(u, f, fields[f])

        if u.role == Role.DOCTOR and u.doctor_profile:
            for f in _DOCTOR_FIELDS:
                if fields.get(f) is not None:
                    setattr(u.doctor_profile, f, fields[f])
        if u.role == Role.PHARMACIST and u.pharmacist_profile and fields.get("license_number") is not None:
            u.pharmacist_profile.license_number = fields["license_number"]

        if fields.get("is_active") is not None and fields["is_active"] != u.is_active:
            u.is_active = fields["is_active"]
            if not u.is_active:
                s.execute(update(UserSession).where(UserSession.user_id == u.id).values(is_active=False))
                logger.info("User deactivated, sessions revoked: %s", u.email)

        return user_flat(u)


# =========================
# Sessions
# =========================
def _session_lifetime(role: Role) -> timedelta:
    if role == Role.PATIENT:
        return timedelta(days=config.PATIENT_SESSION_DAYS)
    return timedelta(hours=config.STAFF_SESSION_HOURS)


def _create_session(s, user: User, ip_address: str | None = None) -> UserSession:
    sess = UserSession(
        token=generate_session_token(),
        user_id=user.id,
        expires_at=utcnow() + _session_lifetime(user.role),
        is_active=True,
        ip_address=ip_address,
    )
    s.add(sess)
    user.last_login = utcnow()
    s.flush()
    logger.info("Session created for %s (%s)", user.email, user.role.value)
    return sess


def _session_payload(sess: UserSession, user: User) -> dict:
    return {"token": sess.token, "expires_at": sess.expires_at, "user": user_flat(user)}


def authenticate_staff(email: str, password: str) -> User:
    email = normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u:
            raise AuthenticationError("Invalid email or password.")
        if u.role == Role.PATIENT:
            raise PermissionDeniedError("Patients sign in with a one-time code. Please use OTP login.")
        if not u.is_active:
            raise PermissionDeniedError("Account is disabled.")
        if not u.password_hash:
            raise AuthenticationError("Invalid email or password.")
        if not verify_password(password, u.password_hash):
            raise AuthenticationError("Invalid email or password.")
        return u


def login_staff(email: str, password: str, ip_address: str | None = None) -> dict:
    u = authenticate_staff(email, password)
    with db_session() as s:
        user = s.get(User, u.id)
        sess = _create_session(s, user, ip_address)
        return _session_payload(sess, user)


def verify_session(token: str | None, allowed_roles: Iterable[Role] | None = None) -> CurrentUser:
    """
    Resolve a session token to its user:
    - token exists and the session is active
    - not expired (expired sessions are switched off)
    - user exists and is active
    - role among allowed_roles, when given
    """
    if not token:
        raise AuthenticationError("Not authenticated.")

    expired = False
    with db_session() as s:
        sess = s.execute(select(UserSession).where(UserSession.token == token)).scalar_one_or_none()
        if not sess or not sess.is_active:
            raise AuthenticationError("Invalid session.")
        if sess.expires_at <= utcnow():
            sess.is_active = False
            expired = True
        else:
            u = sess.user
            if not u or not u.is_active:
                raise AuthenticationError("Invalid session.")
            current = CurrentUser(id=u.id, email=u.email, full_name=u.full_name, role=u.role)

    if expired:
        raise AuthenticationError("Session expired.")
    if allowed_roles is not None and current.role not in tuple(allowed_roles):
        raise PermissionDeniedError("Insufficient permissions.")
    return current


def session_info(token: str) -> dict:
    current = verify_session(token)
    with db_session() as s:
        sess = s.execute(select(UserSession).where(UserSession.token == token)).scalar_one()
        return {"user": user_flat(sess.user), "expires_at": sess.expires_at, "role": current.role.value}


def revoke_session(token: str | None) -> bool:
    if not token:
        return False
    with db_session() as s:
        sess = s.execute(select(UserSession).where(UserSession.token == token)).scalar_one_or_none()
        if not sess or not sess.is_active:
            return False
        sess.is_active = False
        return True


def revoke_user_sessions(user_id: str, except_token: str | None = None) -> int:
    with db_session() as s:
        q = update(UserSession).where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
        if except_token:
            q = q.where(UserSession.token != except_token)
        return s.execute(q.values(is_active=False)).rowcount or 0


def cleanup_expired() -> dict:
    """Delete expired or revoked sessions and expired OTP codes."""
    now = utcnow()
    with db_session() as s:
        sessions = s.execute(
            delete(UserSession).where(or_(UserSession.expires_at <= now, UserSession.is_active.is_(False)))
        ).rowcount or 0
        otps = s.execute(delete(OtpCode).where(OtpCode.expires_at <= now)).rowcount or 0
    logger.info("Cleanup removed %s sessions and %s OTP codes", sessions, otps)
    return {"sessions_removed": sessions, "otps_removed": otps}


# =========================
# Patient OTP login
# =========================
def send_otp(email: str) -> dict:
    """
    Issue a 6-digit code for a patient. Earlier codes for the same email are
    dropped. Delivery goes through the notification outbox.
    """
    email = normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u:
            raise NotFoundError("No account for this email. Please book an appointment first.")
        if u.role != Role.PATIENT:
            raise BusinessRuleError("Staff members sign in with email and password.")
        if not u.is_active:
            raise PermissionDeniedError("Account is disabled.")

        s.execute(delete(OtpCode).where(OtpCode.email == email))
        code = generate_otp()
        s.add(OtpCode(email=email, code=code, expires_at=utcnow() + timedelta(minutes=config.OTP_EXPIRE_MINUTES)))
        _notify(
            s,
            u.id,
            NotificationType.OTP,
            "Your login code",
            f"Your login code is {code}. It expires in {config.OTP_EXPIRE_MINUTES} minutes.",
        )
    logger.info("OTP issued for %s", email)
    return {"sent": True, "expires_in": config.OTP_EXPIRE_MINUTES * 60}


def verify_otp(email: str, code: str, ip_address: str | None = None) -> dict:
    email = normalize_email(email)
    code = (code or "").strip()
    if len(code) != 6 or not code.isdigit():
        raise BusinessRuleError("The code must be 6 digits.")

    with db_session() as s:
        otp = s.execute(
            select(OtpCode).where(OtpCode.email == email, OtpCode.code == code, OtpCode.expires_at > utcnow())
        ).scalar_one_or_none()
        if not otp:
            raise AuthenticationError("Invalid or expired code.")

        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u or not u.is_active:
            raise AuthenticationError("Invalid or expired code.")

        s.delete(otp)
        sess = _create_session(s, u, ip_address)
        return _session_payload(sess, u)


def change_password(user_id: str, current_password: str, new_password: str, keep_token: str | None = None) -> int:
    """Returns the number of other sessions revoked."""
    with db_session() as s:
        u = s.get(User, user_id)
        if not u or not u.password_hash:
            raise BusinessRuleError("Password login is not enabled for this account.")
        if not verify_password(current_password, u.password_hash):
            raise AuthenticationError("Current password is incorrect.")
        if current_password == new_password:
            raise BusinessRuleError("The new password must differ from the current one.")
        _check_password_policy(new_password)
        u.password_hash = hash_password(new_password)

    revoked = revoke_user_sessions(user_id, except_token=keep_token)
    logger.info("Password changed for user %s, %s sessions revoked", user_id, revoked)
    return revoked
