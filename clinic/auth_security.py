from __future__ import annotations

import re
import secrets

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PASSWORD_MIN_LENGTH = 12
_PASSWORD_SPECIALS = "@$!%*?&"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def generate_session_token() -> str:
    """Opaque 64-hex-char session token."""
    return secrets.token_hex(32)


def generate_otp() -> str:
    """6-digit numeric one-time code (never starts with 0)."""
    return str(secrets.randbelow(900000) + 100000)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def password_problems(password: str) -> list[str]:
    """
    Rules for staff passwords. Returns the list of unmet rules; an empty
    list means the password is acceptable.
    """
    problems = []
    if len(password or "") < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[a-z]", password or ""):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("an uppercase letter")
    if not re.search(r"\d", password or ""):
        problems.append("a digit")
    if not any(c in _PASSWORD_SPECIALS for c in password or ""):
        problems.append(f"one of {_PASSWORD_SPECIALS}")
    return problems
