"""
Central configuration. Values come from the environment (a .env file is
honoured) and are exposed as typed module constants.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ── Database ──────────────────────────────────────────────
# SQLite file in the project root (next to streamlit_app.py)
DB_PATH = Path(__file__).resolve().parents[1] / "clinic.sqlite"
DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
SQL_ECHO: bool = _bool("SQL_ECHO")

# ── Sessions / auth ───────────────────────────────────────
STAFF_SESSION_HOURS: int = int(os.getenv("STAFF_SESSION_HOURS", "24"))
PATIENT_SESSION_DAYS: int = int(os.getenv("PATIENT_SESSION_DAYS", "7"))
OTP_EXPIRE_MINUTES: int = int(os.getenv("OTP_EXPIRE_MINUTES", "10"))
SESSION_COOKIE_NAME: str = "session_token"
COOKIE_SECURE: bool = _bool("COOKIE_SECURE")

# ── Rate limiting ─────────────────────────────────────────
LOGIN_RATE_LIMIT: int = int(os.getenv("LOGIN_RATE_LIMIT", "5"))
LOGIN_RATE_WINDOW_SECONDS: int = int(os.getenv("LOGIN_RATE_WINDOW_SECONDS", "900"))
OTP_SEND_RATE_LIMIT: int = int(os.getenv("OTP_SEND_RATE_LIMIT", "3"))
OTP_SEND_RATE_WINDOW_SECONDS: int = int(os.getenv("OTP_SEND_RATE_WINDOW_SECONDS", "600"))
OTP_VERIFY_RATE_LIMIT: int = int(os.getenv("OTP_VERIFY_RATE_LIMIT", "5"))
OTP_VERIFY_RATE_WINDOW_SECONDS: int = int(os.getenv("OTP_VERIFY_RATE_WINDOW_SECONDS", "600"))

# ── Seed admin (created only when both are set) ───────────
ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "")
ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "")

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ── Staff UI ──────────────────────────────────────────────
API_BASE: str = os.getenv("API_BASE", "http://127.0.0.1:8000")
