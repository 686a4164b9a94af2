"""
Shared fixtures: a throwaway SQLite database, fresh tables for every test,
a TestClient on the FastAPI app and one signed-in user per role.
"""
import os
import tempfile
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path

_TMP_DIR = tempfile.mkdtemp(prefix="clinic-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TMP_DIR) / 'clinic-test.sqlite'}"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import select  # noqa: E402

from clinic import rate_limit  # noqa: E402
from clinic.api_main import app  # noqa: E402
from clinic.auth_models import OtpCode, Role  # noqa: E402
from clinic.auth_service import create_user, login_staff, send_otp, verify_otp  # noqa: E402
from clinic.db import db_session  # noqa: E402
from clinic.seed import seed_base  # noqa: E402
from clinic.services import reset_db  # noqa: E402

STAFF_PASSWORD = "Str0ng@Passw0rd"


def tomorrow_at(hour: int, minute: int = 0) -> datetime:
    return datetime.combine(date.today() + timedelta(days=1), time(hour, minute))


def otp_code_for(email: str) -> str:
    with db_session() as s:
        return s.scalars(select(OtpCode.code).where(OtpCode.email == email)).one()


def dec(value) -> Decimal:
    """Money from a JSON body (serialized as string or number)."""
    return Decimal(str(value))


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    seed_base()
    rate_limit.reset_all()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin():
    return create_user("admin@clinic.org", "Anita Admin", Role.ADMIN, STAFF_PASSWORD)


@pytest.fixture
def doctor():
    return create_user(
        "ravi@clinic.org", "Ravi Kumar", Role.DOCTOR, STAFF_PASSWORD,
        specialization="Cardiology", consultation_fee=Decimal("500"),
    )


@pytest.fixture
def pharmacist():
    return create_user("meena@clinic.org", "Meena Iyer", Role.PHARMACIST, STAFF_PASSWORD, license_number="PH-1")


@pytest.fixture
def patient():
    return create_user("asha@mail.com", "Asha Rao", Role.PATIENT, phone="9876543210", state="Tamil Nadu")


@pytest.fixture
def admin_headers(admin):
    return bearer(login_staff(admin["email"], STAFF_PASSWORD)["token"])


@pytest.fixture
def doctor_headers(doctor):
    return bearer(login_staff(doctor["email"], STAFF_PASSWORD)["token"])


@pytest.fixture
def pharmacist_headers(pharmacist):
    return bearer(login_staff(pharmacist["email"], STAFF_PASSWORD)["token"])


@pytest.fixture
def patient_headers(patient):
    send_otp(patient["email"])
    return bearer(verify_otp(patient["email"], otp_code_for(patient["email"]))["token"])
