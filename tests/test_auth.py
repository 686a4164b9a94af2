import pytest
from conftest import STAFF_PASSWORD, bearer, dec, otp_code_for

from clinic.auth_models import Role
from clinic.auth_service import create_user, login_staff, verify_session
from clinic.exceptions import BusinessRuleError, PermissionDeniedError


def test_staff_login_returns_token_and_sets_cookie(client, admin):
    res = client.post("/api/auth/login", json={"email": "ADMIN@clinic.org", "password": STAFF_PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert len(body["token"]) == 64
    assert body["user"]["role"] == "admin"
    assert "session_token" in res.cookies

    # the cookie alone authenticates
    res = client.get("/api/auth/session")
    assert res.status_code == 200
    assert res.json()["role"] == "admin"


def test_wrong_password_is_rejected(client, admin):
    res = client.post("/api/auth/login", json={"email": admin["email"], "password": "Wr0ng@Password"})
    assert res.status_code == 401
    assert res.json() == {"ok": False, "error": {"code": "unauthorized", "message": "Invalid email or password."}}


def test_login_rate_limited_after_five_failures(client, admin):
    for _ in range(5):
        res = client.post("/api/auth/login", json={"email": admin["email"], "password": "Wr0ng@Password"})
        assert res.status_code == 401
    res = client.post("/api/auth/login", json={"email": admin["email"], "password": STAFF_PASSWORD})
    assert res.status_code == 429
    assert res.json()["error"]["code"] == "rate_limited"
    assert int(res.headers["Retry-After"]) > 0


def test_successful_login_resets_the_window(client, admin):
    for _ in range(4):
        client.post("/api/auth/login", json={"email": admin["email"], "password": "Wr0ng@Password"})
    assert client.post("/api/auth/login", json={"email": admin["email"], "password": STAFF_PASSWORD}).status_code == 200
    for _ in range(4):
        res = client.post("/api/auth/login", json={"email": admin["email"], "password": "Wr0ng@Password"})
        assert res.status_code == 401


def test_missing_or_bad_token(client):
    assert client.get("/api/admin/users").status_code == 401
    res = client.get("/api/admin/users", headers=bearer("nope"))
    assert res.status_code == 401
    assert res.json()["error"]["message"] == "Invalid session."


def test_role_guard_returns_403(client, doctor_headers):
    res = client.get("/api/admin/users", headers=doctor_headers)
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "forbidden"


def test_weak_staff_password_refused():
    with pytest.raises(BusinessRuleError) as exc:
        create_user("weak@clinic.org", "Weak", Role.PHARMACIST, "password")
    assert "uppercase" in exc.value.message
    with pytest.raises(BusinessRuleError):
        create_user("nopass@clinic.org", "No Pass", Role.DOCTOR)


def test_duplicate_email_refused(admin):
    with pytest.raises(BusinessRuleError):
        create_user(admin["email"].upper(), "Again", Role.ADMIN, STAFF_PASSWORD)


def test_patient_otp_login(client, patient):
    res = client.post("/api/auth/otp/send", json={"email": patient["email"]})
    assert res.status_code == 200
    assert res.json()["sent"] is True

    code = otp_code_for(patient["email"])
    res = client.post("/api/auth/otp/verify", json={"email": patient["email"], "code": code})
    assert res.status_code == 200
    token = res.json()["token"]
    assert verify_session(token).role == Role.PATIENT

    # codes are single use
    res = client.post("/api/auth/otp/verify", json={"email": patient["email"], "code": code})
    assert res.status_code == 401


def test_otp_code_delivered_through_notifications(client, patient, patient_headers):
    res = client.get("/api/notifications", headers=patient_headers)
    otp_messages = [n for n in res.json() if n["type"] == "otp"]
    assert otp_messages
    assert "login code" in otp_messages[0]["message"]


def test_otp_unknown_email_and_staff_email(client, admin):
    assert client.post("/api/auth/otp/send", json={"email": "ghost@mail.com"}).status_code == 404
    assert client.post("/api/auth/otp/send", json={"email": admin["email"]}).status_code == 400


def test_otp_send_rate_limited(client, patient):
    for _ in range(3):
        assert client.post("/api/auth/otp/send", json={"email": patient["email"]}).status_code == 200
    assert client.post("/api/auth/otp/send", json={"email": patient["email"]}).status_code == 429


def test_patient_cannot_use_password_login(client, patient):
    with pytest.raises(PermissionDeniedError) as exc:
        login_staff(patient["email"], STAFF_PASSWORD)
    assert "OTP" in exc.value.message

    res = client.post("/api/auth/login", json={"email": patient["email"], "password": STAFF_PASSWORD})
    assert res.status_code == 403


def test_logout_revokes_session(client, admin_headers):
    res = client.post("/api/auth/logout", headers=admin_headers)
    assert res.json() == {"ok": True, "revoked": True}
    assert client.get("/api/auth/session", headers=admin_headers).status_code == 401


def test_change_password_revokes_other_sessions(client, admin, admin_headers):
    other = bearer(login_staff(admin["email"], STAFF_PASSWORD)["token"])
    res = client.post(
        "/api/auth/change-password",
        headers=admin_headers,
        json={"current_password": STAFF_PASSWORD, "new_password": "N3w&Passw0rdX"},
    )
    assert res.status_code == 200
    assert res.json()["sessions_revoked"] == 1
    assert client.get("/api/auth/session", headers=admin_headers).status_code == 200
    assert client.get("/api/auth/session", headers=other).status_code == 401
    assert login_staff(admin["email"], "N3w&Passw0rdX")["token"]


def test_deactivated_user_loses_access(client, admin_headers, pharmacist, pharmacist_headers):
    res = client.patch(f"/api/admin/users/{pharmacist['id']}", headers=admin_headers, json={"is_active": False})
    assert res.status_code == 200
    assert res.json()["user"]["is_active"] is False
    assert client.get("/api/inventory/items", headers=pharmacist_headers).status_code == 401


def test_admin_cannot_deactivate_self(client, admin, admin_headers):
    res = client.patch(f"/api/admin/users/{admin['id']}", headers=admin_headers, json={"is_active": False})
    assert res.status_code == 400


def test_admin_creates_doctor(client, admin_headers):
    res = client.post(
        "/api/admin/users",
        headers=admin_headers,
        json={
            "email": "neha@clinic.org",
            "full_name": "Neha Shah",
            "role": "doctor",
            "password": STAFF_PASSWORD,
            "specialization": "Dermatology",
            "consultation_fee": "700",
        },
    )
    assert res.status_code == 200
    user = res.json()["user"]
    assert user["doctor"]["specialization"] == "Dermatology"
    assert dec(user["doctor"]["consultation_fee"]) == 700

    doctors = client.get("/api/doctors").json()
    assert [d["full_name"] for d in doctors] == ["Neha Shah"]
