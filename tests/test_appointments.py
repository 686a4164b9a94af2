from datetime import date, datetime, timedelta, timezone

import pytest
from conftest import STAFF_PASSWORD, tomorrow_at

from clinic.auth_models import Role
from clinic.auth_service import create_user
from clinic.exceptions import BusinessRuleError, NotFoundError
from clinic.notifications import list_notifications
from clinic.services import (
    approve_appointment,
    book_patient_appointment,
    book_public_appointment,
    cancel_appointment,
    get_appointment,
    reschedule_appointment,
)


def _public_booking(**overrides):
    slot = tomorrow_at(10)
    payload = {
        "first_name": "Karan",
        "last_name": "Mehta",
        "email": "karan@mail.com",
        "phone": "9123456780",
        "appointment_date": slot.date().isoformat(),
        "appointment_time": slot.strftime("%H:%M"),
        "age": 41,
        "service": "Cardiology",
        "reason": "Chest pain",
    }
    payload.update(overrides)
    return payload


def test_public_booking_creates_patient_and_notifies_admins(client, admin):
    res = client.post("/api/public/appointments", json=_public_booking())
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["created_patient"] is True

    # second booking reuses the patient
    res = client.post("/api/public/appointments", json=_public_booking(appointment_time="12:00", phone="9000000001"))
    assert res.json()["created_patient"] is False
    assert res.json()["patient_id"] == body["patient_id"]

    requests = [n for n in list_notifications(admin["id"]) if n["type"] == "appointment_request"]
    assert len(requests) == 2
    assert "Karan Mehta" in requests[0]["message"]


def test_booking_in_the_past_is_refused(client):
    yesterday = date.today() - timedelta(days=1)
    res = client.post("/api/public/appointments", json=_public_booking(appointment_date=yesterday.isoformat()))
    assert res.status_code == 400
    assert "future" in res.json()["error"]["message"]


def test_public_booking_with_staff_email_refused(admin):
    with pytest.raises(BusinessRuleError):
        book_public_appointment("Anita", "Admin", admin["email"], "9000000000", tomorrow_at(9))


def test_public_booking_validates_payload(client):
    assert client.post("/api/public/appointments", json=_public_booking(email="not-an-email")).status_code == 422
    assert client.post("/api/public/appointments", json=_public_booking(phone="12")).status_code == 422


def test_approve_assigns_doctor_and_shows_in_agenda(client, admin_headers, doctor, doctor_headers, patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(11), reason="Check-up")
    res = client.post(
        f"/api/admin/appointments/{booking.appointment_id}/approve",
        headers=admin_headers,
        json={"doctor_id": doctor["id"], "notes": "Bring reports"},
    )
    assert res.status_code == 200
    appointment = res.json()["appointment"]
    assert appointment["status"] == "approved"
    assert appointment["doctor_name"] == "Ravi Kumar"

    agenda = client.get(
        "/api/doctor/agenda", headers=doctor_headers, params={"day": (date.today() + timedelta(days=1)).isoformat()}
    ).json()
    assert [(a["start"], a["end"], a["patient"]) for a in agenda] == [("11:00", "11:30", "Asha Rao")]

    types = {n["type"] for n in list_notifications(patient["id"])}
    assert "appointment_approved" in types


def test_approve_without_doctor_refused(patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(11))
    with pytest.raises(BusinessRuleError):
        approve_appointment(booking.appointment_id)


def test_doctor_cannot_be_double_booked(doctor, patient):
    first = book_patient_appointment(patient["id"], tomorrow_at(9))
    second = book_patient_appointment(patient["id"], tomorrow_at(9, 15))
    approve_appointment(first.appointment_id, doctor["id"])
    with pytest.raises(BusinessRuleError) as exc:
        approve_appointment(second.appointment_id, doctor["id"])
    assert "slot" in exc.value.message

    # back to back is fine
    third = book_patient_appointment(patient["id"], tomorrow_at(9, 30))
    assert approve_appointment(third.appointment_id, doctor["id"])["status"] == "approved"


def test_reject_and_reschedule(client, admin_headers, doctor, patient):
    rejected = book_patient_appointment(patient["id"], tomorrow_at(14))
    res = client.post(
        f"/api/admin/appointments/{rejected.appointment_id}/reject",
        headers=admin_headers,
        json={"reason": "Doctor on leave"},
    )
    assert res.json()["appointment"]["status"] == "rejected"
    # a rejected appointment cannot be approved later
    res = client.post(
        f"/api/admin/appointments/{rejected.appointment_id}/approve", headers=admin_headers, json={"doctor_id": doctor["id"]}
    )
    assert res.status_code == 400

    moved = book_patient_appointment(patient["id"], tomorrow_at(15))
    approve_appointment(moved.appointment_id, doctor["id"])
    new_time = tomorrow_at(16)
    res = client.post(
        f"/api/admin/appointments/{moved.appointment_id}/reschedule",
        headers=admin_headers,
        json={"scheduled_at": new_time.isoformat(), "reason": "Clinic closed early"},
    )
    data = res.json()["appointment"]
    assert data["status"] == "rescheduled"
    assert datetime.fromisoformat(data["scheduled_at"]) == new_time
    assert datetime.fromisoformat(data["ends_at"]) == new_time + timedelta(minutes=30)


def test_reschedule_with_utc_offset(client, admin_headers, doctor, patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(15))
    approve_appointment(booking.appointment_id, doctor["id"])
    new_time = tomorrow_at(16)
    utc_stamp = new_time.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    res = client.post(
        f"/api/admin/appointments/{booking.appointment_id}/reschedule",
        headers=admin_headers,
        json={"scheduled_at": utc_stamp},
    )
    assert res.status_code == 200
    assert datetime.fromisoformat(res.json()["appointment"]["scheduled_at"]) == new_time


def test_reschedule_into_the_past_refused(patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(15))
    with pytest.raises(BusinessRuleError):
        reschedule_appointment(booking.appointment_id, datetime.now() - timedelta(hours=1))
    with pytest.raises(BusinessRuleError):
        reschedule_appointment(booking.appointment_id, datetime.now(timezone.utc) - timedelta(hours=1))


def test_booking_with_offset_is_stored_as_local_time(patient):
    when = tomorrow_at(11)
    booking = book_patient_appointment(patient["id"], when.astimezone(timezone.utc))
    assert get_appointment(booking.appointment_id)["scheduled_at"] == when


def test_patient_books_and_cancels_own_appointment(client, patient_headers):
    slot = tomorrow_at(10)
    res = client.post(
        "/api/patient/appointments",
        headers=patient_headers,
        json={"appointment_date": slot.date().isoformat(), "appointment_time": "10:00", "reason": "Fever"},
    )
    assert res.status_code == 200
    appointment_id = res.json()["appointment_id"]

    mine = client.get("/api/patient/appointments", headers=patient_headers).json()
    assert mine["total"] == 1

    res = client.post(f"/api/patient/appointments/{appointment_id}/cancel", headers=patient_headers, json={})
    assert res.json()["appointment"]["status"] == "cancelled"

    res = client.post(f"/api/patient/appointments/{appointment_id}/cancel", headers=patient_headers, json={})
    assert res.status_code == 400


def test_patient_cannot_see_other_patients_appointment(client, patient_headers):
    other = create_user("dev@mail.com", "Dev Nair", Role.PATIENT)
    booking = book_patient_appointment(other["id"], tomorrow_at(10))
    res = client.get(f"/api/patient/appointments/{booking.appointment_id}", headers=patient_headers)
    assert res.status_code == 404
    with pytest.raises(NotFoundError):
        cancel_appointment(booking.appointment_id, patient_id="someone-else")


def test_consultation_flow(client, doctor, doctor_headers, pharmacist, admin, patient, patient_headers):
    booking = book_patient_appointment(patient["id"], tomorrow_at(10))
    approve_appointment(booking.appointment_id, doctor["id"])
    url = f"/api/doctor/appointments/{booking.appointment_id}/consultation"

    res = client.put(
        url,
        headers=doctor_headers,
        json={
            "record": {"chief_complaint": "Cough", "diagnosis": "Bronchitis", "vitals": {"bp": "120/80"}},
            "prescription": {
                "notes": "After meals",
                "items": [{"medication_name": "Amoxicillin 500mg", "dosage": "1 tab", "quantity": 10}],
            },
        },
    )
    assert res.status_code == 200
    data = res.json()
    assert data["consultation_status"] == "in_progress"
    assert data["medical_record"]["diagnosis"] == "Bronchitis"
    assert data["prescriptions"][0]["items"][0]["quantity"] == 10

    res = client.put(url, headers=doctor_headers, json={"record": {"final_diagnosis": "Acute bronchitis"}, "complete": True})
    data = res.json()
    assert data["status"] == "completed"
    assert data["medical_record"]["diagnosis"] == "Bronchitis"
    assert data["medical_record"]["final_diagnosis"] == "Acute bronchitis"

    assert any(n["type"] == "prescription_ready" for n in list_notifications(pharmacist["id"]))
    assert any(n["type"] == "consultation_completed" for n in list_notifications(admin["id"]))

    # a completed consultation cannot be completed twice
    assert client.put(url, headers=doctor_headers, json={"complete": True}).status_code == 400

    records = client.get("/api/patient/records", headers=patient_headers).json()
    assert records[0]["final_diagnosis"] == "Acute bronchitis"
    assert records[0]["prescriptions"][0]["notes"] == "After meals"


def test_consultation_by_another_doctor_forbidden(client, doctor, patient):
    other = create_user("sara@clinic.org", "Sara Das", Role.DOCTOR, STAFF_PASSWORD)
    booking = book_patient_appointment(patient["id"], tomorrow_at(10))
    approve_appointment(booking.appointment_id, doctor["id"])
    token = client.post("/api/auth/login", json={"email": other["email"], "password": STAFF_PASSWORD}).json()["token"]
    res = client.put(
        f"/api/doctor/appointments/{booking.appointment_id}/consultation",
        headers={"Authorization": f"Bearer {token}"},
        json={"record": {"notes": "x"}},
    )
    assert res.status_code == 403


def test_doctor_dashboard_counts(client, doctor, doctor_headers, patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(10))
    approve_appointment(booking.appointment_id, doctor["id"])
    dash = client.get("/api/doctor/dashboard", headers=doctor_headers).json()
    assert dash["by_status"]["approved"] == 1
    assert dash["patients"] == 1

