from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .auth_service import CurrentUser
from .billing_models import InvoiceStatus
from .billing_service import get_invoice, list_invoices
from .deps import require_patient
from .models import AppointmentStatus
from .pharmacy import patient_prescriptions
from .reports import patient_billing_history
from .services import book_patient_appointment, cancel_appointment, get_appointment, list_appointments, patient_records
from .treatment_cases import get_case, patient_cases

router = APIRouter(prefix="/api/patient", tags=["patient"])


class BookingIn(BaseModel):
    appointment_date: date
    appointment_time: time
    doctor_id: str | None = None
    service: str | None = None
    reason: str | None = None


class CancelIn(BaseModel):
    reason: str | None = None


# Appointments

@router.get("/appointments")
def my_appointments(
    status: AppointmentStatus | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_patient),
) -> dict[str, Any]:
    return list_appointments(status=status, patient_id=user.id, page=page, limit=limit)


@router.post("/appointments")
def book(payload: BookingIn, user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    result = book_patient_appointment(
        user.id,
        datetime.combine(payload.appointment_date, payload.appointment_time),
        doctor_id=payload.doctor_id,
        service=payload.service,
        reason=payload.reason,
    )
    return {"ok": result.ok, "message": result.message, "appointment_id": result.appointment_id}


@router.get("/appointments/{appointment_id}")
def my_appointment(appointment_id: str, user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    return get_appointment(appointment_id, patient_id=user.id)


@router.post("/appointments/{appointment_id}/cancel")
def cancel(appointment_id: str, payload: CancelIn, user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    return {"ok": True, "appointment": cancel_appointment(appointment_id, payload.reason, patient_id=user.id)}


# Clinical history

@router.get("/records")
def my_records(user: CurrentUser = Depends(require_patient)) -> list[dict]:
    return patient_records(user.id)


@router.get("/prescriptions")
def my_prescriptions(user: CurrentUser = Depends(require_patient)) -> list[dict]:
    return patient_prescriptions(user.id)


# Billing

@router.get("/invoices")
def my_invoices(
    status: InvoiceStatus | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_patient),
) -> dict[str, Any]:
    return list_invoices(status=status, patient_id=user.id, page=page, limit=limit)


@router.get("/invoices/{invoice_id}")
def my_invoice(invoice_id: str, user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    return get_invoice(invoice_id, patient_id=user.id)


@router.get("/billing")
def my_billing(user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    return patient_billing_history(user.id)


@router.get("/cases")
def my_cases(user: CurrentUser = Depends(require_patient)) -> list[dict]:
    return patient_cases(user.id)


@router.get("/cases/{case_id}")
def my_case(case_id: str, user: CurrentUser = Depends(require_patient)) -> dict[str, Any]:
    return get_case(case_id, patient_id=user.id)
