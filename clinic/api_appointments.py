from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from .auth_service import CurrentUser
from .deps import require_admin, require_doctor
from .models import AppointmentStatus
from .services import (
    approve_appointment,
    cancel_appointment,
    doctor_agenda_flat,
    doctor_dashboard,
    get_appointment,
    list_appointments,
    patient_records,
    reject_appointment,
    reschedule_appointment,
    save_consultation,
)

router = APIRouter(prefix="/api", tags=["appointments"])


# Schemas

class ApproveIn(BaseModel):
    doctor_id: str | None = None
    notes: str | None = None


class ReasonIn(BaseModel):
    reason: str | None = None


class RescheduleIn(BaseModel):
    scheduled_at: datetime
    reason: str | None = None


class RecordIn(BaseModel):
    chief_complaint: str | None = None
    symptoms: str | None = None
    diagnosis: str | None = None
    final_diagnosis: str | None = None
    vitals: dict[str, Any] | None = None
    notes: str | None = None


class PrescriptionItemIn(BaseModel):
    medication_name: str = Field(..., min_length=1)
    dosage: str | None = None
    frequency: str | None = None
    duration: str | None = None
    quantity: int = Field(default=1, ge=1)
    instructions: str | None = None
    inventory_item_id: str | None = None
    is_billable: bool = True
    unit_price: Decimal | None = Field(default=None, ge=0)


class PrescriptionIn(BaseModel):
    notes: str | None = None
    items: list[PrescriptionItemIn] = Field(default_factory=list)


class ConsultationIn(BaseModel):
    record: RecordIn | None = None
    prescription: PrescriptionIn | None = None
    complete: bool = False


# ADMIN: appointment workflow

@router.get("/admin/appointments")
def admin_list(
    status: AppointmentStatus | None = None,
    doctor_id: str | None = None,
    patient_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_admin),
) -> dict[str, Any]:
    return list_appointments(status, doctor_id, patient_id, date_from, date_to, page, limit)


@router.get("/admin/appointments/{appointment_id}")
def admin_get(appointment_id: str, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return get_appointment(appointment_id)


@router.post("/admin/appointments/{appointment_id}/approve")
def admin_approve(appointment_id: str, payload: ApproveIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return {"ok": True, "appointment": approve_appointment(appointment_id, payload.doctor_id, payload.notes)}


@router.post("/admin/appointments/{appointment_id}/reject")
def admin_reject(appointment_id: str, payload: ReasonIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return {"ok": True, "appointment": reject_appointment(appointment_id, payload.reason)}


@router.post("/admin/appointments/{appointment_id}/cancel")
def admin_cancel(appointment_id: str, payload: ReasonIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return {"ok": True, "appointment": cancel_appointment(appointment_id, payload.reason)}


@router.post("/admin/appointments/{appointment_id}/reschedule")
def admin_reschedule(
    appointment_id: str, payload: RescheduleIn, user: CurrentUser = Depends(require_admin)
) -> dict[str, Any]:
    return {"ok": True, "appointment": reschedule_appointment(appointment_id, payload.scheduled_at, payload.reason)}


# DOCTOR: own appointments and consultations

@router.get("/doctor/appointments")
def doctor_list(
    status: AppointmentStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_doctor),
) -> dict[str, Any]:
    return list_appointments(status, user.id, None, date_from, date_to, page, limit)


@router.get("/doctor/appointments/{appointment_id}")
def doctor_get(appointment_id: str, user: CurrentUser = Depends(require_doctor)) -> dict[str, Any]:
    return get_appointment(appointment_id, doctor_id=user.id)


@router.get("/doctor/agenda")
def doctor_agenda(day: date | None = None, user: CurrentUser = Depends(require_doctor)) -> list[dict]:
    return doctor_agenda_flat(user.id, day or date.today())


@router.get("/doctor/dashboard")
def doctor_dash(user: CurrentUser = Depends(require_doctor)) -> dict[str, Any]:
    return doctor_dashboard(user.id)


@router.put("/doctor/appointments/{appointment_id}/consultation")
def doctor_consultation(
    appointment_id: str, payload: ConsultationIn, user: CurrentUser = Depends(require_doctor)
) -> dict[str, Any]:
    record = payload.record.model_dump(exclude_unset=True) if payload.record else None
    prescription = payload.prescription.model_dump() if payload.prescription else None
    return save_consultation(appointment_id, user.id, record, prescription, payload.complete)


@router.get("/doctor/patients/{patient_id}/records")
def doctor_patient_records(patient_id: str, user: CurrentUser = Depends(require_doctor)) -> list[dict]:
    return patient_records(patient_id)
