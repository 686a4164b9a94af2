from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select

from .audit import _record
from .auth_models import Role, User
from .billing_models import (
    AuditAction,
    AuditEntityType,
    Invoice,
    InvoiceStatus,
    TreatmentCase,
    TreatmentCaseStatus,
)
from .db import db_session
from .exceptions import BusinessRuleError, NotFoundError
from .gst import ZERO, money, to_decimal
from .logger import get_logger

logger = get_logger(__name__)

_CASE_FIELDS = ("title", "description", "diagnosis", "estimated_cost", "notes", "doctor_id", "start_date")


def _billing_summary(case: TreatmentCase) -> dict:
    live = [i for i in case.invoices if i.status != InvoiceStatus.CANCELLED]
    billed = sum((to_decimal(i.total_amount) for i in live), ZERO)
    paid = sum((to_decimal(i.amount_paid) for i in live), ZERO)
    return {
        "total_billed": billed,
        "total_paid": paid,
        "total_due": sum((i.amount_due for i in live), ZERO),
        "invoice_count": len(live),
        "pending_count": sum(1 for i in live if i.status in (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL)),
    }


def case_flat(c: TreatmentCase, detail: bool = False) -> dict:
    data = {
        "id": c.id,
        "case_number": c.case_number,
        "patient_id": c.patient_id,
        "patient_name": c.patient.full_name if c.patient else None,
        "doctor_id": c.doctor_id,
        "doctor_name": c.doctor.full_name if c.doctor else None,
        "title": c.title,
        "description": c.description,
        "diagnosis": c.diagnosis,
        "status": c.status.value,
        "start_date": c.start_date,
        "end_date": c.end_date,
        "estimated_cost": c.estimated_cost,
        "notes": c.notes,
        "created_at": c.created_at,
        "billing": _billing_summary(c),
    }
    if detail:
        data["invoices"] = [
            {
                "id": i.id,
                "invoice_number": i.invoice_number,
                "status": i.status.value,
                "invoice_date": i.invoice_date,
                "total_amount": i.total_amount,
                "amount_paid": i.amount_paid,
                "amount_due": i.amount_due,
            }
            for i in sorted(c.invoices, key=lambda i: i.invoice_date)
        ]
    return data


def _get_case(s, case_id: str) -> TreatmentCase:
    c = s.get(TreatmentCase, case_id)
    if not c:
        raise NotFoundError("Treatment case not found.")
    return c


def _next_case_number(s) -> str:
    numbers = s.scalars(select(TreatmentCase.case_number).where(TreatmentCase.case_number.like("CASE-%")))
    used = [int(n.split("-")[-1]) for n in numbers if n.split("-")[-1].isdigit()]
    return f"CASE-{(max(used) + 1 if used else 1):06d}"


def _check_doctor(s, doctor_id: str | None) -> None:
    if doctor_id:
        doctor = s.get(User, doctor_id)
        if not doctor or doctor.role != Role.DOCTOR:
            raise NotFoundError("Doctor not found.")


def create_case(
    patient_id: str,
    title: str,
    doctor_id: str | None = None,
    description: str | None = None,
    diagnosis: str | None = None,
    start_date: date | None = None,
    estimated_cost: Decimal | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> dict:
    if not (title or "").strip():
        raise BusinessRuleError("Title is required.")
    with db_session() as s:
        patient = s.get(User, patient_id)
        if not patient or patient.role != Role.PATIENT:
            raise NotFoundError("Patient not found.")
        _check_doctor(s, doctor_id)

        c = TreatmentCase(
            case_number=_next_case_number(s),
            patient_id=patient.id,
            doctor_id=doctor_id,
            title=title.strip(),
            description=description,
            diagnosis=diagnosis,
            start_date=start_date or date.today(),
            estimated_cost=money(estimated_cost) if estimated_cost is not None else None,
            notes=notes,
            created_by=created_by,
        )
        s.add(c)
        s.flush()
        _record(
            s, AuditEntityType.TREATMENT_CASE, c.id, AuditAction.CREATE, identifier=c.case_number,
            new={"title": c.title, "patient_id": c.patient_id}, performed_by=created_by,
        )
        logger.info("Treatment case %s opened for %s", c.case_number, patient.email)
        return case_flat(c)


def list_cases(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status: TreatmentCaseStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    conds = []
    if patient_id:
        conds.append(TreatmentCase.patient_id == patient_id)
    if doctor_id:
        conds.append(TreatmentCase.doctor_id == doctor_id)
    if status:
        conds.append(TreatmentCase.status == TreatmentCaseStatus(status))
    page = max(page, 1)
    with db_session() as s:
        total = s.scalar(select(func.count(TreatmentCase.id)).where(*conds)) or 0
        rows = s.scalars(
            select(TreatmentCase).where(*conds).order_by(TreatmentCase.created_at.desc())
            .offset((page - 1) * limit).limit(limit)
        )
        return {"items": [case_flat(c) for c in rows], "total": total, "page": page, "limit": limit}


def get_case(case_id: str, patient_id: str | None = None) -> dict:
    with db_session() as s:
        c = _get_case(s, case_id)
        if patient_id and c.patient_id != patient_id:
            raise NotFoundError("Treatment case not found.")
        return case_flat(c, detail=True)


def update_case(case_id: str, performed_by: str | None = None, **fields) -> dict:
    with db_session() as s:
        c = _get_case(s, case_id)
        if c.status == TreatmentCaseStatus.CANCELLED:
            raise BusinessRuleError("Cancelled cases cannot be edited.")
        old = {f: getattr(c, f) for f in _CASE_FIELDS}
        if fields.get("doctor_id"):
            _check_doctor(s, fields["doctor_id"])
        for f in _CASE_FIELDS:
            if fields.get(f) is not None:
                setattr(c, f, money(fields[f]) if f == "estimated_cost" else fields[f])
        _record(
            s, AuditEntityType.TREATMENT_CASE, c.id, AuditAction.UPDATE, identifier=c.case_number,
            old=old, new={f: getattr(c, f) for f in _CASE_FIELDS}, performed_by=performed_by,
        )
        s.flush()
        return case_flat(c)


def change_case_status(
    case_id: str, new_status: TreatmentCaseStatus, end_date: date | None = None, performed_by: str | None = None
) -> dict:
    new_status = TreatmentCaseStatus(new_status)
    with db_session() as s:
        c = _get_case(s, case_id)
        if c.status == new_status:
            raise BusinessRuleError(f"Case is already {new_status.value}.")
        if c.status in (TreatmentCaseStatus.COMPLETED, TreatmentCaseStatus.CANCELLED) and \
                new_status != TreatmentCaseStatus.ACTIVE:
            raise BusinessRuleError(f"A {c.status.value} case can only be reopened.")
        old = c.status
        c.status = new_status
        if new_status == TreatmentCaseStatus.COMPLETED:
            c.end_date = end_date or date.today()
        elif new_status == TreatmentCaseStatus.ACTIVE:
            c.end_date = None
        _record(
            s, AuditEntityType.TREATMENT_CASE, c.id, AuditAction.STATUS_CHANGE, identifier=c.case_number,
            old={"status": old}, new={"status": new_status}, performed_by=performed_by,
        )
        s.flush()
        return case_flat(c)


def link_invoice(case_id: str, invoice_id: str, performed_by: str | None = None) -> dict:
    with db_session() as s:
        c = _get_case(s, case_id)
        inv = s.get(Invoice, invoice_id)
        if not inv:
            raise NotFoundError("Invoice not found.")
        if inv.patient_id != c.patient_id:
            raise BusinessRuleError("The invoice belongs to another patient.")
        if inv.treatment_case_id and inv.treatment_case_id != c.id:
            raise BusinessRuleError("The invoice is linked to another case.")
        c.invoices.append(inv)
        _record(
            s, AuditEntityType.TREATMENT_CASE, c.id, AuditAction.UPDATE, identifier=c.case_number,
            extra={"linked_invoice": inv.invoice_number}, performed_by=performed_by,
        )
        s.flush()
        return case_flat(c, detail=True)


def unlink_invoice(case_id: str, invoice_id: str, performed_by: str | None = None) -> dict:
    with db_session() as s:
        c = _get_case(s, case_id)
        inv = next((i for i in c.invoices if i.id == invoice_id), None)
        if inv is None:
            raise NotFoundError("Invoice is not linked to this case.")
        c.invoices.remove(inv)
        _record(
            s, AuditEntityType.TREATMENT_CASE, c.id, AuditAction.UPDATE, identifier=c.case_number,
            extra={"unlinked_invoice": inv.invoice_number}, performed_by=performed_by,
        )
        s.flush()
        return case_flat(c, detail=True)


def patient_cases(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(TreatmentCase).where(TreatmentCase.patient_id == patient_id).order_by(TreatmentCase.start_date.desc())
        )
        return [case_flat(c) for c in rows]
