from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from .audit import entity_history, list_audit_logs
from .auth_service import CurrentUser
from .billing_models import (
    AuditAction,
    AuditEntityType,
    BillType,
    CreditNoteStatus,
    InvoiceItemType,
    InvoiceStatus,
    LedgerEntryType,
    PaymentMethod,
    PaymentStatus,
    TreatmentCaseStatus,
)
from .billing_service import (
    add_invoice_item,
    add_payment,
    cancel_invoice,
    change_invoice_status,
    create_invoice,
    create_invoice_from_appointment,
    create_pharmacy_bill,
    create_quick_bill,
    create_refund,
    delete_invoice,
    delete_invoice_item,
    get_invoice,
    get_settings,
    list_invoices,
    list_payments,
    list_refunds,
    update_invoice,
    update_invoice_item,
    update_settings,
)
from .credit_notes import (
    change_credit_note_status,
    create_credit_note,
    get_credit_note,
    invoice_credit_notes,
    list_credit_notes,
)
from .deps import require_admin, require_pharmacy, require_staff
from .ledger import create_adjustment, create_opening_balance, ledger_summary, list_entries, patient_balance
from .prescription_billing import (
    create_invoice_from_prescription,
    prescription_billing_status,
    prescriptions_awaiting_billing,
    sync_prescription_billing_status,
)
from .reports import dashboard_stats, gst_summary, outstanding_invoices, patient_billing_history, revenue_report
from .stock_billing import check_stock_availability, deduct_stock_for_invoice, restore_stock_for_invoice
from .treatment_cases import (
    change_case_status,
    create_case,
    get_case,
    link_invoice,
    list_cases,
    unlink_invoice,
    update_case,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Schemas

class LineIn(BaseModel):
    item_type: InvoiceItemType = InvoiceItemType.SERVICE
    description: str | None = None
    inventory_item_id: str | None = None
    batch_id: str | None = None
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)
    discount_percent: Decimal | None = Field(default=None, ge=0, le=100)
    tax_rate: Decimal | None = Field(default=None, ge=0)
    hsn_code: str | None = None


class InvoiceIn(BaseModel):
    patient_id: str
    items: list[LineIn] = Field(default_factory=list)
    status: Literal["draft", "pending"] = "draft"
    bill_type: BillType = BillType.STANDARD
    appointment_id: str | None = None
    treatment_case_id: str | None = None
    notes: str | None = None
    extra_discount: Decimal = Field(default=Decimal("0"), ge=0)
    invoice_date: date | None = None
    due_date: date | None = None


class InvoiceUpdateIn(BaseModel):
    notes: str | None = None
    due_date: date | None = None
    extra_discount: Decimal | None = Field(default=None, ge=0)
    treatment_case_id: str | None = None


class StatusIn(BaseModel):
    status: InvoiceStatus
    reason: str | None = None


class ReasonIn(BaseModel):
    reason: str | None = None


class PaymentIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod
    reference_number: str | None = None
    notes: str | None = None
    payment_date: datetime | None = None


class RefundIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
    method: PaymentMethod | None = None
    reference_number: str | None = None


class FromAppointmentIn(BaseModel):
    appointment_id: str
    extra_items: list[LineIn] = Field(default_factory=list)
    status: Literal["draft", "pending"] = "draft"


class FromPrescriptionIn(BaseModel):
    prescription_id: str
    include_consultation: bool = False


class QuickBillIn(BaseModel):
    patient_id: str
    items: list[LineIn] = Field(default_factory=list)
    consultation_fee: Decimal | None = Field(default=None, ge=0)
    doctor_id: str | None = None
    appointment_id: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    amount_paid: Decimal | None = Field(default=None, ge=0)
    reference_number: str | None = None
    notes: str | None = None


class PharmacyLineIn(BaseModel):
    inventory_item_id: str
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)
    discount_percent: Decimal | None = Field(default=None, ge=0, le=100)
    batch_id: str | None = None


class PharmacyBillIn(BaseModel):
    patient_id: str
    items: list[PharmacyLineIn]
    payment_method: PaymentMethod = PaymentMethod.CASH
    amount_paid: Decimal | None = Field(default=None, ge=0)
    prescription_id: str | None = None
    reference_number: str | None = None
    notes: str | None = None


class StockLineIn(BaseModel):
    inventory_item_id: str
    quantity: int = Field(..., gt=0)


class CreditLineIn(BaseModel):
    invoice_item_id: int
    quantity: int | None = Field(default=None, gt=0)


class CreditNoteIn(BaseModel):
    invoice_id: str
    reason: str = Field(..., min_length=1)
    items: list[CreditLineIn] | None = None
    as_draft: bool = False


class CreditNoteStatusIn(BaseModel):
    status: CreditNoteStatus


class AdjustmentIn(BaseModel):
    patient_id: str
    amount: Decimal
    description: str = Field(..., min_length=1)


class OpeningBalanceIn(BaseModel):
    patient_id: str
    amount: Decimal


class CaseIn(BaseModel):
    patient_id: str
    title: str = Field(..., min_length=1)
    doctor_id: str | None = None
    description: str | None = None
    diagnosis: str | None = None
    start_date: date | None = None
    estimated_cost: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class CaseUpdateIn(BaseModel):
    title: str | None = None
    doctor_id: str | None = None
    description: str | None = None
    diagnosis: str | None = None
    start_date: date | None = None
    estimated_cost: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class CaseStatusIn(BaseModel):
    status: TreatmentCaseStatus
    end_date: date | None = None


def _lines(items: list[BaseModel] | None) -> list[dict]:
    return [line.model_dump(exclude_none=True) for line in items or []]


# Settings

@router.get("/settings")
def settings(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return get_settings()


@router.put("/settings")
def save_settings(values: dict[str, Any], user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return update_settings(values, performed_by=user.id)


# Invoices

@router.get("/invoices")
def invoices(
    status: InvoiceStatus | None = None,
    patient_id: str | None = None,
    appointment_id: str | None = None,
    treatment_case_id: str | None = None,
    bill_type: BillType | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_pharmacy),
) -> dict[str, Any]:
    return list_invoices(
        status, patient_id, appointment_id, treatment_case_id, bill_type, date_from, date_to, search, page, limit
    )


@router.post("/invoices")
def new_invoice(payload: InvoiceIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_invoice(
        payload.patient_id,
        _lines(payload.items),
        status=InvoiceStatus(payload.status),
        bill_type=payload.bill_type,
        appointment_id=payload.appointment_id,
        treatment_case_id=payload.treatment_case_id,
        notes=payload.notes,
        extra_discount=payload.extra_discount,
        invoice_date=payload.invoice_date,
        due_date=payload.due_date,
        created_by=user.id,
    )


@router.get("/invoices/{invoice_id}")
def invoice(invoice_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return get_invoice(invoice_id)


@router.patch("/invoices/{invoice_id}")
def edit_invoice(invoice_id: str, payload: InvoiceUpdateIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return update_invoice(invoice_id, performed_by=user.id, **payload.model_dump(exclude_none=True))


@router.post("/invoices/{invoice_id}/status")
def invoice_status(invoice_id: str, payload: StatusIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return change_invoice_status(invoice_id, payload.status, payload.reason, performed_by=user.id)


@router.post("/invoices/{invoice_id}/cancel")
def invoice_cancel(invoice_id: str, payload: ReasonIn | None = None, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return cancel_invoice(invoice_id, payload.reason if payload else None, performed_by=user.id)


@router.delete("/invoices/{invoice_id}")
def invoice_delete(invoice_id: str, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    delete_invoice(invoice_id, performed_by=user.id)
    return {"ok": True}


@router.post("/invoices/{invoice_id}/items")
def invoice_add_item(invoice_id: str, payload: LineIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return add_invoice_item(invoice_id, payload.model_dump(exclude_none=True), performed_by=user.id)


@router.patch("/invoices/{invoice_id}/items/{item_id}")
def invoice_edit_item(
    invoice_id: str, item_id: int, payload: LineIn, user: CurrentUser = Depends(require_pharmacy)
) -> dict[str, Any]:
    return update_invoice_item(invoice_id, item_id, payload.model_dump(exclude_unset=True), performed_by=user.id)


@router.delete("/invoices/{invoice_id}/items/{item_id}")
def invoice_delete_item(invoice_id: str, item_id: int, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return delete_invoice_item(invoice_id, item_id, performed_by=user.id)


@router.get("/invoices/{invoice_id}/credit-notes")
def invoice_notes(invoice_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return invoice_credit_notes(invoice_id)


@router.get("/invoices/{invoice_id}/history")
def invoice_history(invoice_id: str, user: CurrentUser = Depends(require_pharmacy)) -> list[dict]:
    return entity_history(AuditEntityType.INVOICE, invoice_id)


# Payments / refunds

@router.post("/invoices/{invoice_id}/payments")
def pay(invoice_id: str, payload: PaymentIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return add_payment(
        invoice_id,
        payload.amount,
        payload.method,
        reference_number=payload.reference_number,
        notes=payload.notes,
        payment_date=payload.payment_date,
        received_by=user.id,
    )


@router.get("/payments")
def payments(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    method: PaymentMethod | None = None,
    status: PaymentStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(require_pharmacy),
) -> dict[str, Any]:
    return list_payments(invoice_id, patient_id, method, status, date_from, date_to, page, limit)


@router.post("/payments/{payment_id}/refunds")
def refund(payment_id: str, payload: RefundIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return create_refund(
        payment_id, payload.amount, payload.reason, payload.method, payload.reference_number, refunded_by=user.id
    )


@router.get("/refunds")
def refunds(
    payment_id: str | None = None,
    invoice_id: str | None = None,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(require_pharmacy),
) -> dict[str, Any]:
    return list_refunds(payment_id, invoice_id, page, limit)


# Billing flows

@router.post("/from-appointment")
def bill_appointment(payload: FromAppointmentIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_invoice_from_appointment(
        payload.appointment_id, _lines(payload.extra_items), InvoiceStatus(payload.status), created_by=user.id
    )


@router.post("/from-prescription")
def bill_prescription(payload: FromPrescriptionIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_invoice_from_prescription(payload.prescription_id, payload.include_consultation, created_by=user.id)


@router.post("/quick-bill")
def quick_bill(payload: QuickBillIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_quick_bill(
        payload.patient_id,
        _lines(payload.items),
        consultation_fee=payload.consultation_fee,
        doctor_id=payload.doctor_id,
        appointment_id=payload.appointment_id,
        payment_method=payload.payment_method,
        amount_paid=payload.amount_paid,
        reference_number=payload.reference_number,
        notes=payload.notes,
        created_by=user.id,
    )


@router.post("/pharmacy-bill")
def pharmacy_bill(payload: PharmacyBillIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_pharmacy_bill(
        payload.patient_id,
        _lines(payload.items),
        payment_method=payload.payment_method,
        amount_paid=payload.amount_paid,
        prescription_id=payload.prescription_id,
        reference_number=payload.reference_number,
        notes=payload.notes,
        created_by=user.id,
    )


# Stock

@router.post("/stock/check")
def stock_check(lines: list[StockLineIn], user: CurrentUser = Depends(require_pharmacy)) -> list[dict]:
    return check_stock_availability([line.model_dump() for line in lines])


@router.post("/invoices/{invoice_id}/stock/deduct")
def stock_deduct(invoice_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return deduct_stock_for_invoice(invoice_id, performed_by=user.id)


@router.post("/invoices/{invoice_id}/stock/restore")
def stock_restore(invoice_id: str, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return restore_stock_for_invoice(invoice_id, performed_by=user.id)


# Prescriptions

@router.get("/prescriptions/awaiting")
def awaiting(limit: int = 100, user: CurrentUser = Depends(require_pharmacy)) -> list[dict]:
    return prescriptions_awaiting_billing(limit)


@router.get("/prescriptions/{prescription_id}/status")
def rx_status(prescription_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return prescription_billing_status(prescription_id)


@router.post("/invoices/{invoice_id}/sync-prescriptions")
def rx_sync(invoice_id: str, user: CurrentUser = Depends(require_pharmacy)) -> list[dict]:
    return sync_prescription_billing_status(invoice_id)


# Credit notes

@router.get("/credit-notes")
def credit_notes(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status: CreditNoteStatus | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_pharmacy),
) -> dict[str, Any]:
    return list_credit_notes(invoice_id, patient_id, status, page, limit)


@router.post("/credit-notes")
def new_credit_note(payload: CreditNoteIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    items = _lines(payload.items) if payload.items is not None else None
    return create_credit_note(payload.invoice_id, payload.reason, items, payload.as_draft, created_by=user.id)


@router.get("/credit-notes/{credit_note_id}")
def credit_note(credit_note_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return get_credit_note(credit_note_id)


@router.post("/credit-notes/{credit_note_id}/status")
def credit_note_status(
    credit_note_id: str, payload: CreditNoteStatusIn, user: CurrentUser = Depends(require_admin)
) -> dict[str, Any]:
    return change_credit_note_status(credit_note_id, payload.status, performed_by=user.id)


# Ledger

@router.get("/ledger")
def ledger(
    patient_id: str | None = None,
    entry_type: LedgerEntryType | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(require_pharmacy),
) -> dict[str, Any]:
    return list_entries(patient_id, entry_type, date_from, date_to, page, limit)


@router.get("/ledger/summary")
def ledger_totals(
    date_from: date | None = None, date_to: date | None = None, user: CurrentUser = Depends(require_pharmacy)
) -> dict[str, Any]:
    return ledger_summary(date_from, date_to)


@router.get("/ledger/balance/{patient_id}")
def ledger_balance(patient_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return patient_balance(patient_id)


@router.post("/ledger/adjustments")
def ledger_adjustment(payload: AdjustmentIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return create_adjustment(payload.patient_id, payload.amount, payload.description, created_by=user.id)


@router.post("/ledger/opening-balance")
def ledger_opening(payload: OpeningBalanceIn, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return create_opening_balance(payload.patient_id, payload.amount, created_by=user.id)


# Audit

@router.get("/audit")
def audit(
    entity_type: AuditEntityType | None = None,
    entity_id: str | None = None,
    action: AuditAction | None = None,
    performed_by: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(require_admin),
) -> dict[str, Any]:
    return list_audit_logs(entity_type, entity_id, action, performed_by, date_from, date_to, page, limit)


# Treatment cases

@router.get("/cases")
def cases(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status: TreatmentCaseStatus | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require_staff),
) -> dict[str, Any]:
    return list_cases(patient_id, doctor_id, status, page, limit)


@router.post("/cases")
def new_case(payload: CaseIn, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return create_case(created_by=user.id, **payload.model_dump())


@router.get("/cases/{case_id}")
def case(case_id: str, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return get_case(case_id)


@router.patch("/cases/{case_id}")
def edit_case(case_id: str, payload: CaseUpdateIn, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return update_case(case_id, performed_by=user.id, **payload.model_dump(exclude_none=True))


@router.post("/cases/{case_id}/status")
def case_status(case_id: str, payload: CaseStatusIn, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return change_case_status(case_id, payload.status, payload.end_date, performed_by=user.id)


@router.post("/cases/{case_id}/invoices/{invoice_id}")
def case_link(case_id: str, invoice_id: str, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return link_invoice(case_id, invoice_id, performed_by=user.id)


@router.delete("/cases/{case_id}/invoices/{invoice_id}")
def case_unlink(case_id: str, invoice_id: str, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return unlink_invoice(case_id, invoice_id, performed_by=user.id)


# Reports

@router.get("/reports/revenue")
def report_revenue(
    date_from: date | None = None,
    date_to: date | None = None,
    group_by: Literal["day", "week", "month"] = "day",
    user: CurrentUser = Depends(require_admin),
) -> dict[str, Any]:
    return revenue_report(date_from, date_to, group_by)


@router.get("/reports/outstanding")
def report_outstanding(as_of: date | None = None, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return outstanding_invoices(as_of)


@router.get("/reports/dashboard")
def report_dashboard(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return dashboard_stats()


@router.get("/reports/gst")
def report_gst(
    date_from: date | None = None, date_to: date | None = None, user: CurrentUser = Depends(require_admin)
) -> dict[str, Any]:
    return gst_summary(date_from, date_to)


@router.get("/reports/patients/{patient_id}")
def report_patient(patient_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return patient_billing_history(patient_id)
