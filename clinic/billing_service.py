"""
Billing: settings, invoices and their lines, payments, refunds, and the
reception (quick bill) and pharmacy counter flows.

Invoice state
- draft / pending are set by hand (issue, back to draft)
- partial / paid / refunded follow from the payments:
  amount_paid = completed payments - completed refunds
- cancelled is terminal; cancelling voids pending payments, puts deducted
  stock back and reverses the ledger debit
"""
from __future__ import annotations

import enum
import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select

from .audit import _record
from .auth_models import Role, User
from .billing_models import (
    AuditAction,
    AuditEntityType,
    BillingSetting,
    BillType,
    CreditNoteStatus,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
)
from .db import db_session, utcnow
from .exceptions import BusinessRuleError, NotFoundError
from .gst import GST_RATES, ZERO, calculate_item, calculate_totals, default_gst_rate, default_hsn_code, money
from .gst import should_use_igst, to_decimal, validate_gstin
from .inventory_models import InventoryItem, InventoryItemType
from .inventory_service import _fifo_batch
from .ledger import _post_adjustment, _post_invoice, _post_payment, _post_refund
from .logger import get_logger
from .models import Appointment, Prescription, PrescriptionBillingStatus
from .stock_billing import StockSyncResult, _deduct_for_invoice, _restore_for_invoice

logger = get_logger(__name__)

INVOICE_START_NUMBER = 1001

DEFAULT_SETTINGS: dict[str, tuple[Any, str]] = {
    "invoice_prefix": ("INV", "Prefix of invoice numbers"),
    "payment_due_days": (7, "Days between invoice date and due date"),
    "tax_enabled": (True, "Charge GST on invoice lines"),
    "default_tax_rate": (18, "GST rate used when a line has none"),
    "clinic_name": ("Clinic", "Name printed on invoices"),
    "clinic_address": ("", "Address printed on invoices"),
    "clinic_state": ("Tamil Nadu", "State of the clinic, decides CGST+SGST or IGST"),
    "clinic_gstin": ("", "GSTIN of the clinic"),
    "auto_add_consultation_fee": (True, "Add the doctor's fee to appointment invoices"),
    "currency": ("INR", "Invoice currency"),
}

# status changes that can be requested by hand
_MANUAL_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.PENDING, InvoiceStatus.CANCELLED},
    InvoiceStatus.PENDING: {InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED},
    InvoiceStatus.PARTIAL: {InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: {InvoiceStatus.CANCELLED},
}
_EDITABLE = (InvoiceStatus.DRAFT, InvoiceStatus.PENDING)
_COUNTED_PAYMENTS = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)


def _enum(cls: type[enum.Enum], value: Any) -> Any:
    if value is None or isinstance(value, cls):
        return value
    try:
        return cls(value)
    except ValueError:
        raise BusinessRuleError(f"Invalid {cls.__name__}: {value}")


# =========================
# Settings
# =========================
def _settings(s) -> dict:
    values = {k: v for k, (v, _) in DEFAULT_SETTINGS.items()}
    for row in s.scalars(select(BillingSetting)):
        values[row.key] = row.value
    return values


def _validate_setting(key: str, value: Any) -> Any:
    if key == "invoice_prefix":
        value = str(value or "").strip().upper()
        if not re.fullmatch(r"[A-Z0-9]{1,10}", value):
            raise BusinessRuleError("Invoice prefix must be 1-10 letters or digits.")
    elif key == "payment_due_days":
        value = int(value)
        if not 0 <= value <= 365:
            raise BusinessRuleError("Payment due days must be between 0 and 365.")
    elif key in ("tax_enabled", "auto_add_consultation_fee"):
        value = bool(value)
    elif key == "default_tax_rate":
        value = int(value)
        if value not in GST_RATES:
            raise BusinessRuleError(f"GST rate must be one of {', '.join(map(str, GST_RATES))}.")
    elif key == "clinic_gstin":
        value = str(value or "").strip().upper()
        if value and not validate_gstin(value):
            raise BusinessRuleError("Invalid GSTIN.")
    else:
        value = str(value or "").strip()
    return value


def get_settings() -> dict:
    with db_session() as s:
        return _settings(s)


def update_settings(values: dict, performed_by: str | None = None) -> dict:
    unknown = set(values) - set(DEFAULT_SETTINGS)
    if unknown:
        raise BusinessRuleError(f"Unknown settings: {', '.join(sorted(unknown))}")

    with db_session() as s:
        current = _settings(s)
        for key, raw in values.items():
            value = _validate_setting(key, raw)
            row = s.get(BillingSetting, key)
            if row is None:
                row = BillingSetting(key=key, description=DEFAULT_SETTINGS[key][1])
                s.add(row)
            row.value = value
            row.updated_by = performed_by
            if current.get(key) != value:
                _record(
                    s, AuditEntityType.BILLING_SETTING, key, AuditAction.UPDATE, identifier=key,
                    old={"value": current.get(key)}, new={"value": value}, performed_by=performed_by,
                )
        s.flush()
        return _settings(s)


def seed_settings(s) -> None:
    """Insert missing settings with their defaults (idempotent)."""
    for key, (value, description) in DEFAULT_SETTINGS.items():
        if s.get(BillingSetting, key) is None:
            s.add(BillingSetting(key=key, value=value, description=description))


# =========================
# Serializers
# =========================
def item_flat(li: InvoiceItem) -> dict:
    return {
        "id": li.id,
        "item_type": li.item_type.value,
        "description": li.description,
        "hsn_code": li.hsn_code,
        "quantity": li.quantity,
        "unit_price": li.unit_price,
        "discount_percent": li.discount_percent,
        "subtotal": li.subtotal,
        "discount_amount": li.discount_amount,
        "taxable_amount": li.taxable_amount,
        "tax_rate": li.tax_rate,
        "cgst_amount": li.cgst_amount,
        "sgst_amount": li.sgst_amount,
        "igst_amount": li.igst_amount,
        "tax_amount": li.tax_amount,
        "total_amount": li.total_amount,
        "inventory_item_id": li.inventory_item_id,
        "batch_id": li.batch_id,
        "prescription_item_id": li.prescription_item_id,
        "stock_deducted": li.stock_deducted,
        "stock_restored": li.stock_restored,
    }


def refund_flat(r: PaymentRefund) -> dict:
    return {
        "id": r.id,
        "payment_id": r.payment_id,
        "invoice_id": r.invoice_id,
        "amount": r.amount,
        "reason": r.reason,
        "method": r.method.value if r.method else None,
        "status": r.status.value,
        "reference_number": r.reference_number,
        "refunded_by": r.refunded_by,
        "created_at": r.created_at,
    }


def payment_flat(p: Payment) -> dict:
    return {
        "id": p.id,
        "invoice_id": p.invoice_id,
        "invoice_number": p.invoice.invoice_number if p.invoice else None,
        "patient_id": p.patient_id,
        "amount": p.amount,
        "method": p.method.value,
        "status": p.status.value,
        "reference_number": p.reference_number,
        "payment_date": p.payment_date,
        "notes": p.notes,
        "received_by": p.received_by,
        "refunded_amount": _refunded(p),
        "refunds": [refund_flat(r) for r in p.refunds],
    }


def invoice_flat(inv: Invoice, detail: bool = True) -> dict:
    data = {
        "id": inv.id,
        "invoice_number": inv.invoice_number,
        "patient_id": inv.patient_id,
        "patient_name": inv.patient.full_name if inv.patient else None,
        "appointment_id": inv.appointment_id,
        "treatment_case_id": inv.treatment_case_id,
        "bill_type": inv.bill_type.value,
        "status": inv.status.value,
        "invoice_date": inv.invoice_date,
        "due_date": inv.due_date,
        "subtotal": inv.subtotal,
        "discount_amount": inv.discount_amount,
        "extra_discount": inv.extra_discount,
        "taxable_amount": inv.taxable_amount,
        "cgst_amount": inv.cgst_amount,
        "sgst_amount": inv.sgst_amount,
        "igst_amount": inv.igst_amount,
        "tax_amount": inv.tax_amount,
        "total_amount": inv.total_amount,
        "amount_paid": inv.amount_paid,
        "amount_due": inv.amount_due,
        "is_igst": inv.is_igst,
        "place_of_supply": inv.place_of_supply,
        "notes": inv.notes,
        "paid_at": inv.paid_at,
        "cancelled_at": inv.cancelled_at,
        "cancellation_reason": inv.cancellation_reason,
        "created_at": inv.created_at,
    }
    if detail:
        data["items"] = [item_flat(li) for li in inv.items]
        data["payments"] = [payment_flat(p) for p in inv.payments]
        data["credit_notes"] = [
            {
                "id": cn.id,
                "credit_note_number": cn.credit_note_number,
                "status": cn.status.value,
                "total_amount": cn.total_amount,
            }
            for cn in inv.credit_notes
        ]
        data["credited_amount"] = sum(
            (to_decimal(cn.total_amount) for cn in inv.credit_notes if cn.status != CreditNoteStatus.CANCELLED), ZERO
        )
    return data


def _snapshot(inv: Invoice) -> dict:
    return {
        "status": inv.status,
        "total_amount": money(inv.total_amount),
        "amount_paid": money(inv.amount_paid),
        "extra_discount": money(inv.extra_discount),
        "due_date": inv.due_date,
        "notes": inv.notes,
    }


# =========================
# Invoice internals
# =========================
def _get_invoice(s, invoice_id: str) -> Invoice:
    inv = s.get(Invoice, invoice_id)
    if not inv:
        raise NotFoundError("Invoice not found.")
    return inv


def _get_patient(s, patient_id: str) -> User:
    patient = s.get(User, patient_id)
    if not patient or patient.role != Role.PATIENT:
        raise NotFoundError("Patient not found.")
    return patient


def _next_invoice_number(s, prefix: str) -> str:
    numbers = s.scalars(select(Invoice.invoice_number).where(Invoice.invoice_number.like(f"{prefix}-%")))
    used = [int(n.rsplit("-", 1)[1]) for n in numbers if n.rsplit("-", 1)[1].isdigit()]
    return f"{prefix}-{(max(used) + 1 if used else INVOICE_START_NUMBER):06d}"


def _apply_amounts(line: InvoiceItem, quantity: int, unit_price: Any, discount_percent: Any, tax_rate: Any,
                   is_igst: bool) -> None:
    a = calculate_item(quantity, unit_price, discount_percent, tax_rate, is_igst)
    line.quantity = a.quantity
    line.unit_price = money(a.unit_price)
    line.discount_percent = a.discount_percent
    line.tax_rate = a.tax_rate
    line.subtotal = a.subtotal
    line.discount_amount = a.discount_amount
    line.taxable_amount = a.taxable_amount
    line.cgst_amount = a.cgst_amount
    line.sgst_amount = a.sgst_amount
    line.igst_amount = a.igst_amount
    line.tax_amount = a.tax_amount
    line.total_amount = a.total_amount


def _default_price(s, inv_item: InventoryItem) -> Decimal:
    """Selling price of the first FIFO batch, else of the item."""
    batch = _fifo_batch(s, inv_item.id)
    if batch is not None and batch.selling_price:
        return to_decimal(batch.selling_price)
    return to_decimal(inv_item.selling_price)


def _build_line(s, inv: Invoice, data: dict, settings: dict) -> InvoiceItem:
    item_type = _enum(InvoiceItemType, data.get("item_type") or InvoiceItemType.SERVICE)

    inv_item = None
    if data.get("inventory_item_id"):
        inv_item = s.get(InventoryItem, data["inventory_item_id"])
        if inv_item is None:
            raise NotFoundError("Inventory item not found.")

    quantity = int(data.get("quantity") or 1)
    if quantity <= 0:
        raise BusinessRuleError("Quantity must be greater than zero.")

    price = data.get("unit_price")
    if price is None:
        if inv_item is None:
            raise BusinessRuleError("Unit price is required.")
        price = _default_price(s, inv_item)
    if to_decimal(price) < 0:
        raise BusinessRuleError("Unit price cannot be negative.")

    discount = to_decimal(data.get("discount_percent") or 0)
    if not ZERO <= discount <= 100:
        raise BusinessRuleError("Discount must be between 0 and 100 percent.")

    if not settings.get("tax_enabled", True):
        rate = ZERO
    elif data.get("tax_rate") is not None:
        rate = to_decimal(data["tax_rate"])
    elif inv_item is not None:
        rate = to_decimal(inv_item.tax_rate)
    else:
        rate = default_gst_rate(item_type.value)

    description = (data.get("description") or (inv_item.name if inv_item else "")).strip()
    if not description:
        raise BusinessRuleError("Line description is required.")

    line = InvoiceItem(
        item_type=item_type,
        description=description,
        hsn_code=data.get("hsn_code") or (inv_item.hsn_code if inv_item else None) or default_hsn_code(item_type.value),
        inventory_item_id=inv_item.id if inv_item else None,
        batch_id=data.get("batch_id"),
        prescription_item_id=data.get("prescription_item_id"),
    )
    _apply_amounts(line, quantity, price, discount, rate, inv.is_igst)
    return line


def _recalculate(inv: Invoice) -> None:
    t = calculate_totals(inv.items, inv.extra_discount)
    inv.subtotal = t.subtotal
    inv.discount_amount = t.discount_amount
    inv.taxable_amount = t.taxable_amount
    inv.cgst_amount = t.cgst_amount
    inv.sgst_amount = t.sgst_amount
    inv.igst_amount = t.igst_amount
    inv.tax_amount = t.tax_amount
    inv.total_amount = t.total_amount


def _sync_ledger(s, inv: Invoice, created_by: str | None = None) -> None:
    """
    Keep the ledger debit of the invoice equal to its total while issued,
    and at zero while draft or cancelled.
    """
    target = ZERO if inv.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED) else money(inv.total_amount)
    posted = money(inv.ledger_amount)
    delta = target - posted
    if delta == 0:
        return
    if posted == 0 and delta > 0:
        _post_invoice(s, inv, created_by)
    else:
        if inv.status == InvoiceStatus.CANCELLED:
            reason = f"Invoice {inv.invoice_number} cancelled"
        elif inv.status == InvoiceStatus.DRAFT:
            reason = f"Invoice {inv.invoice_number} returned to draft"
        else:
            reason = f"Invoice {inv.invoice_number} amended"
        _post_adjustment(s, inv.patient_id, delta, reason, "invoice", inv.id, created_by)
    inv.ledger_amount = target


def _refunded(p: Payment) -> Decimal:
    return sum((to_decimal(r.amount) for r in p.refunds if r.status == RefundStatus.COMPLETED), ZERO)


def _amount_paid(inv: Invoice) -> Decimal:
    paid = sum((to_decimal(p.amount) for p in inv.payments if p.status in _COUNTED_PAYMENTS), ZERO)
    refunded = sum((_refunded(p) for p in inv.payments), ZERO)
    return money(paid - refunded)


def _sync_prescription_billing(s, inv: Invoice) -> None:
    """Mirror the invoice status on the prescriptions billed by it."""
    s.flush()
    for rx in s.scalars(select(Prescription).where(Prescription.invoice_id == inv.id)):
        if inv.status == InvoiceStatus.PAID:
            rx.billing_status = PrescriptionBillingStatus.PAID
        elif inv.status == InvoiceStatus.PARTIAL:
            rx.billing_status = PrescriptionBillingStatus.PARTIAL
        elif inv.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
            rx.billing_status = PrescriptionBillingStatus.UNBILLED
            rx.invoice_id = None
        else:
            rx.billing_status = PrescriptionBillingStatus.INVOICED


def _settle_if_nothing_due(s, inv: Invoice, performed_by: str | None = None) -> StockSyncResult | None:
    """A pending invoice discounted down to zero is paid without any payment."""
    if inv.status != InvoiceStatus.PENDING or not inv.items or money(inv.total_amount) > 0:
        return None
    inv.status = InvoiceStatus.PAID
    inv.paid_at = utcnow()
    stock = _deduct_for_invoice(s, inv, performed_by)
    _sync_prescription_billing(s, inv)
    logger.info("Invoice %s has nothing due; marked paid", inv.invoice_number)
    return stock


def _create_invoice(
    s,
    patient_id: str,
    items: list[dict],
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    bill_type: BillType = BillType.STANDARD,
    appointment_id: str | None = None,
    treatment_case_id: str | None = None,
    notes: str | None = None,
    extra_discount: Any = 0,
    invoice_date: date | None = None,
    due_date: date | None = None,
    created_by: str | None = None,
) -> Invoice:
    status = _enum(InvoiceStatus, status)
    if status not in _EDITABLE:
        raise BusinessRuleError("New invoices start as draft or pending.")
    if status == InvoiceStatus.PENDING and not items:
        raise BusinessRuleError("An issued invoice needs at least one line.")

    patient = _get_patient(s, patient_id)
    settings = _settings(s)
    invoice_date = invoice_date or date.today()

    inv = Invoice(
        invoice_number=_next_invoice_number(s, settings["invoice_prefix"]),
        patient_id=patient.id,
        appointment_id=appointment_id,
        treatment_case_id=treatment_case_id,
        bill_type=_enum(BillType, bill_type),
        status=status,
        invoice_date=invoice_date,
        due_date=due_date or invoice_date + timedelta(days=int(settings["payment_due_days"])),
        extra_discount=money(extra_discount or 0),
        is_igst=should_use_igst(settings.get("clinic_state"), patient.state),
        place_of_supply=patient.state or settings.get("clinic_state"),
        notes=notes,
        created_by=created_by,
    )
    s.add(inv)
    for idx, data in enumerate(items):
        line = _build_line(s, inv, data, settings)
        line.sort_order = idx
        inv.items.append(line)
    _recalculate(inv)
    s.flush()

    _sync_ledger(s, inv, created_by)
    _settle_if_nothing_due(s, inv, created_by)
    _record(
        s, AuditEntityType.INVOICE, inv.id, AuditAction.CREATE, identifier=inv.invoice_number,
        new=_snapshot(inv), performed_by=created_by, extra={"bill_type": inv.bill_type.value, "lines": len(items)},
    )
    logger.info("Invoice %s created for %s: %s (%s)", inv.invoice_number, patient.email, inv.total_amount, status.value)
    return inv


def _add_payment(
    s,
    inv: Invoice,
    amount: Any,
    method: PaymentMethod,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_date: datetime | None = None,
    received_by: str | None = None,
) -> tuple[Payment, StockSyncResult | None]:
    if inv.status == InvoiceStatus.DRAFT:
        raise BusinessRuleError("Issue the invoice before recording payments.")
    if inv.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
        raise BusinessRuleError(f"Cannot record a payment on a {inv.status.value} invoice.")
    if inv.status == InvoiceStatus.PAID:
        raise BusinessRuleError("Invoice is already fully paid.")

    amount = money(amount)
    if amount <= 0:
        raise BusinessRuleError("Payment amount must be greater than zero.")
    if amount > inv.amount_due:
        raise BusinessRuleError(f"Payment of {amount} exceeds the amount due ({inv.amount_due}).")

    before = _snapshot(inv)
    payment = Payment(
        patient_id=inv.patient_id,
        amount=amount,
        method=_enum(PaymentMethod, method),
        status=PaymentStatus.COMPLETED,
        reference_number=reference_number,
        notes=notes,
        payment_date=payment_date or utcnow(),
        received_by=received_by,
    )
    inv.payments.append(payment)
    s.flush()

    inv.amount_paid = _amount_paid(inv)
    stock = None
    if inv.amount_paid >= money(inv.total_amount):
        inv.status = InvoiceStatus.PAID
        inv.paid_at = utcnow()
        stock = _deduct_for_invoice(s, inv, received_by)
    else:
        inv.status = InvoiceStatus.PARTIAL

    _post_payment(s, payment, inv.invoice_number, received_by)
    _record(
        s, AuditEntityType.INVOICE, inv.id, AuditAction.PAYMENT, identifier=inv.invoice_number,
        old=before, new=_snapshot(inv), performed_by=received_by,
        extra={"payment_id": payment.id, "amount": amount, "method": payment.method.value},
    )
    _sync_prescription_billing(s, inv)
    logger.info("Payment %s on %s via %s -> %s", amount, inv.invoice_number, payment.method.value, inv.status.value)
    return payment, stock


def _cancel(s, inv: Invoice, reason: str | None, performed_by: str | None) -> StockSyncResult | None:
    for p in inv.payments:
        if p.status == PaymentStatus.PENDING:
            p.status = PaymentStatus.CANCELLED

    stock = None
    if any(li.stock_deducted and not li.stock_restored for li in inv.items):
        stock = _restore_for_invoice(s, inv, performed_by)

    inv.status = InvoiceStatus.CANCELLED
    inv.cancelled_at = utcnow()
    inv.cancellation_reason = reason
    _sync_ledger(s, inv, performed_by)
    _sync_prescription_billing(s, inv)
    logger.info("Invoice %s cancelled (%s)", inv.invoice_number, reason or "no reason")
    return stock


# =========================
# Invoices
# =========================
def create_invoice(
    patient_id: str,
    items: list[dict],
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    bill_type: BillType = BillType.STANDARD,
    appointment_id: str | None = None,
    treatment_case_id: str | None = None,
    notes: str | None = None,
    extra_discount: Any = 0,
    invoice_date: date | None = None,
    due_date: date | None = None,
    created_by: str | None = None,
) -> dict:
    with db_session() as s:
        if appointment_id and not s.get(Appointment, appointment_id):
            raise NotFoundError("Appointment not found.")
        inv = _create_invoice(
            s, patient_id, items, status=status, bill_type=bill_type, appointment_id=appointment_id,
            treatment_case_id=treatment_case_id, notes=notes, extra_discount=extra_discount,
            invoice_date=invoice_date, due_date=due_date, created_by=created_by,
        )
        return invoice_flat(inv)


def get_invoice(invoice_id: str, patient_id: str | None = None) -> dict:
    """Invoice with lines, payments and credit notes. patient_id restricts to the owner."""
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if patient_id and inv.patient_id != patient_id:
            raise NotFoundError("Invoice not found.")
        return invoice_flat(inv)


def list_invoices(
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
) -> dict:
    conds = []
    if status:
        conds.append(Invoice.status == _enum(InvoiceStatus, status))
    if patient_id:
        conds.append(Invoice.patient_id == patient_id)
    if appointment_id:
        conds.append(Invoice.appointment_id == appointment_id)
    if treatment_case_id:
        conds.append(Invoice.treatment_case_id == treatment_case_id)
    if bill_type:
        conds.append(Invoice.bill_type == _enum(BillType, bill_type))
    if date_from:
        conds.append(Invoice.invoice_date >= date_from)
    if date_to:
        conds.append(Invoice.invoice_date <= date_to)
    if search:
        like = f"%{search.strip()}%"
        conds.append(or_(Invoice.invoice_number.ilike(like), User.full_name.ilike(like)))

    page = max(page, 1)
    with db_session() as s:
        base = select(Invoice).join(User, User.id == Invoice.patient_id).where(*conds)
        total = s.scalar(select(func.count()).select_from(base.subquery())) or 0
        rows = s.scalars(
            base.order_by(Invoice.invoice_date.desc(), Invoice.invoice_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {"items": [invoice_flat(i, detail=False) for i in rows], "total": total, "page": page, "limit": limit}


def update_invoice(
    invoice_id: str,
    notes: str | None = None,
    due_date: date | None = None,
    extra_discount: Any = None,
    treatment_case_id: str | None = None,
    performed_by: str | None = None,
) -> dict:
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if inv.status == InvoiceStatus.CANCELLED:
            raise BusinessRuleError("Cancelled invoices cannot be edited.")
        before = _snapshot(inv)

        if notes is not None:
            inv.notes = notes
        if due_date is not None:
            inv.due_date = due_date
        if treatment_case_id is not None:
            inv.treatment_case_id = treatment_case_id or None
        if extra_discount is not None:
            if inv.status not in _EDITABLE:
                raise BusinessRuleError("The discount can only change while the invoice is draft or pending.")
            if money(extra_discount) < 0:
                raise BusinessRuleError("Discount cannot be negative.")
            inv.extra_discount = money(extra_discount)
            _recalculate(inv)
            _sync_ledger(s, inv, performed_by)
            _settle_if_nothing_due(s, inv, performed_by)

        _record(
            s, AuditEntityType.INVOICE, inv.id, AuditAction.UPDATE, identifier=inv.invoice_number,
            old=before, new=_snapshot(inv), performed_by=performed_by,
        )
        s.flush()
        return invoice_flat(inv)


def change_invoice_status(
    invoice_id: str, new_status: InvoiceStatus, reason: str | None = None, performed_by: str | None = None
) -> dict:
    new_status = _enum(InvoiceStatus, new_status)
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if new_status == inv.status:
            raise BusinessRuleError(f"Invoice is already {inv.status.value}.")
        if new_status not in _MANUAL_TRANSITIONS.get(inv.status, set()):
            raise BusinessRuleError(f"Cannot change invoice status from {inv.status.value} to {new_status.value}.")

        before = _snapshot(inv)
        stock = None
        if new_status == InvoiceStatus.CANCELLED:
            stock = _cancel(s, inv, reason, performed_by)
            action = AuditAction.CANCEL
        else:
            if new_status == InvoiceStatus.PENDING and not inv.items:
                raise BusinessRuleError("Cannot issue an invoice without lines.")
            if new_status == InvoiceStatus.DRAFT and any(p.status in _COUNTED_PAYMENTS for p in inv.payments):
                raise BusinessRuleError("An invoice with payments cannot go back to draft.")
            inv.status = new_status
            _sync_ledger(s, inv, performed_by)
            stock = _settle_if_nothing_due(s, inv, performed_by)
            action = AuditAction.STATUS_CHANGE

        _record(
            s, AuditEntityType.INVOICE, inv.id, action, identifier=inv.invoice_number,
            old=before, new=_snapshot(inv), performed_by=performed_by, extra={"reason": reason} if reason else None,
        )
        s.flush()
        data = invoice_flat(inv)
        data["stock"] = stock.as_dict() if stock else None
        return data


def cancel_invoice(invoice_id: str, reason: str | None = None, performed_by: str | None = None) -> dict:
    return change_invoice_status(invoice_id, InvoiceStatus.CANCELLED, reason, performed_by)


def delete_invoice(invoice_id: str, performed_by: str | None = None) -> None:
    """Delete an invoice without payments or credit notes; its ledger debit is reversed."""
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if any(p.status in _COUNTED_PAYMENTS for p in inv.payments):
            raise BusinessRuleError("Cannot delete an invoice with completed payments. Cancel it instead.")
        if inv.credit_notes:
            raise BusinessRuleError("Cannot delete an invoice with credit notes.")

        if money(inv.ledger_amount) != 0:
            _post_adjustment(
                s, inv.patient_id, -money(inv.ledger_amount), f"Invoice {inv.invoice_number} deleted",
                "invoice", inv.id, performed_by,
            )
        for rx in s.scalars(select(Prescription).where(Prescription.invoice_id == inv.id)):
            rx.invoice_id = None
            rx.billing_status = PrescriptionBillingStatus.UNBILLED

        _record(
            s, AuditEntityType.INVOICE, inv.id, AuditAction.DELETE, identifier=inv.invoice_number,
            old=_snapshot(inv), performed_by=performed_by,
        )
        s.flush()
        s.delete(inv)
        logger.info("Invoice %s deleted", inv.invoice_number)


# =========================
# Invoice lines
# =========================
def _editable_invoice(s, invoice_id: str) -> Invoice:
    inv = _get_invoice(s, invoice_id)
    if inv.status not in _EDITABLE:
        raise BusinessRuleError(f"Lines of a {inv.status.value} invoice cannot be changed.")
    return inv


def add_invoice_item(invoice_id: str, data: dict, performed_by: str | None = None) -> dict:
    with db_session() as s:
        inv = _editable_invoice(s, invoice_id)
        line = _build_line(s, inv, data, _settings(s))
        line.sort_order = max((li.sort_order for li in inv.items), default=-1) + 1
        inv.items.append(line)
        _recalculate(inv)
        s.flush()
        _sync_ledger(s, inv, performed_by)
        _settle_if_nothing_due(s, inv, performed_by)
        _record(
            s, AuditEntityType.INVOICE_ITEM, str(line.id), AuditAction.CREATE, identifier=inv.invoice_number,
            new=item_flat(line), performed_by=performed_by,
        )
        return invoice_flat(inv)


def update_invoice_item(invoice_id: str, item_id: int, data: dict, performed_by: str | None = None) -> dict:
    with db_session() as s:
        inv = _editable_invoice(s, invoice_id)
        line = next((li for li in inv.items if li.id == item_id), None)
        if line is None:
            raise NotFoundError("Invoice line not found.")
        old = item_flat(line)

        if data.get("description"):
            line.description = data["description"].strip()
        if data.get("hsn_code"):
            line.hsn_code = data["hsn_code"]
        quantity = int(data["quantity"]) if data.get("quantity") is not None else line.quantity
        if quantity <= 0:
            raise BusinessRuleError("Quantity must be greater than zero.")
        price = data["unit_price"] if data.get("unit_price") is not None else line.unit_price
        discount = data["discount_percent"] if data.get("discount_percent") is not None else line.discount_percent
        if not ZERO <= to_decimal(discount) <= 100:
            raise BusinessRuleError("Discount must be between 0 and 100 percent.")
        rate = data["tax_rate"] if data.get("tax_rate") is not None else line.tax_rate
        if not _settings(s).get("tax_enabled", True):
            rate = ZERO
        _apply_amounts(line, quantity, price, discount, rate, inv.is_igst)

        _recalculate(inv)
        s.flush()
        _sync_ledger(s, inv, performed_by)
        _settle_if_nothing_due(s, inv, performed_by)
        _record(
            s, AuditEntityType.INVOICE_ITEM, str(line.id), AuditAction.UPDATE, identifier=inv.invoice_number,
            old=old, new=item_flat(line), performed_by=performed_by,
        )
        return invoice_flat(inv)


def delete_invoice_item(invoice_id: str, item_id: int, performed_by: str | None = None) -> dict:
    with db_session() as s:
        inv = _editable_invoice(s, invoice_id)
        line = next((li for li in inv.items if li.id == item_id), None)
        if line is None:
            raise NotFoundError("Invoice line not found.")
        if inv.status == InvoiceStatus.PENDING and len(inv.items) == 1:
            raise BusinessRuleError("An issued invoice needs at least one line.")
        _record(
            s, AuditEntityType.INVOICE_ITEM, str(line.id), AuditAction.DELETE, identifier=inv.invoice_number,
            old=item_flat(line), performed_by=performed_by,
        )
        inv.items.remove(line)
        _recalculate(inv)
        s.flush()
        _sync_ledger(s, inv, performed_by)
        _settle_if_nothing_due(s, inv, performed_by)
        return invoice_flat(inv)


# =========================
# Payments / refunds
# =========================
def add_payment(
    invoice_id: str,
    amount: Any,
    method: PaymentMethod,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_date: datetime | None = None,
    received_by: str | None = None,
) -> dict:
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        payment, stock = _add_payment(s, inv, amount, method, reference_number, notes, payment_date, received_by)
        return {
            "payment": payment_flat(payment),
            "invoice": invoice_flat(inv, detail=False),
            "stock": stock.as_dict() if stock else None,
        }


def list_payments(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    method: PaymentMethod | None = None,
    status: PaymentStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    conds = []
    if invoice_id:
        conds.append(Payment.invoice_id == invoice_id)
    if patient_id:
        conds.append(Payment.patient_id == patient_id)
    if method:
        conds.append(Payment.method == _enum(PaymentMethod, method))
    if status:
        conds.append(Payment.status == _enum(PaymentStatus, status))
    if date_from:
        conds.append(Payment.payment_date >= datetime.combine(date_from, datetime.min.time()))
    if date_to:
        conds.append(Payment.payment_date < datetime.combine(date_to + timedelta(days=1), datetime.min.time()))

    page = max(page, 1)
    with db_session() as s:
        total, amount = s.execute(
            select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).where(*conds)
        ).one()
        rows = s.scalars(
            select(Payment).where(*conds).order_by(Payment.payment_date.desc()).offset((page - 1) * limit).limit(limit)
        )
        return {
            "items": [payment_flat(p) for p in rows],
            "total": total,
            "total_amount": money(amount),
            "page": page,
            "limit": limit,
        }


def create_refund(
    payment_id: str,
    amount: Any,
    reason: str,
    method: PaymentMethod | None = None,
    reference_number: str | None = None,
    refunded_by: str | None = None,
) -> dict:
    """
    Refund part or all of a completed payment. The invoice's amount paid
    drops accordingly: nothing left -> refunded, less than the total ->
    partial. A cancelled invoice keeps its status.
    """
    if not (reason or "").strip():
        raise BusinessRuleError("A refund reason is required.")
    amount = money(amount)
    if amount <= 0:
        raise BusinessRuleError("Refund amount must be greater than zero.")

    with db_session() as s:
        payment = s.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found.")
        if payment.status != PaymentStatus.COMPLETED:
            raise BusinessRuleError("Only completed payments can be refunded.")

        refundable = money(payment.amount) - _refunded(payment)
        if amount > refundable:
            raise BusinessRuleError(f"Refund exceeds the refundable amount ({refundable}).")

        inv = payment.invoice
        before = _snapshot(inv)
        refund = PaymentRefund(
            invoice_id=inv.id,
            amount=amount,
            reason=reason.strip(),
            method=_enum(PaymentMethod, method) or payment.method,
            status=RefundStatus.COMPLETED,
            reference_number=reference_number,
            refunded_by=refunded_by,
        )
        payment.refunds.append(refund)
        s.flush()

        if _refunded(payment) >= money(payment.amount):
            payment.status = PaymentStatus.REFUNDED

        inv.amount_paid = _amount_paid(inv)
        if inv.status != InvoiceStatus.CANCELLED:
            if inv.amount_paid <= 0:
                inv.status = InvoiceStatus.REFUNDED
            elif inv.amount_paid < money(inv.total_amount):
                inv.status = InvoiceStatus.PARTIAL
            else:
                inv.status = InvoiceStatus.PAID

        _post_refund(s, refund, inv.patient_id, inv.invoice_number, refunded_by)
        _record(
            s, AuditEntityType.REFUND, refund.id, AuditAction.REFUND, identifier=inv.invoice_number,
            old=before, new=_snapshot(inv), performed_by=refunded_by,
            extra={"payment_id": payment.id, "amount": amount, "reason": refund.reason},
        )
        _sync_prescription_billing(s, inv)
        logger.info("Refund %s on %s -> %s", amount, inv.invoice_number, inv.status.value)
        return {"refund": refund_flat(refund), "invoice": invoice_flat(inv, detail=False)}


def list_refunds(
    payment_id: str | None = None, invoice_id: str | None = None, page: int = 1, limit: int = 50
) -> dict:
    conds = []
    if payment_id:
        conds.append(PaymentRefund.payment_id == payment_id)
    if invoice_id:
        conds.append(PaymentRefund.invoice_id == invoice_id)
    page = max(page, 1)
    with db_session() as s:
        total, amount = s.execute(
            select(func.count(PaymentRefund.id), func.coalesce(func.sum(PaymentRefund.amount), 0)).where(*conds)
        ).one()
        rows = s.scalars(
            select(PaymentRefund).where(*conds).order_by(PaymentRefund.created_at.desc())
            .offset((page - 1) * limit).limit(limit)
        )
        return {
            "items": [refund_flat(r) for r in rows],
            "total": total,
            "total_amount": money(amount),
            "page": page,
            "limit": limit,
        }


# =========================
# Appointment / reception / pharmacy flows
# =========================
def create_invoice_from_appointment(
    appointment_id: str,
    extra_items: list[dict] | None = None,
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    created_by: str | None = None,
) -> dict:
    """
    One invoice per appointment (cancelled invoices do not count). The
    doctor's consultation fee becomes the first line when
    auto_add_consultation_fee is on.
    """
    with db_session() as s:
        app = s.get(Appointment, appointment_id)
        if not app:
            raise NotFoundError("Appointment not found.")
        existing = s.scalars(
            select(Invoice).where(Invoice.appointment_id == app.id, Invoice.status != InvoiceStatus.CANCELLED).limit(1)
        ).first()
        if existing:
            raise BusinessRuleError(f"Invoice {existing.invoice_number} already exists for this appointment.")

        items: list[dict] = []
        doctor = app.doctor
        profile = doctor.doctor_profile if doctor else None
        if _settings(s).get("auto_add_consultation_fee") and profile and money(profile.consultation_fee) > 0:
            items.append({
                "item_type": InvoiceItemType.CONSULTATION,
                "description": f"Consultation - Dr. {doctor.full_name} ({profile.specialization})",
                "quantity": 1,
                "unit_price": profile.consultation_fee,
            })
        items.extend(extra_items or [])
        if not items:
            raise BusinessRuleError("Nothing to bill for this appointment.")

        inv = _create_invoice(
            s, app.patient_id, items, status=status, appointment_id=app.id, created_by=created_by,
        )
        return invoice_flat(inv)


def create_quick_bill(
    patient_id: str,
    items: list[dict] | None = None,
    consultation_fee: Any = None,
    doctor_id: str | None = None,
    appointment_id: str | None = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    amount_paid: Any = None,
    reference_number: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> dict:
    """
    Reception counter: consultation fee and/or lines billed and collected in
    one step. amount_paid defaults to the full total; 0 leaves it pending.
    """
    with db_session() as s:
        lines: list[dict] = []
        if consultation_fee is not None and money(consultation_fee) > 0:
            description = "Consultation"
            if doctor_id:
                doctor = s.get(User, doctor_id)
                if not doctor or doctor.role != Role.DOCTOR:
                    raise NotFoundError("Doctor not found.")
                description = f"Consultation - Dr. {doctor.full_name}"
            lines.append({
                "item_type": InvoiceItemType.CONSULTATION,
                "description": description,
                "quantity": 1,
                "unit_price": consultation_fee,
            })
        lines.extend(items or [])
        if not lines:
            raise BusinessRuleError("Add a consultation fee or at least one line.")

        inv = _create_invoice(
            s, patient_id, lines, status=InvoiceStatus.PENDING, bill_type=BillType.QUICK,
            appointment_id=appointment_id, notes=notes, created_by=created_by,
        )
        pay = money(inv.total_amount) if amount_paid is None else money(amount_paid)
        payment = stock = None
        if pay > 0:
            payment, stock = _add_payment(s, inv, pay, payment_method, reference_number, received_by=created_by)
        return {
            "invoice": invoice_flat(inv),
            "payment": payment_flat(payment) if payment else None,
            "stock": stock.as_dict() if stock else None,
        }


def create_pharmacy_bill(
    patient_id: str,
    items: list[dict],
    payment_method: PaymentMethod = PaymentMethod.CASH,
    amount_paid: Any = None,
    prescription_id: str | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> dict:
    """
    Pharmacy counter sale: inventory lines only, stock checked before
    billing, paid on the spot. Optionally bills a prescription.
    """
    if not items:
        raise BusinessRuleError("Add at least one item.")

    with db_session() as s:
        shortages, lines = [], []
        for data in items:
            inv_item = s.get(InventoryItem, data.get("inventory_item_id"))
            if inv_item is None or not inv_item.is_active:
                raise NotFoundError("Inventory item not found.")
            qty = int(data.get("quantity") or 1)
            if inv_item.current_stock < qty:
                shortages.append(f"{inv_item.name} (available {inv_item.current_stock}, requested {qty})")
            item_type = (
                InvoiceItemType.MEDICATION if inv_item.item_type == InventoryItemType.MEDICATION
                else InvoiceItemType.SUPPLY
            )
            lines.append({**data, "item_type": item_type, "quantity": qty})
        if shortages:
            raise BusinessRuleError("Insufficient stock: " + "; ".join(shortages))

        rx = None
        if prescription_id:
            rx = s.get(Prescription, prescription_id)
            if not rx or rx.patient_id != patient_id:
                raise NotFoundError("Prescription not found.")
            if rx.invoice_id:
                raise BusinessRuleError("The prescription is already billed.")

        inv = _create_invoice(
            s, patient_id, lines, status=InvoiceStatus.PENDING, bill_type=BillType.PHARMACY,
            notes=notes, created_by=created_by,
        )
        if rx is not None:
            rx.invoice_id = inv.id
            rx.billing_status = PrescriptionBillingStatus.INVOICED

        pay = money(inv.total_amount) if amount_paid is None else money(amount_paid)
        payment = stock = None
        if pay > 0:
            payment, stock = _add_payment(s, inv, pay, payment_method, reference_number, received_by=created_by)
        else:
            _sync_prescription_billing(s, inv)
        return {
            "invoice": invoice_flat(inv),
            "payment": payment_flat(payment) if payment else None,
            "stock": stock.as_dict() if stock else None,
        }
