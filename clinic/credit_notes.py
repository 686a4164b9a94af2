"""
Credit notes: reduce what an issued invoice asks for without touching the
invoice itself.

A note credits whole lines or part of their quantity; amounts are prorated
from the invoice line, net of any invoice-level discount. Issuing a note
credits the patient's ledger and puts back the stock of credited
medication / supply lines that had been deducted. Cancelling an issued note
debits the ledger again.
"""
from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select

from .audit import _record
from .billing_models import (
    AuditAction,
    AuditEntityType,
    CreditNote,
    CreditNoteItem,
    CreditNoteStatus,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
)
from .db import db_session, utcnow
from .exceptions import BusinessRuleError, NotFoundError
from .gst import ZERO, money, to_decimal
from .ledger import _post_adjustment, _post_credit_note
from .logger import get_logger
from .stock_billing import _restore_for_lines

logger = get_logger(__name__)

_TRANSITIONS: dict[CreditNoteStatus, set[CreditNoteStatus]] = {
    CreditNoteStatus.DRAFT: {CreditNoteStatus.ISSUED, CreditNoteStatus.CANCELLED},
    CreditNoteStatus.ISSUED: {CreditNoteStatus.APPLIED, CreditNoteStatus.CANCELLED},
}


def credit_note_flat(cn: CreditNote) -> dict:
    return {
        "id": cn.id,
        "credit_note_number": cn.credit_note_number,
        "invoice_id": cn.invoice_id,
        "invoice_number": cn.invoice.invoice_number if cn.invoice else None,
        "patient_id": cn.patient_id,
        "reason": cn.reason,
        "status": cn.status.value,
        "subtotal": cn.subtotal,
        "cgst_amount": cn.cgst_amount,
        "sgst_amount": cn.sgst_amount,
        "igst_amount": cn.igst_amount,
        "tax_amount": cn.tax_amount,
        "total_amount": cn.total_amount,
        "issued_at": cn.issued_at,
        "applied_at": cn.applied_at,
        "cancelled_at": cn.cancelled_at,
        "created_at": cn.created_at,
        "items": [
            {
                "id": ci.id,
                "invoice_item_id": ci.invoice_item_id,
                "description": ci.description,
                "quantity": ci.quantity,
                "unit_price": ci.unit_price,
                "taxable_amount": ci.taxable_amount,
                "tax_rate": ci.tax_rate,
                "cgst_amount": ci.cgst_amount,
                "sgst_amount": ci.sgst_amount,
                "igst_amount": ci.igst_amount,
                "tax_amount": ci.tax_amount,
                "total_amount": ci.total_amount,
            }
            for ci in cn.items
        ],
    }


def _get_note(s, credit_note_id: str) -> CreditNote:
    cn = s.get(CreditNote, credit_note_id)
    if not cn:
        raise NotFoundError("Credit note not found.")
    return cn


def _next_number(s) -> str:
    numbers = s.scalars(select(CreditNote.credit_note_number).where(CreditNote.credit_note_number.like("CN-%")))
    used = [int(n.split("-")[-1]) for n in numbers if n.split("-")[-1].isdigit()]
    return f"CN-{(max(used) + 1 if used else 1):06d}"


def _credited_quantities(s, invoice_id: str) -> dict[int, int]:
    rows = s.execute(
        select(CreditNoteItem.invoice_item_id, func.sum(CreditNoteItem.quantity))
        .join(CreditNote, CreditNote.id == CreditNoteItem.credit_note_id)
        .where(CreditNote.invoice_id == invoice_id, CreditNote.status != CreditNoteStatus.CANCELLED)
        .group_by(CreditNoteItem.invoice_item_id)
    ).all()
    return {item_id: int(qty) for item_id, qty in rows if item_id is not None}


def _credited_total(s, invoice_id: str, exclude_id: str | None = None) -> Decimal:
    q = select(func.coalesce(func.sum(CreditNote.total_amount), 0)).where(
        CreditNote.invoice_id == invoice_id, CreditNote.status != CreditNoteStatus.CANCELLED
    )
    if exclude_id:
        q = q.where(CreditNote.id != exclude_id)
    return money(s.scalar(q))


def _discount_share(inv: Invoice) -> Decimal:
    """Fraction of each line's value left after the invoice-level discount."""
    gross = sum((to_decimal(li.total_amount) for li in inv.items), ZERO)
    if gross <= 0 or to_decimal(inv.extra_discount) <= 0:
        return Decimal(1)
    return to_decimal(inv.total_amount) / gross


def _credit_line(line: InvoiceItem, quantity: int, share: Decimal = Decimal(1)) -> CreditNoteItem:
    if quantity == line.quantity and share == 1:
        parts = {
            "taxable_amount": money(line.taxable_amount),
            "cgst_amount": money(line.cgst_amount),
            "sgst_amount": money(line.sgst_amount),
            "igst_amount": money(line.igst_amount),
        }
    else:
        ratio = Decimal(quantity) / Decimal(line.quantity) * share
        parts = {
            "taxable_amount": money(to_decimal(line.taxable_amount) * ratio),
            "cgst_amount": money(to_decimal(line.cgst_amount) * ratio),
            "sgst_amount": money(to_decimal(line.sgst_amount) * ratio),
            "igst_amount": money(to_decimal(line.igst_amount) * ratio),
        }
    tax = parts["cgst_amount"] + parts["sgst_amount"] + parts["igst_amount"]
    return CreditNoteItem(
        invoice_item_id=line.id,
        description=line.description,
        quantity=quantity,
        unit_price=money(line.unit_price),
        tax_rate=line.tax_rate,
        tax_amount=tax,
        total_amount=parts["taxable_amount"] + tax,
        **parts,
    )


def _issue(s, cn: CreditNote, inv: Invoice, performed_by: str | None) -> dict:
    if _credited_total(s, inv.id, exclude_id=cn.id) + money(cn.total_amount) > money(inv.total_amount):
        raise BusinessRuleError("Credit notes cannot exceed the invoice total.")
    cn.status = CreditNoteStatus.ISSUED
    cn.issued_at = utcnow()
    s.flush()
    _post_credit_note(s, cn, performed_by)

    lines = {li.id: li for li in inv.items}
    to_restore = [(lines[ci.invoice_item_id], ci.quantity) for ci in cn.items if ci.invoice_item_id in lines]
    stock = _restore_for_lines(s, to_restore, "credit_note", cn.id, performed_by)
    return stock.as_dict()


def create_credit_note(
    invoice_id: str,
    reason: str,
    items: list[dict] | None = None,
    as_draft: bool = False,
    created_by: str | None = None,
) -> dict:
    """
    items: [{invoice_item_id, quantity?}]; quantity defaults to everything
    not yet credited on that line. No items credits every line in full.
    """
    if not (reason or "").strip():
        raise BusinessRuleError("A reason is required for credit notes.")

    with db_session() as s:
        inv = s.get(Invoice, invoice_id)
        if not inv:
            raise NotFoundError("Invoice not found.")
        if inv.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            raise BusinessRuleError(f"Cannot issue a credit note against a {inv.status.value} invoice.")

        credited = _credited_quantities(s, inv.id)
        share = _discount_share(inv)
        lines = {li.id: li for li in inv.items}
        if items is None:
            items = [{"invoice_item_id": li.id} for li in inv.items if li.quantity - credited.get(li.id, 0) > 0]
        if not items:
            raise BusinessRuleError("Nothing left to credit on this invoice.")

        cn = CreditNote(
            credit_note_number=_next_number(s),
            invoice_id=inv.id,
            patient_id=inv.patient_id,
            reason=reason.strip(),
            status=CreditNoteStatus.DRAFT,
            created_by=created_by,
        )
        for data in items:
            line = lines.get(data.get("invoice_item_id"))
            if line is None:
                raise NotFoundError("Invoice line not found.")
            remaining = line.quantity - credited.get(line.id, 0)
            qty = data.get("quantity")
            qty = remaining if qty is None else int(qty)
            if qty <= 0 or qty > remaining:
                raise BusinessRuleError(f"Can credit at most {remaining} of '{line.description}'.")
            credited[line.id] = credited.get(line.id, 0) + qty
            cn.items.append(_credit_line(line, qty, share))

        cn.subtotal = sum((ci.taxable_amount for ci in cn.items), ZERO)
        cn.cgst_amount = sum((ci.cgst_amount for ci in cn.items), ZERO)
        cn.sgst_amount = sum((ci.sgst_amount for ci in cn.items), ZERO)
        cn.igst_amount = sum((ci.igst_amount for ci in cn.items), ZERO)
        cn.tax_amount = cn.cgst_amount + cn.sgst_amount + cn.igst_amount
        cn.total_amount = cn.subtotal + cn.tax_amount

        # the note that empties the invoice takes exactly what is left
        if cn.items and all(credited.get(li.id, 0) >= li.quantity for li in inv.items):
            diff = money(inv.total_amount) - _credited_total(s, inv.id) - cn.total_amount
            if diff:
                last = cn.items[-1]
                last.taxable_amount += diff
                last.total_amount += diff
                cn.subtotal += diff
                cn.total_amount += diff

        if _credited_total(s, inv.id) + cn.total_amount > money(inv.total_amount):
            raise BusinessRuleError("Credit notes cannot exceed the invoice total.")

        inv.credit_notes.append(cn)
        s.flush()

        stock = _issue(s, cn, inv, created_by) if not as_draft else None
        _record(
            s, AuditEntityType.CREDIT_NOTE, cn.id, AuditAction.CREATE, identifier=cn.credit_note_number,
            new={"status": cn.status, "total_amount": cn.total_amount}, performed_by=created_by,
            extra={"invoice_id": inv.id, "invoice_number": inv.invoice_number, "reason": cn.reason},
        )
        logger.info(
            "Credit note %s on %s: %s (%s)", cn.credit_note_number, inv.invoice_number, cn.total_amount, cn.status.value
        )
        data = credit_note_flat(cn)
        data["stock"] = stock
        return data


def change_credit_note_status(
    credit_note_id: str, new_status: CreditNoteStatus, performed_by: str | None = None
) -> dict:
    new_status = CreditNoteStatus(new_status)
    with db_session() as s:
        cn = _get_note(s, credit_note_id)
        if new_status not in _TRANSITIONS.get(cn.status, set()):
            raise BusinessRuleError(f"Cannot change credit note status from {cn.status.value} to {new_status.value}.")

        old = cn.status
        stock = None
        if new_status == CreditNoteStatus.ISSUED:
            stock = _issue(s, cn, cn.invoice, performed_by)
        elif new_status == CreditNoteStatus.APPLIED:
            cn.status = CreditNoteStatus.APPLIED
            cn.applied_at = utcnow()
        else:
            if old == CreditNoteStatus.ISSUED:
                _post_adjustment(
                    s, cn.patient_id, money(cn.total_amount), f"Credit note {cn.credit_note_number} cancelled",
                    "credit_note", cn.id, performed_by,
                )
            cn.status = CreditNoteStatus.CANCELLED
            cn.cancelled_at = utcnow()

        _record(
            s, AuditEntityType.CREDIT_NOTE, cn.id, AuditAction.STATUS_CHANGE, identifier=cn.credit_note_number,
            old={"status": old}, new={"status": cn.status}, performed_by=performed_by,
        )
        s.flush()
        data = credit_note_flat(cn)
        data["stock"] = stock
        return data


def get_credit_note(credit_note_id: str) -> dict:
    with db_session() as s:
        return credit_note_flat(_get_note(s, credit_note_id))


def list_credit_notes(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status: CreditNoteStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    conds = []
    if invoice_id:
        conds.append(CreditNote.invoice_id == invoice_id)
    if patient_id:
        conds.append(CreditNote.patient_id == patient_id)
    if status:
        conds.append(CreditNote.status == CreditNoteStatus(status))
    page = max(page, 1)
    with db_session() as s:
        total = s.scalar(select(func.count(CreditNote.id)).where(*conds)) or 0
        rows = s.scalars(
            select(CreditNote).where(*conds).order_by(CreditNote.created_at.desc())
            .offset((page - 1) * limit).limit(limit)
        )
        return {"items": [credit_note_flat(cn) for cn in rows], "total": total, "page": page, "limit": limit}


def invoice_credit_notes(invoice_id: str) -> dict:
    with db_session() as s:
        inv = s.get(Invoice, invoice_id)
        if not inv:
            raise NotFoundError("Invoice not found.")
        return {
            "invoice_id": inv.id,
            "invoice_number": inv.invoice_number,
            "items": [credit_note_flat(cn) for cn in inv.credit_notes],
            "total_credited": _credited_total(s, inv.id),
        }
