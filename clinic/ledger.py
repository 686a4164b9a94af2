"""
Patient ledger: append-only journal of what each patient owes.

Debits raise the balance (invoices, refunds paid out), credits lower it
(payments, credit notes). Each entry stores the patient's running balance
right after it: previous balance + debit - credit.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select

from .auth_models import User
from .billing_models import LedgerEntry, LedgerEntryType
from .db import db_session
from .exceptions import BusinessRuleError, NotFoundError
from .gst import ZERO, money, to_decimal
from .logger import get_logger

logger = get_logger(__name__)


def _next_entry_number(s) -> str:
    last = s.scalar(select(func.max(LedgerEntry.id)))
    return f"LED-{(last or 0) + 1:08d}"


def _balance(s, patient_id: str) -> Decimal:
    last = s.scalars(
        select(LedgerEntry.balance).where(LedgerEntry.patient_id == patient_id).order_by(LedgerEntry.id.desc()).limit(1)
    ).first()
    return to_decimal(last) if last is not None else ZERO


def _post(
    s,
    entry_type: LedgerEntryType,
    patient_id: str,
    debit: Decimal | int = 0,
    credit: Decimal | int = 0,
    reference_type: str | None = None,
    reference_id: str | None = None,
    description: str | None = None,
    created_by: str | None = None,
    entry_date: date | None = None,
) -> LedgerEntry:
    debit, credit = money(debit), money(credit)
    if debit < 0 or credit < 0:
        raise BusinessRuleError("Ledger amounts cannot be negative.")
    if debit == 0 and credit == 0:
        raise BusinessRuleError("Ledger entry needs a debit or a credit.")

    s.flush()
    entry = LedgerEntry(
        entry_number=_next_entry_number(s),
        entry_type=entry_type,
        patient_id=patient_id,
        debit=debit,
        credit=credit,
        balance=_balance(s, patient_id) + debit - credit,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        entry_date=entry_date or date.today(),
        created_by=created_by,
    )
    s.add(entry)
    s.flush()
    return entry


# =========================
# Typed helpers
# =========================
def _post_invoice(s, invoice, created_by: str | None = None) -> LedgerEntry:
    return _post(
        s, LedgerEntryType.INVOICE, invoice.patient_id, debit=invoice.total_amount,
        reference_type="invoice", reference_id=invoice.id,
        description=f"Invoice {invoice.invoice_number}", created_by=created_by,
    )


def _post_payment(s, payment, invoice_number: str, created_by: str | None = None) -> LedgerEntry:
    return _post(
        s, LedgerEntryType.PAYMENT, payment.patient_id, credit=payment.amount,
        reference_type="payment", reference_id=payment.id,
        description=f"Payment for {invoice_number} ({payment.method.value})", created_by=created_by,
    )


def _post_refund(s, refund, patient_id: str, invoice_number: str, created_by: str | None = None) -> LedgerEntry:
    return _post(
        s, LedgerEntryType.REFUND, patient_id, debit=refund.amount,
        reference_type="refund", reference_id=refund.id,
        description=f"Refund on {invoice_number}", created_by=created_by,
    )


def _post_credit_note(s, note, created_by: str | None = None) -> LedgerEntry:
    return _post(
        s, LedgerEntryType.CREDIT_NOTE, note.patient_id, credit=note.total_amount,
        reference_type="credit_note", reference_id=note.id,
        description=f"Credit note {note.credit_note_number}", created_by=created_by,
    )


def _post_adjustment(
    s, patient_id: str, amount: Decimal, description: str,
    reference_type: str | None = None, reference_id: str | None = None, created_by: str | None = None,
) -> LedgerEntry:
    """Positive amount debits the patient, negative credits."""
    amount = money(amount)
    return _post(
        s, LedgerEntryType.ADJUSTMENT, patient_id,
        debit=amount if amount > 0 else 0, credit=-amount if amount < 0 else 0,
        reference_type=reference_type, reference_id=reference_id,
        description=description, created_by=created_by,
    )


# =========================
# Public API
# =========================
def entry_flat(e: LedgerEntry) -> dict:
    return {
        "id": e.id,
        "entry_number": e.entry_number,
        "entry_type": e.entry_type.value,
        "reference_type": e.reference_type,
        "reference_id": e.reference_id,
        "patient_id": e.patient_id,
        "debit": e.debit,
        "credit": e.credit,
        "balance": e.balance,
        "description": e.description,
        "entry_date": e.entry_date,
        "created_at": e.created_at,
    }


def create_adjustment(patient_id: str, amount: Decimal, description: str, created_by: str | None = None) -> dict:
    if not (description or "").strip():
        raise BusinessRuleError("A description is required for adjustments.")
    with db_session() as s:
        if not s.get(User, patient_id):
            raise NotFoundError("Patient not found.")
        entry = _post_adjustment(s, patient_id, to_decimal(amount), description.strip(), created_by=created_by)
        logger.info("Ledger adjustment %s for %s: %s", entry.entry_number, patient_id, amount)
        return entry_flat(entry)


def create_opening_balance(patient_id: str, amount: Decimal, created_by: str | None = None) -> dict:
    with db_session() as s:
        if not s.get(User, patient_id):
            raise NotFoundError("Patient not found.")
        if s.execute(select(LedgerEntry.id).where(LedgerEntry.patient_id == patient_id).limit(1)).first():
            raise BusinessRuleError("The patient already has ledger entries.")
        amount = money(amount)
        entry = _post(
            s, LedgerEntryType.OPENING_BALANCE, patient_id,
            debit=amount if amount > 0 else 0, credit=-amount if amount < 0 else 0,
            description="Opening balance", created_by=created_by,
        )
        return entry_flat(entry)


def list_entries(
    patient_id: str | None = None,
    entry_type: LedgerEntryType | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    conds = []
    if patient_id:
        conds.append(LedgerEntry.patient_id == patient_id)
    if entry_type:
        conds.append(LedgerEntry.entry_type == entry_type)
    if date_from:
        conds.append(LedgerEntry.entry_date >= date_from)
    if date_to:
        conds.append(LedgerEntry.entry_date <= date_to)

    page = max(page, 1)
    with db_session() as s:
        total, debits, credits = s.execute(
            select(
                func.count(LedgerEntry.id),
                func.coalesce(func.sum(LedgerEntry.debit), 0),
                func.coalesce(func.sum(LedgerEntry.credit), 0),
            ).where(*conds)
        ).one()
        rows = s.scalars(
            select(LedgerEntry).where(*conds).order_by(LedgerEntry.id.desc()).offset((page - 1) * limit).limit(limit)
        )
        return {
            "items": [entry_flat(e) for e in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "totals": {
                "debit": money(debits),
                "credit": money(credits),
                "net": money(to_decimal(debits) - to_decimal(credits)),
            },
        }


def patient_balance(patient_id: str) -> dict:
    with db_session() as s:
        if not s.get(User, patient_id):
            raise NotFoundError("Patient not found.")
        return {"patient_id": patient_id, "balance": _balance(s, patient_id)}


def ledger_summary(date_from: date | None = None, date_to: date | None = None) -> dict:
    """Debits and credits per entry type; net balance = debits - credits."""
    conds = []
    if date_from:
        conds.append(LedgerEntry.entry_date >= date_from)
    if date_to:
        conds.append(LedgerEntry.entry_date <= date_to)

    with db_session() as s:
        rows = s.execute(
            select(
                LedgerEntry.entry_type,
                func.count(LedgerEntry.id),
                func.coalesce(func.sum(LedgerEntry.debit), 0),
                func.coalesce(func.sum(LedgerEntry.credit), 0),
            )
            .where(*conds)
            .group_by(LedgerEntry.entry_type)
        ).all()

    by_type = {
        t.value: {"count": n, "debit": money(d), "credit": money(c)}
        for t, n, d, c in rows
    }
    total_debit = sum((v["debit"] for v in by_type.values()), ZERO)
    total_credit = sum((v["credit"] for v in by_type.values()), ZERO)
    return {
        "by_type": by_type,
        "total_debit": total_debit,
        "total_credit": total_credit,
        "net_balance": total_debit - total_credit,
        "generated_at": datetime.now(),
    }
