from __future__ import annotations

from dataclasses import asdict, dataclass

from sqlalchemy import select

from .billing_models import Invoice, InvoiceStatus
from .db import db_session, utcnow
from .exceptions import BusinessRuleError, NotFoundError
from .logger import get_logger
from .models import NotificationType, Prescription, PrescriptionBillingStatus, PrescriptionStatus
from .notifications import _notify
from .services import prescription_flat
from .stock_billing import _deduct_for_invoice

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispenseCheck:
    can_dispense: bool
    reason: str | None = None
    needs_invoice: bool = False
    needs_payment: bool = False


def _get_prescription(s, prescription_id: str) -> Prescription:
    rx = s.get(Prescription, prescription_id)
    if not rx:
        raise NotFoundError("Prescription not found.")
    return rx


def _check(rx: Prescription, invoice) -> DispenseCheck:
    if rx.status == PrescriptionStatus.DISPENSED:
        return DispenseCheck(False, "Prescription already dispensed.")
    if rx.status == PrescriptionStatus.CANCELLED:
        return DispenseCheck(False, "Prescription is cancelled.")
    if invoice is None:
        return DispenseCheck(False, "Prescription has not been invoiced.", needs_invoice=True)
    if invoice.status not in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        return DispenseCheck(False, f"Invoice {invoice.invoice_number} is not paid.", needs_payment=True)
    return DispenseCheck(True)


def _linked_invoice(s, rx: Prescription) -> Invoice | None:
    return s.get(Invoice, rx.invoice_id) if rx.invoice_id else None


# =========================
# Pharmacist queue
# =========================
def list_prescriptions(
    status: PrescriptionStatus | None = None,
    billing_status: PrescriptionBillingStatus | None = None,
    limit: int = 100,
) -> list[dict]:
    with db_session() as s:
        q = select(Prescription)
        if status:
            q = q.where(Prescription.status == status)
        if billing_status:
            q = q.where(Prescription.billing_status == billing_status)
        rows = s.scalars(q.order_by(Prescription.created_at.desc()).limit(limit))
        return [prescription_flat(rx) for rx in rows]


def get_prescription(prescription_id: str) -> dict:
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        data = prescription_flat(rx)
        data["dispense_check"] = asdict(_check(rx, _linked_invoice(s, rx)))
        return data


def start_processing(prescription_id: str) -> dict:
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        if rx.status != PrescriptionStatus.PENDING:
            raise BusinessRuleError(f"Cannot start processing a {rx.status.value} prescription.")
        rx.status = PrescriptionStatus.PROCESSING
        s.flush()
        return prescription_flat(rx)


def can_dispense(prescription_id: str) -> DispenseCheck:
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        return _check(rx, _linked_invoice(s, rx))


def dispense_prescription(prescription_id: str, pharmacist_id: str) -> dict:
    """
    Hand the medicines over. Needs a paid (or partially paid) invoice; any
    stock of the invoice not yet deducted is taken out now.
    """
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        invoice = _linked_invoice(s, rx)
        check = _check(rx, invoice)
        if not check.can_dispense:
            raise BusinessRuleError(check.reason)

        stock = _deduct_for_invoice(s, invoice, pharmacist_id)
        rx.status = PrescriptionStatus.DISPENSED
        rx.dispensed_at = utcnow()
        rx.dispensed_by = pharmacist_id
        _notify(
            s,
            rx.patient_id,
            NotificationType.PRESCRIPTION_DISPENSED,
            "Prescription dispensed",
            f"Your prescription from Dr. {rx.doctor.full_name} has been dispensed.",
            related_type="prescription",
            related_id=rx.id,
        )
        s.flush()
        logger.info("Prescription %s dispensed by %s", rx.id, pharmacist_id)
        data = prescription_flat(rx)
        data["stock"] = stock.as_dict()
        return data


def patient_prescriptions(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(Prescription).where(Prescription.patient_id == patient_id).order_by(Prescription.created_at.desc())
        )
        return [prescription_flat(rx) for rx in rows]
