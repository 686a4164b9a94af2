"""
Billing of doctor prescriptions.

A prescription is invoiced at most once: its billable items become
medication lines priced from inventory, and its billing status then follows
the invoice (invoiced -> partial -> paid; unbilled again if the invoice is
cancelled or refunded).
"""
from __future__ import annotations

from sqlalchemy import select

from .billing_models import InvoiceItemType, InvoiceStatus
from .billing_service import _create_invoice, _default_price, _get_invoice, _sync_prescription_billing
from .billing_service import invoice_flat
from .db import db_session
from .exceptions import BusinessRuleError, NotFoundError
from .gst import money
from .inventory_models import InventoryItem
from .inventory_service import _find_item_by_name
from .logger import get_logger
from .models import Prescription, PrescriptionBillingStatus, PrescriptionStatus
from .services import prescription_flat

logger = get_logger(__name__)


def _get_prescription(s, prescription_id: str) -> Prescription:
    rx = s.get(Prescription, prescription_id)
    if not rx:
        raise NotFoundError("Prescription not found.")
    return rx


def _resolve_item(s, rx_item) -> InventoryItem | None:
    if rx_item.inventory_item_id:
        return s.get(InventoryItem, rx_item.inventory_item_id)
    return _find_item_by_name(s, rx_item.medication_name)


def create_invoice_from_prescription(
    prescription_id: str, include_consultation: bool = False, created_by: str | None = None
) -> dict:
    """
    Issue a pending invoice for the billable items of a prescription.

    Price of each line: first FIFO batch selling price, else item selling
    price, else the price written on the prescription. Items that match no
    inventory item are billed as plain medication lines when they carry a
    price and reported as skipped otherwise.
    """
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        if rx.invoice_id or rx.billing_status != PrescriptionBillingStatus.UNBILLED:
            raise BusinessRuleError("The prescription is already invoiced.")
        if rx.status == PrescriptionStatus.CANCELLED:
            raise BusinessRuleError("Cannot bill a cancelled prescription.")

        lines: list[dict] = []
        skipped: list[str] = []

        if include_consultation and rx.appointment_id and rx.doctor.doctor_profile:
            fee = money(rx.doctor.doctor_profile.consultation_fee)
            if fee > 0:
                lines.append({
                    "item_type": InvoiceItemType.CONSULTATION,
                    "description": f"Consultation - Dr. {rx.doctor.full_name}",
                    "quantity": 1,
                    "unit_price": fee,
                })

        for it in rx.items:
            if not it.is_billable:
                continue
            item = _resolve_item(s, it)
            if item is not None:
                price = _default_price(s, item)
                if price <= 0 and it.unit_price is not None:
                    price = it.unit_price
                lines.append({
                    "item_type": InvoiceItemType.MEDICATION,
                    "description": f"{item.name} ({it.dosage})" if it.dosage else item.name,
                    "quantity": it.quantity,
                    "unit_price": price,
                    "inventory_item_id": item.id,
                    "prescription_item_id": it.id,
                })
            elif it.unit_price is not None:
                lines.append({
                    "item_type": InvoiceItemType.MEDICATION,
                    "description": it.medication_name,
                    "quantity": it.quantity,
                    "unit_price": it.unit_price,
                    "prescription_item_id": it.id,
                })
            else:
                skipped.append(it.medication_name)

        if not lines:
            raise BusinessRuleError("The prescription has no billable items.")

        inv = _create_invoice(
            s, rx.patient_id, lines, status=InvoiceStatus.PENDING, appointment_id=rx.appointment_id,
            notes=f"Prescription {rx.id}", created_by=created_by,
        )
        rx.invoice_id = inv.id
        rx.billing_status = PrescriptionBillingStatus.INVOICED
        s.flush()
        logger.info("Prescription %s invoiced as %s", rx.id, inv.invoice_number)
        return {"invoice": invoice_flat(inv), "skipped_items": skipped}


def sync_prescription_billing_status(invoice_id: str) -> list[dict]:
    """Re-align the billing status of the prescriptions linked to an invoice."""
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        linked = [rx.id for rx in s.scalars(select(Prescription).where(Prescription.invoice_id == inv.id))]
        _sync_prescription_billing(s, inv)
        s.flush()
        return [
            {"prescription_id": rx.id, "billing_status": rx.billing_status.value, "invoice_id": rx.invoice_id}
            for rx in (s.get(Prescription, pid) for pid in linked)
        ]


def prescriptions_awaiting_billing(limit: int = 100) -> list[dict]:
    """Unbilled pending or processing prescriptions with a billable item, oldest first."""
    with db_session() as s:
        rows = s.scalars(
            select(Prescription)
            .where(
                Prescription.billing_status == PrescriptionBillingStatus.UNBILLED,
                Prescription.status.in_((PrescriptionStatus.PENDING, PrescriptionStatus.PROCESSING)),
            )
            .order_by(Prescription.created_at.asc())
            .limit(limit)
        )
        return [prescription_flat(rx) for rx in rows if any(i.is_billable for i in rx.items)]


def prescription_billing_status(prescription_id: str) -> dict:
    with db_session() as s:
        rx = _get_prescription(s, prescription_id)
        inv = _get_invoice(s, rx.invoice_id) if rx.invoice_id else None
        return {
            "prescription_id": rx.id,
            "status": rx.status.value,
            "billing_status": rx.billing_status.value,
            "invoice": invoice_flat(inv, detail=False) if inv else None,
        }
