"""
Link between invoices and pharmacy stock.

Medication and supply lines that reference an inventory item take stock out
when their invoice is paid (once: stock_deducted) and put it back when the
invoice is cancelled or credited (once: stock_restored).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .billing_models import STOCK_ITEM_TYPES, Invoice, InvoiceItem
from .db import db_session, utcnow
from .exceptions import BusinessRuleError, NotFoundError
from .inventory_models import InventoryItem, MovementType
from .inventory_service import _consume, _restore
from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class StockSyncResult:
    processed: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict:
        return {"ok": self.ok, "processed": self.processed, "errors": self.errors}


def _stock_lines(invoice: Invoice) -> list[InvoiceItem]:
    return [li for li in invoice.items if li.item_type in STOCK_ITEM_TYPES and li.inventory_item_id]


def _deduct_for_invoice(s, invoice: Invoice, performed_by: str | None = None) -> StockSyncResult:
    """
    Deduct stock for every stock line not yet deducted. A line without
    enough stock is reported and left for a later attempt; it never blocks
    the other lines.
    """
    result = StockSyncResult()
    for line in _stock_lines(invoice):
        if line.stock_deducted:
            continue
        item = s.get(InventoryItem, line.inventory_item_id)
        if item is None:
            result.errors.append({"invoice_item_id": line.id, "error": "Inventory item not found."})
            continue
        if item.current_stock < line.quantity:
            msg = f"Insufficient stock for {item.name}: available {item.current_stock}, required {line.quantity}."
            result.errors.append({"invoice_item_id": line.id, "item_id": item.id, "error": msg})
            logger.warning("Invoice %s: %s", invoice.invoice_number, msg)
            continue

        consumed = _consume(
            s, item, line.quantity, batch_id=line.batch_id, movement_type=MovementType.SALE,
            reference_type="invoice", reference_id=invoice.id,
            reason=f"Sold on {invoice.invoice_number}", performed_by=performed_by,
        )
        if line.batch_id is None and consumed.batches and consumed.batches[0][0]:
            line.batch_id = consumed.batches[0][0]
        line.stock_deducted = True
        line.stock_deducted_at = utcnow()
        result.processed.append({"invoice_item_id": line.id, "item_id": item.id, "quantity": line.quantity})

    if result.processed:
        logger.info("Invoice %s: stock deducted for %s lines", invoice.invoice_number, len(result.processed))
    return result


def _restore_for_lines(
    s,
    lines: Iterable[tuple[InvoiceItem, int]],
    reference_type: str,
    reference_id: str,
    performed_by: str | None = None,
) -> StockSyncResult:
    """
    Put back (line, quantity) pairs. Only lines whose stock was deducted are
    touched, never beyond the deducted quantity; the line is flagged restored
    once all of it is back.
    """
    result = StockSyncResult()
    for line, qty in lines:
        qty = min(qty, line.quantity - (line.restored_quantity or 0))
        if not line.stock_deducted or line.stock_restored or qty <= 0:
            continue
        item = s.get(InventoryItem, line.inventory_item_id) if line.inventory_item_id else None
        if item is None:
            result.errors.append({"invoice_item_id": line.id, "error": "Inventory item not found."})
            continue
        _restore(
            s, item, qty, batch_id=line.batch_id, reference_type=reference_type, reference_id=reference_id,
            reason=f"Returned from {reference_type}", performed_by=performed_by,
        )
        line.restored_quantity = (line.restored_quantity or 0) + qty
        if line.restored_quantity >= line.quantity:
            line.stock_restored = True
            line.stock_restored_at = utcnow()
        result.processed.append({"invoice_item_id": line.id, "item_id": item.id, "quantity": qty})
    return result


def _restore_for_invoice(s, invoice: Invoice, performed_by: str | None = None) -> StockSyncResult:
    return _restore_for_lines(
        s, [(li, li.quantity) for li in _stock_lines(invoice)], "invoice", invoice.id, performed_by
    )


def check_stock_availability(lines: list[dict]) -> list[dict]:
    """
    Availability of {inventory_item_id, quantity} lines: whether the item can
    cover the quantity, the shortfall, and whether it would fall to or under
    the minimum level.
    """
    out = []
    with db_session() as s:
        for line in lines:
            item = s.get(InventoryItem, line["inventory_item_id"])
            if item is None:
                raise NotFoundError("Inventory item not found.")
            qty = int(line.get("quantity") or 0)
            out.append({
                "inventory_item_id": item.id,
                "name": item.name,
                "requested": qty,
                "available": item.current_stock,
                "is_available": item.current_stock >= qty,
                "shortfall": max(qty - item.current_stock, 0),
                "low_stock_after": item.current_stock - qty <= item.minimum_stock,
            })
    return out


def deduct_stock_for_invoice(invoice_id: str, performed_by: str | None = None) -> dict:
    with db_session() as s:
        invoice = s.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        return _deduct_for_invoice(s, invoice, performed_by).as_dict()


def restore_stock_for_invoice(invoice_id: str, performed_by: str | None = None) -> dict:
    with db_session() as s:
        invoice = s.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        if not any(li.stock_deducted for li in invoice.items):
            raise BusinessRuleError("No stock was deducted for this invoice.")
        return _restore_for_invoice(s, invoice, performed_by).as_dict()
