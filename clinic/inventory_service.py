"""
Pharmacy inventory: items, batches, stock movements, alerts and purchase
orders.

Every change of InventoryItem.current_stock goes through `_apply_stock_change`,
which writes a StockMovement with the quantity before and after and then
refreshes the low / out of stock alerts of the item.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, or_, select

from .db import db_session, utcnow
from .exceptions import BusinessRuleError, NotFoundError
from .gst import money, to_decimal
from .inventory_models import (
    AlertSeverity,
    AlertType,
    BatchStatus,
    InventoryBatch,
    InventoryCategory,
    InventoryItem,
    InventoryItemType,
    MovementType,
    PurchaseOrder,
    PurchaseOrderItem,
    PurchaseOrderStatus,
    StockAlert,
    StockMovement,
    Supplier,
)
from .logger import get_logger

logger = get_logger(__name__)

EXPIRY_WARNING_DAYS = 30

_INBOUND = {
    MovementType.OPENING_STOCK,
    MovementType.PURCHASE,
    MovementType.RETURN,
    MovementType.ADJUSTMENT_ADD,
}


# =========================
# DTO
# =========================
@dataclass
class ConsumeResult:
    item_id: str
    quantity: int
    batches: list[tuple[str | None, int]] = field(default_factory=list)  # (batch_id, qty)
    warning: str | None = None


# =========================
# Serializers
# =========================
def item_flat(i: InventoryItem) -> dict:
    return {
        "id": i.id,
        "sku": i.sku,
        "name": i.name,
        "generic_name": i.generic_name,
        "barcode": i.barcode,
        "description": i.description,
        "category_id": i.category_id,
        "category": i.category.name if i.category else None,
        "supplier_id": i.supplier_id,
        "item_type": i.item_type.value,
        "unit_of_measure": i.unit_of_measure,
        "current_stock": i.current_stock,
        "minimum_stock": i.minimum_stock,
        "reorder_level": i.reorder_level,
        "unit_cost": i.unit_cost,
        "selling_price": i.selling_price,
        "hsn_code": i.hsn_code,
        "tax_rate": i.tax_rate,
        "requires_prescription": i.requires_prescription,
        "is_active": i.is_active,
        "is_low_stock": i.current_stock <= i.minimum_stock,
    }


def batch_flat(b: InventoryBatch) -> dict:
    return {
        "id": b.id,
        "item_id": b.item_id,
        "batch_number": b.batch_number,
        "manufacture_date": b.manufacture_date,
        "expiry_date": b.expiry_date,
        "quantity": b.quantity,
        "available_quantity": b.available_quantity,
        "unit_cost": b.unit_cost,
        "selling_price": b.selling_price,
        "supplier_id": b.supplier_id,
        "purchase_order_id": b.purchase_order_id,
        "status": b.status.value,
        "received_at": b.received_at,
    }


def movement_flat(m: StockMovement) -> dict:
    return {
        "id": m.id,
        "item_id": m.item_id,
        "item_name": m.item.name if m.item else None,
        "batch_id": m.batch_id,
        "movement_type": m.movement_type.value,
        "quantity": m.quantity,
        "quantity_before": m.quantity_before,
        "quantity_after": m.quantity_after,
        "unit_cost": m.unit_cost,
        "total_cost": m.total_cost,
        "reference_type": m.reference_type,
        "reference_id": m.reference_id,
        "reason": m.reason,
        "performed_by": m.performed_by,
        "created_at": m.created_at,
    }


def alert_flat(a: StockAlert) -> dict:
    return {
        "id": a.id,
        "item_id": a.item_id,
        "item_name": a.item.name if a.item else None,
        "batch_id": a.batch_id,
        "alert_type": a.alert_type.value,
        "severity": a.severity.value,
        "message": a.message,
        "is_resolved": a.is_resolved,
        "resolved_at": a.resolved_at,
        "created_at": a.created_at,
    }


def supplier_flat(sp: Supplier) -> dict:
    return {
        "id": sp.id,
        "name": sp.name,
        "contact_person": sp.contact_person,
        "email": sp.email,
        "phone": sp.phone,
        "address": sp.address,
        "gstin": sp.gstin,
        "is_active": sp.is_active,
    }


def purchase_order_flat(po: PurchaseOrder) -> dict:
    return {
        "id": po.id,
        "po_number": po.po_number,
        "supplier_id": po.supplier_id,
        "supplier": po.supplier.name if po.supplier else None,
        "status": po.status.value,
        "order_date": po.order_date,
        "expected_date": po.expected_date,
        "received_date": po.received_date,
        "subtotal": po.subtotal,
        "tax_amount": po.tax_amount,
        "total_amount": po.total_amount,
        "notes": po.notes,
        "approved_at": po.approved_at,
        "items": [
            {
                "id": li.id,
                "item_id": li.item_id,
                "item_name": li.item.name if li.item else None,
                "quantity_ordered": li.quantity_ordered,
                "quantity_received": li.quantity_received,
                "unit_cost": li.unit_cost,
                "total_cost": li.total_cost,
            }
            for li in po.items
        ],
    }


# =========================
# Lookups
# =========================
def _get_item(s, item_id: str) -> InventoryItem:
    item = s.get(InventoryItem, item_id)
    if not item:
        raise NotFoundError("Inventory item not found.")
    return item


def _find_item_by_name(s, name: str) -> InventoryItem | None:
    """Active item whose name or generic name matches (case-insensitive)."""
    name = (name or "").strip()
    if not name:
        return None
    exact = s.scalars(
        select(InventoryItem)
        .where(
            InventoryItem.is_active.is_(True),
            or_(func.lower(InventoryItem.name) == name.lower(), func.lower(InventoryItem.generic_name) == name.lower()),
        )
        .limit(1)
    ).first()
    if exact:
        return exact
    return s.scalars(
        select(InventoryItem)
        .where(InventoryItem.is_active.is_(True), InventoryItem.name.ilike(f"%{name}%"))
        .order_by(InventoryItem.name)
        .limit(1)
    ).first()


def _fifo_batches(s, item_id: str) -> list[InventoryBatch]:
    """Active batches with stock, earliest expiry first (no expiry last)."""
    return list(
        s.scalars(
            select(InventoryBatch)
            .where(
                InventoryBatch.item_id == item_id,
                InventoryBatch.status == BatchStatus.ACTIVE,
                InventoryBatch.available_quantity > 0,
            )
            .order_by(InventoryBatch.expiry_date.is_(None), InventoryBatch.expiry_date.asc(), InventoryBatch.received_at.asc())
        )
    )


def _fifo_batch(s, item_id: str) -> InventoryBatch | None:
    batches = _fifo_batches(s, item_id)
    return batches[0] if batches else None


# =========================
# Stock core
# =========================
def _apply_stock_change(
    s,
    item: InventoryItem,
    movement_type: MovementType,
    quantity: int,
    batch: InventoryBatch | None = None,
    unit_cost: Decimal | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    performed_by: str | None = None,
) -> StockMovement:
    """Move item stock by quantity in the direction of movement_type and log it."""
    if quantity < 0:
        raise BusinessRuleError("Movement quantity must be positive.")
    before = item.current_stock
    after = before + quantity if movement_type in _INBOUND else before - quantity
    item.current_stock = after

    cost = to_decimal(unit_cost) if unit_cost is not None else to_decimal(item.unit_cost)
    mv = StockMovement(
        item_id=item.id,
        batch_id=batch.id if batch else None,
        movement_type=movement_type,
        quantity=quantity,
        quantity_before=before,
        quantity_after=after,
        unit_cost=cost,
        total_cost=money(cost * quantity),
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        performed_by=performed_by,
    )
    s.add(mv)
    s.flush()
    _refresh_stock_alerts(s, item)
    return mv


def _consume(
    s,
    item: InventoryItem,
    quantity: int,
    batch_id: str | None = None,
    force: bool = False,
    movement_type: MovementType = MovementType.SALE,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    performed_by: str | None = None,
) -> ConsumeResult:
    """
    Take quantity out of stock: the named batch first, then FIFO by expiry.
    Units not covered by any batch come off the item total. Without force,
    asking for more than current_stock raises.
    """
    if quantity <= 0:
        raise BusinessRuleError("Quantity must be greater than zero.")
    if item.current_stock < quantity and not force:
        raise BusinessRuleError(
            f"Insufficient stock for {item.name}: available {item.current_stock}, requested {quantity}."
        )

    result = ConsumeResult(item_id=item.id, quantity=quantity)
    batches = _fifo_batches(s, item.id)
    if batch_id:
        batches.sort(key=lambda b: b.id != batch_id)

    remaining = quantity
    for b in batches:
        if remaining <= 0:
            break
        take = min(b.available_quantity, remaining)
        b.available_quantity -= take
        if b.available_quantity == 0:
            b.status = BatchStatus.DEPLETED
        _apply_stock_change(
            s, item, movement_type, take, batch=b, unit_cost=b.unit_cost,
            reference_type=reference_type, reference_id=reference_id, reason=reason, performed_by=performed_by,
        )
        result.batches.append((b.id, take))
        remaining -= take

    if remaining > 0:
        _apply_stock_change(
            s, item, movement_type, remaining,
            reference_type=reference_type, reference_id=reference_id, reason=reason, performed_by=performed_by,
        )
        result.batches.append((None, remaining))

    if item.current_stock < 0:
        result.warning = f"Stock of {item.name} is now negative ({item.current_stock})."
        logger.warning(result.warning)
    return result


def _restore(
    s,
    item: InventoryItem,
    quantity: int,
    batch_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    performed_by: str | None = None,
) -> StockMovement:
    """Put quantity back (returns, cancellations); reopens a depleted batch."""
    batch = s.get(InventoryBatch, batch_id) if batch_id else None
    if batch is not None:
        batch.available_quantity += quantity
        if batch.status == BatchStatus.DEPLETED:
            batch.status = BatchStatus.ACTIVE
    return _apply_stock_change(
        s, item, MovementType.RETURN, quantity, batch=batch,
        reference_type=reference_type, reference_id=reference_id, reason=reason, performed_by=performed_by,
    )


# =========================
# Alerts
# =========================
def _open_alert(s, item_id: str, alert_type: AlertType, batch_id: str | None = None) -> StockAlert | None:
    q = select(StockAlert).where(
        StockAlert.item_id == item_id,
        StockAlert.alert_type == alert_type,
        StockAlert.is_resolved.is_(False),
    )
    if batch_id:
        q = q.where(StockAlert.batch_id == batch_id)
    return s.scalars(q.limit(1)).first()


def _ensure_alert(
    s, item: InventoryItem, alert_type: AlertType, severity: AlertSeverity, message: str, batch_id: str | None = None
) -> bool:
    """Create the alert unless an unresolved one of the same kind exists."""
    if _open_alert(s, item.id, alert_type, batch_id):
        return False
    s.add(StockAlert(item_id=item.id, batch_id=batch_id, alert_type=alert_type, severity=severity, message=message))
    s.flush()
    return True


def _resolve_alerts(s, item_id: str, *alert_types: AlertType) -> None:
    alerts = s.scalars(
        select(StockAlert).where(
            StockAlert.item_id == item_id,
            StockAlert.alert_type.in_(alert_types),
            StockAlert.is_resolved.is_(False),
        )
    )
    for a in alerts:
        a.is_resolved = True
        a.resolved_at = utcnow()


def _refresh_stock_alerts(s, item: InventoryItem) -> None:
    if item.current_stock <= 0:
        _resolve_alerts(s, item.id, AlertType.LOW_STOCK)
        _ensure_alert(s, item, AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, f"{item.name} is out of stock.")
    elif item.current_stock <= item.minimum_stock:
        _resolve_alerts(s, item.id, AlertType.OUT_OF_STOCK)
        _ensure_alert(
            s, item, AlertType.LOW_STOCK, AlertSeverity.HIGH,
            f"{item.name} is low on stock ({item.current_stock} left, minimum {item.minimum_stock}).",
        )
    else:
        _resolve_alerts(s, item.id, AlertType.LOW_STOCK, AlertType.OUT_OF_STOCK)


def check_expiry(today: date | None = None) -> dict:
    """
    Scan active batches with stock:
    - already expired -> batch status expired + 'expired' alert (critical)
    - expiring within 30 days -> 'expiring_soon' alert (medium)
    Idempotent: unresolved alerts are not duplicated.
    """
    today = today or date.today()
    horizon = today + timedelta(days=EXPIRY_WARNING_DAYS)
    expired = expiring = 0

    with db_session() as s:
        batches = s.scalars(
            select(InventoryBatch).where(
                InventoryBatch.status == BatchStatus.ACTIVE,
                InventoryBatch.available_quantity > 0,
                InventoryBatch.expiry_date.is_not(None),
                InventoryBatch.expiry_date <= horizon,
            )
        ).all()
        for b in batches:
            if b.expiry_date < today:
                b.status = BatchStatus.EXPIRED
                if _ensure_alert(
                    s, b.item, AlertType.EXPIRED, AlertSeverity.CRITICAL,
                    f"Batch {b.batch_number} of {b.item.name} expired on {b.expiry_date.isoformat()} "
                    f"({b.available_quantity} units).",
                    batch_id=b.id,
                ):
                    expired += 1
            else:
                days = (b.expiry_date - today).days
                if _ensure_alert(
                    s, b.item, AlertType.EXPIRING_SOON, AlertSeverity.MEDIUM,
                    f"Batch {b.batch_number} of {b.item.name} expires in {days} days.",
                    batch_id=b.id,
                ):
                    expiring += 1

    logger.info("Expiry check: %s expired, %s expiring soon", expired, expiring)
    return {"expired_alerts": expired, "expiring_alerts": expiring}


def list_alerts(resolved: bool = False, alert_type: AlertType | None = None, limit: int = 100) -> list[dict]:
    with db_session() as s:
        q = select(StockAlert).where(StockAlert.is_resolved.is_(resolved))
        if alert_type:
            q = q.where(StockAlert.alert_type == alert_type)
        return [alert_flat(a) for a in s.scalars(q.order_by(StockAlert.created_at.desc()).limit(limit))]


def alert_counts() -> dict:
    with db_session() as s:
        rows = s.execute(
            select(StockAlert.alert_type, func.count(StockAlert.id))
            .where(StockAlert.is_resolved.is_(False))
            .group_by(StockAlert.alert_type)
        ).all()
        counts = {t.value: 0 for t in AlertType}
        counts.update({t.value: n for t, n in rows})
        counts["total"] = sum(n for _, n in rows)
        return counts


def resolve_alert(alert_id: int, user_id: str | None = None) -> dict:
    with db_session() as s:
        a = s.get(StockAlert, alert_id)
        if not a:
            raise NotFoundError("Alert not found.")
        if not a.is_resolved:
            a.is_resolved = True
            a.resolved_at = utcnow()
            a.resolved_by = user_id
        return alert_flat(a)


# =========================
# Categories / suppliers
# =========================
def list_categories() -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(InventoryCategory, func.count(InventoryItem.id))
            .outerjoin(InventoryItem, InventoryItem.category_id == InventoryCategory.id)
            .group_by(InventoryCategory.id)
            .order_by(InventoryCategory.name)
        ).all()
        return [
            {"id": c.id, "name": c.name, "description": c.description, "is_active": c.is_active, "items": n}
            for c, n in rows
        ]


def create_category(name: str, description: str | None = None) -> dict:
    name = (name or "").strip()
    if not name:
        raise BusinessRuleError("Category name is required.")
    with db_session() as s:
        if s.execute(select(InventoryCategory.id).where(InventoryCategory.name == name)).first():
            raise BusinessRuleError("Category already exists.")
        c = InventoryCategory(name=name, description=description)
        s.add(c)
        s.flush()
        return {"id": c.id, "name": c.name, "description": c.description, "is_active": c.is_active}


def update_category(category_id: int, **fields) -> dict:
    with db_session() as s:
        c = s.get(InventoryCategory, category_id)
        if not c:
            raise NotFoundError("Category not found.")
        for f in ("name", "description", "is_active"):
            if fields.get(f) is not None:
                setattr(c, f, fields[f])
        return {"id": c.id, "name": c.name, "description": c.description, "is_active": c.is_active}


def delete_category(category_id: int) -> None:
    with db_session() as s:
        c = s.get(InventoryCategory, category_id)
        if not c:
            raise NotFoundError("Category not found.")
        if s.execute(select(InventoryItem.id).where(InventoryItem.category_id == category_id).limit(1)).first():
            raise BusinessRuleError("Category is used by inventory items.")
        s.delete(c)


_SUPPLIER_FIELDS = ("name", "contact_person", "email", "phone", "address", "gstin", "is_active")


def list_suppliers(active_only: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Supplier)
        if active_only:
            q = q.where(Supplier.is_active.is_(True))
        return [supplier_flat(sp) for sp in s.scalars(q.order_by(Supplier.name))]


def create_supplier(**fields) -> dict:
    if not (fields.get("name") or "").strip():
        raise BusinessRuleError("Supplier name is required.")
    with db_session() as s:
        sp = Supplier(**{f: fields[f] for f in _SUPPLIER_FIELDS if fields.get(f) is not None})
        s.add(sp)
        s.flush()
        return supplier_flat(sp)


def update_supplier(supplier_id: int, **fields) -> dict:
    with db_session() as s:
        sp = s.get(Supplier, supplier_id)
        if not sp:
            raise NotFoundError("Supplier not found.")
        for f in _SUPPLIER_FIELDS:
            if fields.get(f) is not None:
                setattr(sp, f, fields[f])
        return supplier_flat(sp)


# =========================
# Items
# =========================
_ITEM_FIELDS = (
    "name", "generic_name", "barcode", "description", "category_id", "supplier_id", "item_type",
    "unit_of_measure", "minimum_stock", "reorder_level", "unit_cost", "selling_price", "hsn_code",
    "tax_rate", "requires_prescription", "is_active",
)


def list_items(
    search: str | None = None,
    category_id: int | None = None,
    item_type: InventoryItemType | None = None,
    low_stock: bool = False,
    include_inactive: bool = False,
    page: int = 1,
    limit: int = 50,
) -> dict:
    conds = []
    if not include_inactive:
        conds.append(InventoryItem.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        conds.append(or_(
            InventoryItem.name.ilike(like),
            InventoryItem.generic_name.ilike(like),
            InventoryItem.sku.ilike(like),
            InventoryItem.barcode.ilike(like),
        ))
    if category_id:
        conds.append(InventoryItem.category_id == category_id)
    if item_type:
        conds.append(InventoryItem.item_type == item_type)
    if low_stock:
        conds.append(InventoryItem.current_stock <= InventoryItem.minimum_stock)

    page = max(page, 1)
    with db_session() as s:
        total = s.scalar(select(func.count(InventoryItem.id)).where(*conds)) or 0
        rows = s.scalars(
            select(InventoryItem).where(*conds).order_by(InventoryItem.name).offset((page - 1) * limit).limit(limit)
        )
        return {"items": [item_flat(i) for i in rows], "total": total, "page": page, "limit": limit}


def get_item(item_id: str) -> dict:
    with db_session() as s:
        item = _get_item(s, item_id)
        data = item_flat(item)
        data["batches"] = [batch_flat(b) for b in item.batches]
        data["recent_movements"] = [
            movement_flat(m)
            for m in s.scalars(
                select(StockMovement)
                .where(StockMovement.item_id == item.id)
                .order_by(StockMovement.id.desc())
                .limit(20)
            )
        ]
        return data


def create_item(sku: str, name: str, opening_stock: int = 0, performed_by: str | None = None, **fields) -> dict:
    sku = (sku or "").strip().upper()
    if not sku or not (name or "").strip():
        raise BusinessRuleError("SKU and name are required.")
    if opening_stock < 0:
        raise BusinessRuleError("Opening stock cannot be negative.")

    with db_session() as s:
        if s.execute(select(InventoryItem.id).where(InventoryItem.sku == sku)).first():
            raise BusinessRuleError("SKU already exists.")
        item = InventoryItem(sku=sku, name=name.strip(), current_stock=0)
        for f in _ITEM_FIELDS:
            if fields.get(f) is not None:
                setattr(item, f, fields[f])
        s.add(item)
        s.flush()

        if opening_stock:
            _apply_stock_change(
                s, item, MovementType.OPENING_STOCK, opening_stock, reason="Opening stock", performed_by=performed_by
            )
        else:
            _refresh_stock_alerts(s, item)
        logger.info("Inventory item created: %s %s", item.sku, item.name)
        return item_flat(item)


def update_item(item_id: str, **fields) -> dict:
    """Stock is not editable here: use adjust_stock."""
    with db_session() as s:
        item = _get_item(s, item_id)
        for f in _ITEM_FIELDS:
            if fields.get(f) is not None:
                setattr(item, f, fields[f])
        s.flush()
        _refresh_stock_alerts(s, item)
        return item_flat(item)


def deactivate_item(item_id: str) -> dict:
    with db_session() as s:
        item = _get_item(s, item_id)
        item.is_active = False
        return item_flat(item)


# =========================
# Batches / adjustments
# =========================
def _create_batch(
    s,
    item: InventoryItem,
    batch_number: str,
    quantity: int,
    expiry_date: date | None = None,
    manufacture_date: date | None = None,
    unit_cost: Decimal | None = None,
    selling_price: Decimal | None = None,
    supplier_id: int | None = None,
    purchase_order_id: str | None = None,
    performed_by: str | None = None,
) -> InventoryBatch:
    if quantity <= 0:
        raise BusinessRuleError("Batch quantity must be greater than zero.")
    cost = to_decimal(unit_cost) if unit_cost is not None else to_decimal(item.unit_cost)
    batch = InventoryBatch(
        item_id=item.id,
        batch_number=batch_number,
        quantity=quantity,
        available_quantity=quantity,
        expiry_date=expiry_date,
        manufacture_date=manufacture_date,
        unit_cost=cost,
        selling_price=selling_price,
        supplier_id=supplier_id or item.supplier_id,
        purchase_order_id=purchase_order_id,
        status=BatchStatus.ACTIVE,
    )
    s.add(batch)
    s.flush()
    _apply_stock_change(
        s, item, MovementType.PURCHASE, quantity, batch=batch, unit_cost=cost,
        reference_type="purchase_order" if purchase_order_id else "batch",
        reference_id=purchase_order_id or batch.id,
        reason=f"Batch {batch_number} received",
        performed_by=performed_by,
    )
    return batch


def create_batch(item_id: str, batch_number: str, quantity: int, performed_by: str | None = None, **fields) -> dict:
    with db_session() as s:
        item = _get_item(s, item_id)
        b = _create_batch(s, item, batch_number, quantity, performed_by=performed_by, **fields)
        logger.info("Batch %s (%s units) added to %s", batch_number, quantity, item.sku)
        return batch_flat(b)


def list_batches(item_id: str | None = None, status: BatchStatus | None = None) -> list[dict]:
    with db_session() as s:
        q = select(InventoryBatch)
        if item_id:
            q = q.where(InventoryBatch.item_id == item_id)
        if status:
            q = q.where(InventoryBatch.status == status)
        return [batch_flat(b) for b in s.scalars(q.order_by(InventoryBatch.expiry_date.asc()))]


def adjust_stock(
    item_id: str, quantity: int, reason: str, batch_id: str | None = None, performed_by: str | None = None
) -> dict:
    """
    Manual correction: positive quantity adds (adjustment_add), negative
    removes (adjustment_subtract). Never below zero, for item or batch.
    """
    if quantity == 0:
        raise BusinessRuleError("Adjustment quantity cannot be zero.")
    if not (reason or "").strip():
        raise BusinessRuleError("A reason is required for stock adjustments.")

    with db_session() as s:
        item = _get_item(s, item_id)
        batch = None
        if batch_id:
            batch = s.get(InventoryBatch, batch_id)
            if not batch or batch.item_id != item.id:
                raise NotFoundError("Batch not found.")

        if quantity > 0:
            if batch is not None:
                batch.available_quantity += quantity
                if batch.status == BatchStatus.DEPLETED:
                    batch.status = BatchStatus.ACTIVE
            mv = _apply_stock_change(
                s, item, MovementType.ADJUSTMENT_ADD, quantity, batch=batch, reason=reason, performed_by=performed_by
            )
        else:
            qty = -quantity
            if item.current_stock < qty:
                raise BusinessRuleError(f"Cannot remove {qty}: only {item.current_stock} in stock.")
            if batch is not None:
                if batch.available_quantity < qty:
                    raise BusinessRuleError(f"Cannot remove {qty}: batch has {batch.available_quantity}.")
                batch.available_quantity -= qty
                if batch.available_quantity == 0:
                    batch.status = BatchStatus.DEPLETED
            mv = _apply_stock_change(
                s, item, MovementType.ADJUSTMENT_SUBTRACT, qty, batch=batch, reason=reason, performed_by=performed_by
            )
        logger.info("Stock adjusted for %s: %+d (%s)", item.sku, quantity, reason)
        return {"item": item_flat(item), "movement": movement_flat(mv)}


def _item_batch(s, item: InventoryItem, batch_id: str | None) -> InventoryBatch | None:
    if not batch_id:
        return None
    batch = s.get(InventoryBatch, batch_id)
    if not batch or batch.item_id != item.id:
        raise NotFoundError("Batch not found.")
    return batch


def consume_stock(
    item_id: str,
    quantity: int,
    batch_id: str | None = None,
    force: bool = False,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    performed_by: str | None = None,
) -> dict:
    """Take stock out of one item: the given batch first, then FIFO by expiry."""
    with db_session() as s:
        item = _get_item(s, item_id)
        _item_batch(s, item, batch_id)
        res = _consume(
            s, item, int(quantity), batch_id=batch_id, force=force,
            reference_type=reference_type, reference_id=reference_id, reason=reason, performed_by=performed_by,
        )
        logger.info("Consumed %s x %s from %s batch(es)", quantity, item.sku, len(res.batches))
        return {
            "item": item_flat(item),
            "batches": [{"batch_id": b, "quantity": q} for b, q in res.batches],
            "warning": res.warning,
        }


def restore_stock(
    item_id: str,
    quantity: int,
    batch_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    performed_by: str | None = None,
) -> dict:
    """Goods coming back (patient returns); goes back into the batch when given."""
    if int(quantity) <= 0:
        raise BusinessRuleError("Quantity must be greater than zero.")
    with db_session() as s:
        item = _get_item(s, item_id)
        _item_batch(s, item, batch_id)
        mv = _restore(
            s, item, int(quantity), batch_id=batch_id,
            reference_type=reference_type, reference_id=reference_id, reason=reason, performed_by=performed_by,
        )
        logger.info("Restored %s x %s (%s)", quantity, item.sku, reason or "return")
        return {"item": item_flat(item), "movement": movement_flat(mv)}


def list_movements(
    item_id: str | None = None,
    movement_type: MovementType | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    with db_session() as s:
        q = select(StockMovement)
        if item_id:
            q = q.where(StockMovement.item_id == item_id)
        if movement_type:
            q = q.where(StockMovement.movement_type == movement_type)
        if reference_type:
            q = q.where(StockMovement.reference_type == reference_type)
        if reference_id:
            q = q.where(StockMovement.reference_id == reference_id)
        return [movement_flat(m) for m in s.scalars(q.order_by(StockMovement.id.desc()).limit(limit))]


# =========================
# Walk-in dispensing
# =========================
def dispense_items(
    items: list[dict],
    reference_type: str = "dispense",
    reference_id: str | None = None,
    force: bool = False,
    performed_by: str | None = None,
) -> dict:
    """
    Dispense a list of {inventory_item_id | medication_name, quantity}.
    Unknown or short items become warnings; with force, short items are
    dispensed anyway and may drive stock negative.
    """
    dispensed, warnings = [], []
    with db_session() as s:
        for line in items:
            qty = int(line.get("quantity") or 0)
            label = line.get("medication_name") or line.get("inventory_item_id")
            item = s.get(InventoryItem, line["inventory_item_id"]) if line.get("inventory_item_id") else None
            if item is None:
                item = _find_item_by_name(s, line.get("medication_name") or "")
            if item is None:
                warnings.append(f"{label}: not found in inventory.")
                continue
            if qty <= 0:
                warnings.append(f"{item.name}: invalid quantity.")
                continue
            if item.current_stock < qty and not force:
                warnings.append(f"{item.name}: insufficient stock ({item.current_stock} available, {qty} requested).")
                continue
            res = _consume(
                s, item, qty, batch_id=line.get("batch_id"), force=force, movement_type=MovementType.DISPENSE,
                reference_type=reference_type, reference_id=reference_id, performed_by=performed_by,
            )
            if res.warning:
                warnings.append(res.warning)
            dispensed.append({"item_id": item.id, "name": item.name, "quantity": qty, "batches": res.batches})
    return {"dispensed": dispensed, "warnings": warnings}


# =========================
# Purchase orders
# =========================
def _next_po_number(s) -> str:
    last = s.scalar(
        select(PurchaseOrder.po_number).where(PurchaseOrder.po_number.like("PO-%")).order_by(PurchaseOrder.po_number.desc()).limit(1)
    )
    n = int(last.split("-")[-1]) + 1 if last else 1
    return f"PO-{n:06d}"


def _get_po(s, po_id: str) -> PurchaseOrder:
    po = s.get(PurchaseOrder, po_id)
    if not po:
        raise NotFoundError("Purchase order not found.")
    return po


def _set_po_lines(s, po: PurchaseOrder, lines: list[dict]) -> None:
    if not lines:
        raise BusinessRuleError("A purchase order needs at least one item.")
    po.items.clear()
    subtotal = Decimal("0")
    for line in lines:
        item = _get_item(s, line["item_id"])
        qty = int(line["quantity"])
        if qty <= 0:
            raise BusinessRuleError("Ordered quantity must be greater than zero.")
        cost = to_decimal(line.get("unit_cost") if line.get("unit_cost") is not None else item.unit_cost)
        total = money(cost * qty)
        po.items.append(PurchaseOrderItem(item_id=item.id, quantity_ordered=qty, unit_cost=cost, total_cost=total))
        subtotal += total
    po.subtotal = money(subtotal)
    po.total_amount = money(po.subtotal + to_decimal(po.tax_amount))


def create_purchase_order(
    supplier_id: int,
    items: list[dict],
    expected_date: date | None = None,
    tax_amount: Decimal | None = None,
    notes: str | None = None,
    submit: bool = False,
    created_by: str | None = None,
) -> dict:
    with db_session() as s:
        if not s.get(Supplier, supplier_id):
            raise NotFoundError("Supplier not found.")
        po = PurchaseOrder(
            po_number=_next_po_number(s),
            supplier_id=supplier_id,
            status=PurchaseOrderStatus.PENDING if submit else PurchaseOrderStatus.DRAFT,
            order_date=date.today(),
            expected_date=expected_date,
            tax_amount=money(tax_amount or 0),
            notes=notes,
            created_by=created_by,
        )
        s.add(po)
        _set_po_lines(s, po, items)
        s.flush()
        logger.info("Purchase order %s created (%s lines)", po.po_number, len(po.items))
        return purchase_order_flat(po)


def update_purchase_order(po_id: str, items: list[dict] | None = None, **fields) -> dict:
    with db_session() as s:
        po = _get_po(s, po_id)
        if po.status not in (PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.PENDING):
            raise BusinessRuleError(f"Cannot edit a {po.status.value} purchase order.")
        for f in ("expected_date", "notes"):
            if fields.get(f) is not None:
                setattr(po, f, fields[f])
        if fields.get("tax_amount") is not None:
            po.tax_amount = money(fields["tax_amount"])
        if fields.get("submit") and po.status == PurchaseOrderStatus.DRAFT:
            po.status = PurchaseOrderStatus.PENDING
        if items is not None:
            _set_po_lines(s, po, items)
        else:
            po.total_amount = money(to_decimal(po.subtotal) + to_decimal(po.tax_amount))
        s.flush()
        return purchase_order_flat(po)


def list_purchase_orders(status: PurchaseOrderStatus | None = None, supplier_id: int | None = None) -> list[dict]:
    with db_session() as s:
        q = select(PurchaseOrder)
        if status:
            q = q.where(PurchaseOrder.status == status)
        if supplier_id:
            q = q.where(PurchaseOrder.supplier_id == supplier_id)
        return [purchase_order_flat(po) for po in s.scalars(q.order_by(PurchaseOrder.created_at.desc()))]


def get_purchase_order(po_id: str) -> dict:
    with db_session() as s:
        return purchase_order_flat(_get_po(s, po_id))


def approve_purchase_order(po_id: str, user_id: str | None = None) -> dict:
    with db_session() as s:
        po = _get_po(s, po_id)
        if po.status not in (PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.PENDING):
            raise BusinessRuleError(f"Cannot approve a {po.status.value} purchase order.")
        po.status = PurchaseOrderStatus.APPROVED
        po.approved_by = user_id
        po.approved_at = utcnow()
        return purchase_order_flat(po)


def receive_purchase_order(po_id: str, lines: list[dict], performed_by: str | None = None) -> dict:
    """
    Receive goods against an approved order. Each line
    {po_item_id, quantity, batch_number, expiry_date?, selling_price?}
    creates a batch. The order ends received when every line is complete,
    partial otherwise.
    """
    if not lines:
        raise BusinessRuleError("Nothing to receive.")
    with db_session() as s:
        po = _get_po(s, po_id)
        if po.status not in (PurchaseOrderStatus.APPROVED, PurchaseOrderStatus.PARTIAL):
            raise BusinessRuleError(f"Cannot receive a {po.status.value} purchase order.")

        by_id = {li.id: li for li in po.items}
        for line in lines:
            li = by_id.get(line["po_item_id"])
            if li is None:
                raise NotFoundError("Purchase order line not found.")
            qty = int(line["quantity"])
            outstanding = li.quantity_ordered - li.quantity_received
            if qty <= 0 or qty > outstanding:
                raise BusinessRuleError(f"Invalid quantity for {li.item.name}: {outstanding} outstanding.")
            _create_batch(
                s, li.item, line.get("batch_number") or f"{po.po_number}-{li.id}", qty,
                expiry_date=line.get("expiry_date"),
                manufacture_date=line.get("manufacture_date"),
                unit_cost=li.unit_cost,
                selling_price=line.get("selling_price"),
                supplier_id=po.supplier_id,
                purchase_order_id=po.id,
                performed_by=performed_by,
            )
            li.quantity_received += qty

        if all(li.quantity_received >= li.quantity_ordered for li in po.items):
            po.status = PurchaseOrderStatus.RECEIVED
            po.received_date = date.today()
        else:
            po.status = PurchaseOrderStatus.PARTIAL
        s.flush()
        logger.info("Purchase order %s received (%s)", po.po_number, po.status.value)
        return purchase_order_flat(po)


def cancel_purchase_order(po_id: str) -> dict:
    with db_session() as s:
        po = _get_po(s, po_id)
        if po.status in (PurchaseOrderStatus.PARTIAL, PurchaseOrderStatus.RECEIVED, PurchaseOrderStatus.CANCELLED):
            raise BusinessRuleError(f"Cannot cancel a {po.status.value} purchase order.")
        po.status = PurchaseOrderStatus.CANCELLED
        return purchase_order_flat(po)


def delete_purchase_order(po_id: str) -> None:
    with db_session() as s:
        po = _get_po(s, po_id)
        if po.status not in (PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.CANCELLED):
            raise BusinessRuleError("Only draft or cancelled purchase orders can be deleted.")
        s.delete(po)
