from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from .auth_service import CurrentUser
from .deps import require_admin, require_pharmacy, require_staff
from .inventory_models import AlertType, BatchStatus, InventoryItemType, MovementType, PurchaseOrderStatus
from .inventory_service import (
    adjust_stock,
    alert_counts,
    approve_purchase_order,
    cancel_purchase_order,
    check_expiry,
    consume_stock,
    create_batch,
    create_category,
    create_item,
    create_purchase_order,
    create_supplier,
    deactivate_item,
    delete_category,
    delete_purchase_order,
    dispense_items,
    get_item,
    get_purchase_order,
    list_alerts,
    list_batches,
    list_categories,
    list_items,
    list_movements,
    list_purchase_orders,
    list_suppliers,
    receive_purchase_order,
    resolve_alert,
    restore_stock,
    update_category,
    update_item,
    update_purchase_order,
    update_supplier,
)
from .reports import expiry_report, low_stock_report, stock_movement_report, stock_valuation

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


# Schemas

class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None


class CategoryUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    is_active: bool | None = None


class SupplierIn(BaseModel):
    name: str | None = None
    contact_person: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    gstin: str | None = None
    is_active: bool | None = None


class ItemFields(BaseModel):
    name: str | None = None
    generic_name: str | None = None
    barcode: str | None = None
    description: str | None = None
    category_id: int | None = None
    supplier_id: int | None = None
    item_type: InventoryItemType | None = None
    unit_of_measure: str | None = None
    minimum_stock: int | None = Field(default=None, ge=0)
    reorder_level: int | None = Field(default=None, ge=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    selling_price: Decimal | None = Field(default=None, ge=0)
    hsn_code: str | None = None
    tax_rate: Decimal | None = Field(default=None, ge=0, le=100)
    requires_prescription: bool | None = None
    is_active: bool | None = None


class ItemCreateIn(ItemFields):
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    opening_stock: int = Field(default=0, ge=0)


class BatchIn(BaseModel):
    batch_number: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    expiry_date: date | None = None
    manufacture_date: date | None = None
    unit_cost: Decimal | None = Field(default=None, ge=0)
    selling_price: Decimal | None = Field(default=None, ge=0)
    supplier_id: int | None = None


class AdjustIn(BaseModel):
    quantity: int
    reason: str = Field(..., min_length=1)
    batch_id: str | None = None


class ConsumeIn(BaseModel):
    quantity: int = Field(..., gt=0)
    batch_id: str | None = None
    force: bool = False
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str | None = None


class ReturnIn(BaseModel):
    quantity: int = Field(..., gt=0)
    batch_id: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str | None = None


class DispenseLineIn(BaseModel):
    inventory_item_id: str | None = None
    medication_name: str | None = None
    quantity: int
    batch_id: str | None = None


class DispenseIn(BaseModel):
    items: list[DispenseLineIn]
    reference_type: str = "dispense"
    reference_id: str | None = None
    force: bool = False


class PoLineIn(BaseModel):
    item_id: str
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)


class PurchaseOrderIn(BaseModel):
    supplier_id: int
    items: list[PoLineIn]
    expected_date: date | None = None
    tax_amount: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    submit: bool = False


class PurchaseOrderUpdateIn(BaseModel):
    items: list[PoLineIn] | None = None
    expected_date: date | None = None
    tax_amount: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    submit: bool = False


class ReceiveLineIn(BaseModel):
    po_item_id: int
    quantity: int = Field(..., gt=0)
    batch_number: str | None = None
    expiry_date: date | None = None
    manufacture_date: date | None = None
    selling_price: Decimal | None = Field(default=None, ge=0)


class ReceiveIn(BaseModel):
    lines: list[ReceiveLineIn]


# Categories / suppliers

@router.get("/categories")
def categories(user: CurrentUser = Depends(require_staff)) -> list[dict]:
    return list_categories()


@router.post("/categories")
def add_category(payload: CategoryIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_category(payload.name, payload.description)


@router.patch("/categories/{category_id}")
def edit_category(category_id: int, payload: CategoryUpdateIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return update_category(category_id, **payload.model_dump(exclude_none=True))


@router.delete("/categories/{category_id}")
def remove_category(category_id: int, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    delete_category(category_id)
    return {"ok": True}


@router.get("/suppliers")
def suppliers(active_only: bool = True, user: CurrentUser = Depends(require_pharmacy)) -> list[dict]:
    return list_suppliers(active_only)


@router.post("/suppliers")
def add_supplier(payload: SupplierIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_supplier(**payload.model_dump(exclude_none=True))


@router.patch("/suppliers/{supplier_id}")
def edit_supplier(supplier_id: int, payload: SupplierIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return update_supplier(supplier_id, **payload.model_dump(exclude_none=True))


# Items / batches

@router.get("/items")
def items(
    search: str | None = None,
    category_id: int | None = None,
    item_type: InventoryItemType | None = None,
    low_stock: bool = False,
    include_inactive: bool = False,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(require_staff),
) -> dict[str, Any]:
    return list_items(search, category_id, item_type, low_stock, include_inactive, page, limit)


@router.post("/items")
def add_item(payload: ItemCreateIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    fields = payload.model_dump(exclude={"sku", "name", "opening_stock"}, exclude_none=True)
    return create_item(payload.sku, payload.name, payload.opening_stock, performed_by=user.id, **fields)


@router.get("/items/{item_id}")
def item_detail(item_id: str, user: CurrentUser = Depends(require_staff)) -> dict[str, Any]:
    return get_item(item_id)


@router.patch("/items/{item_id}")
def edit_item(item_id: str, payload: ItemFields, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return update_item(item_id, **payload.model_dump(exclude_none=True))


@router.delete("/items/{item_id}")
def remove_item(item_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    # soft delete: history stays linked
    return deactivate_item(item_id)


@router.post("/items/{item_id}/batches")
def add_batch(item_id: str, payload: BatchIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    fields = payload.model_dump(exclude={"batch_number", "quantity"}, exclude_none=True)
    return create_batch(item_id, payload.batch_number, payload.quantity, performed_by=user.id, **fields)


@router.get("/batches")
def batches(
    item_id: str | None = None, status: BatchStatus | None = None, user: CurrentUser = Depends(require_pharmacy)
) -> list[dict]:
    return list_batches(item_id, status)


@router.post("/items/{item_id}/adjust")
def adjust(item_id: str, payload: AdjustIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return adjust_stock(item_id, payload.quantity, payload.reason, payload.batch_id, performed_by=user.id)


@router.post("/items/{item_id}/consume")
def consume(item_id: str, payload: ConsumeIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return consume_stock(
        item_id, payload.quantity, payload.batch_id, payload.force,
        reference_type=payload.reference_type, reference_id=payload.reference_id, reason=payload.reason,
        performed_by=user.id,
    )


@router.post("/items/{item_id}/return")
def stock_return(item_id: str, payload: ReturnIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return restore_stock(
        item_id, payload.quantity, payload.batch_id,
        reference_type=payload.reference_type, reference_id=payload.reference_id, reason=payload.reason,
        performed_by=user.id,
    )


@router.get("/movements")
def movements(
    item_id: str | None = None,
    movement_type: MovementType | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    limit: int = 100,
    user: CurrentUser = Depends(require_pharmacy),
) -> list[dict]:
    return list_movements(item_id, movement_type, reference_type, reference_id, limit)


@router.post("/dispense")
def dispense(payload: DispenseIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return dispense_items(
        [line.model_dump() for line in payload.items],
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        force=payload.force,
        performed_by=user.id,
    )


# Alerts

@router.get("/alerts")
def alerts(
    resolved: bool = False,
    alert_type: AlertType | None = None,
    limit: int = 100,
    user: CurrentUser = Depends(require_pharmacy),
) -> list[dict]:
    return list_alerts(resolved, alert_type, limit)


@router.get("/alerts/counts")
def alerts_counts(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return alert_counts()


@router.post("/alerts/{alert_id}/resolve")
def alert_resolve(alert_id: int, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return resolve_alert(alert_id, user.id)


@router.post("/check-expiry")
def run_expiry_check(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return check_expiry()


# Purchase orders

@router.get("/purchase-orders")
def purchase_orders(
    status: PurchaseOrderStatus | None = None,
    supplier_id: int | None = None,
    user: CurrentUser = Depends(require_pharmacy),
) -> list[dict]:
    return list_purchase_orders(status, supplier_id)


@router.post("/purchase-orders")
def add_purchase_order(payload: PurchaseOrderIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return create_purchase_order(
        payload.supplier_id,
        [line.model_dump() for line in payload.items],
        expected_date=payload.expected_date,
        tax_amount=payload.tax_amount,
        notes=payload.notes,
        submit=payload.submit,
        created_by=user.id,
    )


@router.get("/purchase-orders/{po_id}")
def purchase_order(po_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return get_purchase_order(po_id)


@router.patch("/purchase-orders/{po_id}")
def edit_purchase_order(
    po_id: str, payload: PurchaseOrderUpdateIn, user: CurrentUser = Depends(require_pharmacy)
) -> dict[str, Any]:
    lines = [line.model_dump() for line in payload.items] if payload.items is not None else None
    return update_purchase_order(po_id, lines, **payload.model_dump(exclude={"items"}, exclude_none=True))


@router.post("/purchase-orders/{po_id}/approve")
def po_approve(po_id: str, user: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    return approve_purchase_order(po_id, user.id)


@router.post("/purchase-orders/{po_id}/receive")
def po_receive(po_id: str, payload: ReceiveIn, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return receive_purchase_order(po_id, [line.model_dump() for line in payload.lines], performed_by=user.id)


@router.post("/purchase-orders/{po_id}/cancel")
def po_cancel(po_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return cancel_purchase_order(po_id)


@router.delete("/purchase-orders/{po_id}")
def po_delete(po_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    delete_purchase_order(po_id)
    return {"ok": True}


# Reports

@router.get("/reports/valuation")
def report_valuation(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return stock_valuation()


@router.get("/reports/low-stock")
def report_low_stock(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return low_stock_report()


@router.get("/reports/expiry")
def report_expiry(user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return expiry_report()


@router.get("/reports/movements")
def report_movements(
    date_from: date | None = None, date_to: date | None = None, user: CurrentUser = Depends(require_pharmacy)
) -> dict[str, Any]:
    return stock_movement_report(date_from, date_to)
