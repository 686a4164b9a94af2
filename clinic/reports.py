"""
Read-only reports over inventory and billing.

Aggregation happens in Python over the selected rows so that the same
code runs on SQLite and on server databases.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta

from sqlalchemy import func, select

from .auth_models import User
from .billing_models import Invoice, InvoiceStatus, Payment, PaymentRefund, PaymentStatus, RefundStatus
from .billing_service import invoice_flat
from .db import db_session
from .exceptions import NotFoundError
from .gst import ZERO, money, to_decimal
from .inventory_models import BatchStatus, InventoryBatch, InventoryItem, StockAlert, StockMovement
from .ledger import _balance
from .models import Appointment, AppointmentStatus

_ISSUED = (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL, InvoiceStatus.PAID, InvoiceStatus.REFUNDED)
_OUTSTANDING = (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL)


def _day_start(d: date) -> datetime:
    return datetime.combine(d, datetime.min.time())


def _period_key(d: date, group_by: str) -> str:
    if group_by == "month":
        return d.strftime("%Y-%m")
    if group_by == "week":
        year, week, _ = d.isocalendar()
        return f"{year}-W{week:02d}"
    return d.isoformat()


# =========================
# Inventory
# =========================
def stock_valuation() -> dict:
    with db_session() as s:
        items = s.scalars(select(InventoryItem).where(InventoryItem.is_active.is_(True)).order_by(InventoryItem.name))
        rows, by_category = [], defaultdict(lambda: {"items": 0, "cost_value": ZERO, "retail_value": ZERO})
        for i in items:
            qty = max(i.current_stock, 0)
            cost = money(to_decimal(i.unit_cost) * qty)
            retail = money(to_decimal(i.selling_price) * qty)
            category = i.category.name if i.category else "Uncategorized"
            rows.append({"id": i.id, "sku": i.sku, "name": i.name, "category": category,
                         "current_stock": i.current_stock, "cost_value": cost, "retail_value": retail})
            bucket = by_category[category]
            bucket["items"] += 1
            bucket["cost_value"] += cost
            bucket["retail_value"] += retail

    total_cost = sum((r["cost_value"] for r in rows), ZERO)
    total_retail = sum((r["retail_value"] for r in rows), ZERO)
    return {
        "items": rows,
        "by_category": dict(by_category),
        "total_cost_value": total_cost,
        "total_retail_value": total_retail,
        "potential_margin": total_retail - total_cost,
    }


def low_stock_report() -> dict:
    out_of_stock, low, reorder = [], [], []
    with db_session() as s:
        for i in s.scalars(select(InventoryItem).where(InventoryItem.is_active.is_(True)).order_by(InventoryItem.name)):
            row = {"id": i.id, "sku": i.sku, "name": i.name, "current_stock": i.current_stock,
                   "minimum_stock": i.minimum_stock, "reorder_level": i.reorder_level}
            if i.current_stock <= 0:
                out_of_stock.append(row)
            elif i.current_stock <= i.minimum_stock:
                low.append(row)
            elif i.current_stock <= i.reorder_level:
                reorder.append(row)
    return {
        "out_of_stock": out_of_stock,
        "low_stock": low,
        "reorder": reorder,
        "counts": {"out_of_stock": len(out_of_stock), "low_stock": len(low), "reorder": len(reorder)},
    }


def expiry_report(today: date | None = None) -> dict:
    """Active batches with stock in buckets: expired, within 7, 30 and 90 days."""
    today = today or date.today()
    buckets: dict[str, list] = {"expired": [], "within_7_days": [], "within_30_days": [], "within_90_days": []}
    with db_session() as s:
        batches = s.scalars(
            select(InventoryBatch)
            .where(
                InventoryBatch.status.in_((BatchStatus.ACTIVE, BatchStatus.EXPIRED)),
                InventoryBatch.available_quantity > 0,
                InventoryBatch.expiry_date.is_not(None),
                InventoryBatch.expiry_date <= today + timedelta(days=90),
            )
            .order_by(InventoryBatch.expiry_date)
        )
        for b in batches:
            days = (b.expiry_date - today).days
            row = {
                "batch_id": b.id,
                "batch_number": b.batch_number,
                "item_id": b.item_id,
                "item_name": b.item.name,
                "expiry_date": b.expiry_date,
                "days_to_expiry": days,
                "available_quantity": b.available_quantity,
                "value": money(to_decimal(b.unit_cost) * b.available_quantity),
            }
            if days < 0:
                buckets["expired"].append(row)
            elif days <= 7:
                buckets["within_7_days"].append(row)
            elif days <= 30:
                buckets["within_30_days"].append(row)
            else:
                buckets["within_90_days"].append(row)
    return {**buckets, "counts": {k: len(v) for k, v in buckets.items()}, "as_of": today}


def stock_movement_report(date_from: date | None = None, date_to: date | None = None) -> dict:
    conds = []
    if date_from:
        conds.append(StockMovement.created_at >= _day_start(date_from))
    if date_to:
        conds.append(StockMovement.created_at < _day_start(date_to + timedelta(days=1)))
    with db_session() as s:
        rows = s.execute(
            select(
                StockMovement.movement_type,
                func.count(StockMovement.id),
                func.coalesce(func.sum(StockMovement.quantity), 0),
                func.coalesce(func.sum(StockMovement.total_cost), 0),
            )
            .where(*conds)
            .group_by(StockMovement.movement_type)
        ).all()
    by_type = {t.value: {"count": n, "quantity": int(q), "total_cost": money(c)} for t, n, q, c in rows}
    return {"by_type": by_type, "date_from": date_from, "date_to": date_to}


# =========================
# Billing
# =========================
def revenue_report(date_from: date | None = None, date_to: date | None = None, group_by: str = "day") -> dict:
    """Collected money (payments minus refunds) per period and per payment method."""
    if group_by not in ("day", "week", "month"):
        group_by = "day"
    date_to = date_to or date.today()
    date_from = date_from or date_to - timedelta(days=30)
    start, end = _day_start(date_from), _day_start(date_to + timedelta(days=1))

    periods = defaultdict(lambda: {"collected": ZERO, "refunded": ZERO, "payments": 0})
    by_method = defaultdict(lambda: {"amount": ZERO, "count": 0})
    with db_session() as s:
        payments = s.scalars(
            select(Payment).where(
                Payment.status.in_((PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)),
                Payment.payment_date >= start,
                Payment.payment_date < end,
            )
        )
        for p in payments:
            key = _period_key(p.payment_date.date(), group_by)
            periods[key]["collected"] += to_decimal(p.amount)
            periods[key]["payments"] += 1
            by_method[p.method.value]["amount"] += to_decimal(p.amount)
            by_method[p.method.value]["count"] += 1

        refunds = s.scalars(
            select(PaymentRefund).where(
                PaymentRefund.status == RefundStatus.COMPLETED,
                PaymentRefund.created_at >= start,
                PaymentRefund.created_at < end,
            )
        )
        for r in refunds:
            periods[_period_key(r.created_at.date(), group_by)]["refunded"] += to_decimal(r.amount)

    rows = [
        {"period": k, "collected": money(v["collected"]), "refunded": money(v["refunded"]),
         "net": money(v["collected"] - v["refunded"]), "payments": v["payments"]}
        for k, v in sorted(periods.items())
    ]
    collected = sum((r["collected"] for r in rows), ZERO)
    refunded = sum((r["refunded"] for r in rows), ZERO)
    return {
        "date_from": date_from,
        "date_to": date_to,
        "group_by": group_by,
        "periods": rows,
        "by_method": {k: {"amount": money(v["amount"]), "count": v["count"]} for k, v in by_method.items()},
        "total_collected": collected,
        "total_refunded": refunded,
        "net_revenue": collected - refunded,
    }


def outstanding_invoices(as_of: date | None = None) -> dict:
    as_of = as_of or date.today()
    with db_session() as s:
        rows = s.scalars(
            select(Invoice).where(Invoice.status.in_(_OUTSTANDING)).order_by(Invoice.due_date.asc())
        )
        items = []
        for inv in rows:
            data = invoice_flat(inv, detail=False)
            data["days_overdue"] = max((as_of - inv.due_date).days, 0) if inv.due_date else 0
            items.append(data)
    return {
        "items": items,
        "count": len(items),
        "total_outstanding": sum((i["amount_due"] for i in items), ZERO),
        "overdue_count": sum(1 for i in items if i["days_overdue"] > 0),
    }


def _collected_between(s, start: datetime, end: datetime):
    paid = s.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status.in_((PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)),
            Payment.payment_date >= start,
            Payment.payment_date < end,
        )
    )
    refunded = s.scalar(
        select(func.coalesce(func.sum(PaymentRefund.amount), 0)).where(
            PaymentRefund.status == RefundStatus.COMPLETED,
            PaymentRefund.created_at >= start,
            PaymentRefund.created_at < end,
        )
    )
    return money(to_decimal(paid) - to_decimal(refunded))


def dashboard_stats(today: date | None = None) -> dict:
    today = today or date.today()
    month_start = today.replace(day=1)
    with db_session() as s:
        by_status = dict(
            s.execute(select(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status)).all()
        )
        outstanding = s.scalars(select(Invoice).where(Invoice.status.in_(_OUTSTANDING)))
        total_outstanding = sum((inv.amount_due for inv in outstanding), ZERO)
        pending_appointments = s.scalar(
            select(func.count(Appointment.id)).where(Appointment.status == AppointmentStatus.PENDING)
        ) or 0
        open_alerts = s.scalar(select(func.count(StockAlert.id)).where(StockAlert.is_resolved.is_(False))) or 0
        return {
            "invoices": {st.value: by_status.get(st, 0) for st in InvoiceStatus},
            "total_outstanding": total_outstanding,
            "today_revenue": _collected_between(s, _day_start(today), _day_start(today + timedelta(days=1))),
            "month_revenue": _collected_between(s, _day_start(month_start), _day_start(today + timedelta(days=1))),
            "pending_appointments": pending_appointments,
            "open_stock_alerts": open_alerts,
        }


def gst_summary(date_from: date | None = None, date_to: date | None = None) -> dict:
    """Taxable value and CGST / SGST / IGST per rate for issued invoices."""
    conds = [Invoice.status.in_(_ISSUED)]
    if date_from:
        conds.append(Invoice.invoice_date >= date_from)
    if date_to:
        conds.append(Invoice.invoice_date <= date_to)

    keys = ("taxable_amount", "cgst_amount", "sgst_amount", "igst_amount", "tax_amount")
    by_rate = defaultdict(lambda: {k: ZERO for k in keys})
    invoice_count = 0
    with db_session() as s:
        for inv in s.scalars(select(Invoice).where(*conds)):
            invoice_count += 1
            for li in inv.items:
                bucket = by_rate[str(money(li.tax_rate))]
                for k in keys:
                    bucket[k] += to_decimal(getattr(li, k))

    totals = {k: sum((b[k] for b in by_rate.values()), ZERO) for k in keys}
    return {
        "date_from": date_from,
        "date_to": date_to,
        "invoice_count": invoice_count,
        "by_rate": {rate: {k: money(v) for k, v in b.items()} for rate, b in sorted(by_rate.items(), key=lambda kv: to_decimal(kv[0]))},
        "totals": {k: money(v) for k, v in totals.items()},
    }


def patient_billing_history(patient_id: str) -> dict:
    with db_session() as s:
        patient = s.get(User, patient_id)
        if not patient:
            raise NotFoundError("Patient not found.")
        invoices = list(
            s.scalars(
                select(Invoice)
                .where(Invoice.patient_id == patient_id, Invoice.status != InvoiceStatus.DRAFT)
                .order_by(Invoice.invoice_date.desc(), Invoice.invoice_number.desc())
            )
        )
        live = [i for i in invoices if i.status != InvoiceStatus.CANCELLED]
        return {
            "patient_id": patient.id,
            "patient_name": patient.full_name,
            "invoices": [invoice_flat(i, detail=False) for i in invoices],
            "total_billed": sum((to_decimal(i.total_amount) for i in live), ZERO),
            "total_paid": sum((to_decimal(i.amount_paid) for i in live), ZERO),
            "total_due": sum((i.amount_due for i in live), ZERO),
            "ledger_balance": _balance(s, patient.id),
        }
