from datetime import date, timedelta
from decimal import Decimal

import pytest
from conftest import dec

from clinic.exceptions import BusinessRuleError
from clinic.inventory_models import AlertType
from clinic.inventory_service import (
    adjust_stock,
    alert_counts,
    check_expiry,
    consume_stock,
    create_batch,
    create_item,
    create_supplier,
    dispense_items,
    get_item,
    list_alerts,
    list_batches,
    list_movements,
    restore_stock,
)
from clinic.reports import expiry_report, low_stock_report, stock_valuation


def _paracetamol(**fields):
    data = {
        "generic_name": "Acetaminophen",
        "minimum_stock": 5,
        "unit_cost": Decimal("4"),
        "selling_price": Decimal("10"),
        "tax_rate": Decimal("12"),
    }
    data.update(fields)
    return create_item("pcm-500", "Paracetamol 500mg", **data)


def test_create_item_via_api_raises_and_clears_low_stock_alert(client, pharmacist_headers):
    res = client.post(
        "/api/inventory/items",
        headers=pharmacist_headers,
        json={"sku": "amx-250", "name": "Amoxicillin 250mg", "opening_stock": 3, "minimum_stock": 5},
    )
    assert res.status_code == 200
    item = res.json()
    assert item["sku"] == "AMX-250"
    assert item["current_stock"] == 3
    assert item["is_low_stock"] is True

    counts = client.get("/api/inventory/alerts/counts", headers=pharmacist_headers).json()
    assert counts["low_stock"] == 1

    res = client.post(
        f"/api/inventory/items/{item['id']}/batches",
        headers=pharmacist_headers,
        json={"batch_number": "B-1", "quantity": 20, "expiry_date": (date.today() + timedelta(days=400)).isoformat()},
    )
    assert res.status_code == 200
    assert client.get(f"/api/inventory/items/{item['id']}", headers=pharmacist_headers).json()["current_stock"] == 23
    assert client.get("/api/inventory/alerts/counts", headers=pharmacist_headers).json()["total"] == 0


def test_duplicate_sku_refused():
    _paracetamol()
    with pytest.raises(BusinessRuleError):
        create_item("PCM-500", "Other")


def test_doctor_can_read_but_not_write_inventory(client, doctor_headers):
    assert client.get("/api/inventory/items", headers=doctor_headers).status_code == 200
    res = client.post("/api/inventory/items", headers=doctor_headers, json={"sku": "X", "name": "X"})
    assert res.status_code == 403


def test_dispense_takes_earliest_expiry_first():
    item = _paracetamol()
    late = create_batch(item["id"], "LATE", 10, expiry_date=date.today() + timedelta(days=300))
    early = create_batch(item["id"], "EARLY", 4, expiry_date=date.today() + timedelta(days=60))

    res = dispense_items([{"inventory_item_id": item["id"], "quantity": 6}], reference_id="walk-in")
    assert res["warnings"] == []
    assert res["dispensed"][0]["batches"] == [(early["id"], 4), (late["id"], 2)]

    batches = {b["batch_number"]: b for b in list_batches(item["id"])}
    assert batches["EARLY"]["available_quantity"] == 0
    assert batches["EARLY"]["status"] == "depleted"
    assert batches["LATE"]["available_quantity"] == 8
    assert get_item(item["id"])["current_stock"] == 8

    moves = list_movements(item["id"], reference_id="walk-in")
    assert sorted(m["quantity"] for m in moves) == [2, 4]
    assert all(m["movement_type"] == "dispense" for m in moves)


def test_consume_named_batch_first_then_fifo():
    item = _paracetamol()
    early = create_batch(item["id"], "EARLY", 4, expiry_date=date.today() + timedelta(days=60))
    late = create_batch(item["id"], "LATE", 10, expiry_date=date.today() + timedelta(days=300))

    res = consume_stock(item["id"], 12, batch_id=late["id"], reference_type="ward", reference_id="W-7")
    assert res["batches"] == [{"batch_id": late["id"], "quantity": 10}, {"batch_id": early["id"], "quantity": 2}]
    assert res["item"]["current_stock"] == 2
    assert res["warning"] is None

    with pytest.raises(BusinessRuleError):
        consume_stock(item["id"], 3)
    assert consume_stock(item["id"], 3, force=True)["item"]["current_stock"] == -1


def test_return_goes_back_into_batch(client, pharmacist_headers):
    item = _paracetamol()
    batch = create_batch(item["id"], "B1", 5)
    consume_stock(item["id"], 5)
    assert list_batches(item["id"])[0]["status"] == "depleted"

    res = client.post(
        f"/api/inventory/items/{item['id']}/return",
        headers=pharmacist_headers,
        json={"quantity": 2, "batch_id": batch["id"], "reason": "Patient returned unopened strips"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["item"]["current_stock"] == 2
    assert body["movement"]["movement_type"] == "return"
    assert (body["movement"]["quantity_before"], body["movement"]["quantity_after"]) == (0, 2)
    restored = list_batches(item["id"])[0]
    assert (restored["available_quantity"], restored["status"]) == (2, "active")

    other = create_item("ORS-1", "ORS sachet")
    wrong = client.post(
        f"/api/inventory/items/{other['id']}/return", headers=pharmacist_headers,
        json={"quantity": 1, "batch_id": batch["id"]},
    )
    assert wrong.status_code == 404
    assert client.post(
        f"/api/inventory/items/{item['id']}/consume", headers=pharmacist_headers, json={"quantity": 5}
    ).status_code == 400
    with pytest.raises(BusinessRuleError):
        restore_stock(item["id"], 0)


def test_dispense_by_name_and_short_stock_warning():
    item = _paracetamol()
    create_batch(item["id"], "B1", 3)
    res = dispense_items([
        {"medication_name": "acetaminophen", "quantity": 2},
        {"medication_name": "Unknown drug", "quantity": 1},
        {"inventory_item_id": item["id"], "quantity": 5},
    ])
    assert [d["quantity"] for d in res["dispensed"]] == [2]
    assert len(res["warnings"]) == 2
    assert "not found" in res["warnings"][0]
    assert "insufficient stock" in res["warnings"][1]


def test_forced_dispense_can_go_negative():
    item = _paracetamol()
    create_batch(item["id"], "B1", 2)
    res = dispense_items([{"inventory_item_id": item["id"], "quantity": 5}], force=True)
    assert "negative" in res["warnings"][0]
    assert get_item(item["id"])["current_stock"] == -3


def test_adjustments():
    item = _paracetamol()
    res = adjust_stock(item["id"], 12, "Found in store room")
    assert res["item"]["current_stock"] == 12
    assert res["movement"]["movement_type"] == "adjustment_add"
    assert (res["movement"]["quantity_before"], res["movement"]["quantity_after"]) == (0, 12)

    res = adjust_stock(item["id"], -2, "Broken strip")
    assert res["movement"]["movement_type"] == "adjustment_subtract"
    assert res["item"]["current_stock"] == 10

    with pytest.raises(BusinessRuleError):
        adjust_stock(item["id"], -11, "Too many")
    with pytest.raises(BusinessRuleError):
        adjust_stock(item["id"], 0, "Nothing")
    with pytest.raises(BusinessRuleError):
        adjust_stock(item["id"], 1, "  ")


def test_out_of_stock_alert_replaces_low_stock():
    item = _paracetamol()
    adjust_stock(item["id"], 4, "Count")
    assert [a["alert_type"] for a in list_alerts()] == ["low_stock"]
    adjust_stock(item["id"], -4, "Count")
    assert [a["alert_type"] for a in list_alerts()] == ["out_of_stock"]
    assert alert_counts()["total"] == 1


def test_expiry_check_is_idempotent():
    item = _paracetamol()
    today = date.today()
    create_batch(item["id"], "OLD", 5, expiry_date=today - timedelta(days=1))
    create_batch(item["id"], "SOON", 5, expiry_date=today + timedelta(days=10))
    create_batch(item["id"], "FINE", 5, expiry_date=today + timedelta(days=200))

    assert check_expiry(today) == {"expired_alerts": 1, "expiring_alerts": 1}
    assert check_expiry(today) == {"expired_alerts": 0, "expiring_alerts": 0}

    statuses = {b["batch_number"]: b["status"] for b in list_batches(item["id"])}
    assert statuses == {"OLD": "expired", "SOON": "active", "FINE": "active"}
    assert len(list_alerts(alert_type=AlertType.EXPIRED)) == 1

    report = expiry_report(today)
    assert report["counts"] == {"expired": 1, "within_7_days": 0, "within_30_days": 1, "within_90_days": 0}


def test_resolve_alert(client, pharmacist_headers):
    item = _paracetamol()
    adjust_stock(item["id"], 1, "Count")
    alert = list_alerts()[0]
    res = client.post(f"/api/inventory/alerts/{alert['id']}/resolve", headers=pharmacist_headers)
    assert res.json()["is_resolved"] is True
    assert alert_counts()["total"] == 0


def test_purchase_order_lifecycle(client, admin_headers, pharmacist_headers):
    item = _paracetamol()
    supplier = create_supplier(name="MedSupply Ltd", gstin="33ABCDE1234F1Z5")

    res = client.post(
        "/api/inventory/purchase-orders",
        headers=pharmacist_headers,
        json={"supplier_id": supplier["id"], "items": [{"item_id": item["id"], "quantity": 50, "unit_cost": "3.50"}],
              "tax_amount": "21", "submit": True},
    )
    assert res.status_code == 200
    po = res.json()
    assert po["po_number"] == "PO-000001"
    assert po["status"] == "pending"
    assert dec(po["subtotal"]) == Decimal("175.00")
    assert dec(po["total_amount"]) == Decimal("196.00")

    # receiving needs approval, and approval needs an admin
    line_id = po["items"][0]["id"]
    receive = {"lines": [{"po_item_id": line_id, "quantity": 20, "batch_number": "PO1-A"}]}
    assert client.post(f"/api/inventory/purchase-orders/{po['id']}/receive", headers=pharmacist_headers, json=receive).status_code == 400
    assert client.post(f"/api/inventory/purchase-orders/{po['id']}/approve", headers=pharmacist_headers).status_code == 403
    assert client.post(f"/api/inventory/purchase-orders/{po['id']}/approve", headers=admin_headers).json()["status"] == "approved"

    res = client.post(f"/api/inventory/purchase-orders/{po['id']}/receive", headers=pharmacist_headers, json=receive)
    assert res.json()["status"] == "partial"

    too_many = {"lines": [{"po_item_id": line_id, "quantity": 31}]}
    assert client.post(f"/api/inventory/purchase-orders/{po['id']}/receive", headers=pharmacist_headers, json=too_many).status_code == 400

    rest = {"lines": [{"po_item_id": line_id, "quantity": 30, "batch_number": "PO1-B"}]}
    res = client.post(f"/api/inventory/purchase-orders/{po['id']}/receive", headers=pharmacist_headers, json=rest)
    assert res.json()["status"] == "received"
    assert res.json()["items"][0]["quantity_received"] == 50

    assert get_item(item["id"])["current_stock"] == 50
    assert {b["batch_number"] for b in list_batches(item["id"])} == {"PO1-A", "PO1-B"}

    # a received order can be neither cancelled nor deleted
    assert client.post(f"/api/inventory/purchase-orders/{po['id']}/cancel", headers=pharmacist_headers).status_code == 400
    assert client.delete(f"/api/inventory/purchase-orders/{po['id']}", headers=pharmacist_headers).status_code == 400


def test_stock_reports():
    item = _paracetamol(minimum_stock=5, reorder_level=20)
    adjust_stock(item["id"], 10, "Count")
    other = create_item("ORS-1", "ORS sachet", unit_cost=Decimal("2"), selling_price=Decimal("5"))

    valuation = stock_valuation()
    assert valuation["total_cost_value"] == Decimal("40.00")
    assert valuation["total_retail_value"] == Decimal("100.00")
    assert valuation["potential_margin"] == Decimal("60.00")

    report = low_stock_report()
    assert [r["id"] for r in report["out_of_stock"]] == [other["id"]]
    assert [r["id"] for r in report["reorder"]] == [item["id"]]
    assert report["counts"]["low_stock"] == 0
