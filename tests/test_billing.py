from decimal import Decimal

import pytest
from conftest import dec, tomorrow_at

from clinic.audit import entity_history
from clinic.auth_models import Role
from clinic.auth_service import create_user
from clinic.billing_models import AuditEntityType
from clinic.billing_service import add_payment, create_invoice, delete_invoice, get_invoice
from clinic.exceptions import BusinessRuleError
from clinic.inventory_service import create_batch, create_item, get_item, list_movements
from clinic.ledger import patient_balance
from clinic.services import approve_appointment, book_patient_appointment

DRESSING = {"item_type": "service", "description": "Wound dressing", "unit_price": "500"}


@pytest.fixture
def cough_syrup():
    item = create_item(
        "SYR-100", "Cough syrup 100ml", unit_cost=Decimal("60"), selling_price=Decimal("100"), tax_rate=Decimal("12"),
    )
    create_batch(item["id"], "CS-1", 10)
    return item


def _invoice(client, headers, patient_id, items=None, status="pending", **extra):
    payload = {"patient_id": patient_id, "items": items if items is not None else [DRESSING], "status": status}
    payload.update(extra)
    res = client.post("/api/billing/invoices", headers=headers, json=payload)
    assert res.status_code == 200, res.text
    return res.json()


def _pay(client, headers, invoice_id, amount, method="cash"):
    return client.post(
        f"/api/billing/invoices/{invoice_id}/payments", headers=headers, json={"amount": str(amount), "method": method}
    )


def test_intra_state_invoice_totals_and_number(client, pharmacist_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"])
    assert inv["invoice_number"] == "INV-001001"
    assert inv["is_igst"] is False
    assert inv["place_of_supply"] == "Tamil Nadu"
    line = inv["items"][0]
    assert line["hsn_code"] == "9983"
    assert dec(line["tax_rate"]) == 18
    assert dec(inv["cgst_amount"]) == Decimal("45.00")
    assert dec(inv["sgst_amount"]) == Decimal("45.00")
    assert dec(inv["igst_amount"]) == 0
    assert dec(inv["total_amount"]) == Decimal("590.00")
    assert dec(inv["amount_due"]) == Decimal("590.00")

    second = _invoice(client, pharmacist_headers, patient["id"])
    assert second["invoice_number"] == "INV-001002"


def test_inter_state_patient_gets_igst(client, pharmacist_headers):
    kerala = create_user("joseph@mail.com", "Joseph Thomas", Role.PATIENT, state="Kerala")
    inv = _invoice(client, pharmacist_headers, kerala["id"])
    assert inv["is_igst"] is True
    assert dec(inv["igst_amount"]) == Decimal("90.00")
    assert dec(inv["cgst_amount"]) == 0
    assert dec(inv["total_amount"]) == Decimal("590.00")


def test_extra_discount_comes_off_the_total(client, pharmacist_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"], extra_discount="40")
    assert dec(inv["total_amount"]) == Decimal("550.00")

    res = client.patch(f"/api/billing/invoices/{inv['id']}", headers=pharmacist_headers, json={"extra_discount": "90"})
    assert dec(res.json()["total_amount"]) == Decimal("500.00")
    assert patient_balance(patient["id"])["balance"] == Decimal("500.00")


def test_invoice_discounted_to_zero_is_settled(client, pharmacist_headers, patient, cough_syrup):
    inv = _invoice(client, pharmacist_headers, patient["id"], extra_discount="590")
    assert dec(inv["total_amount"]) == 0
    assert inv["status"] == "paid"
    assert _pay(client, pharmacist_headers, inv["id"], "1").status_code == 400

    free = {"item_type": "medication", "inventory_item_id": cough_syrup["id"], "quantity": 2, "discount_percent": "100"}
    draft = _invoice(client, pharmacist_headers, patient["id"], items=[free], status="draft")
    assert draft["status"] == "draft"
    res = client.post(f"/api/billing/invoices/{draft['id']}/status", headers=pharmacist_headers, json={"status": "pending"})
    assert res.json()["status"] == "paid"
    assert get_item(cough_syrup["id"])["current_stock"] == 8
    assert patient_balance(patient["id"])["balance"] == 0


def test_invoice_lines_follow_the_draft(client, pharmacist_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"], items=[], status="draft")
    assert dec(inv["total_amount"]) == 0

    url = f"/api/billing/invoices/{inv['id']}/items"
    inv = client.post(url, headers=pharmacist_headers, json=DRESSING).json()
    inv = client.post(
        url, headers=pharmacist_headers,
        json={"item_type": "lab_test", "description": "CBC", "unit_price": "300", "tax_rate": "0"},
    ).json()
    assert dec(inv["total_amount"]) == Decimal("890.00")

    lab_line = inv["items"][1]["id"]
    inv = client.patch(f"{url}/{lab_line}", headers=pharmacist_headers, json={"quantity": 2}).json()
    assert dec(inv["total_amount"]) == Decimal("1190.00")

    inv = client.delete(f"{url}/{lab_line}", headers=pharmacist_headers).json()
    assert [li["description"] for li in inv["items"]] == ["Wound dressing"]

    # drafts carry no ledger debit until issued
    assert patient_balance(patient["id"])["balance"] == 0
    res = client.post(f"/api/billing/invoices/{inv['id']}/status", headers=pharmacist_headers, json={"status": "pending"})
    assert res.json()["status"] == "pending"
    assert patient_balance(patient["id"])["balance"] == Decimal("590.00")

    # an issued invoice keeps at least one line
    only_line = inv["items"][0]["id"]
    assert client.delete(f"{url}/{only_line}", headers=pharmacist_headers).status_code == 400


def test_manual_status_changes_are_limited(client, pharmacist_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"])
    url = f"/api/billing/invoices/{inv['id']}/status"
    res = client.post(url, headers=pharmacist_headers, json={"status": "paid"})
    assert res.status_code == 400
    assert "Cannot change invoice status" in res.json()["error"]["message"]
    assert client.post(url, headers=pharmacist_headers, json={"status": "draft"}).json()["status"] == "draft"


def test_payment_rules(client, pharmacist_headers, patient):
    draft = _invoice(client, pharmacist_headers, patient["id"], status="draft")
    res = _pay(client, pharmacist_headers, draft["id"], 100)
    assert res.status_code == 400
    assert "Issue the invoice" in res.json()["error"]["message"]

    inv = _invoice(client, pharmacist_headers, patient["id"])
    assert _pay(client, pharmacist_headers, inv["id"], "590.01").status_code == 400
    assert _pay(client, pharmacist_headers, inv["id"], 0).status_code == 422


def test_partial_then_full_payment(client, pharmacist_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"])

    body = _pay(client, pharmacist_headers, inv["id"], 200).json()
    assert body["invoice"]["status"] == "partial"
    assert dec(body["invoice"]["amount_due"]) == Decimal("390.00")
    assert body["stock"] is None

    body = _pay(client, pharmacist_headers, inv["id"], 390, method="upi").json()
    assert body["invoice"]["status"] == "paid"
    assert body["invoice"]["paid_at"] is not None
    assert _pay(client, pharmacist_headers, inv["id"], 1).status_code == 400

    detail = get_invoice(inv["id"])
    assert sorted(p["method"] for p in detail["payments"]) == ["cash", "upi"]
    assert patient_balance(patient["id"])["balance"] == 0

    actions = [h["action"] for h in entity_history(AuditEntityType.INVOICE, inv["id"])]
    assert actions == ["create", "payment", "payment"]


def test_quick_bill_collects_in_one_step(client, pharmacist_headers, doctor, patient):
    res = client.post(
        "/api/billing/quick-bill",
        headers=pharmacist_headers,
        json={"patient_id": patient["id"], "consultation_fee": "500", "doctor_id": doctor["id"]},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["invoice"]["bill_type"] == "quick"
    assert body["invoice"]["items"][0]["description"] == "Consultation - Dr. Ravi Kumar"
    assert dec(body["payment"]["amount"]) == Decimal("590.00")
    assert get_invoice(body["invoice"]["id"])["status"] == "paid"


def test_quick_bill_can_be_left_unpaid(client, pharmacist_headers, patient):
    res = client.post(
        "/api/billing/quick-bill",
        headers=pharmacist_headers,
        json={"patient_id": patient["id"], "items": [DRESSING], "amount_paid": "0"},
    )
    body = res.json()
    assert body["payment"] is None
    assert body["invoice"]["status"] == "pending"

    empty = client.post("/api/billing/quick-bill", headers=pharmacist_headers, json={"patient_id": patient["id"]})
    assert empty.status_code == 400


def test_pharmacy_bill_deducts_stock(client, pharmacist_headers, patient, cough_syrup):
    res = client.post(
        "/api/billing/pharmacy-bill",
        headers=pharmacist_headers,
        json={"patient_id": patient["id"], "items": [{"inventory_item_id": cough_syrup["id"], "quantity": 2}]},
    )
    assert res.status_code == 200
    body = res.json()
    line = body["invoice"]["items"][0]
    assert line["item_type"] == "medication"
    assert line["hsn_code"] == "3004"
    assert dec(body["invoice"]["total_amount"]) == Decimal("224.00")
    assert body["stock"]["ok"] is True
    assert get_invoice(body["invoice"]["id"])["items"][0]["stock_deducted"] is True
    assert get_item(cough_syrup["id"])["current_stock"] == 8

    sales = list_movements(cough_syrup["id"], reference_id=body["invoice"]["id"])
    assert [m["movement_type"] for m in sales] == ["sale"]


def test_pharmacy_bill_refused_when_short(client, pharmacist_headers, patient, cough_syrup):
    res = client.post(
        "/api/billing/pharmacy-bill",
        headers=pharmacist_headers,
        json={"patient_id": patient["id"], "items": [{"inventory_item_id": cough_syrup["id"], "quantity": 11}]},
    )
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["error"]["message"]
    assert get_item(cough_syrup["id"])["current_stock"] == 10


def test_stock_check(client, pharmacist_headers, cough_syrup):
    res = client.post(
        "/api/billing/stock/check", headers=pharmacist_headers,
        json=[{"inventory_item_id": cough_syrup["id"], "quantity": 12}],
    )
    [row] = res.json()
    assert row["is_available"] is False
    assert row["shortfall"] == 2


def test_cancel_paid_invoice_restores_stock_and_ledger(client, pharmacist_headers, admin_headers, patient, cough_syrup):
    body = client.post(
        "/api/billing/pharmacy-bill",
        headers=pharmacist_headers,
        json={"patient_id": patient["id"], "items": [{"inventory_item_id": cough_syrup["id"], "quantity": 2}]},
    ).json()
    invoice_id = body["invoice"]["id"]
    payment_id = body["payment"]["id"]

    res = client.post(f"/api/billing/invoices/{invoice_id}/cancel", headers=pharmacist_headers, json={"reason": "Wrong patient"})
    data = res.json()
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Wrong patient"
    assert data["stock"]["processed"][0]["quantity"] == 2
    assert get_item(cough_syrup["id"])["current_stock"] == 10

    # the money is still with the clinic: the patient is in credit
    assert patient_balance(patient["id"])["balance"] == Decimal("-224.00")

    res = client.post(
        f"/api/billing/payments/{payment_id}/refunds", headers=admin_headers,
        json={"amount": "224", "reason": "Invoice cancelled"},
    )
    assert res.json()["invoice"]["status"] == "cancelled"
    assert patient_balance(patient["id"])["balance"] == 0

    # a cancelled invoice is terminal
    assert client.post(f"/api/billing/invoices/{invoice_id}/cancel", headers=pharmacist_headers).status_code == 400


def test_refunds(client, pharmacist_headers, admin_headers, patient):
    inv = _invoice(client, pharmacist_headers, patient["id"])
    payment = _pay(client, pharmacist_headers, inv["id"], 590).json()["payment"]
    url = f"/api/billing/payments/{payment['id']}/refunds"

    assert client.post(url, headers=pharmacist_headers, json={"amount": "10", "reason": "x"}).status_code == 403

    res = client.post(url, headers=admin_headers, json={"amount": "100", "reason": "Goodwill"})
    assert res.status_code == 200
    assert res.json()["invoice"]["status"] == "partial"
    assert dec(res.json()["invoice"]["amount_paid"]) == Decimal("490.00")

    res = client.post(url, headers=admin_headers, json={"amount": "500", "reason": "Too much"})
    assert res.status_code == 400

    res = client.post(url, headers=admin_headers, json={"amount": "490", "reason": "Service not given"})
    assert res.json()["invoice"]["status"] == "refunded"
    assert res.json()["refund"]["method"] == "cash"

    detail = get_invoice(inv["id"])
    assert detail["payments"][0]["status"] == "refunded"
    assert dec(detail["payments"][0]["refunded_amount"]) == Decimal("590.00")
    assert patient_balance(patient["id"])["balance"] == Decimal("590.00")


def test_delete_invoice(client, pharmacist_headers, admin_headers, patient):
    draft = _invoice(client, pharmacist_headers, patient["id"], status="draft")
    assert client.delete(f"/api/billing/invoices/{draft['id']}", headers=pharmacist_headers).status_code == 403
    assert client.delete(f"/api/billing/invoices/{draft['id']}", headers=admin_headers).json() == {"ok": True}
    assert client.get(f"/api/billing/invoices/{draft['id']}", headers=admin_headers).status_code == 404

    paid = _invoice(client, pharmacist_headers, patient["id"])
    _pay(client, pharmacist_headers, paid["id"], 590)
    res = client.delete(f"/api/billing/invoices/{paid['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert "Cancel it instead" in res.json()["error"]["message"]


def test_delete_pending_invoice_reverses_ledger(patient):
    inv = create_invoice(patient["id"], [DRESSING], status="pending")
    assert patient_balance(patient["id"])["balance"] == Decimal("590.00")
    delete_invoice(inv["id"])
    assert patient_balance(patient["id"])["balance"] == 0


def test_invoice_from_appointment(client, pharmacist_headers, doctor, patient):
    booking = book_patient_appointment(patient["id"], tomorrow_at(10))
    approve_appointment(booking.appointment_id, doctor["id"])

    res = client.post(
        "/api/billing/from-appointment", headers=pharmacist_headers,
        json={"appointment_id": booking.appointment_id, "status": "pending"},
    )
    assert res.status_code == 200
    inv = res.json()
    assert inv["appointment_id"] == booking.appointment_id
    assert inv["items"][0]["item_type"] == "consultation"
    assert "Cardiology" in inv["items"][0]["description"]
    assert dec(inv["total_amount"]) == Decimal("590.00")

    again = client.post(
        "/api/billing/from-appointment", headers=pharmacist_headers, json={"appointment_id": booking.appointment_id}
    )
    assert again.status_code == 400
    assert inv["invoice_number"] in again.json()["error"]["message"]


def test_settings_change_invoice_prefix(client, admin_headers, pharmacist_headers, patient):
    assert client.put("/api/billing/settings", headers=pharmacist_headers, json={"invoice_prefix": "CLN"}).status_code == 403
    res = client.put("/api/billing/settings", headers=admin_headers, json={"invoice_prefix": "cln", "payment_due_days": 15})
    assert res.json()["invoice_prefix"] == "CLN"
    assert client.put("/api/billing/settings", headers=admin_headers, json={"nope": 1}).status_code == 400

    inv = _invoice(client, pharmacist_headers, patient["id"])
    assert inv["invoice_number"] == "CLN-001001"


def test_billing_reports(client, admin_headers, pharmacist_headers, patient):
    paid = _invoice(client, pharmacist_headers, patient["id"])
    _pay(client, pharmacist_headers, paid["id"], 590)
    _invoice(client, pharmacist_headers, patient["id"])
    _invoice(client, pharmacist_headers, patient["id"], status="draft")

    dash = client.get("/api/billing/reports/dashboard", headers=pharmacist_headers).json()
    assert dash["invoices"]["paid"] == 1
    assert dash["invoices"]["pending"] == 1
    assert dash["invoices"]["draft"] == 1
    assert dec(dash["total_outstanding"]) == Decimal("590.00")

    outstanding = client.get("/api/billing/reports/outstanding", headers=pharmacist_headers).json()
    assert outstanding["count"] == 1
    assert outstanding["overdue_count"] == 0

    assert client.get("/api/billing/reports/gst", headers=pharmacist_headers).status_code == 403
    gst = client.get("/api/billing/reports/gst", headers=admin_headers).json()
    assert gst["invoice_count"] == 2
    assert dec(gst["by_rate"]["18.00"]["cgst_amount"]) == Decimal("90.00")
    assert dec(gst["totals"]["taxable_amount"]) == Decimal("1000.00")

    history = client.get(f"/api/billing/reports/patients/{patient['id']}", headers=pharmacist_headers).json()
    assert dec(history["total_billed"]) == Decimal("1180.00")
    assert dec(history["total_paid"]) == Decimal("590.00")
    assert dec(history["ledger_balance"]) == Decimal("590.00")


def test_treatment_case_billing_summary(client, doctor_headers, doctor, patient):
    res = client.post(
        "/api/billing/cases", headers=doctor_headers,
        json={"patient_id": patient["id"], "title": "Physiotherapy", "doctor_id": doctor["id"]},
    )
    case = res.json()
    assert case["case_number"] == "CASE-000001"

    inv = create_invoice(patient["id"], [DRESSING], status="pending")
    add_payment(inv["id"], 200, "cash")
    detail = client.post(f"/api/billing/cases/{case['id']}/invoices/{inv['id']}", headers=doctor_headers).json()
    assert detail["billing"]["invoice_count"] == 1
    assert dec(detail["billing"]["total_due"]) == Decimal("390.00")

    other = create_user("dev@mail.com", "Dev Nair", Role.PATIENT)
    foreign = create_invoice(other["id"], [DRESSING], status="pending")
    res = client.post(f"/api/billing/cases/{case['id']}/invoices/{foreign['id']}", headers=doctor_headers)
    assert res.status_code == 400

    done = client.post(f"/api/billing/cases/{case['id']}/status", headers=doctor_headers, json={"status": "completed"})
    assert done.json()["end_date"] is not None


def test_payment_on_draft_raises_in_service(patient):
    inv = create_invoice(patient["id"], [DRESSING])
    with pytest.raises(BusinessRuleError):
        add_payment(inv["id"], 10, "cash")
