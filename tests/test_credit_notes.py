from decimal import Decimal

import pytest
from conftest import dec

from clinic.billing_service import create_invoice, create_pharmacy_bill, get_invoice
from clinic.credit_notes import change_credit_note_status, create_credit_note
from clinic.exceptions import BusinessRuleError
from clinic.inventory_service import create_batch, create_item, get_item
from clinic.ledger import patient_balance


@pytest.fixture
def syrup_bill(patient):
    item = create_item(
        "SYR-100", "Cough syrup 100ml", unit_cost=Decimal("60"), selling_price=Decimal("100"), tax_rate=Decimal("12"),
    )
    create_batch(item["id"], "CS-1", 10)
    bill = create_pharmacy_bill(patient["id"], [{"inventory_item_id": item["id"], "quantity": 4}])
    return item, bill["invoice"]


def test_partial_credit_prorates_and_restores_stock(client, admin_headers, patient, syrup_bill):
    item, invoice = syrup_bill
    assert dec(invoice["total_amount"]) == Decimal("448.00")
    assert get_item(item["id"])["current_stock"] == 6
    line_id = invoice["items"][0]["id"]

    res = client.post(
        "/api/billing/credit-notes",
        headers=admin_headers,
        json={"invoice_id": invoice["id"], "reason": "Damaged bottle", "items": [{"invoice_item_id": line_id, "quantity": 1}]},
    )
    assert res.status_code == 200
    note = res.json()
    assert note["credit_note_number"] == "CN-000001"
    assert note["status"] == "issued"
    assert dec(note["subtotal"]) == Decimal("100.00")
    assert dec(note["cgst_amount"]) == Decimal("6.00")
    assert dec(note["sgst_amount"]) == Decimal("6.00")
    assert dec(note["total_amount"]) == Decimal("112.00")
    assert note["stock"]["processed"] == [{"invoice_item_id": line_id, "item_id": item["id"], "quantity": 1}]

    assert get_item(item["id"])["current_stock"] == 7
    assert patient_balance(patient["id"])["balance"] == Decimal("-112.00")

    detail = get_invoice(invoice["id"])
    assert detail["status"] == "paid"
    assert detail["credited_amount"] == Decimal("112.00")


def test_cannot_credit_more_than_remains(syrup_bill):
    _, invoice = syrup_bill
    line_id = invoice["items"][0]["id"]
    create_credit_note(invoice["id"], "Returned", [{"invoice_item_id": line_id, "quantity": 1}])

    with pytest.raises(BusinessRuleError) as exc:
        create_credit_note(invoice["id"], "Returned again", [{"invoice_item_id": line_id, "quantity": 4}])
    assert "at most 3" in exc.value.message

    # no items credits whatever is left
    rest = create_credit_note(invoice["id"], "Full return")
    assert rest["items"][0]["quantity"] == 3
    with pytest.raises(BusinessRuleError):
        create_credit_note(invoice["id"], "Nothing left")


def test_cancelling_an_issued_note_debits_again(client, admin_headers, patient, syrup_bill):
    item, invoice = syrup_bill
    note = create_credit_note(invoice["id"], "Returned", [{"invoice_item_id": invoice["items"][0]["id"], "quantity": 2}])
    assert patient_balance(patient["id"])["balance"] == Decimal("-224.00")

    res = client.post(f"/api/billing/credit-notes/{note['id']}/status", headers=admin_headers, json={"status": "cancelled"})
    assert res.json()["status"] == "cancelled"
    assert patient_balance(patient["id"])["balance"] == 0
    # returned goods stay in stock
    assert get_item(item["id"])["current_stock"] == 8

    res = client.post(f"/api/billing/credit-notes/{note['id']}/status", headers=admin_headers, json={"status": "issued"})
    assert res.status_code == 400


def test_draft_note_is_issued_later(patient, syrup_bill):
    _, invoice = syrup_bill
    note = create_credit_note(invoice["id"], "Price correction", as_draft=True)
    assert note["status"] == "draft"
    assert note["stock"] is None
    assert patient_balance(patient["id"])["balance"] == 0

    issued = change_credit_note_status(note["id"], "issued")
    assert issued["status"] == "issued"
    assert patient_balance(patient["id"])["balance"] == Decimal("-448.00")

    applied = change_credit_note_status(note["id"], "applied")
    assert applied["applied_at"] is not None
    with pytest.raises(BusinessRuleError):
        change_credit_note_status(note["id"], "cancelled")


def test_credit_note_needs_issued_invoice_and_admin(client, pharmacist_headers, admin_headers, patient):
    draft = create_invoice(patient["id"], [{"description": "Dressing", "unit_price": "500"}])
    res = client.post(
        "/api/billing/credit-notes", headers=admin_headers, json={"invoice_id": draft["id"], "reason": "x"}
    )
    assert res.status_code == 400
    assert "draft invoice" in res.json()["error"]["message"]

    res = client.post(
        "/api/billing/credit-notes", headers=pharmacist_headers, json={"invoice_id": draft["id"], "reason": "x"}
    )
    assert res.status_code == 403


def test_invoice_lists_its_credit_notes(client, admin_headers, syrup_bill):
    _, invoice = syrup_bill
    create_credit_note(invoice["id"], "Returned", as_draft=True)
    listing = client.get(f"/api/billing/invoices/{invoice['id']}/credit-notes", headers=admin_headers).json()
    assert len(listing["items"]) == 1
    assert dec(listing["total_credited"]) == Decimal("448.00")


def test_full_credit_on_discounted_invoice(patient):
    invoice = create_invoice(
        patient["id"], [{"description": "Physiotherapy session", "unit_price": "100"}],
        status="pending", extra_discount="10",
    )
    assert dec(invoice["total_amount"]) == Decimal("108.00")

    note = create_credit_note(invoice["id"], "Session not held")
    assert note["total_amount"] == Decimal("108.00")
    assert note["subtotal"] + note["tax_amount"] == Decimal("108.00")
    assert patient_balance(patient["id"])["balance"] == 0
    assert get_invoice(invoice["id"])["credited_amount"] == Decimal("108.00")


def test_partial_credits_on_discounted_invoice_add_up_to_total(patient):
    invoice = create_invoice(
        patient["id"], [{"description": "Dressing", "unit_price": "100", "quantity": 3}],
        status="pending", extra_discount="30",
    )
    assert dec(invoice["total_amount"]) == Decimal("324.00")
    line_id = invoice["items"][0]["id"]

    first = create_credit_note(invoice["id"], "One unused", [{"invoice_item_id": line_id, "quantity": 1}])
    assert abs(first["total_amount"] - Decimal("108.00")) <= Decimal("0.01")
    rest = create_credit_note(invoice["id"], "Rest unused")
    assert first["total_amount"] + rest["total_amount"] == Decimal("324.00")


def test_zero_quantity_is_refused(syrup_bill):
    _, invoice = syrup_bill
    with pytest.raises(BusinessRuleError):
        create_credit_note(invoice["id"], "Returned", [{"invoice_item_id": invoice["items"][0]["id"], "quantity": 0}])
