from decimal import Decimal

import pytest
from conftest import dec, tomorrow_at

from clinic.billing_service import add_payment, cancel_invoice, create_pharmacy_bill
from clinic.exceptions import BusinessRuleError
from clinic.inventory_service import create_batch, create_item, get_item
from clinic.notifications import list_notifications
from clinic.pharmacy import can_dispense, dispense_prescription
from clinic.prescription_billing import create_invoice_from_prescription, prescription_billing_status
from clinic.services import approve_appointment, book_patient_appointment, save_consultation


@pytest.fixture
def amoxicillin():
    item = create_item(
        "AMX-500", "Amoxicillin 500mg", unit_cost=Decimal("12"), selling_price=Decimal("20"), tax_rate=Decimal("12"),
    )
    create_batch(item["id"], "AMX-B1", 30, selling_price=Decimal("25"))
    return item


@pytest.fixture
def prescription(doctor, patient, amoxicillin):
    booking = book_patient_appointment(patient["id"], tomorrow_at(10))
    approve_appointment(booking.appointment_id, doctor["id"])
    data = save_consultation(
        booking.appointment_id,
        doctor["id"],
        record={"diagnosis": "Throat infection"},
        prescription={
            "items": [
                {"medication_name": "Amoxicillin 500mg", "dosage": "1 cap", "quantity": 10},
                {"medication_name": "Vitamin D3", "quantity": 4, "unit_price": Decimal("50")},
                {"medication_name": "Herbal tonic", "quantity": 1},
            ]
        },
        complete=True,
    )
    return data["prescriptions"][0]


def test_bill_prescription_prices_from_inventory(client, pharmacist_headers, prescription, amoxicillin):
    res = client.post(
        "/api/billing/from-prescription", headers=pharmacist_headers, json={"prescription_id": prescription["id"]}
    )
    assert res.status_code == 200
    body = res.json()
    assert body["skipped_items"] == ["Herbal tonic"]

    inv = body["invoice"]
    assert inv["status"] == "pending"
    assert inv["appointment_id"] == prescription["appointment_id"]
    amox, vitamin = inv["items"]
    assert amox["description"] == "Amoxicillin 500mg (1 cap)"
    assert amox["inventory_item_id"] == amoxicillin["id"]
    assert dec(amox["unit_price"]) == Decimal("25.00")
    assert dec(amox["total_amount"]) == Decimal("280.00")
    assert vitamin["inventory_item_id"] is None
    assert dec(vitamin["total_amount"]) == Decimal("224.00")
    assert dec(inv["total_amount"]) == Decimal("504.00")

    status = prescription_billing_status(prescription["id"])
    assert status["billing_status"] == "invoiced"
    assert status["invoice"]["id"] == inv["id"]

    again = client.post(
        "/api/billing/from-prescription", headers=pharmacist_headers, json={"prescription_id": prescription["id"]}
    )
    assert again.status_code == 400


def test_include_consultation_fee(prescription):
    inv = create_invoice_from_prescription(prescription["id"], include_consultation=True)["invoice"]
    assert inv["items"][0]["item_type"] == "consultation"
    assert dec(inv["total_amount"]) == Decimal("504.00") + Decimal("590.00")


def test_dispense_waits_for_payment(client, pharmacist_headers, prescription, amoxicillin, patient):
    url = f"/api/pharmacist/prescriptions/{prescription['id']}"
    check = client.get(f"{url}/can-dispense", headers=pharmacist_headers).json()
    assert check == {"can_dispense": False, "reason": "Prescription has not been invoiced.",
                     "needs_invoice": True, "needs_payment": False}

    inv = client.post(f"{url}/invoice", headers=pharmacist_headers, json={}).json()["invoice"]
    check = can_dispense(prescription["id"])
    assert check.can_dispense is False
    assert check.needs_payment is True
    assert client.post(f"{url}/dispense", headers=pharmacist_headers).status_code == 400

    add_payment(inv["id"], 100, "cash")
    assert prescription_billing_status(prescription["id"])["billing_status"] == "partial"
    assert can_dispense(prescription["id"]).can_dispense is True
    # a partial payment moves no stock yet
    assert get_item(amoxicillin["id"])["current_stock"] == 30

    res = client.post(f"{url}/dispense", headers=pharmacist_headers)
    assert res.status_code == 200
    rx = res.json()["prescription"]
    assert rx["status"] == "dispensed"
    assert rx["stock"]["processed"][0]["quantity"] == 10
    assert get_item(amoxicillin["id"])["current_stock"] == 20
    assert any(n["type"] == "prescription_dispensed" for n in list_notifications(patient["id"]))

    # paying the rest does not deduct twice
    add_payment(inv["id"], 404, "cash")
    assert get_item(amoxicillin["id"])["current_stock"] == 20
    assert prescription_billing_status(prescription["id"])["billing_status"] == "paid"

    with pytest.raises(BusinessRuleError):
        dispense_prescription(prescription["id"], "someone")


def test_full_payment_deducts_before_dispensing(prescription, amoxicillin, pharmacist):
    inv = create_invoice_from_prescription(prescription["id"])["invoice"]
    add_payment(inv["id"], inv["total_amount"], "cash")
    assert get_item(amoxicillin["id"])["current_stock"] == 20

    rx = dispense_prescription(prescription["id"], pharmacist["id"])
    assert rx["stock"]["processed"] == []
    assert get_item(amoxicillin["id"])["current_stock"] == 20


def test_cancelled_invoice_returns_prescription_to_queue(client, pharmacist_headers, prescription):
    inv = create_invoice_from_prescription(prescription["id"])["invoice"]
    cancel_invoice(inv["id"], "Patient left")

    status = prescription_billing_status(prescription["id"])
    assert status["billing_status"] == "unbilled"
    assert status["invoice"] is None

    awaiting = client.get("/api/billing/prescriptions/awaiting", headers=pharmacist_headers).json()
    assert [rx["id"] for rx in awaiting] == [prescription["id"]]

    # it can be billed again
    assert create_invoice_from_prescription(prescription["id"])["invoice"]["id"] != inv["id"]


def test_processing_queue(client, pharmacist_headers, prescription):
    url = f"/api/pharmacist/prescriptions/{prescription['id']}"
    res = client.post(f"{url}/process", headers=pharmacist_headers)
    assert res.json()["prescription"]["status"] == "processing"
    assert client.post(f"{url}/process", headers=pharmacist_headers).status_code == 400

    detail = client.get(url, headers=pharmacist_headers).json()
    assert detail["dispense_check"]["needs_invoice"] is True

    queue = client.get("/api/pharmacist/prescriptions", headers=pharmacist_headers, params={"status": "processing"}).json()
    assert len(queue) == 1


def test_pharmacy_bill_can_carry_the_prescription(patient, prescription, amoxicillin):
    bill = create_pharmacy_bill(
        patient["id"], [{"inventory_item_id": amoxicillin["id"], "quantity": 10}], prescription_id=prescription["id"]
    )
    assert bill["invoice"]["status"] == "paid"
    status = prescription_billing_status(prescription["id"])
    assert status["billing_status"] == "paid"
    assert status["invoice"]["id"] == bill["invoice"]["id"]

    with pytest.raises(BusinessRuleError):
        create_invoice_from_prescription(prescription["id"])
