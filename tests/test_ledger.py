from decimal import Decimal

import pytest
from conftest import dec

from clinic.auth_models import Role
from clinic.auth_service import create_user
from clinic.billing_service import add_payment, create_invoice
from clinic.exceptions import BusinessRuleError, NotFoundError
from clinic.ledger import create_adjustment, create_opening_balance, ledger_summary, list_entries, patient_balance

DRESSING = {"description": "Wound dressing", "unit_price": "500"}


def test_running_balance(client, pharmacist_headers, patient):
    inv = create_invoice(patient["id"], [DRESSING], status="pending")
    add_payment(inv["id"], 200, "card")

    res = client.get("/api/billing/ledger", headers=pharmacist_headers, params={"patient_id": patient["id"]})
    body = res.json()
    entries = list(reversed(body["items"]))
    assert [e["entry_number"] for e in entries] == ["LED-00000001", "LED-00000002"]
    assert [e["entry_type"] for e in entries] == ["invoice", "payment"]
    assert [dec(e["debit"]) for e in entries] == [Decimal("590.00"), 0]
    assert [dec(e["credit"]) for e in entries] == [0, Decimal("200.00")]
    assert [dec(e["balance"]) for e in entries] == [Decimal("590.00"), Decimal("390.00")]
    assert entries[0]["reference_id"] == inv["id"]
    assert dec(body["totals"]["net"]) == Decimal("390.00")

    res = client.get(f"/api/billing/ledger/balance/{patient['id']}", headers=pharmacist_headers)
    assert dec(res.json()["balance"]) == Decimal("390.00")


def test_balances_are_kept_per_patient(patient):
    other = create_user("dev@mail.com", "Dev Nair", Role.PATIENT)
    create_invoice(patient["id"], [DRESSING], status="pending")
    create_invoice(other["id"], [{"description": "Injection", "unit_price": "100", "tax_rate": "0"}], status="pending")

    assert patient_balance(patient["id"])["balance"] == Decimal("590.00")
    assert patient_balance(other["id"])["balance"] == Decimal("100.00")
    assert list_entries(patient_id=other["id"])["items"][0]["balance"] == Decimal("100.00")


def test_adjustments_sign(client, admin_headers, pharmacist_headers, patient):
    url = "/api/billing/ledger/adjustments"
    payload = {"patient_id": patient["id"], "amount": "50", "description": "Late fee"}
    assert client.post(url, headers=pharmacist_headers, json=payload).status_code == 403

    entry = client.post(url, headers=admin_headers, json=payload).json()
    assert entry["entry_type"] == "adjustment"
    assert dec(entry["debit"]) == Decimal("50.00")

    entry = client.post(url, headers=admin_headers, json={**payload, "amount": "-20", "description": "Goodwill"}).json()
    assert dec(entry["credit"]) == Decimal("20.00")
    assert dec(entry["balance"]) == Decimal("30.00")

    assert client.post(url, headers=admin_headers, json={**payload, "description": ""}).status_code == 422
    assert client.post(url, headers=admin_headers, json={**payload, "amount": "0"}).status_code == 400


def test_adjustment_for_unknown_patient():
    with pytest.raises(NotFoundError):
        create_adjustment("missing", Decimal("10"), "Late fee")


def test_opening_balance_only_on_empty_ledger(client, admin_headers, patient):
    res = client.post(
        "/api/billing/ledger/opening-balance", headers=admin_headers,
        json={"patient_id": patient["id"], "amount": "-150"},
    )
    entry = res.json()
    assert entry["entry_type"] == "opening_balance"
    assert dec(entry["credit"]) == Decimal("150.00")
    assert dec(entry["balance"]) == Decimal("-150.00")

    with pytest.raises(BusinessRuleError):
        create_opening_balance(patient["id"], Decimal("10"))

    # the credit is used up by the next invoice
    create_invoice(patient["id"], [DRESSING], status="pending")
    assert patient_balance(patient["id"])["balance"] == Decimal("440.00")


def test_summary_by_entry_type(client, pharmacist_headers, patient):
    inv = create_invoice(patient["id"], [DRESSING], status="pending")
    add_payment(inv["id"], 590, "cash")
    create_adjustment(patient["id"], Decimal("25"), "Late fee")

    summary = ledger_summary()
    assert summary["by_type"]["invoice"] == {"count": 1, "debit": Decimal("590.00"), "credit": Decimal("0.00")}
    assert summary["by_type"]["payment"]["credit"] == Decimal("590.00")
    assert summary["total_debit"] == Decimal("615.00")
    assert summary["net_balance"] == Decimal("25.00")

    res = client.get("/api/billing/ledger/summary", headers=pharmacist_headers)
    assert dec(res.json()["net_balance"]) == Decimal("25.00")
