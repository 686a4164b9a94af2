"""
GST arithmetic (Indian Goods and Services Tax).

Pure functions over Decimal, no database access. Intra-state supplies split
the rate evenly into CGST and SGST; inter-state supplies carry the full rate
as IGST. Every amount is rounded half-up to two decimals.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

GST_RATES = (0, 5, 12, 18, 28)

_DEFAULT_RATES = {
    "consultation": 18,
    "medication": 12,
    "supply": 18,
    "procedure": 18,
    "lab_test": 18,
    "service": 18,
}

_DEFAULT_HSN = {
    "medication": "3004",  # medicaments
    "supply": "3006",      # medical supplies
}
_SERVICES_HSN = "9983"     # healthcare services

GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")

GST_STATE_CODES = {
    "01": "Jammu and Kashmir",
    "02": "Himachal Pradesh",
    "03": "Punjab",
    "04": "Chandigarh",
    "05": "Uttarakhand",
    "06": "Haryana",
    "07": "Delhi",
    "08": "Rajasthan",
    "09": "Uttar Pradesh",
    "10": "Bihar",
    "11": "Sikkim",
    "12": "Arunachal Pradesh",
    "13": "Nagaland",
    "14": "Manipur",
    "15": "Mizoram",
    "16": "Tripura",
    "17": "Meghalaya",
    "18": "Assam",
    "19": "West Bengal",
    "20": "Jharkhand",
    "21": "Odisha",
    "22": "Chhattisgarh",
    "23": "Madhya Pradesh",
    "24": "Gujarat",
    "25": "Daman and Diu",
    "26": "Dadra and Nagar Haveli",
    "27": "Maharashtra",
    "28": "Andhra Pradesh (Old)",
    "29": "Karnataka",
    "30": "Goa",
    "31": "Lakshadweep",
    "32": "Kerala",
    "33": "Tamil Nadu",
    "34": "Puducherry",
    "35": "Andaman and Nicobar Islands",
    "36": "Telangana",
    "37": "Andhra Pradesh (New)",
    "38": "Ladakh",
}


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class GstBreakdown:
    cgst_rate: Decimal
    cgst_amount: Decimal
    sgst_rate: Decimal
    sgst_amount: Decimal
    igst_rate: Decimal
    igst_amount: Decimal
    total_tax: Decimal

    @property
    def tax_type(self) -> str:
        return "IGST" if self.igst_rate > 0 else "CGST+SGST"


@dataclass(frozen=True)
class LineAmounts:
    quantity: int
    unit_price: Decimal
    discount_percent: Decimal
    tax_rate: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


# =========================
# Calculations
# =========================
def calculate_gst(amount: Any, rate: Any = 0, is_igst: bool = False) -> GstBreakdown:
    taxable = to_decimal(amount)
    rate = to_decimal(rate)

    if is_igst:
        igst = money(taxable * rate / HUNDRED)
        return GstBreakdown(ZERO, ZERO, ZERO, ZERO, rate, igst, igst)

    half = rate / 2
    cgst = money(taxable * half / HUNDRED)
    sgst = money(taxable * half / HUNDRED)
    return GstBreakdown(half, cgst, half, sgst, ZERO, ZERO, cgst + sgst)


def calculate_item(
    quantity: int,
    unit_price: Any,
    discount_percent: Any = 0,
    tax_rate: Any = 0,
    is_igst: bool = False,
) -> LineAmounts:
    """
    subtotal = quantity x unit price, discount on the subtotal, GST on what
    remains, total = taxable + tax.
    """
    price = to_decimal(unit_price)
    discount_percent = to_decimal(discount_percent)
    tax_rate = to_decimal(tax_rate)

    subtotal = money(price * quantity)
    discount = money(subtotal * discount_percent / HUNDRED)
    taxable = subtotal - discount
    gst = calculate_gst(taxable, tax_rate, is_igst)

    return LineAmounts(
        quantity=quantity,
        unit_price=price,
        discount_percent=discount_percent,
        tax_rate=tax_rate,
        subtotal=subtotal,
        discount_amount=discount,
        taxable_amount=taxable,
        cgst_amount=gst.cgst_amount,
        sgst_amount=gst.sgst_amount,
        igst_amount=gst.igst_amount,
        tax_amount=gst.total_tax,
        total_amount=taxable + gst.total_tax,
    )


def calculate_totals(lines: Iterable[Any], extra_discount: Any = 0) -> Totals:
    """
    Sum line amounts (LineAmounts or ORM lines with the same attribute names).
    extra_discount is an invoice-level discount taken off the grand total.
    """
    fields = ("subtotal", "discount_amount", "taxable_amount", "cgst_amount",
              "sgst_amount", "igst_amount", "tax_amount", "total_amount")
    sums = dict.fromkeys(fields, ZERO)
    for line in lines:
        for f in fields:
            sums[f] += to_decimal(getattr(line, f))

    extra = money(extra_discount)
    total = sums["total_amount"] - extra
    sums["total_amount"] = total if total > 0 else ZERO
    sums["discount_amount"] += extra
    return Totals(**{k: money(v) for k, v in sums.items()})


def default_gst_rate(item_type: str) -> Decimal:
    return Decimal(_DEFAULT_RATES.get(item_type, 18))


def default_hsn_code(item_type: str) -> str:
    return _DEFAULT_HSN.get(item_type, _SERVICES_HSN)


def should_use_igst(clinic_state: str | None, customer_state: str | None) -> bool:
    """Inter-state supply when both states are known and differ."""
    if not clinic_state or not customer_state:
        return False
    return clinic_state.strip().lower() != customer_state.strip().lower()


# =========================
# GSTIN helpers
# =========================
def validate_gstin(gstin: str | None) -> bool:
    if not gstin:
        return False
    return bool(GSTIN_RE.match(gstin.strip().upper()))


def state_code_from_gstin(gstin: str | None) -> str | None:
    if not gstin or len(gstin) < 2:
        return None
    return gstin[:2]


def state_from_gstin(gstin: str | None) -> str | None:
    return GST_STATE_CODES.get(state_code_from_gstin(gstin) or "")


def format_gst_display(gst: GstBreakdown) -> str:
    if gst.igst_amount > 0:
        return f"IGST @{gst.igst_rate}%: ₹{gst.igst_amount:.2f}"
    if gst.cgst_amount > 0 or gst.sgst_amount > 0:
        return (
            f"CGST @{gst.cgst_rate}%: ₹{gst.cgst_amount:.2f} + "
            f"SGST @{gst.sgst_rate}%: ₹{gst.sgst_amount:.2f}"
        )
    return "No GST"
