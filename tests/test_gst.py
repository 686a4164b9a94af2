from decimal import Decimal

from clinic.gst import (
    calculate_gst,
    calculate_item,
    calculate_totals,
    default_gst_rate,
    default_hsn_code,
    format_gst_display,
    money,
    should_use_igst,
    state_from_gstin,
    validate_gstin,
)


def test_intra_state_splits_rate_in_cgst_and_sgst():
    gst = calculate_gst(Decimal("1000"), 18)
    assert gst.cgst_rate == Decimal("9")
    assert gst.cgst_amount == Decimal("90.00")
    assert gst.sgst_amount == Decimal("90.00")
    assert gst.igst_amount == Decimal("0")
    assert gst.total_tax == Decimal("180.00")
    assert gst.tax_type == "CGST+SGST"


def test_inter_state_uses_igst():
    gst = calculate_gst(Decimal("1000"), 12, is_igst=True)
    assert gst.igst_amount == Decimal("120.00")
    assert gst.cgst_amount == gst.sgst_amount == Decimal("0")
    assert gst.tax_type == "IGST"


def test_line_with_discount():
    line = calculate_item(3, "250", discount_percent=10, tax_rate=12)
    assert line.subtotal == Decimal("750.00")
    assert line.discount_amount == Decimal("75.00")
    assert line.taxable_amount == Decimal("675.00")
    assert line.cgst_amount == Decimal("40.50")
    assert line.sgst_amount == Decimal("40.50")
    assert line.total_amount == Decimal("756.00")


def test_rounding_is_half_up():
    assert money("2.345") == Decimal("2.35")
    assert money("2.344") == Decimal("2.34")
    line = calculate_item(1, "0.5", tax_rate=5)
    # 0.5 * 2.5% = 0.0125 per half
    assert line.cgst_amount == Decimal("0.01")
    assert line.total_amount == Decimal("0.52")


def test_totals_take_extra_discount_off_the_grand_total():
    lines = [calculate_item(1, 500, tax_rate=18), calculate_item(2, 100, tax_rate=12)]
    totals = calculate_totals(lines, extra_discount=40)
    assert totals.subtotal == Decimal("700.00")
    assert totals.tax_amount == Decimal("114.00")
    assert totals.discount_amount == Decimal("40.00")
    assert totals.total_amount == Decimal("774.00")


def test_totals_never_go_negative():
    totals = calculate_totals([calculate_item(1, 10)], extra_discount=50)
    assert totals.total_amount == Decimal("0.00")


def test_defaults_per_item_type():
    assert default_gst_rate("medication") == Decimal("12")
    assert default_gst_rate("consultation") == Decimal("18")
    assert default_gst_rate("something-else") == Decimal("18")
    assert default_hsn_code("medication") == "3004"
    assert default_hsn_code("supply") == "3006"
    assert default_hsn_code("consultation") == "9983"


def test_igst_only_when_both_states_known_and_different():
    assert should_use_igst("Tamil Nadu", "Kerala") is True
    assert should_use_igst("Tamil Nadu", " tamil nadu ") is False
    assert should_use_igst("Tamil Nadu", None) is False
    assert should_use_igst(None, "Kerala") is False


def test_gstin_helpers():
    assert validate_gstin("33ABCDE1234F1Z5") is True
    assert validate_gstin("33ABCDE1234F1X5") is False
    assert validate_gstin(None) is False
    assert state_from_gstin("33ABCDE1234F1Z5") == "Tamil Nadu"
    assert state_from_gstin("99ABCDE1234F1Z5") is None


def test_display_string():
    assert format_gst_display(calculate_gst(100, 18)) == "CGST @9%: ₹9.00 + SGST @9%: ₹9.00"
    assert format_gst_display(calculate_gst(100, 0)) == "No GST"
