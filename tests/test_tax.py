"""GST computation in both modes and the CGST/SGST/IGST split."""

from decimal import Decimal

import pytest

from gstpay.common.errors import ValidationFailed
from gstpay.common.tax import (
    add_on,
    bps_to_rate,
    gross_up,
    is_inter_state,
    rate_to_bps,
    split_gst,
    to_paise,
    to_rupees,
)


def test_gross_up_intra_state_splits_evenly():
    breakdown = gross_up(118000, Decimal("18"), inter_state=False)

    assert breakdown.taxable_amount == 100000
    assert breakdown.total_gst == 18000
    assert (breakdown.cgst, breakdown.sgst, breakdown.igst) == (9000, 9000, 0)
    assert breakdown.total_amount == 118000


def test_gross_up_inter_state_is_all_igst():
    breakdown = gross_up(118000, Decimal("18"), inter_state=True)

    assert (breakdown.cgst, breakdown.sgst, breakdown.igst) == (0, 0, 18000)


def test_add_on_adds_gst_on_top():
    breakdown = add_on(100000, Decimal("18"), inter_state=False)

    assert breakdown.taxable_amount == 100000
    assert breakdown.total_gst == 18000
    assert breakdown.total_amount == 118000


def test_modes_differ_for_the_same_figure():
    inclusive = gross_up(100000, Decimal("18"), inter_state=False)
    exclusive = add_on(100000, Decimal("18"), inter_state=False)

    assert inclusive.total_amount == 100000
    assert exclusive.total_amount == 118000


def test_odd_paisa_goes_to_cgst():
    cgst, sgst, igst = split_gst(1801, inter_state=False)

    assert (cgst, sgst, igst) == (901, 900, 0)


@pytest.mark.parametrize("amount", [1, 99, 101, 12345, 999999, 118001])
@pytest.mark.parametrize("rate", ["0", "5", "12", "18", "28"])
def test_gross_up_parts_always_sum_to_amount(amount, rate):
    breakdown = gross_up(amount, Decimal(rate), inter_state=False)

    assert breakdown.taxable_amount + breakdown.total_gst == amount
    assert breakdown.cgst + breakdown.sgst + breakdown.igst == breakdown.total_gst
    assert 0 <= breakdown.cgst - breakdown.sgst <= 1


@pytest.mark.parametrize("amount", [1, 99, 101, 12345, 999999, 118001, 2_500_000_000])
@pytest.mark.parametrize("rate", ["0", "0.25", "3", "5", "12", "18", "28"])
def test_gross_up_taxable_reapplies_rate_within_a_paisa(amount, rate):
    breakdown = gross_up(amount, Decimal(rate), inter_state=True)

    regrossed = Decimal(breakdown.taxable_amount) * (100 + Decimal(rate)) / 100
    assert abs(regrossed - amount) <= 1


@pytest.mark.parametrize("subtotal", [1, 333, 12345, 999999])
def test_add_on_rounds_to_nearest_paisa(subtotal):
    breakdown = add_on(subtotal, Decimal("18"), inter_state=True)
    exact = Decimal(subtotal) * Decimal("0.18")

    assert abs(Decimal(breakdown.total_gst) - exact) <= Decimal("0.5")
    assert breakdown.igst == breakdown.total_gst


def test_zero_rate_has_no_tax():
    breakdown = gross_up(50000, Decimal("0"), inter_state=False)

    assert breakdown.total_gst == 0
    assert breakdown.taxable_amount == 50000


@pytest.mark.parametrize("rate", ["-1", "100.01"])
def test_rate_out_of_range_rejected(rate):
    with pytest.raises(ValidationFailed):
        gross_up(10000, Decimal(rate), inter_state=False)


def test_rate_with_sub_basis_point_precision_rejected():
    with pytest.raises(ValidationFailed):
        add_on(10000, Decimal("12.345"), inter_state=False)
    assert add_on(10000, Decimal("12.340"), inter_state=False).total_gst == 1234


def test_non_positive_amount_rejected():
    with pytest.raises(ValidationFailed):
        gross_up(0, Decimal("18"), inter_state=False)
    with pytest.raises(ValidationFailed):
        add_on(-5, Decimal("18"), inter_state=False)


def test_state_comparison_ignores_case_and_whitespace():
    assert not is_inter_state("Maharashtra", "  maharashtra ")
    assert is_inter_state("Maharashtra", "Karnataka")


def test_money_and_rate_conversions():
    assert to_paise(Decimal("1180.00")) == 118000
    assert to_paise("0.005") == 1
    assert to_rupees(118001) == Decimal("1180.01")
    assert rate_to_bps(Decimal("18")) == 1800
    assert bps_to_rate(1250) == Decimal("12.50")


def test_invalid_amount_text_rejected():
    with pytest.raises(ValidationFailed):
        to_paise("twelve")
    with pytest.raises(ValidationFailed):
        to_paise("NaN")
