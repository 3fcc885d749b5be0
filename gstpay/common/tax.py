"""GST computation in integer paise.

Two modes share one CGST/SGST/IGST split:

* gross-up, for payments, where the charged amount already includes GST;
* add-on, for orders, where GST is added on top of the item subtotal.

All rounding is ROUND_HALF_UP to the paisa. When intra-state GST is an odd
number of paise the extra paisa goes to CGST.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from gstpay.common.errors import ValidationFailed

PAISE_PER_RUPEE = 100
MAX_GST_RATE = Decimal("100")


@dataclass(frozen=True)
class GstBreakdown:
    """GST figures for one record, all money in paise."""

    gst_rate: Decimal
    inter_state: bool
    taxable_amount: int
    total_gst: int
    total_amount: int
    cgst: int
    sgst: int
    igst: int


def _round_paise(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_paise(amount) -> int:
    """Convert a rupee amount (Decimal, str or int) to integer paise."""

    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationFailed(f"invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationFailed(f"invalid amount: {amount!r}")
    return _round_paise(value * PAISE_PER_RUPEE)


def to_rupees(paise: int) -> Decimal:
    return (Decimal(paise) / PAISE_PER_RUPEE).quantize(Decimal("0.01"))


def rate_to_bps(rate: Decimal) -> int:
    """Percentage rate to basis points (18 -> 1800)."""

    return _round_paise(Decimal(str(rate)) * 100)


def bps_to_rate(bps: int) -> Decimal:
    return (Decimal(bps) / 100).quantize(Decimal("0.01"))


def check_rate(rate: Decimal) -> Decimal:
    rate = Decimal(str(rate))
    if not rate.is_finite() or rate < 0 or rate > MAX_GST_RATE:
        raise ValidationFailed(f"GST rate must be between 0 and {MAX_GST_RATE}, got {rate}")
    if rate != rate.quantize(Decimal("0.01")):
        raise ValidationFailed(f"GST rate allows at most two decimal places, got {rate}")
    return rate


def is_inter_state(billing_state: str, shipping_state: str) -> bool:
    """Classify a supply: differing billing and delivery states make it inter-state."""

    return billing_state.strip().casefold() != shipping_state.strip().casefold()


def split_gst(total_gst: int, inter_state: bool) -> tuple[int, int, int]:
    """Return `(cgst, sgst, igst)` in paise for a total GST amount."""

    if inter_state:
        return 0, 0, total_gst
    sgst = total_gst // 2
    return total_gst - sgst, sgst, 0


def gross_up(amount: int, rate: Decimal, inter_state: bool) -> GstBreakdown:
    """Extract GST from a tax-inclusive amount in paise."""

    if amount <= 0:
        raise ValidationFailed("amount must be positive")
    rate = check_rate(rate)
    taxable = _round_paise(Decimal(amount) * 100 / (100 + rate))
    total_gst = amount - taxable
    cgst, sgst, igst = split_gst(total_gst, inter_state)
    return GstBreakdown(
        gst_rate=rate,
        inter_state=inter_state,
        taxable_amount=taxable,
        total_gst=total_gst,
        total_amount=amount,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
    )


def add_on(subtotal: int, rate: Decimal, inter_state: bool) -> GstBreakdown:
    """Add GST on top of a tax-exclusive subtotal in paise."""

    if subtotal <= 0:
        raise ValidationFailed("subtotal must be positive")
    rate = check_rate(rate)
    gst = _round_paise(Decimal(subtotal) * rate / 100)
    cgst, sgst, igst = split_gst(gst, inter_state)
    return GstBreakdown(
        gst_rate=rate,
        inter_state=inter_state,
        taxable_amount=subtotal,
        total_gst=gst,
        total_amount=subtotal + gst,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
    )
