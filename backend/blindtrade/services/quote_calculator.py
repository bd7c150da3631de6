"""
Quote calculator.

WHAT: Derive the final payable amount from a structured quote
WHY: current_offer of a negotiation is always the final price of its latest quote
HOW: Pure Decimal arithmetic, validation first, round half-up to the currency unit
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from ..models.negotiation import QuoteDetails, QuoteInput
from ..utils.exceptions import ValidationError

HUNDRED = Decimal("100")

MONETARY_FIELDS = (
    "price",
    "discount",
    "visit_charge",
    "installation_charge",
    "other_charges",
)


@dataclass(frozen=True)
class QuoteBreakdown:
    """Intermediate and final figures of a quote calculation."""
    base_total: Decimal
    extras: Decimal
    subtotal: Decimal
    gst_amount: Decimal
    final_price: Decimal


def _validate_fields(quote: QuoteInput) -> list[dict[str, str]]:
    errors = []

    for field in MONETARY_FIELDS:
        value = getattr(quote, field)
        if not value.is_finite():
            errors.append({"field": field, "error": "must be a finite number"})
        elif value < 0:
            errors.append({"field": field, "error": "must be non-negative"})

    if quote.quantity < 1:
        errors.append({"field": "quantity", "error": "must be at least 1"})

    if not quote.gst_percent.is_finite() or not (0 <= quote.gst_percent <= HUNDRED):
        errors.append({"field": "gst_percent", "error": "must be between 0 and 100"})

    if quote.delivery_days is not None and quote.delivery_days < 0:
        errors.append({"field": "delivery_days", "error": "must be non-negative"})

    return errors


def calculate_quote(quote: QuoteInput, decimals: int = 2) -> QuoteBreakdown:
    """
    Compute the final price of a quote.

    WHAT: base_total + extras - discount, plus GST on that subtotal
    WHY: Every party must arrive at the same figure for the same quote
    HOW: Validate, compute in exact Decimal, round only the final price

    Args:
        quote: Structured quote input
        decimals: Digits of the smallest currency unit (2 for paise/cents)

    Returns:
        QuoteBreakdown with all intermediate values

    Raises:
        ValidationError: Negative amounts, quantity < 1, GST out of range,
            or a discount larger than the pre-discount subtotal
    """
    errors = _validate_fields(quote)
    if errors:
        raise ValidationError("Invalid quote input", field_errors=errors)

    base_total = quote.price * quote.quantity
    extras = (
        (quote.visit_charge if quote.visit_required else Decimal("0"))
        + (quote.installation_charge if quote.installation_required else Decimal("0"))
        + quote.other_charges
    )

    if quote.discount > base_total + extras:
        raise ValidationError(
            f"Discount {quote.discount} exceeds subtotal {base_total + extras}",
            field_errors=[{"field": "discount", "error": "must not exceed subtotal before discount"}]
        )

    subtotal = base_total + extras - quote.discount
    gst_amount = subtotal * quote.gst_percent / HUNDRED
    unit = Decimal(1).scaleb(-decimals)
    try:
        final_price = (subtotal + gst_amount).quantize(unit, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(f"Quote total out of range: {e}") from e

    return QuoteBreakdown(
        base_total=base_total,
        extras=extras,
        subtotal=subtotal,
        gst_amount=gst_amount,
        final_price=final_price,
    )


def build_quote_details(quote: QuoteInput, version: int, decimals: int = 2) -> QuoteDetails:
    """Run the calculator and attach the breakdown and round number to the quote."""
    breakdown = calculate_quote(quote, decimals=decimals)
    return QuoteDetails(
        **quote.model_dump(),
        base_total=breakdown.base_total,
        extras=breakdown.extras,
        subtotal=breakdown.subtotal,
        gst_amount=breakdown.gst_amount,
        final_price=breakdown.final_price,
        version=version,
    )
