# backend/stockledger/quantities.py
"""
Quantity and money representation.

Quantities are persisted as integer thousandths of their unit ("milli"),
money as integer cents. All arithmetic on the write path stays in integers so
balance updates can be expressed as single SQL statements without floating
point drift. Decimal is only used at the edges (parsing and serialization).
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

QUANTITY_SCALE = 1000
QUANTITY_PLACES = Decimal("0.001")

MAX_UNIT_LENGTH = 20

# Largest magnitude accepted for a single quantity. In milli-units this stays
# far below the BigInteger column limit, leaving room for running sums.
MAX_QUANTITY = Decimal("1000000000000")


def parse_quantity(value, *, field: str = "quantity") -> Decimal:
    """
    Parse a client-supplied quantity into a Decimal.

    Accepts int, Decimal and numeric strings. Floats are accepted only when
    their shortest repr has at most three decimals (JSON bodies decode
    numbers as floats). Booleans, NaN, infinities and anything with more
    than three decimal places are rejected, as is any magnitude above
    MAX_QUANTITY.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", code=f"invalid_{field}")

    if isinstance(value, float):
        value = repr(value)

    try:
        dec = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", code=f"invalid_{field}")

    if not dec.is_finite():
        raise ValidationError(f"{field} must be a finite number", code=f"invalid_{field}")

    if abs(dec) > MAX_QUANTITY:
        raise ValidationError(f"{field} is out of range", code=f"invalid_{field}")

    try:
        quantized = dec.quantize(QUANTITY_PLACES)
    except InvalidOperation:
        raise ValidationError(f"{field} is out of range", code=f"invalid_{field}")

    if dec != quantized:
        raise ValidationError(
            f"{field} supports at most three decimal places", code=f"invalid_{field}"
        )
    return dec


def to_milli(value, *, field: str = "quantity") -> int:
    dec = parse_quantity(value, field=field)
    return int((dec * QUANTITY_SCALE).to_integral_value())


def from_milli(milli: int | None) -> Decimal | None:
    if milli is None:
        return None
    return (Decimal(milli) / QUANTITY_SCALE).quantize(QUANTITY_PLACES)


def parse_cost_cents(value, *, field: str = "cost_per_unit_cents") -> int | None:
    """Costs are integer cents; None means "no cost supplied"."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents", code=f"invalid_{field}")
    if value <= 0:
        raise ValidationError(f"{field} must be positive", code=f"invalid_{field}")
    return value


def line_cost_cents(cost_per_unit_cents: int | None, quantity_milli: int) -> int | None:
    """cost x |quantity|, nearest cent half-up."""
    if cost_per_unit_cents is None:
        return None
    total = Decimal(cost_per_unit_cents) * abs(Decimal(quantity_milli)) / QUANTITY_SCALE
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def weighted_average_cents(
    old_cost_cents: int | None,
    old_quantity_milli: int,
    incoming_cost_cents: int,
    incoming_quantity_milli: int,
) -> int:
    """
    (old_cost*old_qty + incoming_cost*incoming_qty) / (old_qty + incoming_qty),
    nearest cent half-up. Mirrors the SQL expression used by the balance
    projection so both paths agree.
    """
    if old_cost_cents is None or old_quantity_milli <= 0:
        return incoming_cost_cents
    total_units = old_quantity_milli + incoming_quantity_milli
    total_cost = old_cost_cents * old_quantity_milli + incoming_cost_cents * incoming_quantity_milli
    return (total_cost + (total_units // 2)) // total_units


def normalize_unit(unit) -> str:
    if unit is None:
        raise ValidationError("unit is required", code="unit_is_required")
    s = str(unit).strip()
    if not s:
        raise ValidationError("unit is required", code="unit_is_required")
    if len(s) > MAX_UNIT_LENGTH:
        raise ValidationError("unit is too long", code="unit_too_long")
    return s
