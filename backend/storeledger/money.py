# Overview: Integer-cents money helpers; conversion, summing and proportional splits.

"""
Money Invariants (authoritative)

- Every persisted monetary field is an integer number of cents (*_cents columns).
- Floats never take part in arithmetic. Display values are Decimal.
- Yuan -> cents rounds half-up at the second decimal.
- allocate() always returns shares that sum exactly to the total.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Sequence

from .validation import ValidationError, MAX_PRICE_CENTS


CENTS_PER_UNIT = 100


def _to_decimal(amount) -> Decimal:
    if amount is None:
        return Decimal(0)
    if isinstance(amount, bool):
        raise ValidationError("amount must be numeric")
    if isinstance(amount, int):
        return Decimal(amount)
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, float):
        # repr() gives the shortest string that round-trips, so 0.1 stays 0.1
        value = Decimal(repr(amount))
    elif isinstance(amount, str):
        stripped = amount.strip()
        if not stripped:
            return Decimal(0)
        try:
            value = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"amount {amount!r} is not numeric")
    else:
        raise ValidationError("amount must be numeric")
    if not value.is_finite():
        raise ValidationError(f"amount {amount!r} is not finite")
    return value


def to_cents(amount) -> int:
    """
    Convert a yuan amount to integer cents.

    Accepts int, Decimal, float, numeric strings and None (treated as 0).
    Rounds half-up at the 2-decimal boundary: "10.005" -> 1001, "-10.005" -> -1001.
    """
    value = _to_decimal(amount) * CENTS_PER_UNIT
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_yuan(cents: int | None, precision: int = 2) -> Decimal:
    """Convert cents to a display Decimal rounded to `precision` digits."""
    if cents is None:
        cents = 0
    exp = Decimal(1).scaleb(-precision)
    return (Decimal(int(cents)) / CENTS_PER_UNIT).quantize(exp, rounding=ROUND_HALF_UP)


def format_yuan(cents: int | None) -> str:
    return f"{to_yuan(cents):.2f}"


def sum_cents(values: Iterable[int | None]) -> int:
    """Total a list of cents values, skipping None entries."""
    return sum(int(v) for v in values if v is not None)


def allocate(total_cents: int, weights: Sequence) -> list[int]:
    """
    Split total_cents across weights proportionally.

    Each share is floor(total * weight / sum(weights)). The rounding remainder
    goes to the last entry with a non-zero weight, so the result always sums
    to total_cents. All-zero (or empty) weights yield all zeros.

    Example:
        allocate(1000, [1, 1, 1]) -> [333, 333, 334]
    """
    dec_weights = [_to_decimal(w) for w in weights]
    if any(w < 0 for w in dec_weights):
        raise ValidationError("allocation weights must be non-negative")

    weight_sum = sum(dec_weights, Decimal(0))
    if not dec_weights or weight_sum == 0:
        return [0 for _ in dec_weights]

    total = Decimal(int(total_cents))
    shares = [int((total * w / weight_sum).to_integral_value(rounding=ROUND_FLOOR)) for w in dec_weights]

    remainder = int(total_cents) - sum(shares)
    if remainder:
        last_index = max(i for i, w in enumerate(dec_weights) if w > 0)
        shares[last_index] += remainder
    return shares


def validate(amount: int | None, min: int = 0, max: int = MAX_PRICE_CENTS) -> bool:
    """Report whether a cents amount lies within [min, max]. Never raises."""
    if amount is None or isinstance(amount, bool):
        return False
    try:
        value = int(amount)
    except (TypeError, ValueError, OverflowError):
        return False
    if value != amount:
        return False
    return min <= value <= max
