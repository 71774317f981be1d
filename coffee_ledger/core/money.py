"""Helpers for validating and summing monetary amounts.

Ledger arithmetic is done in :class:`~decimal.Decimal` quantized to the
currency unit.  Documents keep plain JSON numbers, so values are converted
back with :func:`to_wire` when they are written.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from dateutil.relativedelta import relativedelta

from ..errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: object) -> Decimal:
    """Quantize a stored or entered amount to whole cents."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    # str() keeps the shortest float repr, so 0.1 becomes Decimal("0.1")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_wire(value: Decimal) -> float:
    return float(value)


def positive_amount(value: object, error: type[InvalidAmount] = InvalidAmount) -> Decimal:
    """Coerce ``value`` to a positive amount in cents or raise ``error``.

    Numeric strings are accepted (form input arrives as text); booleans,
    NaN, infinities and amounts that round to zero are not.
    """
    if isinstance(value, bool) or value is None:
        raise error(f"{value!r} is not a valid amount.")
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float, Decimal)):
        raise error(f"{value!r} is not a number.")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise error(f"{value!r} is not a number.") from None
    if not amount.is_finite():
        raise error(f"Amount must be finite, got {value!r}.")
    try:
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise error(f"{value!r} is out of range.") from None
    if amount <= 0:
        raise error(f"Amount must be greater than 0, got {value!r}.")
    return amount


def total(amounts: Iterable[object]) -> Decimal:
    return sum((to_money(a) for a in amounts), ZERO)


def add_months(moment: datetime, months: int) -> datetime:
    """Return ``moment`` shifted by ``months`` calendar months."""
    return moment + relativedelta(months=months)
