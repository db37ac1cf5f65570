"""
Exact decimal arithmetic for monetary fields.

Every amount that flows through pricing, discounts and settlement passes
through these helpers so no float ever reaches a total.
"""

from collections.abc import Iterable
from decimal import Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")

MoneyLike = Decimal | int | float | str | None


def to_money(value: MoneyLike) -> Decimal:
    """Coerce a value to Decimal without binary float drift. None becomes 0."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary amount")
    if isinstance(value, float):
        # str() gives the shortest repr, so 0.1 stays 0.1 instead of 0.1000000000000000055...
        return Decimal(str(value))
    return Decimal(value)


def line_total(quantity: int, unit_price: MoneyLike) -> Decimal:
    return to_money(unit_price) * quantity


def sum_money(values: Iterable[MoneyLike]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_money(value)
    return total


def percent_of(amount: MoneyLike, percent: MoneyLike) -> Decimal:
    return to_money(amount) * to_money(percent) / HUNDRED


def as_json(value: MoneyLike) -> str:
    """Serialise for event payloads and audit rows; keeps full precision."""
    return format(to_money(value).normalize(), "f")
