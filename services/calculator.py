"""Line-item and quote total calculation.

All amounts are ``Decimal``.  Every per-line component is rounded to cents
before it is summed, so the quote total always equals the sum of the line
totals and ``subtotal - discount + tax``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

_Q2 = Decimal("0.01")
_HUNDRED = Decimal("100")
_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class LineAmounts:
    subtotal: Decimal
    discount: Decimal
    taxable: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class QuoteTotals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    lines: tuple[LineAmounts, ...] = ()


def _q(value: Decimal) -> Decimal:
    return value.quantize(_Q2, rounding=ROUND_HALF_UP)


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_line(quantity, unit_price, discount_pct=0, tax_rate_pct=0) -> LineAmounts:
    """Compute the amounts for a single line item."""
    subtotal = _q(Decimal(int(quantity)) * _dec(unit_price))
    discount = _q(subtotal * _dec(discount_pct) / _HUNDRED)
    taxable = subtotal - discount
    tax = _q(taxable * _dec(tax_rate_pct) / _HUNDRED)
    return LineAmounts(
        subtotal=subtotal,
        discount=discount,
        taxable=taxable,
        tax=tax,
        total=taxable + tax,
    )


def calculate_totals(items: Iterable) -> QuoteTotals:
    """Compute quote-level totals from objects exposing ``quantity``,
    ``unit_price``, ``discount`` and ``tax_rate``."""
    lines = tuple(
        calculate_line(item.quantity, item.unit_price, item.discount, item.tax_rate)
        for item in items
    )
    subtotal = sum((line.subtotal for line in lines), _ZERO)
    discount = sum((line.discount for line in lines), _ZERO)
    tax = sum((line.tax for line in lines), _ZERO)
    return QuoteTotals(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
        lines=lines,
    )


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents."""
    return int((_dec(amount) * _HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
