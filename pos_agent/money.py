"""
Cents-integer order arithmetic.

The device and the backend both import this module so a cart total on the
cashier screen and the persisted server total can never disagree.

Rules:
- line_total = unit_price_cents * qty (exact)
- line_tax   = round_half_up(line_total * tax_rate / 100)
- subtotal   = sum(line_total), tax = sum(line_tax)  (per-line rounding, never
  tax on the rounded subtotal)
- total      = subtotal + tax
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable

from .errors import ValidationError

_HUNDRED = Decimal("100")
_ONE = Decimal("1")


@dataclass(frozen=True)
class LineAmounts:
    line_total_cents: int
    line_tax_cents: int


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


def _to_rate(tax_rate) -> Decimal:
    # str() first so 8.25 stays 8.25 and not the binary float expansion.
    try:
        rate = Decimal(str(tax_rate if tax_rate is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid tax rate: {tax_rate!r}")
    if not rate.is_finite() or rate < 0 or rate > _HUNDRED:
        raise ValidationError(f"tax rate out of range [0, 100]: {tax_rate!r}")
    return rate


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return value


def compute_line(unit_price_cents: int, qty: int, tax_rate) -> LineAmounts:
    unit_price_cents = _require_int(unit_price_cents, "unit_price_cents")
    qty = _require_int(qty, "qty")
    if unit_price_cents < 0:
        raise ValidationError("unit price must be >= 0")
    if qty < 1:
        raise ValidationError("quantity must be >= 1")
    rate = _to_rate(tax_rate)
    line_total = unit_price_cents * qty
    line_tax = (Decimal(line_total) * rate / _HUNDRED).quantize(_ONE, rounding=ROUND_HALF_UP)
    return LineAmounts(line_total_cents=line_total, line_tax_cents=int(line_tax))


def compute_order_totals(lines: Iterable) -> OrderTotals:
    """
    `lines` is an iterable of (unit_price_cents, qty, tax_rate) tuples.
    An empty iterable yields all-zero totals; callers reject empty carts.
    """
    subtotal = 0
    tax = 0
    for unit_price_cents, qty, tax_rate in lines:
        amounts = compute_line(unit_price_cents, qty, tax_rate)
        subtotal += amounts.line_total_cents
        tax += amounts.line_tax_cents
    return OrderTotals(subtotal_cents=subtotal, tax_cents=tax, total_cents=subtotal + tax)


def cents_to_dollars(cents: int) -> Decimal:
    return (Decimal(int(cents)) / _HUNDRED).quantize(Decimal("0.01"))


def format_cents(cents: int) -> str:
    # Display only. Never feed the result back into arithmetic.
    return f"{cents_to_dollars(cents):.2f}"
