"""
Fixed-point money model shared by every entry path.

Amounts are integers in the smallest currency unit (cents). Tax rates are
integer basis-like units: percent * 100, so 6% is 600 and 6.5% is 650.

Rounding is round-half-up everywhere: text prices are converted to cents
with ``ROUND_HALF_UP`` and ``tax_amount = round_half_up(subtotal * rate / 10000)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Sequence

from .errors import EmptyDocumentError, InvalidLineItemError

RATE_SCALE = 10000
CENTS_QUANT = Decimal("1")

# Upper bounds keep every amount inside a signed 64-bit column.
MAX_AMOUNT = 9_999_999_999_999
MAX_QUANTITY = 1_000_000
MAX_TAX_RATE = RATE_SCALE


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: int
    total: int

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            description=data["description"],
            quantity=int(data["quantity"]),
            unit_price=int(data["unit_price"]),
            total=int(data["total"]),
        )


@dataclass(frozen=True)
class Totals:
    subtotal: int
    tax_rate: int
    tax_amount: int
    total: int


def _round_half_up_div(numerator: int, denominator: int) -> int:
    # Both operands are non-negative here; floor division keeps this exact.
    return (2 * numerator + denominator) // (2 * denominator)


def make_line_item(description: str, quantity: int, unit_price: int) -> LineItem:
    """Validate one item and compute its total exactly once."""
    description = (description or "").strip()
    if not description:
        raise InvalidLineItemError.for_field("description", "Line item description is required.")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidLineItemError.for_field("quantity", "Quantity must be a whole number of at least 1.")
    if isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
        raise InvalidLineItemError.for_field("unit_price", "Unit price must be a non-negative amount in cents.")
    return LineItem(
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        total=quantity * unit_price,
    )


def _check_item(index: int, item: LineItem) -> None:
    field = f"line_items[{index}]"
    if not item.description:
        raise InvalidLineItemError.for_field(f"{field}.description", "Line item description is required.")
    if item.quantity < 1:
        raise InvalidLineItemError.for_field(f"{field}.quantity", "Quantity must be at least 1.")
    if item.unit_price < 0:
        raise InvalidLineItemError.for_field(f"{field}.unit_price", "Unit price cannot be negative.")
    if item.total != item.quantity * item.unit_price:
        raise InvalidLineItemError.for_field(f"{field}.total", "Line total must equal quantity x unit price.")


def compute_tax(subtotal: int, tax_rate: int) -> int:
    if tax_rate <= 0 or subtotal <= 0:
        return 0
    return _round_half_up_div(subtotal * tax_rate, RATE_SCALE)


def _check_limits(line_items: Sequence[LineItem], totals: Totals) -> None:
    if totals.tax_rate > MAX_TAX_RATE:
        raise InvalidLineItemError.for_field("tax_rate", "Tax rate cannot exceed 100%.")
    for index, item in enumerate(line_items):
        field = f"line_items[{index}]"
        if item.quantity > MAX_QUANTITY:
            raise InvalidLineItemError.for_field(f"{field}.quantity", f"Quantity cannot exceed {MAX_QUANTITY}.")
        if item.unit_price > MAX_AMOUNT or item.total > MAX_AMOUNT:
            raise InvalidLineItemError.for_field(f"{field}.unit_price", "Amount is too large.")
    if totals.total > MAX_AMOUNT:
        raise InvalidLineItemError.for_field("total", "Document total is too large.")


def compute_totals(line_items: Sequence[LineItem], tax_rate: int = 0, *, enforce_limits: bool = True) -> Totals:
    """
    Pure function of its inputs: same items and rate always give the same totals.

    With ``enforce_limits`` (the default) amounts above ``MAX_AMOUNT``,
    quantities above ``MAX_QUANTITY`` and rates above 100% are rejected.
    """
    if not line_items:
        raise EmptyDocumentError.for_field("line_items", "A document needs at least one line item.")
    if tax_rate < 0:
        raise InvalidLineItemError.for_field("tax_rate", "Tax rate cannot be negative.")
    for index, item in enumerate(line_items):
        _check_item(index, item)

    subtotal = sum(item.total for item in line_items)
    tax_amount = compute_tax(subtotal, tax_rate)
    totals = Totals(
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
    )
    if enforce_limits:
        _check_limits(line_items, totals)
    return totals


def _scaled(value, scale: int) -> int:
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {value!r}") from exc
    return int((amount * scale).quantize(CENTS_QUANT, rounding=ROUND_HALF_UP))


def to_cents(value) -> int:
    """'12.345' -> 1235 (round-half-up)."""
    return _scaled(value, 100)


def percent_to_rate(value) -> int:
    """'6' -> 600, '6.25' -> 625."""
    return _scaled(value, 100)


def format_money(cents: int, label: str = "RM") -> str:
    return f"{label}{Decimal(cents) / 100:.2f}"


def format_rate(rate: int) -> str:
    return f"{Decimal(rate) / 100:.1f}"


def line_items_from_dicts(rows: Iterable[dict]) -> list[LineItem]:
    return [LineItem.from_dict(row) for row in rows]
