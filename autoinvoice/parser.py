"""
Free-text message parser.

Turns a chat message such as::

    Customer: John Smith
    Product A - 2 x RM 50
    Service B - 1 x RM 100
    Tax: 6%

into a ``ParsedDraft``. The parser is heuristic and best-effort: anything
that does not resolve to at least one customer and one priced item is
rejected (``None``) rather than guessed. It never raises for string input,
because the messaging channel must keep flowing.

Line items are matched by an ordered list of patterns. The order is part of
the behaviour: the first pattern that matches a line decides how it is read.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from .money import (
    LineItem,
    compute_totals,
    format_money,
    format_rate,
    make_line_item,
    percent_to_rate,
    to_cents,
)

INVOICE = "invoice"
QUOTATION = "quotation"
RECEIPT = "receipt"

CUSTOMER_PREFIXES = ("customer:", "name:", "to:")
PHONE_PREFIXES = ("phone:", "tel:")
TAX_PREFIXES = ("tax:",)
NOTE_PREFIXES = ("note:", "notes:")

# Scan order is quotation, then receipt, then the invoice default.
DOCUMENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (QUOTATION, ("quotation", "quote")),
    (RECEIPT, ("receipt",)),
)

TAX_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")

_PRICE = r"(?:RM\s*)?(\d+(?:\.\d{1,2})?)"


@dataclass(frozen=True)
class ItemPattern:
    name: str
    regex: re.Pattern
    # Maps a match to (description, quantity text, price text).
    fields: Callable[[re.Match], tuple[str, str, str]]


ITEM_PATTERNS: tuple[ItemPattern, ...] = (
    # "Product A - 2 x RM 50", "Widget x 3 @ 4.50"
    ItemPattern(
        "desc_qty_price",
        re.compile(r"^(.+?)\s*[-x]\s*(\d+)\s*[@xX]\s*" + _PRICE, re.IGNORECASE),
        lambda m: (m.group(1), m.group(2), m.group(3)),
    ),
    # "Coffee beans 2 RM 30"
    ItemPattern(
        "desc_space_qty_price",
        re.compile(r"^(.+?)\s+(\d+)\s+" + _PRICE, re.IGNORECASE),
        lambda m: (m.group(1), m.group(2), m.group(3)),
    ),
    # "3 x Coffee RM 12.50"
    ItemPattern(
        "qty_first",
        re.compile(r"^(\d+)\s*[xX]\s*(.+?)\s+" + _PRICE, re.IGNORECASE),
        lambda m: (m.group(2), m.group(1), m.group(3)),
    ),
    # "Delivery - RM 15", "Setup fee: 200"
    ItemPattern(
        "single_unit",
        re.compile(r"^(.+?)\s*[-:]\s*" + _PRICE, re.IGNORECASE),
        lambda m: (m.group(1), "1", m.group(2)),
    ),
)


@dataclass
class ParsedDraft:
    document_type: str
    customer_name: str
    line_items: list[LineItem] = field(default_factory=list)
    subtotal: int = 0
    tax_rate: int = 0
    tax_amount: int = 0
    total: int = 0
    customer_phone: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "document_type": self.document_type,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "line_items": [item.to_dict() for item in self.line_items],
            "subtotal": self.subtotal,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "notes": self.notes,
        }


def detect_document_type(message: str) -> str:
    lowered = message.lower()
    for document_type, keywords in DOCUMENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return document_type
    return INVOICE


def _after_first_colon(line: str) -> str:
    return line.split(":", 1)[1].strip()


def parse_line_item(line: str) -> Optional[LineItem]:
    """Try each pattern in priority order; the first match decides."""
    for pattern in ITEM_PATTERNS:
        match = pattern.regex.match(line)
        if not match:
            continue
        description, quantity, price = pattern.fields(match)
        description = description.strip()
        quantity_value = int(quantity)
        if not description or quantity_value < 1:
            return None
        return make_line_item(description, quantity_value, to_cents(price))
    return None


def parse_message(message: str) -> Optional[ParsedDraft]:
    if not isinstance(message, str):
        return None

    lines = [line.strip() for line in message.strip().splitlines()]
    lines = [line for line in lines if line]
    if len(lines) < 2:
        return None

    document_type = detect_document_type(message)
    customer_name = ""
    customer_phone = ""
    notes = ""
    tax_rate = 0
    line_items: list[LineItem] = []

    for index, line in enumerate(lines):
        lowered = line.lower()
        if lowered.startswith(CUSTOMER_PREFIXES):
            customer_name = _after_first_colon(line)
        elif lowered.startswith(PHONE_PREFIXES):
            customer_phone = _after_first_colon(line)
        elif lowered.startswith(TAX_PREFIXES):
            number = TAX_NUMBER.search(line)
            if number:
                tax_rate = percent_to_rate(number.group(1))
        elif lowered.startswith(NOTE_PREFIXES):
            notes = _after_first_colon(line)
        else:
            item = parse_line_item(line)
            if item is not None:
                line_items.append(item)
            elif not customer_name and index == 0:
                # Messages may open with a bare customer name.
                customer_name = line

    if not customer_name or not line_items:
        return None

    # Amount limits are enforced when the draft becomes a document.
    totals = compute_totals(line_items, tax_rate, enforce_limits=False)
    return ParsedDraft(
        document_type=document_type,
        customer_name=customer_name,
        customer_phone=customer_phone or None,
        line_items=line_items,
        subtotal=totals.subtotal,
        tax_rate=totals.tax_rate,
        tax_amount=totals.tax_amount,
        total=totals.total,
        notes=notes or None,
    )


def format_confirmation(draft: ParsedDraft, document_number: str, currency_label: str = "RM") -> str:
    lines = [
        f"{draft.document_type.capitalize()} Created!",
        "",
        f"Document: {document_number}",
        f"Customer: {draft.customer_name}",
        "",
        "Items:",
    ]
    for item in draft.line_items:
        lines.append(
            f"- {item.description}: {item.quantity} x "
            f"{format_money(item.unit_price, currency_label)} = {format_money(item.total, currency_label)}"
        )
    lines.append("")
    lines.append(f"Subtotal: {format_money(draft.subtotal, currency_label)}")
    if draft.tax_amount > 0:
        lines.append(f"Tax ({format_rate(draft.tax_rate)}%): {format_money(draft.tax_amount, currency_label)}")
    lines.append(f"Total: {format_money(draft.total, currency_label)}")
    return "\n".join(lines)


REJECTION_REPLIES = {
    "rejected_parse_failure": (
        "Sorry, we couldn't read that message. Send a customer line and at least one item, e.g.\n"
        "Customer: John Smith\n"
        "Product A - 2 x RM 50"
    ),
    "rejected_quota_exceeded": (
        "You've reached your monthly document limit. Upgrade your plan to create more documents."
    ),
    "rejected_validation_failure": (
        "Sorry, some details in that message are not valid. Check the quantities and prices and try again."
    ),
}


def format_rejection(reason: str) -> Optional[str]:
    return REJECTION_REPLIES.get(reason)
