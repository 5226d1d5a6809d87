"""
Human-readable document numbers: ``INV-2026-0007-k3f9a2``.

The ordinal comes from a count of existing documents of the same kind and
is only an approximate sequence; two concurrent creations may read the
same count. The trailing disambiguator, backed by the unique constraint on
(company, type, number) and a retry in the store, is what keeps the final
number unique.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .store import DocumentStore

DOCUMENT_PREFIXES = {
    "invoice": "INV",
    "quotation": "QUO",
    "receipt": "REC",
}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
CLOCK_CHARS = 4
RANDOM_CHARS = 2
SEQ_WIDTH = 4


def document_prefix(document_type: str) -> str:
    try:
        return DOCUMENT_PREFIXES[document_type]
    except KeyError:
        raise ValueError(f"Unknown document type: {document_type!r}") from None


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def new_disambiguator(clock_us: Optional[int] = None) -> str:
    if clock_us is None:
        clock_us = time.time_ns() // 1000
    clock = _base36(clock_us)[-CLOCK_CHARS:].rjust(CLOCK_CHARS, "0")
    noise = "".join(secrets.choice(_BASE36) for _ in range(RANDOM_CHARS))
    return clock + noise


def format_document_number(document_type: str, year: int, seq: int, disambiguator: str) -> str:
    return f"{document_prefix(document_type)}-{year}-{str(seq).zfill(SEQ_WIDTH)}-{disambiguator}"


async def generate_document_number(
    store: "DocumentStore",
    company_id: str,
    document_type: str,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    existing = await store.count_documents_by_type_for_company(company_id, document_type)
    return format_document_number(document_type, now.year, existing + 1, new_disambiguator())
