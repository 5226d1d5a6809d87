"""Map an inbound channel identifier or sender phone number to a company."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Company
    from .store import DocumentStore

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s\-()]")
_NON_DIGITS = re.compile(r"\D")

MATCH_DIGITS = 10


def normalize_phone(value: Optional[str]) -> str:
    """'+60 12-345 6789' -> '+60123456789'."""
    return _PHONE_NOISE.sub("", value or "")


def last_digits(value: Optional[str], count: int = MATCH_DIGITS) -> str:
    return _NON_DIGITS.sub("", value or "")[-count:]


def phones_match(stored: Optional[str], candidate: Optional[str]) -> bool:
    """Exact normalized match, else the last 10 digits (tolerates '+60' vs '60')."""
    left = normalize_phone(stored)
    right = normalize_phone(candidate)
    if not left or not right:
        return False
    if left == right:
        return True
    tail = last_digits(right)
    return bool(tail) and last_digits(left) == tail


async def resolve_tenant(
    store: "DocumentStore",
    channel_id: Optional[str],
    from_identifier: Optional[str],
) -> Optional["Company"]:
    """Return the owning company, or None when nothing resolves."""
    if channel_id:
        company = await store.find_company_by_channel_id(channel_id)
        if company is not None:
            logger.debug("[TENANT] Resolved channel %s to company %s", channel_id, company.id)
            return company

    if from_identifier:
        company = await store.find_company_by_phone_fuzzy(from_identifier)
        if company is not None:
            logger.debug("[TENANT] Resolved sender phone to company %s", company.id)
            return company

    logger.info("[TENANT] No company for channel=%s sender=%s", channel_id, from_identifier)
    return None
