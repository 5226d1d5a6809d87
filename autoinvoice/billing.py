"""
Subscription tier updates from billing-provider events.

Events arrive already verified; this module only maps them onto a
company's plan. Payloads follow the provider's subscription/checkout
object shapes (``data.object`` with ``customer``, ``status``, ``items``).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .quota import BUSINESS, PRO, STARTER, SUBSCRIPTION_PLANS
from .store import DocumentStore

logger = logging.getLogger(__name__)

PAYING_STATUSES = {"active", "trialing"}
LAPSED_STATUSES = {"past_due", "unpaid", "canceled", "incomplete_expired"}

# Monthly price in cents at or above which a subscription is the business tier.
BUSINESS_PRICE_FLOOR = 4900


def _first_price(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def plan_from_subscription(subscription: dict[str, Any]) -> tuple[str, bool]:
    """Return ``(plan, is_paying)`` for a subscription object."""
    status = subscription.get("status") or ""
    if status not in PAYING_STATUSES:
        return STARTER, False

    price = _first_price(subscription)
    plan = ((price.get("metadata") or {}).get("plan") or "").strip().lower()
    if plan in SUBSCRIPTION_PLANS:
        return plan, True

    amount = price.get("unit_amount") or 0
    return (BUSINESS if amount >= BUSINESS_PRICE_FLOOR else PRO), True


async def apply_billing_event(store: DocumentStore, event: dict[str, Any]) -> Optional[str]:
    """
    Apply one provider event. Returns the company id that changed, or None
    when the event is irrelevant or the customer is unknown.
    """
    event_type = event.get("type") or ""
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        return None
    customer_ref = obj.get("customer")
    if not customer_ref:
        return None

    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        company = await store.find_company_by_billing_customer(customer_ref)
        if company is None:
            logger.info("[BILLING] No company for customer %s", customer_ref)
            return None
        plan, is_paying = plan_from_subscription(obj)
        await store.update_company(
            company.id,
            {"subscription_plan": plan, "billing_subscription_ref": obj.get("id")},
        )
        logger.info(
            "[BILLING] Company %s now on plan %s (status=%s, paying=%s)",
            company.id,
            plan,
            obj.get("status"),
            is_paying,
        )
        return company.id

    if event_type == "customer.subscription.deleted":
        company = await store.find_company_by_billing_customer(customer_ref)
        if company is None:
            return None
        await store.update_company(
            company.id,
            {"subscription_plan": STARTER, "billing_subscription_ref": None},
        )
        logger.info("[BILLING] Downgraded company %s to starter", company.id)
        return company.id

    if event_type == "checkout.session.completed":
        subscription_ref = obj.get("subscription")
        if not subscription_ref:
            return None
        company = await store.find_company_by_billing_customer(customer_ref)
        if company is None:
            return None
        await store.update_company(company.id, {"billing_subscription_ref": subscription_ref})
        logger.info("[BILLING] Linked subscription %s to company %s", subscription_ref, company.id)
        return company.id

    logger.debug("[BILLING] Ignoring event type %s", event_type)
    return None
