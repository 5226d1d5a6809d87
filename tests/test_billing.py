import pytest

from autoinvoice.billing import apply_billing_event, plan_from_subscription


def _subscription(status="active", amount=1900, plan=None, sub_id="sub_1", customer="cus_1"):
    price = {"id": "price_1", "unit_amount": amount, "metadata": {}}
    if plan:
        price["metadata"]["plan"] = plan
    return {"id": sub_id, "customer": customer, "status": status, "items": {"data": [{"price": price}]}}


def _event(event_type, obj):
    return {"type": event_type, "data": {"object": obj}}


class TestPlanFromSubscription:
    @pytest.mark.parametrize(
        "subscription, expected",
        [
            (_subscription(plan="pro", amount=0), ("pro", True)),
            (_subscription(plan="Business"), ("business", True)),
            (_subscription(amount=4900), ("business", True)),
            (_subscription(amount=1900), ("pro", True)),
            (_subscription(status="trialing", amount=1900), ("pro", True)),
            (_subscription(status="past_due", plan="business"), ("starter", False)),
            (_subscription(status="canceled"), ("starter", False)),
        ],
    )
    def test_mapping(self, subscription, expected):
        assert plan_from_subscription(subscription) == expected

    def test_subscription_without_items(self):
        assert plan_from_subscription({"status": "active"}) == ("pro", True)


class TestApplyBillingEvent:
    def test_upgrade(self, make_company, with_store):
        company = make_company(billing_customer_ref="cus_1")

        changed = with_store(
            lambda store: apply_billing_event(store, _event("customer.subscription.updated", _subscription(amount=4900)))
        )

        assert changed == company.id
        refreshed = with_store(lambda store: store.get_company(company.id))
        assert refreshed.subscription_plan == "business"
        assert refreshed.billing_subscription_ref == "sub_1"

    def test_lapsed_subscription_downgrades(self, make_company, with_store):
        company = make_company(billing_customer_ref="cus_1", subscription_plan="pro")

        with_store(
            lambda store: apply_billing_event(
                store, _event("customer.subscription.updated", _subscription(status="unpaid"))
            )
        )

        assert with_store(lambda store: store.get_company(company.id)).subscription_plan == "starter"

    def test_deleted_subscription(self, make_company, with_store):
        company = make_company(billing_customer_ref="cus_1", subscription_plan="business", billing_subscription_ref="sub_1")

        with_store(lambda store: apply_billing_event(store, _event("customer.subscription.deleted", _subscription())))

        refreshed = with_store(lambda store: store.get_company(company.id))
        assert refreshed.subscription_plan == "starter"
        assert refreshed.billing_subscription_ref is None

    def test_checkout_links_subscription(self, make_company, with_store):
        company = make_company(billing_customer_ref="cus_1")

        changed = with_store(
            lambda store: apply_billing_event(
                store, _event("checkout.session.completed", {"customer": "cus_1", "subscription": "sub_9"})
            )
        )

        assert changed == company.id
        refreshed = with_store(lambda store: store.get_company(company.id))
        assert refreshed.billing_subscription_ref == "sub_9"
        assert refreshed.subscription_plan == "starter"

    @pytest.mark.parametrize(
        "event",
        [
            _event("customer.subscription.updated", _subscription(customer="cus_unknown")),
            _event("invoice.paid", {"customer": "cus_1"}),
            _event("customer.subscription.updated", {"status": "active"}),
            {},
        ],
    )
    def test_irrelevant_events(self, make_company, with_store, event):
        company = make_company(billing_customer_ref="cus_1")

        assert with_store(lambda store: apply_billing_event(store, event)) is None
        assert with_store(lambda store: store.get_company(company.id)).subscription_plan == "starter"
