from __future__ import annotations

import json

import pytest

from conftest import USER_ID, FakeGateway, FakeStore, subscribe

from adsparkr.billing import (
    BillingError,
    BillingService,
    build_checkout_params,
    plan_details,
    subscription_updates_from_stripe,
)
from adsparkr.config import settings


@pytest.fixture
def billing(store: FakeStore, gateway: FakeGateway) -> BillingService:
    return BillingService(store, gateway)


class TestCheckoutParams:
    def test_trial(self):
        params = build_checkout_params("u1", "sub-1", "free_trial", "price_month", "https://app.test/", "p-1")
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_month", "quantity": 1}]
        assert params["payment_method_collection"] == "always"
        assert params["subscription_data"]["trial_period_days"] == 7
        assert params["metadata"]["has_trial"] == "true"
        assert params["success_url"] == (
            "https://app.test/dashboard/projects/p-1/plan?checkout=success&session_id={CHECKOUT_SESSION_ID}"
        )
        assert params["cancel_url"] == "https://app.test/dashboard/projects/p-1/plan?checkout=cancelled"

    def test_paid(self):
        params = build_checkout_params("u1", "sub-1", "annual", "price_year", "https://app.test", immediate_payment=True)
        assert params["payment_method_collection"] == "if_required"
        assert "trial_period_days" not in params["subscription_data"]
        assert params["metadata"]["immediate_payment"] == "true"
        assert params["metadata"]["has_trial"] == "false"
        assert params["client_reference_id"] == "u1"


class TestCheckout:
    def test_invalid_plan(self, billing: BillingService):
        with pytest.raises(BillingError) as info:
            billing.checkout(USER_ID, "enterprise", app_url="https://app.test")
        assert info.value.message == "Invalid plan type"

    def test_creates_local_subscription_and_session(self, billing: BillingService, store: FakeStore, gateway: FakeGateway):
        out = billing.checkout(USER_ID, "monthly", app_url="https://app.test", project_id="p-1")
        assert out == {"url": "https://checkout.stripe.test/cs_test_1", "session_id": "cs_test_1"}
        sub = store.subscriptions[0]
        assert sub["plan_type"] == "monthly"
        assert sub["payment_provider"] == "stripe"
        assert sub["billing_cycle"] == "monthly"
        assert store.usage[0]["subscription_id"] == sub["id"]
        params = gateway.created[0]
        assert params["line_items"][0]["price"] == "price_month"
        assert params["metadata"]["subscription_id"] == sub["id"]

    def test_annual_uses_yearly_price(self, billing: BillingService, gateway: FakeGateway):
        billing.checkout(USER_ID, "annual", app_url="https://app.test")
        assert gateway.created[0]["line_items"][0]["price"] == "price_year"

    def test_configured_price_wins(self, billing: BillingService, gateway: FakeGateway, monkeypatch):
        monkeypatch.setattr(settings, "stripe_monthly_price_id", "price_configured")
        billing.checkout(USER_ID, "monthly", app_url="https://app.test")
        assert gateway.created[0]["line_items"][0]["price"] == "price_configured"

    def test_missing_price(self, billing: BillingService, gateway: FakeGateway):
        gateway.prices = []
        with pytest.raises(BillingError) as info:
            billing.checkout(USER_ID, "monthly", app_url="https://app.test")
        assert info.value.status_code == 500

    def test_previous_subscriptions_are_cancelled(self, billing: BillingService, store: FakeStore):
        subscribe(store, "monthly")
        billing.checkout(USER_ID, "annual", app_url="https://app.test")
        statuses = {s["plan_type"]: s["status"] for s in store.subscriptions}
        assert statuses == {"monthly": "cancelled", "annual": "active"}

    def test_trial_marks_profile(self, billing: BillingService, store: FakeStore):
        billing.checkout(USER_ID, "free_trial", app_url="https://app.test")
        assert store.profiles[USER_ID]["has_used_trial"] is True
        assert store.subscriptions[0]["is_trial"] is True

    def test_trial_only_once(self, billing: BillingService, store: FakeStore):
        store.upsert_profile(USER_ID, {"has_used_trial": True})
        with pytest.raises(BillingError) as info:
            billing.checkout(USER_ID, "free_trial", app_url="https://app.test")
        assert info.value.message == "Free trial already used"


class TestVerifySession:
    def _session(self, store: FakeStore, gateway: FakeGateway, **kw) -> str:
        sub = store.insert_subscription({"user_id": USER_ID, "plan_type": "monthly", "status": "active"})
        gateway.sessions["cs_1"] = {
            "id": "cs_1",
            "status": "complete",
            "payment_status": "paid",
            "customer": {"id": "cus_9"},
            "subscription": {"id": "sub_stripe_1", "status": "active", "current_period_end": 1782864000},
            "metadata": {
                "user_id": USER_ID,
                "subscription_id": sub["id"],
                "plan_type": "monthly",
                "price_id": "price_month",
                "has_trial": "false",
            },
            **kw,
        }
        return sub["id"]

    def test_paid_session(self, billing: BillingService, store: FakeStore, gateway: FakeGateway):
        sub_id = self._session(store, gateway)
        out = billing.verify_session("cs_1")
        assert out["success"] is True
        assert out["session"] == {"id": "cs_1", "payment_status": "paid", "status": "complete"}
        sub = store.get_subscription(sub_id)
        assert sub["card_added"] is True
        assert sub["payment_provider_customer_id"] == "cus_9"
        assert sub["payment_provider_subscription_id"] == "sub_stripe_1"
        profile = store.profiles[USER_ID]
        assert profile["is_subscribed"] is True
        assert profile["subscription_type"] == "price_month"
        assert profile["expiry_subscription"] == "2026-07-01T00:00:00+00:00"

    def test_trial_session_string_subscription(self, billing: BillingService, store: FakeStore, gateway: FakeGateway):
        self._session(store, gateway, payment_status="no_payment_required", subscription="sub_stripe_2")
        gateway.sessions["cs_1"]["metadata"].update(has_trial="true", plan_type="free_trial")
        gateway.stripe_subscriptions["sub_stripe_2"] = {"id": "sub_stripe_2", "status": "trialing", "trial_end": 1782864000}
        billing.verify_session("cs_1")
        profile = store.profiles[USER_ID]
        assert profile["subscription_type"] == "free_trial"
        assert profile["has_used_trial"] is True

    def test_caller_must_own_session(self, billing: BillingService, store: FakeStore, gateway: FakeGateway):
        sub_id = self._session(store, gateway)
        with pytest.raises(BillingError) as info:
            billing.verify_session("cs_1", caller_id="intruder")
        assert info.value.status_code == 403
        assert "card_added" not in store.get_subscription(sub_id)
        assert USER_ID not in store.profiles
        assert billing.verify_session("cs_1", caller_id=USER_ID)["success"] is True

    def test_unknown_session(self, billing: BillingService):
        with pytest.raises(BillingError) as info:
            billing.verify_session("cs_missing")
        assert info.value.status_code == 404


class TestWebhook:
    def test_parse_without_secret(self, billing: BillingService, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", None)
        event = billing.parse_event(json.dumps({"type": "ping"}).encode(), "sig")
        assert event == {"type": "ping"}

    def test_parse_requires_signature(self, billing: BillingService):
        with pytest.raises(BillingError):
            billing.parse_event(b"{}", None)

    def test_bad_signature(self, billing: BillingService, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_1")
        with pytest.raises(BillingError) as info:
            billing.parse_event(b"{}", "forged")
        assert info.value.message.startswith("Webhook Error")

    def _local(self, store: FakeStore, **kw) -> dict:
        return store.insert_subscription(
            {"user_id": USER_ID, "plan_type": "monthly", "status": "active", "payment_provider_subscription_id": "sub_s", **kw}
        )

    def test_subscription_deleted(self, billing: BillingService, store: FakeStore):
        local = self._local(store)
        billing.handle_event({"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_s"}}})
        assert local["status"] == "cancelled"
        assert local["auto_renew"] is False

    def test_subscription_updated(self, billing: BillingService, store: FakeStore):
        local = self._local(store)
        billing.handle_event(
            {"type": "customer.subscription.updated", "data": {"object": {"id": "sub_s", "status": "past_due"}}}
        )
        assert local["status"] == "expired"

    def test_payment_succeeded_records_invoice(self, billing: BillingService, store: FakeStore):
        local = self._local(store, status="expired")
        billing.handle_event(
            {
                "type": "invoice.payment_succeeded",
                "data": {
                    "object": {
                        "id": "in_1",
                        "amount_paid": 19900,
                        "currency": "usd",
                        "period_end": 1782864000,
                        "parent": {"subscription_details": {"subscription": "sub_s"}},
                    }
                },
            }
        )
        assert local["status"] == "active"
        invoice = store.invoices[0]
        assert invoice["amount"] == 199
        assert invoice["currency"] == "USD"
        assert invoice["stripe_invoice_id"] == "in_1"
        assert store.list_paid_invoices(USER_ID) == [invoice]

    def test_payment_failed(self, billing: BillingService, store: FakeStore):
        local = self._local(store)
        billing.handle_event({"type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_s"}}})
        assert local["status"] == "expired"

    def test_unknown_subscription_is_ignored(self, billing: BillingService, store: FakeStore):
        billing.handle_event({"type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_x"}}})
        assert store.invoices == []


def test_subscription_updates_from_stripe():
    updates = subscription_updates_from_stripe(
        {"status": "trialing", "trial_end": 1782864000, "items": {"data": [{"current_period_end": 1782864000}]}}
    )
    assert updates["status"] == "active"
    assert updates["is_trial"] is True
    assert updates["end_date"] == "2026-07-01T00:00:00+00:00"
    cancelled = subscription_updates_from_stripe({"status": "canceled"})
    assert cancelled["status"] == "cancelled"
    assert "cancelled_at" in cancelled


def test_plan_details():
    assert plan_details(None, None)["plan_name"] == "No Plan"
    assert plan_details("free_trial", None) == {"plan_name": "Free Trial", "plan_price": "$0", "billing_cycle": "7 days"}
    assert plan_details("price_abc", {"billing_cycle": "annual"})["plan_price"] == "$1,308"

    def lookup(price_id):
        return {"recurring": {"interval": "month"}, "unit_amount": 4900}

    assert plan_details("price_custom", None, lookup) == {
        "plan_name": "Basic Plan",
        "plan_price": "$49",
        "billing_cycle": "per month",
    }


def test_details(billing: BillingService, store: FakeStore):
    store.upsert_profile(
        USER_ID,
        {"is_subscribed": True, "subscription_type": "price_year", "expiry_subscription": "2027-01-31T00:00:00+00:00"},
    )
    details = billing.details(USER_ID)
    assert details["is_subscribed"] is True
    assert details["plan_name"] == "Annual Plan"
    assert details["renewal_date"] == "January 31, 2027"
