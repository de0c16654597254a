from __future__ import annotations

import json

from conftest import USER_ID, FakeGateway, FakeStore, subscribe

from adsparkr.config import settings


class TestSubscriptionRoutes:
    def test_no_subscription(self, client):
        assert client.get("/api/subscriptions").json() == {"subscription": None, "usage": None}

    def test_save_and_read(self, client, store: FakeStore):
        resp = client.post("/api/subscriptions", json={"plan_type": "free_trial", "card_required": True})
        assert resp.status_code == 200
        saved = resp.json()
        assert saved["subscription"]["is_trial"] is True
        assert saved["usage"]["max_projects"] == 5

        current = client.get("/api/subscriptions").json()
        assert current["subscription"]["plan_type"] == "free_trial"
        assert current["usage"]["daily_budget_cap"] == 150

        # Saving the same plan again updates rather than duplicates.
        client.post("/api/subscriptions", json={"plan_type": "free_trial", "card_added": True})
        assert len(store.subscriptions) == 1
        assert store.subscriptions[0]["card_added"] is True

    def test_save_requires_known_plan(self, client):
        assert client.post("/api/subscriptions", json={}).json() == {"detail": "Plan type is required"}
        resp = client.post("/api/subscriptions", json={"plan_type": "platinum"})
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Unknown plan type: platinum"}

    def test_check_usage(self, client, store: FakeStore):
        resp = client.post("/api/subscriptions/check-usage", json={"limit_type": "projects"})
        assert resp.json()["can_proceed"] is False
        assert resp.json()["reason"] == "no_subscription"

        subscribe(store, "monthly")
        body = client.post("/api/subscriptions/check-usage", json={"limit_type": "projects"}).json()
        assert body["can_proceed"] is True
        assert body["subscription"]["plan_type"] == "monthly"

        over = client.post(
            "/api/subscriptions/check-usage",
            json={"limit_type": "daily_budget", "daily_budget": 150.5},
        ).json()
        assert over["reason"] == "budget_limit_exceeded"
        assert over["message"] == "Daily budget cannot exceed $150. Upgrade to Enterprise for unlimited budget."

    def test_check_usage_validation(self, client):
        assert client.post("/api/subscriptions/check-usage", json={}).status_code == 400
        resp = client.post("/api/subscriptions/check-usage", json={"limit_type": "widgets"})
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Unknown limit type: widgets"}


class TestCheckoutRoutes:
    def test_checkout(self, client, store: FakeStore, gateway: FakeGateway):
        resp = client.post("/api/subscriptions/checkout", json={"planType": "monthly", "projectId": "p-1"})
        assert resp.status_code == 200
        assert resp.json()["session_id"] == "cs_test_1"
        params = gateway.created[0]
        assert params["success_url"].startswith(f"{settings.site_url}/dashboard/projects/p-1/plan?checkout=success")
        assert store.subscriptions[0]["plan_type"] == "monthly"

    def test_checkout_errors(self, client):
        assert client.post("/api/subscriptions/checkout", json={}).json() == {"detail": "Plan type is required"}
        resp = client.post("/api/subscriptions/checkout", json={"planType": "enterprise"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "Invalid plan type"

    def test_verify_session(self, client, store: FakeStore, gateway: FakeGateway):
        sub = store.insert_subscription({"user_id": USER_ID, "plan_type": "monthly", "status": "active"})
        gateway.sessions["cs_9"] = {
            "id": "cs_9",
            "status": "complete",
            "payment_status": "paid",
            "customer": "cus_1",
            "subscription": {"id": "sub_9", "status": "active", "current_period_end": 1782864000},
            "metadata": {"user_id": USER_ID, "subscription_id": sub["id"], "price_id": "price_month"},
        }
        resp = client.post("/api/subscriptions/verify-session", json={"session_id": "cs_9"})
        assert resp.json()["success"] is True
        assert store.profiles[USER_ID]["is_subscribed"] is True
        assert client.post("/api/subscriptions/verify-session", json={}).status_code == 400

    def test_verify_session_of_another_user(self, client, store: FakeStore, gateway: FakeGateway):
        sub = store.insert_subscription({"user_id": "user-2", "plan_type": "monthly", "status": "pending"})
        gateway.sessions["cs_7"] = {
            "id": "cs_7",
            "status": "complete",
            "payment_status": "paid",
            "customer": "cus_2",
            "subscription": {"id": "sub_7", "status": "active", "current_period_end": 1782864000},
            "metadata": {"user_id": "user-2", "subscription_id": sub["id"], "price_id": "price_month"},
        }
        resp = client.post("/api/subscriptions/verify-session", json={"session_id": "cs_7"})
        assert resp.status_code == 403
        assert resp.json() == {"detail": {"error": "Session does not belong to this user"}}
        assert store.get_subscription(sub["id"])["status"] == "pending"
        assert "user-2" not in store.profiles

    def test_verify_unknown_session(self, client):
        resp = client.post("/api/subscriptions/verify-session", json={"session_id": "cs_nope"})
        assert resp.status_code == 404

    def test_details(self, client, store: FakeStore):
        store.upsert_profile(USER_ID, {"is_subscribed": True, "subscription_type": "price_month"})
        body = client.get("/api/subscriptions/details").json()
        assert body["plan_name"] == "Basic Plan"
        assert body["renewal_date"] is None


class TestWebhookRoute:
    def test_missing_signature(self, client):
        resp = client.post("/api/subscriptions/webhook", content=b"{}")
        assert resp.status_code == 400
        assert resp.json() == {"detail": {"error": "No signature"}}

    def test_unverified_event(self, client, store: FakeStore, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", None)
        local = store.insert_subscription(
            {"user_id": USER_ID, "plan_type": "monthly", "status": "active", "payment_provider_subscription_id": "sub_w"}
        )
        event = {"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_w"}}}
        resp = client.post(
            "/api/subscriptions/webhook",
            content=json.dumps(event).encode(),
            headers={"stripe-signature": "t=1,v1=abc"},
        )
        assert resp.json() == {"received": True}
        assert local["status"] == "cancelled"

    def test_verified_event(self, client, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
        ok = client.post("/api/subscriptions/webhook", content=b'{"type": "ping"}', headers={"stripe-signature": "valid"})
        assert ok.json() == {"received": True}
        bad = client.post("/api/subscriptions/webhook", content=b'{"type": "ping"}', headers={"stripe-signature": "x"})
        assert bad.status_code == 400
        assert bad.json()["detail"]["error"].startswith("Webhook Error")


class TestPublishAdTracking:
    def test_requires_subscription(self, client):
        resp = client.post("/api/subscriptions/publish-ad", json={"project_id": "p-1"})
        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "No active subscription found"

    def test_requires_project(self, client):
        assert client.post("/api/subscriptions/publish-ad", json={}).status_code == 400

    def test_records_ad(self, client, store: FakeStore):
        subscribe(store)
        resp = client.post(
            "/api/subscriptions/publish-ad",
            json={"project_id": "p-1", "campaign_name": "Spring", "daily_budget": 20},
        )
        assert resp.status_code == 200
        assert resp.json()["published_ad"]["status"] == "published"
        assert store.published_ads[0]["campaign_name"] == "Spring"
        assert store.usage[0]["ads_published_count"] == 1

    def test_daily_ad_limit(self, client, store: FakeStore):
        subscribe(store)
        for _ in range(5):
            assert client.post("/api/subscriptions/publish-ad", json={"project_id": "p-1"}).status_code == 200
        resp = client.post("/api/subscriptions/publish-ad", json={"project_id": "p-1"})
        assert resp.status_code == 403
        assert resp.json()["detail"]["reason"] == "daily_ads_limit_reached"

    def test_budget_cap(self, client, store: FakeStore):
        subscribe(store)
        resp = client.post("/api/subscriptions/publish-ad", json={"project_id": "p-1", "daily_budget": 200})
        assert resp.status_code == 403
        assert resp.json()["detail"]["reason"] == "budget_limit_exceeded"
        assert store.published_ads == []


def test_invoices(client, store: FakeStore):
    store.insert_invoice({"user_id": USER_ID, "status": "paid", "amount": 199})
    store.insert_invoice({"user_id": USER_ID, "status": "void", "amount": 199})
    store.insert_invoice({"user_id": "other", "status": "paid", "amount": 199})
    assert client.get("/api/invoices").json() == {"invoices": [{"user_id": USER_ID, "status": "paid", "amount": 199}]}
