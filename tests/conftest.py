from __future__ import annotations

import copy
import json
import uuid
from datetime import datetime, timezone
from io import BytesIO
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from adsparkr.api.app import app
from adsparkr.api.deps import get_billing, get_gemini, get_http, get_openai_text, get_store
from adsparkr.billing import BillingService
from adsparkr.plans import parse_timestamp
from adsparkr.providers.openai_provider import normalize_products, normalize_site_analysis
from adsparkr.storage import StoreError

USER_ID = "user-1"
TOKEN = "good-token"
GRAPH = "/v18.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def png_bytes(size: tuple[int, int] = (400, 300), color: str = "#22AA66") -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeStore:
    """In-memory stand-in for SupabaseStore, same method surface."""

    def __init__(self) -> None:
        self.projects: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.subscriptions: list[dict[str, Any]] = []
        self.usage: list[dict[str, Any]] = []
        self.published_ads: list[dict[str, Any]] = []
        self.invoices: list[dict[str, Any]] = []
        self.files: dict[str, bytes] = {}
        self.removed: list[str] = []
        self.tokens: dict[str, dict[str, Any]] = {TOKEN: {"id": USER_ID, "email": "owner@example.com"}}

    # Projects

    def create_project(self, user_id: str, website_url: str) -> dict[str, Any]:
        row = {
            "project_id": str(uuid.uuid4()),
            "user_id": user_id,
            "url_analysis": {"website_url": website_url},
            "status": "PENDING",
            "ad_set_proposals": [],
            "created_at": _now_iso(),
        }
        self.projects[row["project_id"]] = row
        return copy.deepcopy(row)

    def add_project(self, **fields: Any) -> dict[str, Any]:
        row = self.create_project(fields.pop("user_id", USER_ID), fields.pop("website_url", "https://shop.example.com"))
        self.projects[row["project_id"]].update(fields)
        return self.projects[row["project_id"]]

    def list_projects(self, user_id: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(p) for p in self.projects.values() if p["user_id"] == user_id]

    def get_project(self, project_id: str, user_id: str | None = None) -> dict[str, Any] | None:
        row = self.projects.get(project_id)
        if row is None or (user_id is not None and row["user_id"] != user_id):
            return None
        return copy.deepcopy(row)

    def update_project(self, project_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        row = self.projects.get(project_id)
        if row is None:
            return None
        row.update(copy.deepcopy(updates))
        return copy.deepcopy(row)

    # Profiles

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        row = self.profiles.get(user_id)
        return copy.deepcopy(row) if row else None

    def upsert_profile(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        row = self.profiles.setdefault(user_id, {"user_id": user_id})
        row.update(copy.deepcopy(updates))
        return copy.deepcopy(row)

    # Subscriptions

    def _subs(self, user_id: str) -> list[dict[str, Any]]:
        return [s for s in reversed(self.subscriptions) if s["user_id"] == user_id]

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return next((s for s in self.subscriptions if s["id"] == subscription_id), None)

    def latest_active_subscription(self, user_id: str) -> dict[str, Any] | None:
        return next((s for s in self._subs(user_id) if s["status"] == "active"), None)

    def latest_trial_or_active_subscription(self, user_id: str) -> dict[str, Any] | None:
        for s in self._subs(user_id):
            if s["status"] not in ("active", "trial_expired", "trialing"):
                continue
            if s.get("plan_type") == "free_trial" or s.get("is_trial") or s["status"] == "active":
                return s
        return None

    def find_subscription(
        self,
        user_id: str,
        plan_type: str | None = None,
        statuses: list[str] | None = None,
    ) -> dict[str, Any] | None:
        for s in self._subs(user_id):
            if plan_type is not None and s.get("plan_type") != plan_type:
                continue
            if statuses and s["status"] not in statuses:
                continue
            return s
        return None

    def find_subscription_by_provider_id(self, provider_subscription_id: str) -> dict[str, Any] | None:
        return next(
            (s for s in self.subscriptions if s.get("payment_provider_subscription_id") == provider_subscription_id),
            None,
        )

    def insert_subscription(self, row: dict[str, Any]) -> dict[str, Any]:
        created = {"id": str(uuid.uuid4()), "created_at": _now_iso(), **row}
        self.subscriptions.append(created)
        return created

    def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        row = self.get_subscription(subscription_id)
        if row is None:
            return None
        row.update(updates)
        return row

    def cancel_subscriptions(self, user_id: str, statuses: list[str]) -> int:
        n = 0
        for s in self.subscriptions:
            if s["user_id"] == user_id and s["status"] in statuses:
                s.update(status="cancelled", cancelled_at=_now_iso())
                n += 1
        return n

    # Usage

    def get_usage(self, user_id: str, subscription_id: str) -> dict[str, Any] | None:
        return next(
            (u for u in self.usage if u["user_id"] == user_id and u["subscription_id"] == subscription_id),
            None,
        )

    def insert_usage(self, row: dict[str, Any]) -> dict[str, Any]:
        created = {"id": str(uuid.uuid4()), **row}
        self.usage.append(created)
        return created

    def update_usage(self, usage_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        row = next((u for u in self.usage if u["id"] == usage_id), None)
        if row is not None:
            row.update(updates)
        return row

    # Published ads and invoices

    def insert_published_ads(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out = []
        for r in rows:
            created = {"id": str(uuid.uuid4()), "created_at": _now_iso(), **r}
            self.published_ads.append(created)
            out.append(created)
        return out

    def count_published_ads_since(self, user_id: str, since_iso: str) -> int:
        since = parse_timestamp(since_iso)
        return sum(
            1 for r in self.published_ads if r["user_id"] == user_id and parse_timestamp(r["created_at"]) >= since
        )

    def list_paid_invoices(self, user_id: str) -> list[dict[str, Any]]:
        return [i for i in self.invoices if i["user_id"] == user_id and i["status"] == "paid"]

    def insert_invoice(self, row: dict[str, Any]) -> dict[str, Any]:
        self.invoices.append(row)
        return row

    # Storage

    def upload_file(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        self.files[f"{bucket}/{path}"] = content
        return self.public_url(bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://files.test/storage/v1/object/public/{bucket}/{path}"

    def remove_file(self, bucket: str, path: str) -> None:
        self.removed.append(f"{bucket}/{path}")
        self.files.pop(f"{bucket}/{path}", None)

    # Auth

    def get_user(self, access_token: str) -> dict[str, Any] | None:
        return self.tokens.get(access_token)

    def sign_in(self, email: str, password: str) -> dict[str, Any]:
        if password != "secret":
            raise StoreError("Sign-in failed: Invalid login credentials")
        return {
            "access_token": TOKEN,
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "user": {"id": USER_ID, "email": email},
        }

    def exchange_code(self, code: str) -> dict[str, Any]:
        if code != "good-code":
            raise StoreError("Code exchange failed: bad code")
        return self.sign_in("owner@example.com", "secret")


class GraphMock:
    """Routes httpx requests by (method, path) to canned JSON answers."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {}
        self.calls: list[httpx.Request] = []

    def add(self, method: str, path: str, payload: Any = None, status: int = 200) -> None:
        self.routes[(method, path)] = (status, {} if payload is None else payload)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(400, json={"error": {"message": f"Unknown path {key[1]}", "code": 803}})
        status, payload = self.routes[key]
        if callable(payload):
            payload = payload(request)
        if isinstance(payload, httpx.Response):
            return payload
        if isinstance(payload, bytes):
            return httpx.Response(status, content=payload, headers={"content-type": "image/png"})
        if isinstance(payload, str):
            return httpx.Response(status, text=payload, headers={"content-type": "text/html"})
        return httpx.Response(status, json=payload)

    def posted(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls if r.method == "POST" and r.url.path == path]

    def requested(self, path: str) -> list[httpx.Request]:
        return [r for r in self.calls if r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


class FakeText:
    name = "fake"

    def __init__(self) -> None:
        self.sites: list[dict[str, Any]] = []
        self.products = {
            "products": [
                {
                    "id": 1,
                    "coordinates": {"x": 50, "y": 40, "width": 100, "height": 80},
                    "description": "Ceramic pour-over set",
                    "category": "Kitchen",
                    "location": "hero",
                    "confidence": 0.9,
                }
            ]
        }

    async def generate_project_name(self, business_analysis: dict[str, Any]) -> str:
        return "Bright Bean Co"

    async def business_profile(self, site: dict[str, Any]) -> dict[str, Any]:
        self.sites.append(site)
        return {"business_summary": "Specialty coffee roaster.", "products_services": ["coffee beans"]}

    async def analyze_website(self, site: dict[str, Any], website_url: str) -> dict[str, Any]:
        self.sites.append(site)
        return normalize_site_analysis(
            {
                "businessName": "Bright Bean",
                "productInformation": {"description": "**Fresh** roasted beans.\n- Subscriptions"},
                "sellingPoints": {"description": "Roasted this week."},
                "adsGoalStrategy": {"description": ""},
                "businessAnalysis": {"businessType": "coffee roaster", "productsServices": ["beans", "gear"]},
            }
        )

    async def personas(self, profile: dict[str, Any], count: int = 10) -> list[dict[str, Any]]:
        personas = [
            {
                "persona_name": "Home Barista",
                "short_description": "Enthusiasts brewing at home",
                "rationale": "Buys beans monthly",
                "demographics": {"age_min": 25, "age_max": 44},
                "sample_keywords_for_targeting": ["coffee", "espresso"],
            },
            {
                "persona_name": "Office Manager",
                "short_description": "Stocks the office kitchen",
                "demographics": {"age_range": {"min": 30, "max": 55}},
                "sample_keywords_for_targeting": ["office supplies"],
            },
        ]
        return personas[:count]

    async def ad_variants(
        self,
        profile: dict[str, Any],
        persona: dict[str, Any],
        interests: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        return [
            {"title": f"Fresh roasts for {persona['persona_name']}", "body": "Roasted this week.", "CTA": "Shop now"},
            {"title": "Second variant", "body": "Another angle."},
        ]

    async def locate_products(self, screenshot_url: str) -> dict[str, Any]:
        return normalize_products(self.products)


class FakeGateway:
    """Records Stripe calls; answers from dicts set up by the test."""

    def __init__(self) -> None:
        self.prices = [
            {"id": "price_month", "recurring": {"interval": "month"}, "unit_amount": 19900},
            {"id": "price_year", "recurring": {"interval": "year"}, "unit_amount": 130800},
        ]
        self.sessions: dict[str, dict[str, Any]] = {}
        self.stripe_subscriptions: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []

    def list_recurring_prices(self) -> list[dict[str, Any]]:
        return self.prices

    def retrieve_price(self, price_id: str) -> dict[str, Any]:
        for p in self.prices:
            if p["id"] == price_id:
                return p
        raise LookupError(price_id)

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        self.created.append(params)
        sid = f"cs_test_{len(self.created)}"
        return {"id": sid, "url": f"https://checkout.stripe.test/{sid}"}

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self.sessions.get(session_id) or {}

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.stripe_subscriptions[subscription_id]

    def construct_event(self, payload: bytes, sig_header: str, secret: str) -> dict[str, Any]:
        if sig_header != "valid":
            raise ValueError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def graph() -> GraphMock:
    return GraphMock()


@pytest.fixture
def text() -> FakeText:
    return FakeText()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(store: FakeStore, graph: GraphMock, text: FakeText, gateway: FakeGateway):
    async def _http():
        async with graph.client() as http:
            yield http

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_http] = _http
    app.dependency_overrides[get_openai_text] = lambda: text
    app.dependency_overrides[get_gemini] = lambda: None
    app.dependency_overrides[get_billing] = lambda: BillingService(store, gateway)
    c = TestClient(app)
    c.headers.update({"Authorization": f"Bearer {TOKEN}"})
    yield c
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(store: FakeStore):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def subscribe(store: FakeStore, plan_type: str = "free_trial", user_id: str = USER_ID) -> dict[str, Any]:
    from adsparkr.subscriptions import SubscriptionService

    return SubscriptionService(store).save(user_id, plan_type)


def connect_meta(store: FakeStore, user_id: str = USER_ID, **account: Any) -> dict[str, Any]:
    meta = {
        "access_token": "meta-token",
        "profile": {"id": "fb-1", "name": "Dana Owner", "email": "dana@example.com"},
        "ad_accounts": [{"id": "act_123", "account_id": "123", "name": "Main", "currency": "USD"}],
        "connected_at": "2026-01-05T10:00:00+00:00",
        **account,
    }
    store.upsert_profile(user_id, {"meta_accounts": meta, "meta_connected": True})
    return meta


