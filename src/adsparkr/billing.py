from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from adsparkr.config import settings
from adsparkr.plans import ANNUAL, FREE_TRIAL, MONTHLY, TRIAL_DAYS
from adsparkr.storage import SupabaseStore, _now_iso
from adsparkr.subscriptions import SubscriptionService, add_months

logger = logging.getLogger(__name__)

CHECKOUT_PLANS = (FREE_TRIAL, MONTHLY, ANNUAL)

# Stripe status -> local subscription updates.
_STATUS_UPDATES: dict[str, dict[str, Any]] = {
    "active": {"status": "active"},
    "trialing": {"status": "active", "is_trial": True},
    "canceled": {"status": "cancelled"},
    "cancelled": {"status": "cancelled"},
    "past_due": {"status": "expired"},
    "unpaid": {"status": "expired"},
}


class BillingError(Exception):
    def __init__(self, message: str, status_code: int = 400, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def _object_id(value: Any) -> str | None:
    if not value:
        return None
    if isinstance(value, str):
        return value
    return _as_dict(value).get("id")


def _ts_iso(value: Any) -> str | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def subscription_updates_from_stripe(stripe_sub: dict[str, Any]) -> dict[str, Any]:
    """Translate a Stripe subscription object into local column updates."""
    status = stripe_sub.get("status") or ""
    updates: dict[str, Any] = dict(_STATUS_UPDATES.get(status, {}))
    if updates.get("status") == "cancelled":
        updates["cancelled_at"] = _now_iso()
    if stripe_sub.get("trial_end"):
        updates["trial_end_date"] = _ts_iso(stripe_sub["trial_end"])
    period_end = stripe_sub.get("current_period_end") or _first_item_period_end(stripe_sub)
    if period_end:
        updates["end_date"] = _ts_iso(period_end)
    if stripe_sub.get("cancel_at"):
        updates["cancelled_at"] = _ts_iso(stripe_sub["cancel_at"])
    return updates


def _first_item_period_end(stripe_sub: dict[str, Any]) -> Any:
    # Newer API versions move the period onto subscription items.
    items = ((stripe_sub.get("items") or {}).get("data")) or []
    return items[0].get("current_period_end") if items else None


def checkout_success_urls(app_url: str, project_id: str | None) -> tuple[str, str]:
    base = f"{app_url.rstrip('/')}/dashboard/projects/{project_id or ''}/plan"
    return (
        f"{base}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}?checkout=cancelled",
    )


def build_checkout_params(
    user_id: str,
    subscription_id: str,
    plan_type: str,
    price_id: str,
    app_url: str,
    project_id: str | None = None,
    immediate_payment: bool = False,
) -> dict[str, Any]:
    success_url, cancel_url = checkout_success_urls(app_url, project_id)
    is_trial = plan_type == FREE_TRIAL
    params: dict[str, Any] = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id,
        "metadata": {
            "user_id": user_id,
            "subscription_id": subscription_id,
            "plan_type": plan_type,
            "project_id": project_id or "",
            "immediate_payment": "true" if immediate_payment else "false",
            "price_id": price_id,
            "has_trial": "true" if is_trial else "false",
        },
        "allow_promotion_codes": True,
        "payment_method_collection": "always" if is_trial else "if_required",
        "subscription_data": {"metadata": {"plan_type": plan_type, "project_id": project_id or ""}},
    }
    if is_trial:
        params["subscription_data"]["trial_period_days"] = TRIAL_DAYS
    return params


class StripeGateway:
    """Thin wrapper over the stripe SDK so the billing flow can be exercised without network."""

    def __init__(self, api_key: str, api_version: str | None = None) -> None:
        import stripe  # type: ignore

        stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version
        self._stripe = stripe

    def list_recurring_prices(self) -> list[dict[str, Any]]:
        prices = self._stripe.Price.list(active=True, limit=100)
        return [_as_dict(p) for p in prices.data]

    def retrieve_price(self, price_id: str) -> dict[str, Any]:
        return _as_dict(self._stripe.Price.retrieve(price_id))

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        return _as_dict(self._stripe.checkout.Session.create(**params))

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return _as_dict(self._stripe.checkout.Session.retrieve(session_id, expand=["subscription", "customer"]))

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return _as_dict(self._stripe.Subscription.retrieve(subscription_id))

    def construct_event(self, payload: bytes, sig_header: str, secret: str) -> dict[str, Any]:
        event = self._stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
        return _as_dict(event)


class BillingService:
    def __init__(self, store: SupabaseStore, gateway: StripeGateway) -> None:
        self.store = store
        self.gateway = gateway
        self.subscriptions = SubscriptionService(store)

    def price_id_for(self, plan_type: str) -> str:
        interval = "year" if plan_type == ANNUAL else "month"
        configured = settings.stripe_annual_price_id if plan_type == ANNUAL else settings.stripe_monthly_price_id
        if configured:
            return configured
        for price in self.gateway.list_recurring_prices():
            if ((price.get("recurring") or {}).get("interval")) == interval:
                return price["id"]
        cycle = "ANNUAL" if plan_type == ANNUAL else "MONTHLY"
        raise BillingError(
            "Price ID not found. Please configure Stripe prices first.",
            status_code=500,
            details=f"Set STRIPE_{cycle}_PRICE_ID or create an active {interval}ly price",
        )

    def checkout(
        self,
        user_id: str,
        plan_type: str,
        app_url: str,
        project_id: str | None = None,
        immediate_payment: bool = False,
    ) -> dict[str, Any]:
        if plan_type not in CHECKOUT_PLANS:
            raise BillingError("Invalid plan type")

        if plan_type == FREE_TRIAL:
            profile = self.store.get_profile(user_id) or {}
            previous = self.store.find_subscription(user_id, plan_type=FREE_TRIAL)
            if profile.get("has_used_trial") or previous:
                raise BillingError(
                    "Free trial already used",
                    details="You have already used your free trial. Please choose a paid plan to continue.",
                )

        price_id = self.price_id_for(plan_type)
        billing_cycle = "annual" if plan_type == ANNUAL else "monthly"

        cancelled = self.store.cancel_subscriptions(user_id, ["active", "trialing"])
        if cancelled:
            logger.info("cancelled %d previous subscription(s) for user %s", cancelled, user_id)

        existing = self.store.find_subscription(user_id, plan_type=plan_type)
        if existing:
            subscription_id = existing["id"]
            self.store.update_subscription(subscription_id, {"status": "active", "auto_renew": True})
        else:
            now = datetime.now(timezone.utc)
            row: dict[str, Any] = {
                "user_id": user_id,
                "plan_type": plan_type,
                "status": "active",
                "card_required": True,
                "card_added": False,
                "auto_renew": True,
                "billing_cycle": billing_cycle,
                "payment_provider": "stripe",
                "start_date": now.isoformat(),
            }
            if plan_type == FREE_TRIAL:
                trial_end = now + timedelta(days=TRIAL_DAYS)
                row.update(
                    is_trial=True,
                    trial_start_date=now.isoformat(),
                    trial_end_date=trial_end.isoformat(),
                    end_date=trial_end.isoformat(),
                )
            else:
                row["end_date"] = add_months(now, 12 if plan_type == ANNUAL else 1).isoformat()
            subscription_id = self.store.insert_subscription(row)["id"]
            if plan_type == FREE_TRIAL:
                self.store.upsert_profile(user_id, {"has_used_trial": True})
        self.subscriptions.ensure_usage(user_id, subscription_id, plan_type)

        params = build_checkout_params(
            user_id=user_id,
            subscription_id=subscription_id,
            plan_type=plan_type,
            price_id=price_id,
            app_url=app_url,
            project_id=project_id,
            immediate_payment=immediate_payment,
        )
        session = self.gateway.create_checkout_session(params)
        logger.info("checkout session %s created for user %s (%s)", session.get("id"), user_id, plan_type)
        return {"url": session.get("url"), "session_id": session.get("id")}

    def verify_session(self, session_id: str, caller_id: str | None = None) -> dict[str, Any]:
        """caller_id, when given, must match the user the checkout session was opened for."""
        session = self.gateway.retrieve_checkout_session(session_id)
        if not session:
            raise BillingError("Session not found", status_code=404)

        metadata = session.get("metadata") or {}
        subscription_id = metadata.get("subscription_id")
        user_id = metadata.get("user_id") or session.get("client_reference_id")
        plan_type = metadata.get("plan_type")
        if not subscription_id or not user_id:
            raise BillingError("Missing subscription information")
        if caller_id is not None and user_id != caller_id:
            logger.warning("user %s tried to verify checkout session %s of user %s", caller_id, session_id, user_id)
            raise BillingError("Session does not belong to this user", status_code=403)

        updates = _payment_updates(session)
        has_trial = metadata.get("has_trial") == "true"

        stripe_sub = session.get("subscription")
        if isinstance(stripe_sub, str):
            stripe_sub = self.gateway.retrieve_subscription(stripe_sub)
        stripe_sub = _as_dict(stripe_sub) if stripe_sub else {}

        success = (
            session.get("payment_status") == "paid"
            or has_trial
            or stripe_sub.get("status") in ("active", "trialing")
        )
        if success:
            period_end = stripe_sub.get("current_period_end") or _first_item_period_end(stripe_sub)
            expiry = _ts_iso(period_end)
            if expiry is None and has_trial:
                expiry = (datetime.now(timezone.utc) + timedelta(days=TRIAL_DAYS)).isoformat()
            if stripe_sub.get("trial_end") and has_trial:
                updates["trial_end_date"] = _ts_iso(stripe_sub["trial_end"])
                updates["is_trial"] = True
            profile_updates: dict[str, Any] = {
                "is_subscribed": True,
                "subscription_type": plan_type if has_trial else (metadata.get("price_id") or plan_type),
                "expiry_subscription": expiry,
            }
            if has_trial:
                profile_updates["has_used_trial"] = True
            self.store.upsert_profile(user_id, profile_updates)

        updated = self.store.update_subscription(subscription_id, updates)
        return {
            "success": True,
            "subscription": updated,
            "session": {
                "id": session.get("id"),
                "payment_status": session.get("payment_status"),
                "status": session.get("status"),
            },
        }

    def parse_event(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        if not sig_header:
            raise BillingError("No signature")
        secret = settings.stripe_webhook_secret
        if not secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set; skipping webhook signature verification")
            try:
                return json.loads(payload)
            except ValueError as exc:
                raise BillingError(f"Webhook Error: {exc}") from exc
        try:
            return self.gateway.construct_event(payload, sig_header, secret)
        except Exception as exc:  # stripe.error.SignatureVerificationError and payload errors
            logger.warning("webhook signature verification failed: %s", exc)
            raise BillingError(f"Webhook Error: {exc}") from exc

    def handle_event(self, event: dict[str, Any]) -> None:
        etype = event.get("type")
        obj = _as_dict((event.get("data") or {}).get("object"))
        logger.info("stripe event %s (%s)", etype, event.get("id"))

        if etype == "checkout.session.completed":
            self._on_checkout_completed(obj)
        elif etype in ("customer.subscription.created", "customer.subscription.updated"):
            self._on_subscription_updated(obj)
        elif etype == "customer.subscription.deleted":
            self._on_subscription_deleted(obj)
        elif etype == "invoice.payment_succeeded":
            self._on_payment_succeeded(obj)
        elif etype == "invoice.payment_failed":
            self._on_payment_failed(obj)

    def _on_checkout_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        subscription_id = metadata.get("subscription_id")
        if not subscription_id or not (metadata.get("user_id") or session.get("client_reference_id")):
            logger.error("checkout session %s missing subscription_id or user_id", session.get("id"))
            return
        self.store.update_subscription(subscription_id, _payment_updates(session))

    def _local_for(self, stripe_subscription_id: str | None) -> dict[str, Any] | None:
        if not stripe_subscription_id:
            return None
        local = self.store.find_subscription_by_provider_id(stripe_subscription_id)
        if local is None:
            logger.info("no local subscription for stripe subscription %s", stripe_subscription_id)
        return local

    def _on_subscription_updated(self, stripe_sub: dict[str, Any]) -> None:
        local = self._local_for(stripe_sub.get("id"))
        if local:
            self.store.update_subscription(local["id"], subscription_updates_from_stripe(stripe_sub))

    def _on_subscription_deleted(self, stripe_sub: dict[str, Any]) -> None:
        local = self._local_for(stripe_sub.get("id"))
        if local:
            self.store.update_subscription(
                local["id"],
                {"status": "cancelled", "cancelled_at": _now_iso(), "auto_renew": False},
            )

    def _on_payment_succeeded(self, invoice: dict[str, Any]) -> None:
        local = self._local_for(_invoice_subscription_id(invoice))
        if not local:
            return
        updates: dict[str, Any] = {}
        if local.get("status") == "expired":
            updates["status"] = "active"
        if invoice.get("period_end"):
            updates["end_date"] = _ts_iso(invoice["period_end"])
        if updates:
            self.store.update_subscription(local["id"], updates)
        self.store.insert_invoice(
            {
                "user_id": local["user_id"],
                "subscription_id": local["id"],
                "stripe_invoice_id": invoice.get("id"),
                "amount": (invoice.get("amount_paid") or 0) / 100,
                "currency": (invoice.get("currency") or "usd").upper(),
                "status": "paid",
                "invoice_pdf": invoice.get("invoice_pdf"),
                "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                "paid_at": _ts_iso((invoice.get("status_transitions") or {}).get("paid_at")) or _now_iso(),
            }
        )

    def _on_payment_failed(self, invoice: dict[str, Any]) -> None:
        local = self._local_for(_invoice_subscription_id(invoice))
        if local:
            self.store.update_subscription(local["id"], {"status": "expired"})

    def details(self, user_id: str) -> dict[str, Any]:
        profile = self.store.get_profile(user_id) or {}
        subscription = self.store.find_subscription(user_id, statuses=["active", "trialing"])
        plan = plan_details(profile.get("subscription_type"), subscription, self._price_lookup)
        expiry = profile.get("expiry_subscription")
        renewal = None
        if expiry:
            dt = datetime.fromisoformat(str(expiry).replace("Z", "+00:00"))
            renewal = f"{dt.strftime('%B')} {dt.day}, {dt.year}"
        return {
            "is_subscribed": bool(profile.get("is_subscribed")),
            "plan_name": plan["plan_name"],
            "plan_price": plan["plan_price"],
            "billing_cycle": plan["billing_cycle"],
            "renewal_date": renewal,
            "subscription": subscription,
        }

    def _price_lookup(self, price_id: str) -> dict[str, Any] | None:
        try:
            return self.gateway.retrieve_price(price_id)
        except Exception as exc:  # unknown ids surface as stripe InvalidRequestError
            logger.info("price lookup failed for %s: %s", price_id, exc)
            return None


def plan_details(
    subscription_type: str | None,
    subscription: dict[str, Any] | None,
    price_lookup: Any = None,
) -> dict[str, Any]:
    """Human-readable plan name, price and cycle for the billing page."""
    if not subscription_type:
        return {"plan_name": "No Plan", "plan_price": None, "billing_cycle": None}
    cycle = (subscription or {}).get("billing_cycle")
    if subscription_type in ("trial", FREE_TRIAL):
        return {"plan_name": "Free Trial", "plan_price": "$0", "billing_cycle": "7 days"}
    if "month" in subscription_type or cycle == "monthly":
        return {"plan_name": "Basic Plan", "plan_price": "$199", "billing_cycle": "per month"}
    if "year" in subscription_type or "annual" in subscription_type or cycle == "annual":
        return {"plan_name": "Annual Plan", "plan_price": "$1,308", "billing_cycle": "per year"}

    price = price_lookup(subscription_type) if price_lookup else None
    interval = ((price or {}).get("recurring") or {}).get("interval")
    if interval in ("month", "year"):
        amount = (price.get("unit_amount") or 0) / 100
        return {
            "plan_name": "Basic Plan" if interval == "month" else "Annual Plan",
            "plan_price": f"${amount:g}",
            "billing_cycle": "per month" if interval == "month" else "per year",
        }
    return {"plan_name": "Basic Plan", "plan_price": "$199", "billing_cycle": "per month"}


def _payment_updates(session: dict[str, Any]) -> dict[str, Any]:
    updates: dict[str, Any] = {"card_added": True, "card_required": True}
    customer = _object_id(session.get("customer"))
    if customer:
        updates["payment_provider_customer_id"] = customer
    subscription = _object_id(session.get("subscription"))
    if subscription:
        updates["payment_provider_subscription_id"] = subscription
    if session.get("payment_status") == "paid":
        updates["status"] = "active"
    return updates


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    sub = invoice.get("subscription")
    if not sub:
        # Newer API versions nest it under parent.subscription_details.
        sub = ((invoice.get("parent") or {}).get("subscription_details") or {}).get("subscription")
    return _object_id(sub)
