from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from adsparkr.api.deps import get_billing, get_current_user, get_store, get_subscriptions, require_allowance
from adsparkr.billing import BillingError, BillingService
from adsparkr.config import settings
from adsparkr.storage import SupabaseStore
from adsparkr.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _billing_http_error(exc: BillingError) -> HTTPException:
    detail: dict[str, Any] = {"error": exc.message}
    if exc.details:
        detail["details"] = exc.details
    return HTTPException(status_code=exc.status_code, detail=detail)


@router.get("/subscriptions")
def current_subscription(
    user: dict = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    return subscriptions.current(user["id"])


class SaveSubscription(BaseModel):
    plan_type: str | None = None
    card_required: bool = False
    card_added: bool = False
    trial_days: int = 7
    amount: float | None = None
    billing_cycle: str | None = None
    payment_provider: str | None = None
    payment_provider_subscription_id: str | None = None
    payment_provider_customer_id: str | None = None


@router.post("/subscriptions")
def save_subscription(
    body: SaveSubscription,
    user: dict = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    if not body.plan_type:
        raise HTTPException(status_code=400, detail="Plan type is required")
    try:
        return subscriptions.save(user["id"], **body.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


class UsageQuery(BaseModel):
    limit_type: str | None = None
    project_id: str | None = None
    daily_budget: float | None = None


@router.post("/subscriptions/check-usage")
def check_usage(
    body: UsageQuery,
    user: dict = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    if not body.limit_type:
        raise HTTPException(status_code=400, detail="Limit type is required")
    try:
        result = subscriptions.check_usage(user["id"], body.limit_type, daily_budget=body.daily_budget)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result


class CheckoutBody(BaseModel):
    planType: str | None = None
    projectId: str | None = None
    immediatePayment: bool = False


@router.post("/subscriptions/checkout")
def checkout(
    body: CheckoutBody,
    user: dict = Depends(get_current_user),
    billing: BillingService = Depends(get_billing),
):
    if not body.planType:
        raise HTTPException(status_code=400, detail="Plan type is required")
    try:
        return billing.checkout(
            user["id"],
            body.planType,
            app_url=settings.site_url,
            project_id=body.projectId,
            immediate_payment=body.immediatePayment,
        )
    except BillingError as exc:
        raise _billing_http_error(exc) from exc


class VerifyBody(BaseModel):
    session_id: str | None = None


@router.post("/subscriptions/verify-session")
def verify_session(
    body: VerifyBody,
    user: dict = Depends(get_current_user),
    billing: BillingService = Depends(get_billing),
):
    if not body.session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    try:
        return billing.verify_session(body.session_id, caller_id=user["id"])
    except BillingError as exc:
        raise _billing_http_error(exc) from exc


@router.post("/subscriptions/webhook")
async def stripe_webhook(request: Request, billing: BillingService = Depends(get_billing)):
    payload = await request.body()
    try:
        event = billing.parse_event(payload, request.headers.get("stripe-signature"))
    except BillingError as exc:
        raise _billing_http_error(exc) from exc
    billing.handle_event(event)
    return {"received": True}


@router.get("/subscriptions/details")
def subscription_details(user: dict = Depends(get_current_user), billing: BillingService = Depends(get_billing)):
    return billing.details(user["id"])


class PublishedAd(BaseModel):
    project_id: str | None = None
    campaign_name: str | None = None
    ad_set_id: str | None = None
    ad_account_id: str | None = None
    daily_budget: float | None = None
    metadata: dict[str, Any] = {}


@router.post("/subscriptions/publish-ad")
def track_published_ad(
    body: PublishedAd,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    if not body.project_id:
        raise HTTPException(status_code=400, detail="Project ID is required")
    sub = subscriptions.resolve(user["id"])
    if sub is None:
        raise HTTPException(
            status_code=403,
            detail={"error": "No active subscription found", "message": "Please subscribe to publish ads."},
        )
    require_allowance(subscriptions, user["id"], "ads_per_day")
    if body.daily_budget is not None:
        require_allowance(subscriptions, user["id"], "daily_budget", daily_budget=body.daily_budget)

    rows = store.insert_published_ads(
        [
            {
                "user_id": user["id"],
                "project_id": body.project_id,
                "subscription_id": sub.id,
                "campaign_name": body.campaign_name,
                "ad_set_id": body.ad_set_id,
                "ad_account_id": body.ad_account_id,
                "daily_budget": body.daily_budget,
                "status": "published",
                "published_at": datetime.now(timezone.utc).isoformat(),
                "metadata": body.metadata,
            }
        ]
    )
    subscriptions.record_published_ads(user["id"], 1)
    return {"success": True, "published_ad": rows[0] if rows else None, "subscription": sub.to_dict()}


@router.get("/invoices")
def invoices(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    return {"invoices": store.list_paid_invoices(user["id"])}
