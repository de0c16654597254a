from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, AsyncIterator

import httpx
from fastapi import Depends, HTTPException, Request

from adsparkr.billing import BillingService, StripeGateway
from adsparkr.config import settings
from adsparkr.meta.graph import MetaGraphClient
from adsparkr.meta.publisher import account_from_profile
from adsparkr.providers.gemini_provider import GeminiProvider
from adsparkr.providers.openai_provider import OpenAITextProvider
from adsparkr.storage import StoreError, SupabaseStore
from adsparkr.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "sb-access-token"
REFRESH_COOKIE = "sb-refresh-token"


@lru_cache(maxsize=1)
def _store() -> SupabaseStore:
    return SupabaseStore()


def get_store() -> SupabaseStore:
    try:
        return _store()
    except StoreError as exc:
        logger.error("supabase unavailable: %s", exc)
        raise HTTPException(status_code=500, detail="Database not configured") from exc


def _token_from_request(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


def get_current_user(request: Request, store: SupabaseStore = Depends(get_store)) -> dict[str, Any]:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = store.get_user(token)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_subscriptions(store: SupabaseStore = Depends(get_store)) -> SubscriptionService:
    return SubscriptionService(store)


def get_openai_text() -> OpenAITextProvider:
    if not settings.openai_api_key:
        raise HTTPException(status_code=400, detail="OPENAI_API_KEY is not set")
    return OpenAITextProvider(api_key=settings.openai_api_key)


def get_gemini() -> GeminiProvider | None:
    # Image generation degrades to a rendered placeholder without a key.
    if not settings.gemini_api_key:
        return None
    return GeminiProvider(api_key=settings.gemini_api_key)


def get_gateway() -> StripeGateway:
    if not settings.stripe_secret_key:
        logger.error("STRIPE_SECRET_KEY is not set")
        raise HTTPException(status_code=500, detail="Payment service not configured")
    return StripeGateway(settings.stripe_secret_key, settings.stripe_api_version)


def get_billing(
    store: SupabaseStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> BillingService:
    return BillingService(store, gateway)


async def get_http() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=30.0) as client:
        yield client


def require_meta_account(profile: dict[str, Any] | None) -> dict[str, Any]:
    if profile is None:
        raise HTTPException(status_code=404, detail="User profile not found")
    account = account_from_profile(profile)
    if not profile.get("meta_connected") or not account:
        raise HTTPException(status_code=400, detail="Meta account not connected. Please connect your Meta account first.")
    if not account.get("access_token"):
        raise HTTPException(status_code=400, detail="Meta access token not found")
    return account


def graph_for(account: dict[str, Any], http: httpx.AsyncClient) -> MetaGraphClient:
    return MetaGraphClient(access_token=account["access_token"], http=http)


def require_allowance(
    service: SubscriptionService,
    user_id: str,
    limit_type: str,
    daily_budget: float | None = None,
) -> dict[str, Any]:
    """Raise 403 with the plan's reason/message when the gated action is not allowed."""
    result = service.check_usage(user_id, limit_type, daily_budget=daily_budget)
    if not result["can_proceed"]:
        logger.info("user %s denied %s: %s", user_id, limit_type, result["reason"])
        raise HTTPException(
            status_code=403,
            detail={"error": result["message"], "reason": result["reason"], "message": result["message"]},
        )
    return result
