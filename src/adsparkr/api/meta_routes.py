from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from adsparkr import currency
from adsparkr.api.deps import (
    get_current_user,
    get_http,
    get_store,
    get_subscriptions,
    graph_for,
    require_allowance,
    require_meta_account,
)
from adsparkr.config import settings
from adsparkr.meta.graph import MetaGraphClient, MetaGraphError, OAuthStateError, oauth_url, verify_state
from adsparkr.meta.publisher import (
    AdPublisher,
    PublishError,
    PublishRequest,
    account_from_profile,
    published_ad_rows,
)
from adsparkr.meta.targeting import adset_payload
from adsparkr.storage import SupabaseStore
from adsparkr.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _meta_http_error(what: str, exc: MetaGraphError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"error": what, "details": exc.message, "metaError": exc.to_dict()},
    )


def _owned_project(store: SupabaseStore, project_id: str, user_id: str) -> dict[str, Any]:
    project = store.get_project(project_id, user_id=user_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _peak_budget(ad_sets: list[dict[str, Any]], default: float) -> float:
    """Largest daily budget any ad set will run with; ad sets without one use the default."""
    peak = 0.0
    for adset in ad_sets:
        raw = adset.get("daily_budget") or default
        try:
            peak = max(peak, float(raw))
        except (TypeError, ValueError) as exc:
            detail = f"Invalid daily_budget: {raw!r}"
            raise HTTPException(status_code=400, detail=detail) from exc
    return peak


def _account_graph(store: SupabaseStore, user_id: str, http: httpx.AsyncClient) -> tuple[dict[str, Any], MetaGraphClient]:
    account = require_meta_account(store.get_profile(user_id))
    return account, graph_for(account, http)


# OAuth


@router.get("/meta-auth")
def meta_auth(
    projectId: str | None = None,
    action: str | None = None,
    returnUrl: str | None = None,
    user: dict = Depends(get_current_user),
):
    if not projectId:
        raise HTTPException(status_code=400, detail="Project ID is required")
    if action != "connect":
        raise HTTPException(status_code=400, detail="Invalid action")
    if not settings.meta_app_id:
        raise HTTPException(status_code=500, detail="META_APP_ID is not set")
    if not settings.meta_app_secret:
        raise HTTPException(status_code=500, detail="META_APP_SECRET is not set")
    state = {"projectId": projectId, "userId": user["id"], "returnUrl": returnUrl}
    return {"authUrl": oauth_url(state), "message": "Redirect to Meta OAuth"}


def _return_url(state: dict[str, Any], status: str) -> str:
    site = settings.site_url.rstrip("/")
    target = state.get("returnUrl") or f"/dashboard/projects/{state.get('projectId') or ''}/plan"
    if target.startswith("/"):
        target = f"{site}{target}"
    sep = "&" if "?" in target else "?"
    return f"{target}{sep}meta={quote(status)}"


@router.get("/meta-auth/callback")
async def meta_auth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
    http: httpx.AsyncClient = Depends(get_http),
):
    if error:
        raise HTTPException(status_code=400, detail="Facebook OAuth failed")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        state_data = verify_state(state)
    except OAuthStateError as exc:
        logger.warning("rejected meta oauth state: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid state") from exc
    user_id = state_data.get("userId")
    if not user_id:
        raise HTTPException(status_code=400, detail="Invalid state")

    graph = MetaGraphClient(http=http)
    try:
        graph.access_token = await graph.exchange_code(code)
        profile = await graph.me()
        ad_accounts = await graph.ad_accounts()
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to get access token", exc) from exc

    user_profile = store.get_profile(user_id) or {}
    current = account_from_profile(user_profile)
    reconnect = bool(current) and (current.get("profile") or {}).get("id") == profile.get("id")
    if not reconnect:
        check = subscriptions.check_usage(user_id, "facebook_accounts")
        if not check["can_proceed"]:
            logger.info("user %s denied meta connect: %s", user_id, check["reason"])
            return RedirectResponse(url=_return_url(state_data, check["reason"]), status_code=303)

    now = _now_iso()
    meta_account = {
        "access_token": graph.access_token,
        "profile": profile,
        "ad_accounts": ad_accounts,
        "connected_at": (current or {}).get("connected_at") if reconnect else now,
        "updated_at": now,
    }
    store.upsert_profile(user_id, {"meta_accounts": meta_account, "meta_connected": True})
    logger.info("meta connected for user %s (%d ad accounts)", user_id, len(ad_accounts))
    return RedirectResponse(url=_return_url(state_data, "connected"), status_code=303)


@router.post("/meta-auth/remove")
def meta_auth_remove(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    store.upsert_profile(user["id"], {"meta_accounts": None, "meta_connected": False})
    return {"success": True, "message": "Meta account removed successfully"}


# Account data


@router.get("/meta/status")
def meta_status(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    profile = store.get_profile(user["id"]) or {}
    stored = profile.get("meta_accounts")
    accounts = stored if isinstance(stored, list) else [stored] if stored else []
    return {
        "connected": bool(profile.get("meta_connected")),
        "accountsCount": len(accounts),
        "accounts": [
            {
                "name": (acc.get("profile") or {}).get("name"),
                "email": (acc.get("profile") or {}).get("email"),
                "adAccountsCount": len(acc.get("ad_accounts") or []),
                "connectedAt": acc.get("connected_at"),
            }
            for acc in accounts
        ],
    }


@router.post("/meta/refresh-accounts")
async def refresh_accounts(
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    account, graph = _account_graph(store, user["id"], http)
    try:
        ad_accounts = await graph.ad_accounts()
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to fetch ad accounts from Meta", exc) from exc
    updated = {**account, "ad_accounts": ad_accounts, "updated_at": _now_iso()}
    store.upsert_profile(user["id"], {"meta_accounts": updated})
    return {
        "success": True,
        "adAccounts": ad_accounts,
        "message": f"Successfully refreshed {len(ad_accounts)} ad account(s)",
    }


@router.get("/meta/accounts")
def meta_accounts(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    account = require_meta_account(store.get_profile(user["id"]))
    return {
        "success": True,
        "profile": account.get("profile"),
        "adAccounts": account.get("ad_accounts") or [],
        "connectedAt": account.get("connected_at"),
    }


@router.get("/meta/pages")
async def meta_pages(
    ad_account_id: str | None = None,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    _, graph = _account_graph(store, user["id"], http)
    try:
        pages = await graph.pages()
        if not pages and ad_account_id:
            pages = await graph.promote_pages(ad_account_id)
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to fetch pages", exc) from exc
    return {"success": True, "pages": pages}


@router.get("/meta/pixels")
async def meta_pixels(
    ad_account_id: str,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    _, graph = _account_graph(store, user["id"], http)
    try:
        pixels = await graph.pixels(ad_account_id)
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to fetch pixels", exc) from exc
    return {"success": True, "pixels": pixels}


@router.get("/meta/account-currency")
async def meta_account_currency(
    ad_account_id: str,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    _, graph = _account_graph(store, user["id"], http)
    try:
        code = await graph.account_currency(ad_account_id)
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to fetch account currency", exc) from exc
    return {
        "success": True,
        "currency": code,
        "name": currency.currency_name(code),
        "symbol": currency.currency_symbol(code),
        "minimumBudget": currency.minimum_budget(code),
        "minimumBudgetDisplay": currency.format_currency(currency.minimum_budget(code), code),
        "budgetRange": currency.budget_range(code),
        "usdRate": await currency.fetch_usd_rate(code, http),
    }


@router.get("/meta/campaigns")
async def meta_campaigns(
    ad_account_id: str | None = None,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not ad_account_id:
        raise HTTPException(status_code=400, detail="ad_account_id is required")
    _, graph = _account_graph(store, user["id"], http)
    try:
        campaigns = await graph.campaigns(ad_account_id)
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to fetch campaigns from Meta", exc) from exc

    out = []
    for c in campaigns:
        # Per-campaign ads and insights are optional extras.
        try:
            ads = await graph.campaign_ads(c["id"])
        except MetaGraphError:
            ads = []
        try:
            insights = await graph.insights(c["id"])
        except MetaGraphError:
            insights = None
        out.append({**c, "ads": ads, "insights": insights})
    return {"success": True, "campaigns": out, "total": len(out)}


@router.get("/meta-interests")
async def meta_interests(
    q: str | None = None,
    limit: int = 10,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not q:
        raise HTTPException(status_code=400, detail="Query parameter 'q' is required")
    account = account_from_profile(store.get_profile(user["id"])) or {}
    token = account.get("access_token") or settings.meta_access_token
    if not token:
        raise HTTPException(status_code=400, detail="Meta account not connected")
    try:
        interests = await MetaGraphClient(access_token=token, http=http).search_interests(q, limit=limit)
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to search interests", exc) from exc
    return {"success": True, "interests": interests}


# Publishing


class CampaignBody(BaseModel):
    projectId: str | None = None
    campaignName: str | None = None
    objective: str = "OUTCOME_TRAFFIC"
    adAccountId: str | None = None
    specialAdCategories: list[str] = []


@router.post("/meta/publish-campaign")
async def publish_campaign(
    body: CampaignBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not (body.projectId and body.campaignName and body.adAccountId):
        raise HTTPException(status_code=400, detail="Missing required fields: projectId, campaignName, adAccountId")
    _, graph = _account_graph(store, user["id"], http)
    require_allowance(subscriptions, user["id"], "campaigns")
    _owned_project(store, body.projectId, user["id"])

    try:
        campaign_id = await graph.create_campaign(
            body.adAccountId,
            {
                "name": body.campaignName,
                "objective": body.objective,
                "status": "PAUSED",
                "special_ad_categories": body.specialAdCategories,
            },
        )
    except MetaGraphError as exc:
        raise _meta_http_error("Failed to create Meta campaign", exc) from exc

    store.update_project(
        body.projectId,
        {"meta_campaign_id": campaign_id, "meta_campaign_name": body.campaignName, "updated_at": _now_iso()},
    )
    subscriptions.record_published_ads(user["id"], 0, campaigns=1)
    return {
        "success": True,
        "campaign": {"id": campaign_id, "name": body.campaignName, "objective": body.objective, "status": "PAUSED"},
        "message": "Campaign created successfully",
    }


class AdSetsBody(BaseModel):
    projectId: str | None = None
    campaignId: str | None = None
    adSets: list[dict[str, Any]] = []
    adAccountId: str | None = None
    dailyBudget: float = 10


@router.post("/meta/publish-adsets")
async def publish_adsets(
    body: AdSetsBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not (body.projectId and body.campaignId and body.adSets and body.adAccountId):
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: projectId, campaignId, adSets (array), adAccountId",
        )
    _, graph = _account_graph(store, user["id"], http)
    require_allowance(subscriptions, user["id"], "ads_per_day")
    peak = _peak_budget(body.adSets, body.dailyBudget)
    require_allowance(subscriptions, user["id"], "daily_budget", daily_budget=peak)
    _owned_project(store, body.projectId, user["id"])

    created: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    for i, adset in enumerate(body.adSets):
        budget = float(adset.get("daily_budget") or body.dailyBudget)
        payload = adset_payload(
            adset,
            index=i,
            campaign_id=body.campaignId,
            daily_budget_minor=currency.budget_in_minor_units(budget),
        )
        try:
            adset_id = await graph.create_adset(body.adAccountId, payload)
        except MetaGraphError as exc:
            errors.append({"adSetTitle": adset.get("ad_set_title"), "error": exc.message, "details": exc.to_dict()})
            continue
        created.append({"id": adset_id, "name": adset.get("ad_set_title"), "daily_budget": budget, "status": "PAUSED"})

    if created:
        store.insert_published_ads(
            published_ad_rows(user["id"], body.projectId, body.campaignId, body.adAccountId, created)
        )
        subscriptions.record_published_ads(user["id"], len(created))

    resp: dict[str, Any] = {
        "success": bool(created),
        "createdAdSets": created,
        "totalRequested": len(body.adSets),
        "totalCreated": len(created),
        "totalFailed": len(errors),
    }
    if errors:
        resp["errors"] = errors
        resp["message"] = f"Created {len(created)} out of {len(body.adSets)} ad sets. {len(errors)} failed."
    else:
        resp["message"] = f"Successfully created {len(created)} ad sets"
    return JSONResponse(status_code=200 if created else 400, content=resp)


class AdsBody(BaseModel):
    projectId: str | None = None
    campaignName: str | None = None
    adSets: list[dict[str, Any]] = []
    adAccountId: str | None = None
    pageId: str | None = None
    pixelId: str | None = None
    dailyBudget: float = 10
    objective: str = "OUTCOME_TRAFFIC"
    specialAdCategories: list[str] = []
    websiteUrl: str | None = None


@router.post("/meta/publish-ads")
async def publish_ads(
    body: AdsBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not (body.projectId and body.campaignName and body.adSets and body.adAccountId):
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: projectId, campaignName, adSets (array), adAccountId",
        )
    account, graph = _account_graph(store, user["id"], http)
    require_allowance(subscriptions, user["id"], "campaigns")
    require_allowance(subscriptions, user["id"], "ads_per_day")
    peak = _peak_budget(body.adSets, body.dailyBudget)
    require_allowance(subscriptions, user["id"], "daily_budget", daily_budget=peak)

    project = _owned_project(store, body.projectId, user["id"])
    req = PublishRequest(
        project_id=body.projectId,
        campaign_name=body.campaignName,
        ad_sets=body.adSets,
        ad_account_id=body.adAccountId,
        page_id=body.pageId,
        pixel_id=body.pixelId,
        daily_budget=body.dailyBudget,
        objective=body.objective,
        special_ad_categories=body.specialAdCategories,
        website_url=body.websiteUrl,
    )
    try:
        result = await AdPublisher(graph, http).publish(req, account, project)
    except PublishError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc

    updates: dict[str, Any] = {
        "meta_campaign_id": result.campaign_id,
        "meta_campaign_name": body.campaignName,
        "updated_at": _now_iso(),
    }
    if result.created:
        updates["status"] = "RUNNING"
        store.insert_published_ads(
            published_ad_rows(
                user["id"],
                body.projectId,
                body.campaignName,
                body.adAccountId,
                result.created,
                campaign_id=result.campaign_id,
            )
        )
        subscriptions.record_published_ads(user["id"], len(result.created), campaigns=1)
    store.update_project(body.projectId, updates)
    logger.info(
        "published campaign %s: %d/%d ad sets, %d ads",
        result.campaign_id,
        len(result.created),
        result.requested,
        result.ads_created,
    )
    return JSONResponse(status_code=200 if result.created else 400, content=result.to_response())
