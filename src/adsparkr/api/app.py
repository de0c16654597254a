from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from io import BytesIO
from typing import Any

import httpx
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from adsparkr.adsets import AdSetPipeline, fetch_site
from adsparkr.api.billing_routes import router as billing_router
from adsparkr.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    get_current_user,
    get_gemini,
    get_http,
    get_openai_text,
    get_store,
    get_subscriptions,
    graph_for,
    require_allowance,
)
from adsparkr.api.meta_routes import router as meta_router
from adsparkr.assembly.render import crop_box, fit_to_canvas, pil_to_png_bytes, render_placeholder_creative
from adsparkr.config import settings
from adsparkr.logging_setup import configure_logging
from adsparkr.meta.graph import MetaGraphClient
from adsparkr.meta.publisher import account_from_profile
from adsparkr.meta.targeting import thumbnail_map
from adsparkr.providers.base import ProductBox
from adsparkr.providers.gemini_provider import GeminiProvider, ad_image_prompt
from adsparkr.providers.openai_provider import ANALYSIS_POINTS, OpenAITextProvider
from adsparkr.storage import StoreError, SupabaseStore, json_field, storage_path
from adsparkr.subscriptions import SubscriptionService
from adsparkr.text import clean_content

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(title="AdSparkr API", lifespan=lifespan)
app.include_router(billing_router)
app.include_router(meta_router)


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _adset_list(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if isinstance(value, dict):
        value = value.get("adsets")
    return [a for a in value or [] if isinstance(a, dict)]


def _check_project_id(project_id: str) -> None:
    try:
        uuid.UUID(project_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid project ID format") from exc


def _load_project(store: SupabaseStore, project_id: str, user_id: str) -> dict[str, Any]:
    project = store.get_project(project_id, user_id=user_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _set_session_cookies(resp: RedirectResponse | JSONResponse, session: dict[str, Any]) -> None:
    secure = settings.site_url.startswith("https://")
    resp.set_cookie(ACCESS_COOKIE, session["access_token"], httponly=True, secure=secure, samesite="lax")
    if session.get("refresh_token"):
        resp.set_cookie(REFRESH_COOKIE, session["refresh_token"], httponly=True, secure=secure, samesite="lax")


# Auth


class LoginBody(BaseModel):
    email: str
    password: str


@app.post("/api/login")
def login(body: LoginBody, store: SupabaseStore = Depends(get_store)):
    try:
        session = store.sign_in(body.email, body.password)
    except StoreError as exc:
        raise HTTPException(status_code=401, detail="Invalid login credentials") from exc
    resp = JSONResponse({"user": session["user"], "expires_in": session.get("expires_in")})
    _set_session_cookies(resp, session)
    return resp


@app.post("/api/logout")
def logout():
    resp = JSONResponse({"success": True})
    resp.delete_cookie(ACCESS_COOKIE)
    resp.delete_cookie(REFRESH_COOKIE)
    return resp


@app.get("/api/auth/callback")
def auth_callback(code: str | None = None, next: str = "/dashboard", store: SupabaseStore = Depends(get_store)):
    site = settings.site_url.rstrip("/")
    if not code:
        return RedirectResponse(url=f"{site}/login?error=missing_code", status_code=303)
    try:
        session = store.exchange_code(code)
    except StoreError:
        logger.warning("auth code exchange failed")
        return RedirectResponse(url=f"{site}/login?error=auth_failed", status_code=303)
    if not next.startswith("/"):
        next = "/dashboard"
    resp = RedirectResponse(url=f"{site}{next}", status_code=303)
    _set_session_cookies(resp, session)
    return resp


@app.get("/api/user-profile")
def user_profile(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    profile = store.get_profile(user["id"]) or {}
    return {
        "profile": {
            "is_subscribed": bool(profile.get("is_subscribed")),
            "subscription_type": profile.get("subscription_type"),
            "expiry_subscription": profile.get("expiry_subscription"),
            "meta_connected": bool(profile.get("meta_connected")),
            "meta_accounts": profile.get("meta_accounts") or [],
        }
    }


class SubscriptionFlags(BaseModel):
    isSubscribed: bool | None = None
    subscriptionType: str | None = None
    expirySubscription: str | None = None


@app.post("/api/user-profile/update-subscription")
def update_subscription_flags(
    body: SubscriptionFlags,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    updates: dict[str, Any] = {}
    if body.isSubscribed is not None:
        updates["is_subscribed"] = body.isSubscribed
    if body.subscriptionType is not None:
        updates["subscription_type"] = body.subscriptionType
    if body.expirySubscription is not None:
        updates["expiry_subscription"] = body.expirySubscription
    store.upsert_profile(user["id"], updates)
    return {"success": True, "message": "Subscription updated successfully"}


# Projects


class ProjectCreate(BaseModel):
    url: str | None = None


@app.post("/api/projects")
def create_project(
    body: ProjectCreate,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    if not body.url:
        raise HTTPException(status_code=400, detail="Missing 'url'")
    require_allowance(subscriptions, user["id"], "projects")
    project = store.create_project(user["id"], body.url)
    subscriptions.record_project_created(user["id"])
    logger.info("project %s created for %s", project.get("project_id"), body.url)
    return {"id": project["project_id"]}


@app.get("/api/projects")
def list_projects(user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    return {"projects": store.list_projects(user["id"])}


@app.get("/api/projects/{project_id}")
def get_project(project_id: str, user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    _check_project_id(project_id)
    return _load_project(store, project_id, user["id"])


@app.get("/api/projects/{project_id}/upload")
def list_project_files(
    project_id: str, user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)
):
    project = _load_project(store, project_id, user["id"])
    return {"success": True, "files": project.get("files") or []}


@app.post("/api/projects/{project_id}/upload")
async def upload_project_files(
    project_id: str,
    files: list[UploadFile] = File(...),
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    project = _load_project(store, project_id, user["id"])
    urls: list[str] = list(project.get("files") or [])
    for f in files:
        content = await f.read()
        path = storage_path(project_id, f.filename or "file")
        urls.append(
            store.upload_file(settings.project_files_bucket, path, content, f.content_type or "application/octet-stream")
        )
    store.update_project(project_id, {"files": urls})
    return {"success": True, "files": urls}


class FileRef(BaseModel):
    fileUrl: str


@app.delete("/api/projects/{project_id}/upload")
def delete_project_file(
    project_id: str,
    body: FileRef,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    project = _load_project(store, project_id, user["id"])
    current = project.get("files") or []
    files = [u for u in current if u != body.fileUrl]
    marker = f"/{settings.project_files_bucket}/"
    # Only objects listed on this project may be removed.
    if body.fileUrl in current and marker in body.fileUrl:
        store.remove_file(settings.project_files_bucket, body.fileUrl.split(marker, 1)[1])
    store.update_project(project_id, {"files": files})
    return {"success": True, "files": files}


class ThumbnailBody(BaseModel):
    thumbnail_image_url: str | None = None
    ad_set_id: str | None = None


@app.post("/api/projects/{project_id}/save-thumbnail")
def save_thumbnail(
    project_id: str,
    body: ThumbnailBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    if not body.thumbnail_image_url:
        raise HTTPException(status_code=400, detail="thumbnail_image_url is required")
    project = _load_project(store, project_id, user["id"])
    thumbnails = thumbnail_map(project.get("adset_thumbnail_image"))
    thumbnails[body.ad_set_id or "default"] = body.thumbnail_image_url
    store.update_project(project_id, {"adset_thumbnail_image": thumbnails})
    return {"success": True, "message": "Thumbnail image saved successfully", "thumbnails": thumbnails}


@app.get("/api/projects/{project_id}/adset-thumbnail")
def adset_thumbnail(project_id: str, user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    project = _load_project(store, project_id, user["id"])
    return {"thumbnail": project.get("adset_thumbnail_image") or None}


class CampaignDetails(BaseModel):
    project_id: str | None = None
    startDate: date | None = None
    endDate: date | None = None
    selectedGoal: str | None = None
    selectedCta: str | None = None
    businessSummary: str | None = None


@app.post("/api/save-campaign-details")
def save_campaign_details(
    body: CampaignDetails,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    if not (body.project_id and body.startDate and body.endDate and body.selectedGoal and body.selectedCta):
        raise HTTPException(status_code=400, detail="Missing required fields")
    project = _load_project(store, body.project_id, user["id"])
    proposal = {
        **json_field(project.get("campaign_proposal")),
        "start_date": body.startDate.isoformat(),
        "end_date": body.endDate.isoformat(),
        "ad_goal": body.selectedGoal,
        "cta_button_text": body.selectedCta,
        "business_summary": body.businessSummary or "",
        "updated_at": _now_iso(),
    }
    store.update_project(body.project_id, {"campaign_proposal": proposal, "updated_at": _now_iso()})
    return {"success": True, "message": "Campaign details saved successfully"}


# AI content


class AnalyzeBody(BaseModel):
    projectId: str | None = None
    project_id: str | None = None
    screenshot_url: str | None = None


@app.post("/api/analyzing-points")
async def analyzing_points(
    body: AnalyzeBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    text: OpenAITextProvider = Depends(get_openai_text),
    http: httpx.AsyncClient = Depends(get_http),
):
    project_id = body.projectId or body.project_id
    if not project_id:
        raise HTTPException(status_code=400, detail="projectId is required")
    project = _load_project(store, project_id, user["id"])
    url_analysis = json_field(project.get("url_analysis"))
    website_url = url_analysis.get("website_url")

    existing = json_field(project.get("analysing_points"))
    if existing:
        return {
            "success": True,
            "projectId": project_id,
            "website_url": website_url,
            "analysing_points": existing,
            "business_name": existing.get("businessName") or "Business Name",
            "timestamp": _now_iso(),
            "cached": True,
        }
    if not website_url:
        raise HTTPException(status_code=400, detail="website_url not found in url_analysis")

    try:
        site = await fetch_site(website_url, http)
    except httpx.HTTPError as exc:
        logger.error("scrape failed for %s: %s", website_url, exc)
        raise HTTPException(status_code=502, detail=f"Website scraping failed: {exc}") from exc
    try:
        analysis = await text.analyze_website(site, website_url)
    except ValueError as exc:
        logger.error("website analysis failed for project %s: %s", project_id, exc)
        raise HTTPException(status_code=500, detail=f"Failed to extract analyzing points: {exc}") from exc

    screenshot = body.screenshot_url or url_analysis.get("screenshot_url") or ""
    points: dict[str, Any] = {
        "parsingUrl": {"screenshot": screenshot, "description": f"Parsed and analyzed {website_url}"},
    }
    for key in ANALYSIS_POINTS:
        points[key] = {"description": clean_content(analysis[key]["description"])}
    points["businessName"] = analysis["businessName"]
    url_analysis["businessAnalysis"] = analysis["businessAnalysis"]
    if screenshot:
        url_analysis.setdefault("screenshot_url", screenshot)

    store.update_project(
        project_id,
        {"analysing_points": points, "url_analysis": url_analysis, "updated_at": _now_iso()},
    )
    logger.info("saved analyzing points for project %s", project_id)
    return {
        "success": True,
        "projectId": project_id,
        "website_url": website_url,
        "analysing_points": points,
        "business_name": points["businessName"],
        "timestamp": _now_iso(),
    }


class ProjectRef(BaseModel):
    project_id: str | None = None
    screenshot_url: str | None = None


@app.post("/api/business-summary")
async def business_summary(
    body: ProjectRef,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    text: OpenAITextProvider = Depends(get_openai_text),
):
    if not body.project_id:
        raise HTTPException(status_code=400, detail="project_id is required")
    project = _load_project(store, body.project_id, user["id"])
    analysis = json_field(project.get("url_analysis")).get("businessAnalysis")
    if not isinstance(analysis, dict) or not analysis:
        raise HTTPException(status_code=400, detail="No business analysis found for this project")

    name = await text.generate_project_name(analysis)
    if not name:
        raise HTTPException(status_code=500, detail="Failed to generate project name")
    proposal = {
        **json_field(project.get("campaign_proposal")),
        "campaignName": name,
        "generatedAt": _now_iso(),
        "source": "openai",
    }
    store.update_project(body.project_id, {"campaign_proposal": proposal})
    return {"message": "Project name generated", "projectName": name, "savedTo": "campaign_proposal"}


@app.get("/api/projects/{project_id}/generate-adsets")
def get_adsets(project_id: str, user: dict = Depends(get_current_user), store: SupabaseStore = Depends(get_store)):
    adsets = _adset_list(_load_project(store, project_id, user["id"]).get("ad_set_proposals"))
    if not adsets:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "No ad sets found for this project", "adsets": []},
        )
    return {
        "success": True,
        "adsets": adsets,
        "message": "Returning existing ad sets with audience tags",
        "timestamp": _now_iso(),
    }


@app.post("/api/projects/{project_id}/generate-adsets")
async def generate_adsets(
    project_id: str,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    text: OpenAITextProvider = Depends(get_openai_text),
    http: httpx.AsyncClient = Depends(get_http),
):
    project = _load_project(store, project_id, user["id"])
    existing = _adset_list(project.get("ad_set_proposals"))
    if existing:
        return {"success": True, "adsets": existing, "message": "Returning existing ad sets", "timestamp": _now_iso()}

    website_url = json_field(project.get("url_analysis")).get("website_url")
    if not website_url:
        raise HTTPException(status_code=400, detail="No website URL found. Please run the analyze route first.")

    # Interest search prefers the user's own Meta token.
    account = account_from_profile(store.get_profile(user["id"]))
    graph: MetaGraphClient | None = None
    if account and account.get("access_token"):
        graph = graph_for(account, http)
    elif settings.meta_access_token:
        graph = MetaGraphClient(access_token=settings.meta_access_token, http=http)

    pipeline = AdSetPipeline(text, http, graph=graph)
    try:
        adsets = await pipeline.run(website_url)
    except httpx.HTTPError as exc:
        logger.error("scrape failed for %s: %s", website_url, exc)
        raise HTTPException(status_code=502, detail=f"Website scraping failed: {exc}") from exc
    except ValueError as exc:
        logger.error("ad set generation failed for project %s: %s", project_id, exc)
        raise HTTPException(status_code=500, detail=f"Failed to generate ad sets with OpenAI: {exc}") from exc

    store.update_project(project_id, {"ad_set_proposals": adsets})
    logger.info("saved %d ad sets for project %s", len(adsets), project_id)
    return {
        "success": True,
        "websiteUrl": website_url,
        "adsets": adsets,
        "message": f"Generated and saved {len(adsets)} ad sets",
        "timestamp": _now_iso(),
    }


def _screenshot_for(project: dict[str, Any]) -> str | None:
    analysis = json_field(project.get("url_analysis"))
    points = json_field(project.get("analysing_points"))
    return analysis.get("screenshot_url") or (points.get("parsingUrl") or {}).get("screenshot")


@app.post("/api/product-extraction")
async def product_extraction(
    body: ProjectRef,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    text: OpenAITextProvider = Depends(get_openai_text),
):
    if not body.project_id:
        raise HTTPException(status_code=400, detail="project_id is required")
    project = _load_project(store, body.project_id, user["id"])
    screenshot_url = body.screenshot_url or _screenshot_for(project)
    if not screenshot_url:
        raise HTTPException(status_code=400, detail="No screenshot found. Please run analyzing-points first.")

    analysis = await text.locate_products(screenshot_url)
    extraction = {"screenshot_url": screenshot_url, "productAnalysis": analysis, "extracted_at": _now_iso()}
    url_analysis = {**json_field(project.get("url_analysis")), "product_extraction": extraction}
    store.update_project(body.project_id, {"url_analysis": url_analysis})
    logger.info("found %d products for project %s", analysis["productCount"], body.project_id)
    return {
        "success": True,
        "project_id": body.project_id,
        "screenshot_url": screenshot_url,
        "productAnalysis": analysis,
        "timestamp": _now_iso(),
    }


async def _download_image(http: httpx.AsyncClient, url: str, what: str) -> Image.Image:
    try:
        resp = await http.get(url, follow_redirects=True)
        resp.raise_for_status()
        return Image.open(BytesIO(resp.content))
    except (httpx.HTTPError, UnidentifiedImageError) as exc:
        raise HTTPException(status_code=400, detail=f"Failed to download {what}: {exc}") from exc


class ProductCrop(BaseModel):
    project_id: str | None = None
    product_index: int = 0


@app.post("/api/extract-product-image")
async def extract_product_image(
    body: ProductCrop,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not body.project_id:
        raise HTTPException(status_code=400, detail="project_id is required")
    project = _load_project(store, body.project_id, user["id"])
    url_analysis = json_field(project.get("url_analysis"))
    extraction = url_analysis.get("product_extraction") or {}
    if not extraction:
        raise HTTPException(status_code=400, detail="No product extraction data found")
    products = (extraction.get("productAnalysis") or {}).get("products") or []
    if not products:
        raise HTTPException(status_code=400, detail="No products found in extraction data")
    if not 0 <= body.product_index < len(products):
        raise HTTPException(status_code=400, detail="Invalid product index")
    screenshot_url = extraction.get("screenshot_url")
    if not screenshot_url:
        raise HTTPException(status_code=400, detail="No screenshot URL found")

    product = products[body.product_index]
    screenshot = await _download_image(http, screenshot_url, "screenshot")
    try:
        cropped = crop_box(screenshot.convert("RGB"), ProductBox.from_dict(product.get("coordinates") or {}))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    path = f"product-{body.project_id}-{body.product_index}-{stamp}.png"
    url = store.upload_file(settings.ad_images_bucket, path, pil_to_png_bytes(cropped), "image/png")

    url_analysis.update(
        cropped_product_image=url,
        cropped_product_description=product.get("description"),
        cropped_product_category=product.get("category"),
    )
    store.update_project(body.project_id, {"url_analysis": url_analysis})
    return {
        "success": True,
        "project_id": body.project_id,
        "product_image_url": url,
        "product_description": product.get("description"),
        "product_category": product.get("category"),
        "coordinates": product.get("coordinates"),
        "timestamp": _now_iso(),
    }


class AdSetImageBody(BaseModel):
    adSetId: str | None = None
    ad_set_id: str | None = None


@app.post("/api/projects/{project_id}/generate-image-with-gemini")
async def generate_adset_image(
    project_id: str,
    body: AdSetImageBody,
    user: dict = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    gemini: GeminiProvider | None = Depends(get_gemini),
):
    ad_set_id = body.adSetId or body.ad_set_id
    if not ad_set_id:
        raise HTTPException(status_code=400, detail="Missing projectId or adSetId")
    project = _load_project(store, project_id, user["id"])
    adsets = _adset_list(project.get("ad_set_proposals"))
    adset = next((a for a in adsets if a.get("ad_set_id") == ad_set_id), None)
    if adset is None:
        raise HTTPException(status_code=404, detail="Ad set not found")

    if adset.get("adsparker_gen_creative_asset"):
        return {
            "success": True,
            "project_id": project_id,
            "ad_set_id": ad_set_id,
            "imageUrl": adset["adsparker_gen_creative_asset"],
            "message": "Image already exists, no regeneration needed",
        }

    website_url = json_field(project.get("url_analysis")).get("website_url")
    if not website_url:
        raise HTTPException(status_code=400, detail="Website URL not found in project data")

    size = settings.creative_sizes["1:1"]
    generated = await gemini.first_image(ad_image_prompt(adset, website_url), "1:1") if gemini else None
    if generated is not None:
        image = fit_to_canvas(generated.image, size)
        method = f"{generated.provider}:{generated.model}"
    else:
        image = render_placeholder_creative(
            size,
            headline=adset.get("ad_copywriting_title") or "Ad Creative",
            body=adset.get("ad_copywriting_body") or "",
            audience=adset.get("audience_description") or "",
        )
        method = "placeholder"

    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    path = f"{project_id}/generated-ads-gemini/adset-{ad_set_id}-0-{stamp}.png"
    url = store.upload_file(settings.project_files_bucket, path, pil_to_png_bytes(image), "image/png")

    updated = [{**a, "adsparker_gen_creative_asset": url} if a.get("ad_set_id") == ad_set_id else a for a in adsets]
    thumbnails = thumbnail_map(project.get("adset_thumbnail_image"))
    thumbnails[ad_set_id] = url
    store.update_project(project_id, {"ad_set_proposals": updated, "adset_thumbnail_image": thumbnails})
    logger.info("ad set %s image stored (%s)", ad_set_id, method)
    return {
        "success": True,
        "project_id": project_id,
        "ad_set_id": ad_set_id,
        "imageUrl": url,
        "adTitle": adset.get("ad_copywriting_title"),
        "adDescription": adset.get("ad_copywriting_body"),
        "targetAudience": adset.get("audience_description"),
        "generationMethod": method,
    }
