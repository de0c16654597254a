from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from adsparkr import currency
from adsparkr.meta.graph import MetaGraphClient, MetaGraphError, act_id
from adsparkr.meta.targeting import (
    adset_payload,
    creative_payload,
    normalize_end_time,
    thumbnail_for,
    thumbnail_map,
)
from adsparkr.storage import json_field

logger = logging.getLogger(__name__)

PAYMENT_METHOD_WARNING = (
    "Ad creation skipped: Payment method required. Campaign, Ad Set, and Creative are ready. "
    "Add a payment method in Facebook Ads Manager to create the ad."
)


class PublishError(Exception):
    def __init__(self, error: str, message: str | None = None, details: Any = None, status_code: int = 400) -> None:
        super().__init__(error)
        self.error = error
        self.message = message
        self.details = details
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.error}
        if self.message:
            out["message"] = self.message
        if self.details is not None:
            out["details"] = self.details
        return out


@dataclass
class PublishRequest:
    project_id: str
    campaign_name: str
    ad_sets: list[dict[str, Any]]
    ad_account_id: str
    page_id: str | None = None
    pixel_id: str | None = None
    daily_budget: float = 10.0
    objective: str = "OUTCOME_TRAFFIC"
    special_ad_categories: list[str] = field(default_factory=list)
    website_url: str | None = None


@dataclass
class PublishResult:
    campaign_id: str
    campaign_name: str
    requested: int
    created: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    currency: str = "USD"

    @property
    def ads_created(self) -> int:
        return sum(1 for a in self.created if a.get("ad_id"))

    @property
    def warnings(self) -> list[dict[str, Any]]:
        return [{"adSetName": a["name"], "message": a["warning"]} for a in self.created if a.get("requiresPaymentMethod")]

    def to_response(self) -> dict[str, Any]:
        resp: dict[str, Any] = {
            "success": bool(self.created),
            "campaign": {"id": self.campaign_id, "name": self.campaign_name, "status": "ACTIVE"},
            "adSets": self.created,
            "currency": self.currency,
            "totalRequested": self.requested,
            "totalCreated": len(self.created),
            "totalFailed": len(self.errors),
            "adsCreated": self.ads_created,
            "adsNotCreated": len(self.created) - self.ads_created,
        }
        if self.errors:
            resp["errors"] = self.errors
            resp["message"] = (
                f"Campaign created with {len(self.created)} out of {self.requested} ad sets. "
                f"{len(self.errors)} failed."
            )
        elif self.warnings:
            resp["warnings"] = self.warnings
            resp["message"] = (
                "Campaign, Ad Sets, and Creatives created successfully! "
                "Note: Ads require a payment method before they can run."
            )
        else:
            resp["message"] = (
                f"Successfully created campaign with {len(self.created)} ad set(s). "
                f"{self.ads_created} ad(s) created. All ad sets are ACTIVE."
            )
        return resp


def account_from_profile(profile: dict[str, Any] | None) -> dict[str, Any] | None:
    """The stored Meta connection; rows may hold one object or a list of them."""
    accounts = (profile or {}).get("meta_accounts")
    if isinstance(accounts, list):
        return accounts[0] if accounts else None
    return accounts or None


def currency_from_account(meta_account: dict[str, Any] | None, ad_account_id: str) -> str | None:
    target = act_id(ad_account_id)
    for acc in (meta_account or {}).get("ad_accounts") or []:
        if act_id(str(acc.get("id") or "")) == target or str(acc.get("account_id")) == target.replace("act_", ""):
            return acc.get("currency")
    return None


def _error_entry(title: str | None, message: str, err: MetaGraphError | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"adSetTitle": title, "error": message}
    if err is not None:
        entry.update(
            details=err.to_dict(),
            errorType=err.error_user_title or "Unknown",
            errorSubcode=err.error_subcode,
            errorCode=err.code,
            errorMessage=err.error_user_msg or err.message,
            fbtraceId=err.fbtrace_id,
        )
    return entry


class AdPublisher:
    """
    Publishes a full campaign bundle: campaign, then per ad set the ad set,
    its image, creative and ad.

    Failures inside one ad set are collected and the loop moves on; only a
    failed campaign or a missing Page aborts the run.
    """

    def __init__(self, graph: MetaGraphClient, http: httpx.AsyncClient | None = None) -> None:
        self.graph = graph
        self.http = http or graph.http
        self._hash_cache: dict[str, str] = {}

    async def resolve_page_id(self, ad_account_id: str) -> str | None:
        lookups = (
            self.graph.pages,
            lambda: self.graph.promote_pages(ad_account_id),
            self.graph.managed_pages,
        )
        for lookup in lookups:
            try:
                pages = await lookup()
            except MetaGraphError:
                continue
            if pages:
                return pages[0]["id"]
        return None

    async def upload_image(self, ad_account_id: str, image_url: str) -> str:
        if image_url in self._hash_cache:
            return self._hash_cache[image_url]
        try:
            image_hash = await self.graph.upload_image_url(ad_account_id, image_url)
        except MetaGraphError as exc:
            logger.info("URL image upload failed (%s), retrying as binary", exc.message)
            resp = await self.http.get(image_url, headers={"Accept": "image/*"})
            if resp.status_code != 200:
                raise MetaGraphError(f"Failed to download image: {resp.status_code}") from exc
            if len(resp.content) < 100:
                raise MetaGraphError("Downloaded content is not a valid image") from exc
            content_type = resp.headers.get("content-type") or "image/png"
            image_hash = await self.graph.upload_image_bytes(ad_account_id, resp.content, content_type)
        self._hash_cache[image_url] = image_hash
        return image_hash

    async def publish(
        self,
        req: PublishRequest,
        meta_account: dict[str, Any] | None,
        project: dict[str, Any] | None,
    ) -> PublishResult:
        act = act_id(req.ad_account_id)
        proposal = json_field((project or {}).get("campaign_proposal"))
        thumbnails = thumbnail_map((project or {}).get("adset_thumbnail_image"))
        try:
            end_time = normalize_end_time(proposal.get("end_date"))
        except ValueError:
            logger.warning("ignoring unparseable end_date %r on project %s", proposal.get("end_date"), req.project_id)
            end_time = None
        goal = proposal.get("ad_goal")

        account_currency = currency_from_account(meta_account, act)
        if not account_currency:
            try:
                account_currency = await self.graph.account_currency(act)
            except MetaGraphError:
                account_currency = "USD"
        rate = await currency.fetch_usd_rate(account_currency, self.http)

        page_id = req.page_id or await self.resolve_page_id(act)
        if not page_id:
            raise PublishError(
                "Facebook Page is required",
                message=(
                    "To create link ads, you need to connect a Facebook Page to your account. "
                    "Please create or connect a Facebook Page and try again."
                ),
            )

        try:
            campaign_id = await self.graph.create_campaign(
                act,
                {
                    "name": req.campaign_name,
                    "objective": req.objective,
                    "status": "ACTIVE",
                    "special_ad_categories": req.special_ad_categories,
                    "is_adset_budget_sharing_enabled": False,
                },
            )
        except MetaGraphError as exc:
            raise PublishError("Failed to create Meta campaign", details=exc.message) from exc
        logger.info("created campaign %s (%s) on %s", campaign_id, req.campaign_name, act)

        result = PublishResult(
            campaign_id=campaign_id,
            campaign_name=req.campaign_name,
            requested=len(req.ad_sets),
            currency=account_currency,
        )
        link = req.website_url or json_field((project or {}).get("url_analysis")).get("website_url")

        for i, adset in enumerate(req.ad_sets):
            title = adset.get("ad_set_title")
            budget_usd = float(adset.get("daily_budget") or req.daily_budget)
            budget = currency.account_budget(budget_usd, rate, account_currency)
            try:
                adset_id = await self.graph.create_adset(
                    act,
                    adset_payload(
                        adset,
                        index=i,
                        campaign_id=campaign_id,
                        daily_budget_minor=currency.budget_in_minor_units(budget),
                        status="ACTIVE",
                        goal=goal,
                        objective=req.objective,
                        page_id=page_id,
                        pixel_id=req.pixel_id,
                        end_time=end_time,
                        advantage_audience=True,
                    ),
                )
            except MetaGraphError as exc:
                result.errors.append(_error_entry(title, exc.message, exc))
                continue

            image_url = thumbnail_for(thumbnails, adset.get("ad_set_id"))
            if not image_url:
                result.errors.append(_error_entry(title, "No thumbnail image found for this ad set"))
                continue
            try:
                image_hash = await self.upload_image(act, image_url)
            except (MetaGraphError, httpx.HTTPError) as exc:
                result.errors.append(_error_entry(title, f"Failed to upload thumbnail image: {exc}"))
                continue

            try:
                creative_id = await self.graph.create_creative(
                    act, creative_payload(adset, req.campaign_name, page_id, image_hash, link)
                )
            except MetaGraphError as exc:
                result.errors.append(_error_entry(title, f"Creative creation failed: {exc.message}", exc))
                continue

            created = {
                "id": adset_id,
                "name": title,
                "daily_budget": round(budget, 2),
                "status": "ACTIVE",
                "creative_id": creative_id,
                "ad_id": None,
            }
            try:
                created["ad_id"] = await self._create_ad(act, adset_id, creative_id, title)
            except MetaGraphError as exc:
                if not exc.requires_payment_method:
                    result.errors.append(_error_entry(title, f"Ad creation failed: {exc.message}", exc))
                    continue
                created.update(status="PAUSED", warning=PAYMENT_METHOD_WARNING, requiresPaymentMethod=True)
            result.created.append(created)

        return result

    async def _create_ad(self, act: str, adset_id: str, creative_id: str, title: str | None) -> str:
        payload: dict[str, Any] = {
            "name": f"{title} - Ad",
            "adset_id": adset_id,
            "creative": {"creative_id": creative_id},
        }
        # Without an explicit status Meta sometimes accepts the ad before billing is set up.
        try:
            ad_id = await self.graph.create_ad(act, payload)
        except MetaGraphError:
            return await self.graph.create_ad(act, {**payload, "status": "ACTIVE"})
        try:
            await self.graph.set_status(ad_id, "ACTIVE")
        except MetaGraphError as exc:
            logger.warning("could not activate ad %s: %s", ad_id, exc.message)
        return ad_id


def published_ad_rows(
    user_id: str,
    project_id: str,
    campaign_name: str,
    ad_account_id: str,
    created: list[dict[str, Any]],
    campaign_id: str | None = None,
) -> list[dict[str, Any]]:
    now = datetime.now(timezone.utc).isoformat()
    rows = []
    for adset in created:
        metadata: dict[str, Any] = {"ad_set_name": adset.get("name")}
        if campaign_id:
            metadata["campaign_id"] = campaign_id
        rows.append(
            {
                "user_id": user_id,
                "project_id": project_id,
                "campaign_name": campaign_name,
                "ad_set_id": adset["id"],
                "ad_account_id": act_id(ad_account_id),
                "daily_budget": adset.get("daily_budget"),
                "status": "published",
                "published_at": now,
                "metadata": metadata,
            }
        )
    return rows
