from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import httpx

from adsparkr.meta.graph import MetaGraphClient, MetaGraphError
from adsparkr.providers.base import TextProvider
from adsparkr.text import html_to_text

logger = logging.getLogger(__name__)

MAX_INTERESTS = 40
MAX_KEYWORDS = 12
DEFAULT_AGE_MIN = 18
DEFAULT_AGE_MAX = 45


async def fetch_site(url: str, http: httpx.AsyncClient) -> dict[str, Any]:
    resp = await http.get(url, follow_redirects=True, headers={"User-Agent": "Mozilla/5.0 (compatible; AdSparkr)"})
    resp.raise_for_status()
    return html_to_text(resp.text)


def dedupe_interests(interests: list[dict[str, Any]], keep: int = MAX_INTERESTS) -> list[dict[str, Any]]:
    seen: dict[str, dict[str, Any]] = {}
    for it in interests:
        iid = it.get("id") if isinstance(it, dict) else None
        if iid and iid not in seen:
            seen[iid] = it
    return list(seen.values())[:keep]


def audience_size_range(interests: list[dict[str, Any]]) -> dict[str, int]:
    total = 0
    for it in interests:
        size = it.get("audience_size") or it.get("audience_size_lower_bound") or it.get("audience_size_min") or 0
        try:
            total += int(size)
        except (TypeError, ValueError):
            continue
    return {"min": round(total * 0.6), "max": round(total * 1.1)}


def _age_bounds(persona: dict[str, Any]) -> tuple[int, int]:
    demo = persona.get("demographics")
    if not isinstance(demo, dict):
        demo = {}
    age_range = demo.get("age_range")
    if isinstance(age_range, dict):
        lo, hi = age_range.get("min"), age_range.get("max")
    else:
        lo, hi = demo.get("age_min"), demo.get("age_max")
    try:
        return int(lo or DEFAULT_AGE_MIN), int(hi or DEFAULT_AGE_MAX)
    except (TypeError, ValueError):
        return DEFAULT_AGE_MIN, DEFAULT_AGE_MAX


def build_adset(
    persona: dict[str, Any],
    index: int,
    interests: list[dict[str, Any]],
    ads: list[dict[str, Any]],
) -> dict[str, Any]:
    name = persona.get("persona_name") or f"Persona {index + 1}"
    age_min, age_max = _age_bounds(persona)
    first = ads[0] if ads else {}
    return {
        "ad_set_id": str(uuid.uuid4()),
        "status": "ACTIVE",
        "ad_set_title": name,
        "audience_description": persona.get("short_description") or persona.get("description") or name,
        "audience_explanation": persona.get("rationale") or "",
        "age_range": {"min": age_min, "max": age_max},
        "genders": ["All"],
        "audience_tags": [i.get("name") for i in interests],
        "audience_size_range": audience_size_range(interests),
        "ad_copywriting_title": first.get("title") or first.get("hook") or f"Top ad for {name}",
        "ad_copywriting_body": first.get("body") or first.get("copy") or "",
        "targeting": {
            "GeoLocations": {"Countries": ["US"]},
            "PublisherPlatforms": None,
            "DevicePlatforms": None,
            "Locales": None,
            "AgeMin": age_min,
            "AgeMax": age_max,
            "Genders": [0],
            "FlexibleSpec": [{"interests": [{"id": i.get("id"), "name": i.get("name")} for i in interests]}],
        },
        "ads_variants": ads,
        "creative_meta_data_1x1": {"is_manual": False, "asset_id": 0, "url": "", "type": ""},
        "creative_meta_data_9x16": {"is_manual": False, "asset_id": 0, "url": "", "type": "images"},
    }


class AdSetPipeline:
    """
    Website -> business profile -> personas -> Meta interests -> ad copy.

    Interest search is best effort: without a Meta token, or when a lookup fails,
    the persona still gets an ad set with no interest targeting.
    """

    def __init__(
        self,
        text: TextProvider,
        http: httpx.AsyncClient,
        graph: MetaGraphClient | None = None,
        search_delay: float = 0.15,
    ) -> None:
        self.text = text
        self.http = http
        self.graph = graph
        self.search_delay = search_delay

    async def interests_for(self, persona: dict[str, Any]) -> list[dict[str, Any]]:
        if self.graph is None:
            return []
        keywords = [k for k in (persona.get("sample_keywords_for_targeting") or []) if isinstance(k, str)]
        found: list[dict[str, Any]] = []
        for kw in keywords[:MAX_KEYWORDS]:
            try:
                found.extend(await self.graph.search_interests(kw))
            except MetaGraphError as exc:
                logger.warning("interest search failed for %r: %s", kw, exc.message)
            if self.search_delay:
                await asyncio.sleep(self.search_delay)
        return dedupe_interests(found)

    async def _adset_for(self, profile: dict[str, Any], persona: dict[str, Any], index: int) -> dict[str, Any]:
        interests = await self.interests_for(persona)
        ads = await self.text.ad_variants(profile, persona, interests)
        return build_adset(persona, index, interests, ads)

    async def run(self, website_url: str, persona_count: int = 10) -> list[dict[str, Any]]:
        site = await fetch_site(website_url, self.http)
        logger.info("scraped %s (%d chars)", website_url, len(site.get("main_text") or ""))

        profile = await self.text.business_profile(site)
        personas = await self.text.personas(profile, count=persona_count)
        logger.info("generated %d personas for %s", len(personas), website_url)

        return list(await asyncio.gather(*(self._adset_for(profile, p, i) for i, p in enumerate(personas))))
