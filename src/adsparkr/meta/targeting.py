from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

DEFAULT_AGE_MIN = 18
DEFAULT_AGE_MAX = 65
DEFAULT_COUNTRIES = ["US"]

# Advantage+ audience rejects age_min above 25 and age_max below 65.
ADVANTAGE_AGE_MIN_CEILING = 25
ADVANTAGE_AGE_MAX_FLOOR = 65

GOAL_TRAFFIC = "Traffic"
GOAL_LEADS = "Leads"
GOAL_ENGAGEMENT = "Engagement"


def gender_codes(genders: list[str] | None) -> list[int] | None:
    """Meta uses 0 (all), 1 (male), 2 (female); only the first entry counts."""
    if not genders:
        return None
    first = str(genders[0]).lower()
    if first == "male":
        return [1]
    if first == "female":
        return [2]
    return [0]


def interests_from(adset: dict[str, Any]) -> list[dict[str, Any]]:
    flexible = (adset.get("targeting") or {}).get("FlexibleSpec") or []
    if not flexible:
        return []
    interests = (flexible[0] or {}).get("interests") or []
    return [{"id": i.get("id"), "name": i.get("name")} for i in interests if i.get("id")]


def build_targeting(adset: dict[str, Any], advantage_audience: bool = False) -> dict[str, Any]:
    age_range = adset.get("age_range") or {}
    age_min = int(age_range.get("min") or DEFAULT_AGE_MIN)
    age_max = int(age_range.get("max") or DEFAULT_AGE_MAX)
    if advantage_audience:
        age_min = min(age_min, ADVANTAGE_AGE_MIN_CEILING)
        age_max = max(age_max, ADVANTAGE_AGE_MAX_FLOOR)

    countries = ((adset.get("targeting") or {}).get("GeoLocations") or {}).get("Countries") or DEFAULT_COUNTRIES
    targeting: dict[str, Any] = {
        "age_min": age_min,
        "age_max": age_max,
        "geo_locations": {"countries": list(countries)},
    }

    genders = gender_codes(adset.get("genders"))
    if genders is not None:
        targeting["genders"] = genders

    interests = interests_from(adset)
    if interests:
        targeting["flexible_spec"] = [{"interests": interests}]

    if advantage_audience:
        targeting["targeting_automation"] = {"advantage_audience": 1}
    return targeting


def goal_flags(goal: str | None, objective: str | None) -> tuple[bool, bool, bool]:
    goal = goal or GOAL_TRAFFIC
    traffic = goal == GOAL_TRAFFIC or objective == "OUTCOME_TRAFFIC"
    leads = goal == GOAL_LEADS or objective == "OUTCOME_LEADS"
    engagement = goal == GOAL_ENGAGEMENT or objective == "OUTCOME_ENGAGEMENT"
    return traffic, leads, engagement


def promoted_object(
    goal: str | None,
    objective: str | None,
    page_id: str | None,
    pixel_id: str | None,
) -> dict[str, Any] | None:
    traffic, leads, engagement = goal_flags(goal, objective)
    if engagement:
        return {"page_id": page_id} if page_id else None
    if not pixel_id:
        return None
    if traffic:
        return {"pixel_id": pixel_id, "custom_event_type": "PAGE_VIEW"}
    if leads:
        obj: dict[str, Any] = {"pixel_id": pixel_id, "custom_event_type": "LEAD"}
        if page_id:
            obj["object_id"] = page_id
        return obj
    return None


def optimization_goal(goal: str | None, objective: str | None) -> str:
    _, _, engagement = goal_flags(goal, objective)
    return "POST_ENGAGEMENT" if engagement else "LINK_CLICKS"


def normalize_end_time(end_date: str | None) -> str | None:
    """Full ISO timestamps pass through; bare dates run to the end of that UTC day."""
    if not end_date:
        return None
    s = str(end_date).strip()
    if "T" not in s:
        s = f"{s}T23:59:59Z"
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def adset_payload(
    adset: dict[str, Any],
    index: int,
    campaign_id: str,
    daily_budget_minor: int,
    status: str = "PAUSED",
    goal: str | None = None,
    objective: str | None = None,
    page_id: str | None = None,
    pixel_id: str | None = None,
    end_time: str | None = None,
    advantage_audience: bool = False,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": adset.get("ad_set_title") or f"Ad Set {index + 1}",
        "campaign_id": campaign_id,
        "daily_budget": daily_budget_minor,
        "billing_event": "IMPRESSIONS",
        "optimization_goal": optimization_goal(goal, objective),
        "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
        "targeting": build_targeting(adset, advantage_audience=advantage_audience),
        "status": status,
    }
    if end_time:
        payload["end_time"] = end_time
    promoted = promoted_object(goal, objective, page_id, pixel_id)
    if promoted:
        payload["promoted_object"] = promoted
    return payload


def creative_payload(
    adset: dict[str, Any],
    campaign_name: str,
    page_id: str,
    image_hash: str,
    link: str | None,
) -> dict[str, Any]:
    headline = adset.get("ad_copywriting_title") or campaign_name
    primary_text = adset.get("ad_copywriting_body") or ""
    return {
        "name": f"{adset.get('ad_set_title')} - Creative",
        "object_story_spec": {
            "page_id": page_id,
            "link_data": {
                "link": link or "https://www.example.com",
                "message": primary_text or headline,
                "name": headline,
                "description": adset.get("audience_description") or "",
                "call_to_action": {"type": "LEARN_MORE"},
                "image_hash": image_hash,
            },
        },
    }


def thumbnail_for(thumbnails: dict[str, str], ad_set_id: str | None) -> str | None:
    if ad_set_id and thumbnails.get(ad_set_id):
        return thumbnails[ad_set_id]
    if thumbnails.get("default"):
        return thumbnails["default"]
    for url in thumbnails.values():
        if url:
            return url
    return None


def thumbnail_map(value: Any) -> dict[str, str]:
    """Project thumbnails are a {ad_set_id: url} map; older rows hold one URL string."""
    if isinstance(value, str) and value.lstrip().startswith("{"):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items() if isinstance(v, str)}
    if isinstance(value, str) and value:
        return {"default": value}
    return {}
