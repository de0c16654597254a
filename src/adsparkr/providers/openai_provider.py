from __future__ import annotations

import json
import logging
import re
from typing import Any

from adsparkr.config import settings

logger = logging.getLogger(__name__)

PRODUCT_PROMPT = (
    "Analyze this website screenshot and identify ALL visible products.\n"
    "Look for actual product images: product photos, thumbnails, featured product displays, "
    "product cards with images and main product showcase images.\n"
    "Exclude navigation elements, headers/footers, text-only listings and category images.\n"
    "Respond with ONLY valid JSON in this exact format:\n"
    '{"productsDetected": true/false, "productCount": 0-10, "products": [\n'
    '  {"id": 1, "coordinates": {"x": 0-1000, "y": 0-1000, "width": 100-800, "height": 100-800},\n'
    '   "description": "what the product is", "category": "product category",\n'
    '   "location": "where on the page", "confidence": 0.0-1.0,\n'
    '   "extractionInstructions": "how to crop this product"}\n'
    "]}\n"
    "Coordinates are pixels of the screenshot. Include the whole product image with some padding. "
    "Maximum 10 products; prefer the most prominent ones."
)


ANALYSIS_POINTS = ("productInformation", "sellingPoints", "adsGoalStrategy")
BUSINESS_ANALYSIS_TEXT = (
    "businessType",
    "targetMarket",
    "uniqueValueProposition",
    "businessModel",
    "pricingModel",
    "geographicFocus",
    "culturalFactors",
)
BUSINESS_ANALYSIS_LISTS = ("productsServices", "keyFeatures")

SITE_ANALYSIS_PROMPT = (
    "Return ONLY valid JSON with these keys:\n"
    '"businessName": the business name as it appears on the site (max 50 characters, no Inc/LLC unless part of it),\n'
    '"productInformation": {"description": products/services, features and offerings (100-120 words)},\n'
    '"sellingPoints": {"description": selling points, value propositions, competitive advantages (100-120 words)},\n'
    '"adsGoalStrategy": {"description": ad goals, audience strategy, campaign objectives (100-120 words)},\n'
    '"businessAnalysis": {"businessType", "productsServices" (array), "targetMarket", "uniqueValueProposition", '
    '"businessModel", "keyFeatures" (array), "pricingModel", "geographicFocus", "culturalFactors"}.'
)


def _extract_json(raw: str, opener: str = "{") -> Any:
    """Best-effort JSON extraction; tolerates code fences and pre/post text."""
    closer = "}" if opener == "{" else "]"
    s = (raw or "").strip()
    m = re.search(r"```(?:json)?\s*(.*?)\s*```", s, re.DOTALL | re.IGNORECASE)
    if m:
        s = m.group(1).strip()
    try:
        return json.loads(s)
    except ValueError:
        pass
    start = s.find(opener)
    end = s.rfind(closer)
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(s[start : end + 1])
    except ValueError:
        return None


def _as_list(value: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(value, dict):
        value = value.get(key)
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def normalize_products(data: Any) -> dict[str, Any]:
    products: list[dict[str, Any]] = []
    for i, item in enumerate(_as_list(data, "products")):
        coords = item.get("coordinates") or {}
        try:
            box = {k: float(coords.get(k, 0)) for k in ("x", "y", "width", "height")}
        except (TypeError, ValueError):
            continue
        if box["width"] <= 0 or box["height"] <= 0:
            continue
        products.append(
            {
                "id": item.get("id") or i + 1,
                "coordinates": box,
                "description": str(item.get("description", "")).strip(),
                "category": str(item.get("category", "")).strip(),
                "location": str(item.get("location", "")).strip(),
                "confidence": float(item.get("confidence") or 0.0),
                "extractionInstructions": str(item.get("extractionInstructions", "")).strip(),
            }
        )
    products = products[:10]
    return {"productsDetected": bool(products), "productCount": len(products), "products": products}


def normalize_site_analysis(data: Any) -> dict[str, Any]:
    """Coerce the website analysis into the shape stored on the project."""
    if not isinstance(data, dict):
        raise ValueError("Website analysis response was not a JSON object")
    out: dict[str, Any] = {}
    for key in ANALYSIS_POINTS:
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("description")
        out[key] = {"description": str(value or "").strip()}

    raw = data.get("businessAnalysis")
    raw = raw if isinstance(raw, dict) else {}
    analysis: dict[str, Any] = {k: str(raw.get(k) or "").strip() for k in BUSINESS_ANALYSIS_TEXT}
    for key in BUSINESS_ANALYSIS_LISTS:
        value = raw.get(key) or []
        if isinstance(value, str):
            value = [v.strip() for v in value.split(",")]
        analysis[key] = [str(v).strip() for v in value if str(v).strip()] if isinstance(value, list) else []
    out["businessAnalysis"] = analysis
    out["businessName"] = str(data.get("businessName") or "").strip().strip("\"'")[:50] or "Business Name"
    return out


class OpenAITextProvider:
    name = "openai"

    def __init__(self, api_key: str) -> None:
        from openai import OpenAI  # type: ignore

        self.client = OpenAI(api_key=api_key)

    def _complete(self, prompt: Any, instructions: str | None = None, model: str | None = None) -> str:
        kwargs: dict[str, Any] = {"model": model or settings.openai_text_model, "input": prompt}
        if instructions:
            kwargs["instructions"] = instructions
        resp = self.client.responses.create(**kwargs)

        text = ""
        try:
            text = resp.output_text
        except Exception:
            # Fallback: best-effort
            text = str(resp)
        return text.strip()

    def _json_object(self, raw: str) -> dict[str, Any] | None:
        data = _extract_json(raw)
        if not isinstance(data, dict):
            # One repair pass before giving up.
            fixed = self._complete(
                f"Input text:\n{raw}\n\nOutput valid JSON.",
                instructions="You are a JSON formatter. Re-emit the user content as JSON.",
            )
            data = _extract_json(fixed)
        return data if isinstance(data, dict) else None

    async def generate_project_name(self, business_analysis: dict[str, Any]) -> str:
        prompt = (
            "Generate a catchy, professional project name (2-4 words) for this business.\n"
            f"Business type: {business_analysis.get('businessType', '')}\n"
            f"Products/services: {business_analysis.get('productsServices', '')}\n"
            f"Target market: {business_analysis.get('targetMarket', '')}\n"
            f"Unique value proposition: {business_analysis.get('uniqueValueProposition', '')}\n"
            "Return only the name, no quotes, no punctuation at the end."
        )
        text = self._complete(prompt, instructions="You are a branding expert.")
        name = text.splitlines()[0].strip().strip("\"'") if text else ""
        words = name.split()
        if len(words) > 4:
            name = " ".join(words[:4])
        return name

    async def business_profile(self, site: dict[str, Any]) -> dict[str, Any]:
        prompt = (
            "Website content:\n"
            f"Title: {site.get('title', '')}\n"
            f"Meta: {site.get('meta_description', '')}\n"
            f"Headings: {json.dumps(site.get('headings') or [])}\n"
            f"MainText:\n{site.get('main_text', '')}\n\n"
            "Return ONLY valid JSON with keys: business_summary (3-4 sentences), products_services (array), "
            "target_audience (text), unique_value_proposition (1-2 sentences), tone_of_voice (one phrase), "
            "pain_points_solved (array)."
        )
        raw = self._complete(
            prompt,
            instructions=(
                "You are an expert marketing analyst. Given website content, "
                "produce a concise structured JSON business profile."
            ),
        )
        data = self._json_object(raw)
        if data is None:
            raise ValueError("Business profile response was not valid JSON")
        return data

    async def analyze_website(self, site: dict[str, Any], website_url: str) -> dict[str, Any]:
        prompt = (
            f"Website URL: {website_url}\n"
            f"Title: {site.get('title', '')}\n"
            f"Meta: {site.get('meta_description', '')}\n"
            f"Headings: {json.dumps(site.get('headings') or [])}\n"
            f"MainText:\n{str(site.get('main_text', ''))[:5000]}\n\n"
            f"{SITE_ANALYSIS_PROMPT}"
        )
        raw = self._complete(
            prompt,
            instructions=(
                "You are an expert digital marketing strategist. Analyze website content and give actionable "
                "insights for advertising strategy. Respond with ONLY valid JSON, no markdown."
            ),
        )
        return normalize_site_analysis(self._json_object(raw))

    async def personas(self, profile: dict[str, Any], count: int = 10) -> list[dict[str, Any]]:
        prompt = (
            f"Business Profile:\n{json.dumps(profile, indent=2)}\n\n"
            f"Create {count} personas with the fields described. Return ONLY JSON: {{\"personas\": [...]}}."
        )
        raw = self._complete(
            prompt,
            instructions=(
                "You are a senior marketing strategist. Create realistic customer personas tied to the business. "
                "For each persona produce: persona_name, short_description, rationale, "
                "demographics (age_min, age_max, gender, location), psychographics (interests, behaviors), "
                "key_needs, buying_triggers, sample_keywords_for_targeting (10 keywords)."
            ),
        )
        data = _extract_json(raw)
        if isinstance(data, list):
            return [p for p in data if isinstance(p, dict)][:count]
        return _as_list(data, "personas")[:count]

    async def ad_variants(
        self,
        profile: dict[str, Any],
        persona: dict[str, Any],
        interests: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        sample = [{"id": i.get("id"), "name": i.get("name"), "audience_size": i.get("audience_size")} for i in interests]
        prompt = (
            f"Business Profile:\n{json.dumps(profile, indent=2)}\n\n"
            f"Persona:\n{json.dumps(persona, indent=2)}\n\n"
            f"Targeting Interest IDs (sample):\n{json.dumps(sample, indent=2)}\n\n"
            "Requirements:\n"
            "- Generate 2 ad variants for this persona.\n"
            "- Each ad: persona_name, title, hook (<=10 words), body (1-3 sentences), CTA (one short imperative), "
            "format (image, video, carousel), tone, primary_metric (e.g. link_clicks).\n"
            '- Output MUST be valid JSON like: {"ads": [{...}, ...]}\n'
            "Make the copy specific and evocative. Avoid generic phrases."
        )
        raw = self._complete(
            prompt,
            instructions=(
                "You are an award-winning ad copywriter specializing in social media ads. "
                "Each ad must feel written directly for the persona; no placeholders like {product}."
            ),
        )
        return _as_list(_extract_json(raw), "ads")

    async def locate_products(self, screenshot_url: str) -> dict[str, Any]:
        prompt = [
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": PRODUCT_PROMPT},
                    {"type": "input_image", "image_url": screenshot_url},
                ],
            }
        ]
        raw = self._complete(
            prompt,
            instructions=(
                "You are an expert at analyzing e-commerce and product websites. "
                "Always respond with ONLY valid JSON, no markdown."
            ),
            model=settings.openai_vision_model,
        )
        data = _extract_json(raw)
        if data is None:
            logger.warning("product extraction returned non-JSON output (%d chars)", len(raw))
        return normalize_products(data)
