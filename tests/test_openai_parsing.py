from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from adsparkr.config import settings
from adsparkr.providers.openai_provider import (
    OpenAITextProvider,
    _extract_json,
    normalize_products,
    normalize_site_analysis,
)


class FakeResponses:
    def __init__(self, outputs: list[str]) -> None:
        self.outputs = list(outputs)
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(output_text=self.outputs.pop(0))


def _provider(*outputs: str) -> tuple[OpenAITextProvider, FakeResponses]:
    provider = OpenAITextProvider(api_key="sk-test")
    responses = FakeResponses(list(outputs))
    provider.client = SimpleNamespace(responses=responses)
    return provider, responses


class TestExtractJson:
    def test_plain(self):
        assert _extract_json('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert _extract_json('Here you go:\n```json\n{"a": [1, 2]}\n```\nEnjoy') == {"a": [1, 2]}

    def test_embedded(self):
        assert _extract_json('Sure! {"ok": true} hope that helps') == {"ok": True}

    def test_array(self):
        assert _extract_json('list: [{"x": 1}] done', opener="[") == [{"x": 1}]

    def test_garbage(self):
        assert _extract_json("no json here") is None
        assert _extract_json("") is None


class TestNormalizeProducts:
    def test_filters_and_coerces(self):
        data = {
            "products": [
                {"coordinates": {"x": "10", "y": 20, "width": 100, "height": 50}, "description": " Mug ", "confidence": "0.8"},
                {"coordinates": {"x": 0, "y": 0, "width": 0, "height": 50}},
                {"coordinates": {"x": "a", "y": 0, "width": 10, "height": 10}},
                "not a product",
            ]
        }
        out = normalize_products(data)
        assert out["productsDetected"] is True
        assert out["productCount"] == 1
        product = out["products"][0]
        assert product["id"] == 1
        assert product["coordinates"] == {"x": 10.0, "y": 20.0, "width": 100.0, "height": 50.0}
        assert product["description"] == "Mug"
        assert product["confidence"] == 0.8

    def test_caps_at_ten(self):
        box = {"x": 0, "y": 0, "width": 10, "height": 10}
        out = normalize_products({"products": [{"coordinates": box} for _ in range(14)]})
        assert out["productCount"] == 10

    def test_nothing_found(self):
        assert normalize_products(None) == {"productsDetected": False, "productCount": 0, "products": []}


def test_project_name_is_trimmed():
    provider, responses = _provider('"Bright Bean Coffee Roasting Company"\nExtra line')
    name = asyncio.run(provider.generate_project_name({"businessType": "coffee"}))
    assert name == "Bright Bean Coffee Roasting"
    assert responses.calls[0]["model"] == settings.openai_text_model
    assert "coffee" in responses.calls[0]["input"]


def test_business_profile_repairs_once():
    provider, responses = _provider("not json at all", '{"business_summary": "Coffee."}')
    profile = asyncio.run(provider.business_profile({"title": "Beans"}))
    assert profile == {"business_summary": "Coffee."}
    assert len(responses.calls) == 2
    assert "JSON formatter" in responses.calls[1]["instructions"]


def test_business_profile_gives_up():
    provider, _ = _provider("nope", "still nope")
    with pytest.raises(ValueError):
        asyncio.run(provider.business_profile({}))


def test_personas_accept_object_or_list():
    personas = [{"persona_name": f"P{i}"} for i in range(4)]
    provider, _ = _provider(json.dumps({"personas": personas}), json.dumps(personas))
    assert len(asyncio.run(provider.personas({}, count=3))) == 3
    assert [p["persona_name"] for p in asyncio.run(provider.personas({}, count=10))] == ["P0", "P1", "P2", "P3"]


def test_ad_variants():
    provider, responses = _provider('```json\n{"ads": [{"title": "A"}, {"title": "B"}]}\n```')
    ads = asyncio.run(provider.ad_variants({}, {"persona_name": "P"}, [{"id": "1", "name": "Coffee"}]))
    assert [a["title"] for a in ads] == ["A", "B"]
    assert '"Coffee"' in responses.calls[0]["input"]


def test_locate_products_sends_image():
    body = {"products": [{"coordinates": {"x": 1, "y": 2, "width": 30, "height": 40}, "category": "Mugs"}]}
    provider, responses = _provider(json.dumps(body))
    out = asyncio.run(provider.locate_products("https://img.test/shot.png"))
    assert out["productCount"] == 1
    call = responses.calls[0]
    assert call["model"] == settings.openai_vision_model
    content = call["input"][0]["content"]
    assert content[1] == {"type": "input_image", "image_url": "https://img.test/shot.png"}


class TestSiteAnalysis:
    def test_normalizes_shapes(self):
        out = normalize_site_analysis(
            {
                "businessName": ' "Bright Bean" ',
                "productInformation": "Beans and gear.",
                "sellingPoints": {"description": " Fresh. "},
                "businessAnalysis": {"businessType": "roaster", "keyFeatures": "fresh, local , ", "productsServices": None},
            }
        )
        assert out["businessName"] == "Bright Bean"
        assert out["productInformation"] == {"description": "Beans and gear."}
        assert out["sellingPoints"] == {"description": "Fresh."}
        assert out["adsGoalStrategy"] == {"description": ""}
        assert out["businessAnalysis"]["keyFeatures"] == ["fresh", "local"]
        assert out["businessAnalysis"]["productsServices"] == []
        assert out["businessAnalysis"]["targetMarket"] == ""

    def test_missing_name_falls_back(self):
        assert normalize_site_analysis({})["businessName"] == "Business Name"

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            normalize_site_analysis(["nope"])

    def test_analyze_website_repairs_once(self):
        fixed = json.dumps({"businessName": "Beans", "businessAnalysis": {"businessType": "coffee"}})
        provider, responses = _provider("Sure, here it is", fixed)
        site = {"title": "Beans", "headings": ["Roasted"], "main_text": "x" * 6000}
        out = asyncio.run(provider.analyze_website(site, "https://beans.test"))
        assert out["businessAnalysis"]["businessType"] == "coffee"
        prompt = responses.calls[0]["input"]
        assert "Website URL: https://beans.test" in prompt
        assert "x" * 5001 not in prompt
        assert "JSON formatter" in responses.calls[1]["instructions"]

    def test_analyze_website_gives_up(self):
        provider, _ = _provider("nope", "still nope")
        with pytest.raises(ValueError):
            asyncio.run(provider.analyze_website({}, "https://beans.test"))
