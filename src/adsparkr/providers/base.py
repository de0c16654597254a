from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from PIL import Image


@dataclass(frozen=True)
class GeneratedImage:
    image: Image.Image
    prompt_used: str
    provider: str
    model: str
    raw_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProductBox:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProductBox:
        return cls(
            x=float(data.get("x", 0)),
            y=float(data.get("y", 0)),
            width=float(data.get("width", 0)),
            height=float(data.get("height", 0)),
        )


class TextProvider(Protocol):
    name: str

    async def generate_project_name(self, business_analysis: dict[str, Any]) -> str: ...

    async def business_profile(self, site: dict[str, Any]) -> dict[str, Any]: ...

    async def analyze_website(self, site: dict[str, Any], website_url: str) -> dict[str, Any]: ...

    async def personas(self, profile: dict[str, Any], count: int = 10) -> list[dict[str, Any]]: ...

    async def ad_variants(
        self,
        profile: dict[str, Any],
        persona: dict[str, Any],
        interests: list[dict[str, Any]],
    ) -> list[dict[str, Any]]: ...

    async def locate_products(self, screenshot_url: str) -> dict[str, Any]: ...
