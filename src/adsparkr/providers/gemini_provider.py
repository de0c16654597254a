from __future__ import annotations

import logging
from io import BytesIO
from typing import Any

from PIL import Image

from adsparkr.config import settings
from adsparkr.providers.base import GeneratedImage

logger = logging.getLogger(__name__)


def ad_image_prompt(adset: dict[str, Any], website_url: str) -> str:
    return (
        "Production-ready photograph for a Meta/Facebook ad.\n"
        f"Business: {website_url}\n"
        f"Headline: {adset.get('ad_copywriting_title') or 'N/A'}\n"
        f"Description: {adset.get('ad_copywriting_body') or 'N/A'}\n"
        f"Target audience: {adset.get('audience_description') or 'N/A'}\n"
        "Professional product photography style, clean modern composition, high-quality lighting, "
        "brand-appropriate colors."
    )


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str) -> None:
        # Imported lazily so the app can start without the dependency installed.
        from google import genai  # type: ignore

        self._genai = genai
        self.client = genai.Client(api_key=api_key)

    async def generate(self, prompt: str, n: int, aspect_ratio: str) -> list[GeneratedImage]:
        """
        Two paths depending on model family:
        - Imagen models: `models.generate_images(...)`
        - Gemini image preview models: `models.generate_content(...)` with image response modality
        """
        from google.genai import types  # type: ignore

        enriched = f"{prompt}\nNo text. No logos. No watermarks."
        model = settings.gemini_image_model
        out: list[GeneratedImage] = []

        if model.startswith("imagen-"):
            resp = self.client.models.generate_images(
                model=model,
                prompt=enriched,
                config=types.GenerateImagesConfig(
                    number_of_images=n,
                    aspect_ratio=aspect_ratio,
                ),
            )
            for gi in getattr(resp, "generated_images", []) or []:
                img_bytes = getattr(getattr(gi, "image", None), "image_bytes", None)
                if not img_bytes:
                    continue
                out.append(
                    GeneratedImage(
                        image=Image.open(BytesIO(img_bytes)),
                        prompt_used=enriched,
                        provider=self.name,
                        model=model,
                    )
                )
            return out

        # Preview models usually return one image per call.
        for _ in range(max(1, n)):
            resp = self.client.models.generate_content(
                model=model,
                contents=[f"{enriched}\nDesired aspect ratio: {aspect_ratio}."],
                config=types.GenerateContentConfig(
                    response_modalities=["image", "text"],
                    image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
                ),
            )
            extracted = _extract_images_from_generate_content(resp)
            for img, meta in extracted:
                out.append(
                    GeneratedImage(
                        image=img,
                        prompt_used=enriched,
                        provider=self.name,
                        model=model,
                        raw_metadata=meta,
                    )
                )
                if len(out) >= n:
                    return out
            if not extracted:
                break
        return out

    async def first_image(self, prompt: str, aspect_ratio: str) -> GeneratedImage | None:
        """One image, or None when the API refuses; callers render a placeholder instead."""
        from google.genai import errors  # type: ignore

        try:
            images = await self.generate(prompt, n=1, aspect_ratio=aspect_ratio)
        except errors.APIError as exc:
            logger.warning("gemini image generation failed (%s): %s", getattr(exc, "code", None), exc)
            return None
        return images[0] if images else None


def _extract_images_from_generate_content(resp: Any) -> list[tuple[Image.Image, dict[str, Any]]]:
    out: list[tuple[Image.Image, dict[str, Any]]] = []
    for cand in getattr(resp, "candidates", []) or []:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if not inline:
                continue
            mime = getattr(inline, "mime_type", None) or ""
            data = getattr(inline, "data", None)
            if not data:
                continue
            if mime and not mime.startswith("image/"):
                continue
            try:
                img = Image.open(BytesIO(data))
            except Exception:
                continue
            out.append((img, {"mime_type": mime}))
    return out
