from __future__ import annotations

from io import BytesIO

from PIL import Image, ImageDraw, ImageFont

from adsparkr.providers.base import ProductBox

PLACEHOLDER_GRADIENT = ("#3B82F6", "#1E40AF")
CTA_FILL = "#ED8924"


def crop_box(img: Image.Image, box: ProductBox) -> Image.Image:
    """
    Crop a model-reported product box. Vision models routinely overshoot the
    screenshot edges, so the box is clamped to the image first.
    """
    iw, ih = img.size
    x1 = min(max(0, int(round(box.x))), iw)
    y1 = min(max(0, int(round(box.y))), ih)
    x2 = min(max(0, int(round(box.x + box.width))), iw)
    y2 = min(max(0, int(round(box.y + box.height))), ih)
    if x2 <= x1 or y2 <= y1:
        raise ValueError(f"Crop box {box} lies outside the {iw}x{ih} image")
    return img.crop((x1, y1, x2, y2))


def fit_to_canvas(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    return _resize_cover(img.convert("RGB"), size)


def render_placeholder_creative(
    size: tuple[int, int],
    headline: str,
    body: str = "",
    audience: str = "",
    cta: str = "Learn More",
) -> Image.Image:
    """
    Deterministic fallback creative used when the image model returns nothing:
    - diagonal brand gradient
    - headline, body and target line
    - CTA button over a bottom scrim
    """
    w, h = size
    base = _diagonal_gradient(size, *PLACEHOLDER_GRADIENT).convert("RGBA")

    scrim_h = int(h * (0.34 if h > w else 0.28))
    scrim_y0 = h - scrim_h
    base = _apply_bottom_gradient_scrim(base, y0=scrim_y0, max_alpha=160)
    draw = ImageDraw.Draw(base)

    pad = int(w * 0.08)
    headline_box = (pad, int(h * 0.16), w - pad, int(h * 0.40))
    body_box = (pad, int(h * 0.42), w - pad, scrim_y0 - pad)
    cta_box = (pad, scrim_y0 + int(scrim_h * 0.20), w - pad, h - pad)

    head_font, head_text, head_spacing = _fit_text_to_box(
        draw,
        headline or "Ad Creative",
        headline_box,
        max_font_px=int(w * 0.075),
        min_font_px=max(18, int(w * 0.03)),
    )
    _draw_multiline(draw, head_text, headline_box[:2], font=head_font, fill=(255, 255, 255, 255), spacing=head_spacing, shadow=True)

    lines = [t for t in (body, f"Target: {audience}" if audience else "") if t]
    if lines:
        body_font, body_text, body_spacing = _fit_text_to_box(
            draw,
            "\n".join(lines),
            body_box,
            max_font_px=int(w * 0.035),
            min_font_px=max(14, int(w * 0.018)),
        )
        _draw_multiline(draw, body_text, body_box[:2], font=body_font, fill=(235, 240, 255, 255), spacing=body_spacing)

    _draw_cta_button(draw, cta=cta, box=cta_box, fill_hex=CTA_FILL, text_fill=(255, 255, 255, 255))
    return base.convert("RGB")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _diagonal_gradient(size: tuple[int, int], start_hex: str, end_hex: str) -> Image.Image:
    w, h = size
    a = _hex_to_rgb(start_hex)
    b = _hex_to_rgb(end_hex)
    # Horizontal ramp rotated into a square, then cover-resized to the canvas.
    side = 256
    ramp = Image.new("RGB", (side, 1))
    for x in range(side):
        t = x / (side - 1)
        ramp.putpixel((x, 0), tuple(int(a[i] + (b[i] - a[i]) * t) for i in range(3)))
    square = ramp.resize((side, side)).rotate(-45, resample=Image.Resampling.BICUBIC, expand=True)
    # Keep inside the rotated diamond so no black corners survive.
    inset = int(square.width * 0.27)
    square = square.crop((inset, inset, square.width - inset, square.height - inset))
    return _resize_cover(square, (w, h))


def _draw_multiline(
    draw: ImageDraw.ImageDraw,
    text: str,
    xy: tuple[int, int],
    font,
    fill,
    spacing: int,
    shadow: bool = False,
) -> None:
    x, y = xy
    if shadow:
        draw.multiline_text((x + 2, y + 2), text, font=font, fill=(0, 0, 0, 180), spacing=spacing)
    draw.multiline_text((x, y), text, font=font, fill=fill, spacing=spacing)


def _resize_cover(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """
    Resize to cover the target canvas (no stretching), then center-crop.
    """
    tw, th = size
    iw, ih = img.size
    if iw <= 0 or ih <= 0:
        return img.resize(size, Image.Resampling.LANCZOS)

    scale = max(tw / iw, th / ih)
    nw, nh = max(tw, round(iw * scale)), max(th, round(ih * scale))
    resized = img.resize((nw, nh), Image.Resampling.LANCZOS)

    left = max(0, (nw - tw) // 2)
    top = max(0, (nh - th) // 2)
    return resized.crop((left, top, left + tw, top + th))


def _apply_bottom_gradient_scrim(img_rgba: Image.Image, y0: int, max_alpha: int) -> Image.Image:
    w, h = img_rgba.size
    overlay = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)

    height = max(1, h - max(0, y0))
    for i in range(height):
        a = int((i / height) * max_alpha)
        y = max(0, y0) + i
        draw.line([(0, y), (w, y)], fill=(0, 0, 0, a))

    return Image.alpha_composite(img_rgba, overlay)


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """
    Prefer a TTF font; fall back to Pillow's default font so rendering never fails.
    """
    candidates: list[str] = [
        "assets/fonts/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
        "/Library/Fonts/Arial.ttf",
        "C:\\Windows\\Fonts\\arialbd.ttf",
    ]
    from pathlib import Path

    for c in candidates:
        p = Path(c)
        if p.exists():
            try:
                return ImageFont.truetype(str(p), size=size)
            except OSError:
                continue
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        return ImageFont.load_default()


def _hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    s = hex_color.strip().lstrip("#")
    if len(s) == 3:
        s = "".join([c * 2 for c in s])
    if len(s) != 6:
        return (59, 130, 246)
    try:
        return (int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16))
    except ValueError:
        return (59, 130, 246)


def _fit_text_to_box(
    draw: ImageDraw.ImageDraw,
    text: str,
    box: tuple[int, int, int, int],
    max_font_px: int,
    min_font_px: int,
) -> tuple[ImageFont.ImageFont, str, int]:
    x1, y1, x2, y2 = box
    max_w = max(1, x2 - x1)
    max_h = max(1, y2 - y1)

    max_font_px = max(min_font_px, max_font_px)

    for px in range(max_font_px, min_font_px - 1, -2):
        font = _load_font(px)
        spacing = max(2, int(px * 0.18))
        wrapped = _wrap_to_width(draw, text, font, max_w)
        bbox = draw.multiline_textbbox((0, 0), wrapped, font=font, spacing=spacing)
        if bbox[2] - bbox[0] <= max_w and bbox[3] - bbox[1] <= max_h:
            return font, wrapped, spacing

    font = _load_font(min_font_px)
    spacing = max(2, int(min_font_px * 0.18))
    return font, _wrap_to_width(draw, text, font, max_w), spacing


def _wrap_to_width(draw: ImageDraw.ImageDraw, text: str, font, max_w: int) -> str:
    out: list[str] = []
    for paragraph in (text or "").split("\n"):
        words = [w for w in paragraph.split() if w]
        if not words:
            continue
        cur = words[0]
        for w in words[1:]:
            trial = f"{cur} {w}"
            bbox = draw.textbbox((0, 0), trial, font=font)
            if (bbox[2] - bbox[0]) <= max_w:
                cur = trial
            else:
                out.append(cur)
                cur = w
        out.append(cur)
    return "\n".join(out)


def _draw_cta_button(
    draw: ImageDraw.ImageDraw,
    cta: str,
    box: tuple[int, int, int, int],
    fill_hex: str,
    text_fill,
) -> None:
    x1, y1, x2, y2 = box
    w = max(1, x2 - x1)
    h = max(1, y2 - y1)

    btn_h = min(int(h * 0.70), 110)
    btn_w = min(int(w * 0.55), 560)
    btn_x1 = x1 + (w - btn_w) // 2
    btn_y1 = y1 + (h - btn_h) // 2
    btn_x2 = btn_x1 + btn_w
    btn_y2 = btn_y1 + btn_h

    r, g, b = _hex_to_rgb(fill_hex)
    radius = max(10, int(btn_h * 0.22))
    draw.rounded_rectangle([(btn_x1, btn_y1), (btn_x2, btn_y2)], radius=radius, fill=(r, g, b, 255))

    font, wrapped, spacing = _fit_text_to_box(
        draw,
        cta,
        (btn_x1 + 16, btn_y1 + 10, btn_x2 - 16, btn_y2 - 10),
        max_font_px=int(btn_h * 0.46),
        min_font_px=max(14, int(btn_h * 0.28)),
    )
    bbox = draw.multiline_textbbox((0, 0), wrapped, font=font, spacing=spacing)
    tw = bbox[2] - bbox[0]
    th = bbox[3] - bbox[1]

    tx = btn_x1 + max(0, (btn_w - tw) // 2)
    ty = btn_y1 + max(0, (btn_h - th) // 2)
    _draw_multiline(draw, wrapped, (tx, ty), font=font, fill=text_fill, spacing=spacing)
