from __future__ import annotations

import re

from bs4 import BeautifulSoup

PLACEHOLDER = "Generating insights..."


def clean_content(text: str | None) -> str:
    """Strip markdown emphasis, list markers, and HTML tags from model output."""
    if not text:
        return PLACEHOLDER
    s = text.replace("**", "")
    s = re.sub(r"^\s*[-*›]\s*", "", s, flags=re.MULTILINE)
    s = re.sub(r"^\s*\d+\.\s*", "", s, flags=re.MULTILINE)
    s = re.sub(r"</?[^>]+(>|$)", "", s)
    s = s.replace("undefined", "")
    s = s.strip()
    return re.sub(r"\n{3,}", "\n\n", s)


def html_to_text(html: str, limit: int = 20000) -> dict[str, object]:
    """Pull title, meta description, headings, and visible text from a page."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()

    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    desc = soup.find("meta", attrs={"name": re.compile(r"^description$", re.IGNORECASE)})
    if desc is None:
        desc = soup.find("meta", attrs={"property": "og:description"})
    meta_description = (desc.get("content") or "").strip() if desc is not None else ""

    headings = [h.get_text(" ", strip=True) for h in soup.find_all(["h1", "h2", "h3"])]
    body = soup.body or soup
    main_text = re.sub(r"\s+", " ", body.get_text(" ", strip=True)).strip()
    return {
        "title": title,
        "meta_description": meta_description,
        "headings": [h for h in headings if h][:20],
        "main_text": main_text[:limit],
    }
