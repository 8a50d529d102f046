from __future__ import annotations

import re
from typing import Any
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup

_TITLE_SELECTORS = (
    'meta[property="og:title"]',
    'meta[name="twitter:title"]',
    'meta[name="title"]',
    'meta[itemprop="headline"]',
    "title",
    "h1",
)
_DATE_SELECTORS = (
    'meta[property="article:published_time"]',
    'meta[name="date"]',
    'meta[name="publish-date"]',
    "time[datetime]",
)
_DESCRIPTION_SELECTORS = (
    'meta[property="og:description"]',
    'meta[name="description"]',
    'meta[name="twitter:description"]',
)
_AUTHOR_SELECTORS = ('meta[name="author"]', 'meta[property="article:author"]', '[rel="author"]', ".byline")
_SITE_SUFFIX_RE = re.compile(r" [|\-–:] .+$")


def _first_value(soup: BeautifulSoup, selectors: tuple[str, ...]) -> str | None:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        value = element.get("content") or element.get("datetime") or element.get_text(" ", strip=True)
        if isinstance(value, list):
            value = " ".join(value)
        value = (value or "").strip()
        if value:
            return value
    return None


def extract_title(soup: BeautifulSoup, url: str | None = None) -> str:
    title = _first_value(soup, _TITLE_SELECTORS)
    if title:
        return _SITE_SUFFIX_RE.sub("", title).strip() or title
    if url:
        segments = [segment for segment in urlsplit(url).path.split("/") if segment]
        if segments:
            path_title = re.sub(r"[-_]+", " ", unquote(segments[-1])).strip()
            if path_title:
                return path_title
    return "Untitled"


def extract_page_metadata(soup: BeautifulSoup, url: str) -> dict[str, Any]:
    return {
        "title": extract_title(soup, url),
        "date": _first_value(soup, _DATE_SELECTORS),
        "description": _first_value(soup, _DESCRIPTION_SELECTORS) or "",
        "author": _first_value(soup, _AUTHOR_SELECTORS) or "",
        "image": _first_value(soup, ('meta[property="og:image"]',)),
        "url": url,
    }
