from __future__ import annotations

import json
import logging
from typing import Any

from bs4 import BeautifulSoup

from ..utils import log_event

ARTICLE_TYPES = ("Article", "NewsArticle", "BlogPosting")


def extract_json_ld(html: str, logger: logging.Logger | None = None) -> list[dict[str, Any]]:
    """Parse every ``application/ld+json`` block into normalized items."""
    logger = logger or logging.getLogger("digestor.extraction")
    soup = BeautifulSoup(html, "html.parser")
    items: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log_event(logger, logging.WARNING, "json_ld_invalid", error=str(exc))
            continue
        items.extend(_walk(data))
    return items


def structured_items(html: str, min_length: int = 100, logger: logging.Logger | None = None) -> list[dict[str, Any]]:
    return [item for item in extract_json_ld(html, logger) if len(item.get("content") or "") > min_length]


def _walk(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        found = []
        for entry in data:
            found.extend(_walk(entry))
        return found
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("@graph"), list):
        return _walk(data["@graph"])
    parsed = parse_structured_item(data)
    return [parsed] if parsed else []


def _type_names(data: dict[str, Any]) -> list[str]:
    value = data.get("@type") or ""
    if isinstance(value, list):
        return [str(entry) for entry in value]
    return [str(value)]


def _entity_name(value: Any) -> str:
    if isinstance(value, list):
        names = [_entity_name(entry) for entry in value]
        return ", ".join(name for name in names if name)
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return str(value or "")


def _instruction_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return " ".join(part for part in (_instruction_text(entry) for entry in value) if part)
    if isinstance(value, dict):
        if value.get("itemListElement"):
            return _instruction_text(value["itemListElement"])
        return str(value.get("text") or value.get("name") or "")
    return ""


def parse_structured_item(data: dict[str, Any]) -> dict[str, Any] | None:
    types = _type_names(data)
    if any(name in ARTICLE_TYPES for name in types):
        return {
            "type": "article",
            "title": data.get("headline") or data.get("name") or "",
            "content": data.get("articleBody") or data.get("description") or "",
            "author": _entity_name(data.get("author")),
            "published": data.get("datePublished") or "",
            "url": data.get("url") or "",
        }
    if "Product" in types:
        offers = data.get("offers") or {}
        if isinstance(offers, list):
            offers = offers[0] if offers else {}
        return {
            "type": "product",
            "title": data.get("name") or "",
            "content": data.get("description") or "",
            "price": offers.get("price") or "",
            "currency": offers.get("priceCurrency") or "",
            "brand": _entity_name(data.get("brand")),
            "url": data.get("url") or "",
        }
    if "Recipe" in types:
        ingredients = data.get("recipeIngredient") or []
        parts = [
            data.get("description") or "",
            "Instructions: " + _instruction_text(data.get("recipeInstructions")),
            "Ingredients: " + ", ".join(str(entry) for entry in ingredients),
        ]
        return {
            "type": "recipe",
            "title": data.get("name") or "",
            "content": "\n\n".join(part for part in parts if part),
            "author": _entity_name(data.get("author")),
            "url": data.get("url") or "",
        }
    return None
