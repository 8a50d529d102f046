from __future__ import annotations

import logging
from typing import Any

from bs4 import BeautifulSoup
from lxml.etree import ParserError
from readability import Document
from readability.readability import Unparseable

from ..utils import log_event


def looks_like_junk(text: str, junk_phrases: tuple[str, ...] | list[str]) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in junk_phrases)


def extract_readable(
    html: str,
    url: str,
    *,
    junk_phrases: tuple[str, ...] | list[str],
    retry_length: int = 250,
    min_length: int = 200,
    logger: logging.Logger | None = None,
) -> dict[str, Any] | None:
    """Run readability over the page; reject short or paywall/consent-looking output."""
    logger = logger or logging.getLogger("digestor.extraction")
    try:
        document = Document(html, url=url, retry_length=retry_length)
        summary_html = document.summary(html_partial=True)
        title = document.short_title() or document.title() or ""
    except (Unparseable, ParserError, ValueError) as exc:
        log_event(logger, logging.WARNING, "readability_failed", url=url, error=str(exc))
        return None

    text = BeautifulSoup(summary_html, "html.parser").get_text("\n", strip=True)
    junk = looks_like_junk(text, junk_phrases)
    log_event(logger, logging.DEBUG, "readability_parsed", url=url, length=len(text), junk=junk)
    if len(text) <= min_length or junk:
        return None
    return {
        "type": "article",
        "title": title,
        "content": text,
        "url": url,
        "readabilityScore": min(len(text) * 0.001, 1.0),
    }
