"""Heuristic main-content detection over the DOM.

Each element gets a score from its visible text: length (log-normalized),
punctuation density, a link-density penalty, structural and tag bonuses, plus a
share of its children's scores. The tree is walked with an explicit stack so
deeply nested markup cannot exhaust the interpreter's recursion limit.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from ..utils import log_event
from .page_metadata import extract_page_metadata
from .site_profiles import HeuristicProfile, detect_site_type, resolve_profile

_STRIP_TAGS = ["script", "style", "noscript", "template", "iframe", "svg"]
_HEADINGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
_PUNCT_RE = re.compile(r"[.,;:!?]")
_HIDDEN_STYLE_RE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_EXEMPT_FROM_TOKENS = {"html", "body", "main", "article"}


@dataclass
class Fragment:
    node: Tag
    text: str
    score: float
    order: int


def looks_like_json_blob(text: str) -> bool:
    stripped = text.strip()
    return (
        len(stripped) > 200
        and stripped[:1] in ("{", "[")
        and any(ch in stripped for ch in "{[,:}]")
        and len(stripped.splitlines()) < 3
    )


def is_hidden(node: Tag) -> bool:
    if node.has_attr("hidden") or node.get("aria-hidden") == "true":
        return True
    return bool(_HIDDEN_STYLE_RE.search(node.get("style") or ""))


def _junk_tokens(node: Tag) -> set[str]:
    values = node.get("class") or []
    if isinstance(values, str):
        values = [values]
    values = list(values) + [node.get("id") or ""]
    tokens: set[str] = set()
    for value in values:
        tokens.update(token for token in _TOKEN_SPLIT_RE.split(str(value).lower()) if token)
    return tokens


def _skip_reason(node: Tag, profile: HeuristicProfile, skip_ids: set[int]) -> str | None:
    if node.name in profile.bad_tags:
        return "bad_tag"
    if id(node) in skip_ids:
        return "skip_selector"
    if is_hidden(node):
        return "hidden"
    if (node.get("role") or "").lower() in profile.skip_roles:
        return "role"
    if node.name not in _EXEMPT_FROM_TOKENS and _junk_tokens(node) & profile.junk_tokens:
        return "junk_token"
    return None


def score_tree(root: Tag, profile: HeuristicProfile, skip_ids: set[int]) -> tuple[list[Fragment], dict[int, str]]:
    """Score every element below ``root``; returns fragments and per-node cleaned text."""
    texts: dict[int, str] = {}
    link_lengths: dict[int, int] = {}
    scores: dict[int, float | None] = {}
    skipped: set[int] = set()
    fragments: list[Fragment] = []
    order: dict[int, int] = {}
    counter = 0

    stack: list[tuple[Tag, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if not expanded:
            order[id(node)] = counter
            counter += 1
            if node is not root and _skip_reason(node, profile, skip_ids):
                skipped.add(id(node))
                continue
            stack.append((node, True))
            for child in reversed(node.find_all(True, recursive=False)):
                stack.append((child, False))
            continue

        parts: list[str] = []
        link_length = 0
        child_total = 0.0
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                value = str(child).strip()
                if value:
                    parts.append(value)
                continue
            if not isinstance(child, Tag) or id(child) in skipped:
                continue
            child_text = texts.get(id(child), "")
            if child_text:
                parts.append(child_text)
            link_length += link_lengths.get(id(child), 0)
            child_total += scores.get(id(child)) or 0.0
        text = " ".join(parts)
        if node.name == "a":
            link_length = len(text)
        texts[id(node)] = text
        link_lengths[id(node)] = link_length

        score = _score_node(node, text, link_length, child_total, profile)
        scores[id(node)] = score
        if score is not None:
            fragments.append(Fragment(node=node, text=text, score=score, order=order[id(node)]))
    return fragments, texts


def _score_node(
    node: Tag,
    text: str,
    link_length: int,
    child_total: float,
    profile: HeuristicProfile,
) -> float | None:
    weights = profile.weights
    thresholds = profile.thresholds
    text_len = len(text)
    if text_len < thresholds["MIN_TEXT_LENGTH"] or looks_like_json_blob(text):
        return None
    link_density = link_length / text_len
    if link_density > thresholds["MAX_LINK_DENSITY"]:
        return None

    punct_density = len(_PUNCT_RE.findall(text)) / text_len
    raw = (
        text_len * weights["TEXT_LEN_PER_CHAR"]
        + punct_density * weights["PUNCT_DENSITY"]
        - link_density * weights["LINK_DENSITY_PENALTY"]
    )

    children = node.find_all(True, recursive=False)
    child_names = [child.name for child in children]
    if children and text_len > thresholds["MIN_DETAILS_LENGTH"]:
        paragraph_ratio = child_names.count("p") / len(children)
        if paragraph_ratio > thresholds["PARAGRAPH_RATIO"]:
            raw += weights["BONUS"]
    if any(name in _HEADINGS for name in child_names) and "p" in child_names:
        raw += weights["HEADING_SNIPPET_BOOST"]
    if node.name in profile.good_tags:
        raw += weights["TAG_BOOST"]
    elif node.name in profile.penalized_tags:
        raw += weights["TAG_PENALTY"]

    normalized = raw / math.log(text_len + 2)
    return normalized + child_total * weights["CHILD_SCORE_MULTIPLIER"]


def _matching_ids(soup: BeautifulSoup, selectors: tuple[str, ...], logger: logging.Logger) -> set[int]:
    ids: set[int] = set()
    for selector in selectors:
        try:
            ids.update(id(element) for element in soup.select(selector))
        except ValueError as exc:
            log_event(logger, logging.WARNING, "bad_selector", selector=selector, error=str(exc))
    return ids


def _selector_fragments(
    soup: BeautifulSoup,
    profile: HeuristicProfile,
    texts: dict[int, str],
    skip_ids: set[int],
    logger: logging.Logger,
) -> list[Fragment]:
    fragments = []
    weights = profile.weights
    for selector in profile.content_selectors:
        try:
            elements = soup.select(selector)
        except ValueError as exc:
            log_event(logger, logging.WARNING, "bad_selector", selector=selector, error=str(exc))
            continue
        for element in elements:
            if id(element) in skip_ids:
                continue
            text = texts.get(id(element))
            if text is None:
                continue
            if len(text) < profile.thresholds["MIN_TEXT_LENGTH"]:
                continue
            score = len(text) * weights["SELECTOR_PER_CHAR"] + weights["SELECTOR_BASE"]
            fragments.append(Fragment(node=element, text=text, score=score, order=-1))
    return fragments


def _merge_fragments(fragments: list[Fragment]) -> list[Fragment]:
    merged: dict[int, Fragment] = {}
    for fragment in fragments:
        existing = merged.get(id(fragment.node))
        if existing is None:
            merged[id(fragment.node)] = Fragment(fragment.node, fragment.text, fragment.score, fragment.order)
            continue
        existing.score += fragment.score
        if existing.order < 0:
            existing.order = fragment.order
    return list(merged.values())


def select_fragments(fragments: list[Fragment], profile: HeuristicProfile, max_fragments: int) -> list[Fragment]:
    """Pick the best non-overlapping fragments and return them in document order."""
    threshold = profile.thresholds["MIN_CANDIDATE_SCORE"]
    ranked = sorted(
        (fragment for fragment in fragments if fragment.score >= threshold),
        key=lambda fragment: fragment.score,
        reverse=True,
    )
    if not ranked:
        return []
    floor = ranked[0].score * profile.thresholds["FRAGMENT_RATIO"]
    chosen: list[Fragment] = []
    chosen_ids: set[int] = set()
    for fragment in ranked:
        if len(chosen) >= max_fragments or fragment.score < floor:
            break
        ancestors = {id(parent) for parent in fragment.node.parents}
        if ancestors & chosen_ids:
            continue
        if any(id(fragment.node) in {id(parent) for parent in other.node.parents} for other in chosen):
            continue
        chosen.append(fragment)
        chosen_ids.add(id(fragment.node))
    return sorted(chosen, key=lambda fragment: fragment.order)


def extract_article_cards(soup: BeautifulSoup, profile: HeuristicProfile, url: str, limit: int = 30) -> list[dict[str, str]]:
    """Collect repeated title+link+snippet cards from listing pages."""
    cards: list[dict[str, str]] = []
    seen: set[str] = set()
    for selector in profile.card_selectors:
        try:
            links = soup.select(selector)
        except ValueError:
            continue
        for link in links:
            title = link.get_text(" ", strip=True)
            href = link.get("href")
            if not title or not href:
                continue
            absolute = urljoin(url, str(href))
            if absolute in seen:
                continue
            seen.add(absolute)
            snippet = ""
            container = link.find_parent(["article", "li", "div"])
            if container is not None:
                paragraph = container.find("p")
                if paragraph is not None:
                    snippet = paragraph.get_text(" ", strip=True)
            cards.append({"title": title, "url": absolute, "snippet": snippet})
            if len(cards) >= limit:
                return cards
    return cards


def extract_heuristic(
    html: str,
    url: str,
    *,
    max_fragments: int = 5,
    overrides: dict[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any] | None:
    logger = logger or logging.getLogger("digestor.extraction")
    soup = BeautifulSoup(html, "html.parser")
    metadata = extract_page_metadata(soup, url)
    site_type = detect_site_type(url, soup)
    profile = resolve_profile(site_type, overrides)
    for tag in soup(_STRIP_TAGS):
        tag.decompose()

    root = soup.body or soup
    skip_ids = _matching_ids(soup, profile.skip_selectors, logger)
    scored, texts = score_tree(root, profile, skip_ids)
    fragments = _merge_fragments(scored + _selector_fragments(soup, profile, texts, skip_ids, logger))
    chosen = select_fragments(fragments, profile, max_fragments)

    item = {
        "type": "article",
        "title": metadata["title"],
        "author": metadata["author"],
        "date": metadata["date"],
        "description": metadata["description"],
        "image": metadata["image"],
        "url": url,
    }
    if chosen:
        item["content"] = "\n\n".join(fragment.text for fragment in chosen)
        log_event(
            logger,
            logging.DEBUG,
            "dom_scored",
            site_type=site_type,
            fragments=len(chosen),
            top_score=round(max(fragment.score for fragment in chosen), 2),
        )
        return item

    cards = extract_article_cards(soup, profile, url)
    if len(cards) < 2:
        return None
    item["type"] = "post"
    item["content"] = "\n".join(
        f"{card['title']}: {card['snippet']} ({card['url']})" if card["snippet"] else f"{card['title']} ({card['url']})"
        for card in cards
    )
    log_event(logger, logging.DEBUG, "dom_cards_fallback", site_type=site_type, cards=len(cards))
    return item
