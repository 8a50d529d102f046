from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup

from ..utils import host_of

BASE_PROFILE: dict[str, Any] = {
    "weights": {
        "TEXT_LEN_PER_CHAR": 0.05,
        "PUNCT_DENSITY": 200,
        "LINK_DENSITY_PENALTY": 300,
        "CHILD_SCORE_MULTIPLIER": 0.3,
        "TAG_BOOST": 500,
        "TAG_PENALTY": -500,
        "HEADING_SNIPPET_BOOST": 600,
        "BONUS": 400,
        "SELECTOR_BASE": 500,
        "SELECTOR_PER_CHAR": 0.1,
    },
    "thresholds": {
        "MIN_TEXT_LENGTH": 50,
        "MIN_DETAILS_LENGTH": 200,
        "MIN_CANDIDATE_SCORE": 1,
        "FRAGMENT_RATIO": 0.3,
        "MAX_LINK_DENSITY": 0.5,
        "PARAGRAPH_RATIO": 0.5,
    },
    "tags": {
        "good": ["article", "main", "section"],
        "bad": ["nav", "footer", "script", "style", "noscript", "form", "iframe", "svg"],
        "penalized": ["aside", "header"],
    },
    "selectors": {
        "content": [
            "article",
            '[role="main"]',
            "main",
            ".content",
            ".post-content",
            ".entry-content",
            ".article-content",
            ".story-body",
        ],
        "skip": [
            ".advertisement",
            ".ads",
            ".sidebar",
            ".related",
            ".comments",
            ".social-share",
            "nav",
            "footer",
        ],
        "cards": ["h2.title a", "h3.title a", "article h2 a", "article h3 a", ".card h2 a", ".card h3 a"],
    },
    "junk_tokens": [
        "ad",
        "ads",
        "advert",
        "advertisement",
        "banner",
        "breadcrumb",
        "cookie",
        "footer",
        "menu",
        "modal",
        "nav",
        "navbar",
        "newsletter",
        "popup",
        "promo",
        "share",
        "sidebar",
        "social",
        "sponsored",
    ],
    "skip_roles": ["navigation", "banner", "complementary", "contentinfo"],
}

SITE_PROFILES: dict[str, dict[str, Any]] = {
    "reddit": {
        "selectors": {
            "content": ['[data-test-id="post-content"]', ".usertext-body", '[data-click-id="text"]', ".md"],
            "skip": [".sidebar", ".promoted", ".subreddit-rules"],
        }
    },
    "hackernews": {"selectors": {"content": [".comment", ".toptext"]}},
    "github": {"selectors": {"content": [".readme", ".markdown-body", ".Box-body"]}},
    "stackoverflow": {"selectors": {"content": [".s-prose", ".post-text", ".question-hyperlink"]}},
    "devto": {"selectors": {"content": ["#article-body", ".crayons-article__body"]}},
    "news": {
        "weights": {"HEADING_SNIPPET_BOOST": 800, "TAG_BOOST": 600},
        "selectors": {
            "content": [
                ".story-body",
                ".article-body",
                ".post-content",
                '[data-module="ArticleBody"]',
                ".content-body",
            ]
        },
    },
    "ecommerce": {
        "weights": {"TAG_BOOST": 300, "HEADING_SNIPPET_BOOST": 200},
        "thresholds": {"MIN_DETAILS_LENGTH": 100},
        "selectors": {
            "content": [
                ".product-description",
                ".product-details",
                ".product-info",
                '[data-testid="product-description"]',
            ]
        },
    },
    "blog": {
        "weights": {"TAG_BOOST": 600, "HEADING_SNIPPET_BOOST": 500},
        "selectors": {"content": [".post-content", ".entry-content", ".blog-post", "article .content"]},
    },
}

_HOST_SITE_TYPES = (
    ("reddit.com", "reddit"),
    ("news.ycombinator.com", "hackernews"),
    ("github.com", "github"),
    ("stackoverflow.com", "stackoverflow"),
    ("stackexchange.com", "stackoverflow"),
    ("dev.to", "devto"),
    ("medium.com", "blog"),
)
_ECOMMERCE_MARKERS = (".product-price", ".add-to-cart", ".buy-now", '[data-testid="price"]', ".checkout")
_NEWS_MARKERS = (
    'meta[property="article:published_time"]',
    ".byline",
    ".published-date",
    '[data-module="ArticleBody"]',
)
_BLOG_MARKERS = (".blog-post", ".entry-content", ".post-content")


@dataclass(frozen=True)
class HeuristicProfile:
    site_type: str
    weights: dict[str, float]
    thresholds: dict[str, float]
    good_tags: tuple[str, ...]
    bad_tags: tuple[str, ...]
    penalized_tags: tuple[str, ...]
    content_selectors: tuple[str, ...]
    skip_selectors: tuple[str, ...]
    card_selectors: tuple[str, ...]
    junk_tokens: frozenset[str]
    skip_roles: frozenset[str]


def detect_site_type(url: str, soup: BeautifulSoup | None = None) -> str:
    host = host_of(url)
    for suffix, site_type in _HOST_SITE_TYPES:
        if host == suffix or host.endswith("." + suffix):
            return site_type
    if soup is None:
        return "base"
    for markers, site_type in (
        (_ECOMMERCE_MARKERS, "ecommerce"),
        (_NEWS_MARKERS, "news"),
        (_BLOG_MARKERS, "blog"),
    ):
        if any(soup.select_one(marker) is not None for marker in markers):
            return site_type
    return "base"


def resolve_profile(site_type: str, overrides: dict[str, Any] | None = None) -> HeuristicProfile:
    merged = _merge(BASE_PROFILE, SITE_PROFILES.get(site_type, {}))
    if overrides:
        merged = _merge(merged, overrides.get("base") or {})
        merged = _merge(merged, overrides.get(site_type) or {})
    selectors = merged["selectors"]
    # Site content selectors extend the base list rather than replacing it.
    content = list(selectors.get("content", []))
    content += [sel for sel in BASE_PROFILE["selectors"]["content"] if sel not in content]
    skip = list(dict.fromkeys(BASE_PROFILE["selectors"]["skip"] + list(selectors.get("skip", []))))
    return HeuristicProfile(
        site_type=site_type,
        weights={key: float(value) for key, value in merged["weights"].items()},
        thresholds={key: float(value) for key, value in merged["thresholds"].items()},
        good_tags=tuple(merged["tags"]["good"]),
        bad_tags=tuple(merged["tags"]["bad"]),
        penalized_tags=tuple(merged["tags"].get("penalized", [])),
        content_selectors=tuple(content),
        skip_selectors=tuple(skip),
        card_selectors=tuple(selectors.get("cards", [])),
        junk_tokens=frozenset(merged["junk_tokens"]),
        skip_roles=frozenset(merged["skip_roles"]),
    )


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
