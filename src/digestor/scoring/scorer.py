"""Rank extraction candidates produced for one document.

The final score is a weighted blend of four sub-scores, each clamped to [0, 1]:

* heuristic: title quality, content length tiers, structure markers, source
  strategy bonus and metadata completeness, with multiplicative penalties;
* dynamic: similarity of a short reference text (title, URL path words,
  description) to the candidate's main content;
* prototype: similarity to the nearest stored prototype;
* centroid: similarity to the mean embedding of all candidates for the document.

A ``Scorer`` owns bounded embedding caches and is meant to live for one run.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Callable
from urllib.parse import urlsplit

from ..config import ScoringConfig
from ..errors import ScoringError
from ..models import (
    STRATEGY_HTML_PARSING,
    STRATEGY_JSON_API,
    STRATEGY_READABILITY,
    STRATEGY_STRUCTURED_DATA,
    Candidate,
    ScoredCandidate,
)
from ..utils import is_http_url, log_event, sha256_hex
from .embeddings import cosine_similarity
from .prototypes import PrototypeCollector

STRUCTURE_MARKERS = {
    "[TITLE]": 0.05,
    "[POST]": 0.05,
    "[ARTICLE]": 0.05,
    "[TRANSCRIPT]": 0.05,
    "[COMMENT]": 0.02,
    "<h1>": 0.03,
    "<h2>": 0.02,
    "<p>": 0.02,
}
SOURCE_BONUS = {
    STRATEGY_JSON_API: 0.08,
    STRATEGY_STRUCTURED_DATA: 0.06,
    STRATEGY_READABILITY: 0.04,
    STRATEGY_HTML_PARSING: 0.03,
}
LENGTH_TIERS = ((2000, 0.35), (1000, 0.28), (500, 0.20), (200, 0.12), (50, 0.06))
NAV_INDICATORS = ("menu", "navigation", "sidebar", "footer", "header")
ERROR_TITLE_INDICATORS = ("404", "not found", "error", "page not available")
ERROR_CONTENT_INDICATORS = ("404 not found", "page not found", "page not available")

_ROLE_TAG_RE = re.compile(r"\[(TITLE|POST|ARTICLE|COMMENT|TRANSCRIPT)\]")
_URL_RE = re.compile(r"https?://\S+")
_WS_RE = re.compile(r"\s+")
_ARTICLE_SPAN_RE = re.compile(r"\[ARTICLE\](.*?)(?:\[|\s*$)", re.DOTALL)
_POST_SPAN_RE = re.compile(r"\[POST\](.*?)(?:\[COMMENT\]|$)", re.DOTALL)
_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_NAV_TEXT_RE = re.compile(r"home|menu|nav|click|here", re.IGNORECASE)


def clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def clean_for_embedding(text: str) -> str:
    text = _ROLE_TAG_RE.sub("", text)
    text = _URL_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def is_quality_title(title: str) -> bool:
    return (
        any(ch.isupper() for ch in title)
        and len(title.split()) >= 3
        and title != title.upper()
        and not _NAV_TEXT_RE.search(title)
    )


def reference_text(candidate: Candidate) -> str:
    metadata = candidate.metadata
    parts = []
    if metadata.get("title"):
        parts.append(str(metadata["title"]))
    url = metadata.get("url")
    if url:
        path_words = [part for part in urlsplit(str(url)).path.split("/") if len(part) > 2]
        parts.append(" ".join(path_words))
    if metadata.get("description"):
        parts.append(str(metadata["description"])[:200])
    return " ".join(parts)[:300]


def main_content(candidate: Candidate) -> str:
    """Article/post span when tagged, else first long paragraph, else a prefix."""
    content = candidate.content or ""
    attempts: list[Callable[[], str | None]] = [
        lambda: _first_group(_ARTICLE_SPAN_RE, content) or _first_group(_POST_SPAN_RE, content),
        lambda: next((p for p in _PARAGRAPH_BREAK_RE.split(content) if len(p.strip()) > 100), None),
        lambda: content[:600],
    ]
    for attempt in attempts:
        extracted = attempt()
        if extracted and len(extracted.strip()) > 50:
            return clean_for_embedding(extracted)
    return clean_for_embedding(content[:600])


def _first_group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1) if match else None


class _LRU:
    def __init__(self, capacity: int) -> None:
        self.capacity = max(1, capacity)
        self._items: OrderedDict[str, list[float]] = OrderedDict()

    def get(self, key: str) -> list[float] | None:
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def put(self, key: str, value: list[float]) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


class Scorer:
    def __init__(
        self,
        cfg: ScoringConfig,
        embed: Callable[[str], list[float] | None],
        collector: PrototypeCollector | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        total = cfg.heuristic_weight + cfg.dynamic_weight + cfg.prototype_weight + cfg.centroid_weight
        if total <= 0:
            raise ValueError("scoring weights must sum to a positive value")
        self.weights = {
            "heuristic": cfg.heuristic_weight / total,
            "dynamic": cfg.dynamic_weight / total,
            "prototype": cfg.prototype_weight / total,
            "centroid": cfg.centroid_weight / total,
        }
        self.min_content_length = cfg.min_content_length
        self.max_embedding_chars = cfg.max_embedding_chars
        self.collector = collector
        self._embed_fn = embed
        self._embeddings = _LRU(cfg.embedding_cache_size)
        self._candidate_embeddings = _LRU(cfg.embedding_cache_size)
        self._logger = logger or logging.getLogger("digestor.scoring")

    # embeddings

    def embed_text(self, text: str) -> list[float] | None:
        cleaned = clean_for_embedding(text or "")[: self.max_embedding_chars]
        if not cleaned:
            return None
        key = sha256_hex(cleaned)
        cached = self._embeddings.get(key)
        if cached is not None:
            return cached
        vector = self._embed_fn(cleaned)
        if vector:
            self._embeddings.put(key, vector)
        return vector

    def candidate_embedding(self, candidate: Candidate) -> list[float] | None:
        key = f"{candidate.source}:{sha256_hex(candidate.content or '')}"
        cached = self._candidate_embeddings.get(key)
        if cached is not None:
            return cached
        text = f"{candidate.metadata.get('title') or ''} {main_content(candidate)}"
        vector = self.embed_text(text)
        if vector:
            self._candidate_embeddings.put(key, vector)
        return vector

    # sub-scores

    def heuristic_score(self, candidate: Candidate) -> float:
        title = str(candidate.metadata.get("title") or "")
        content = candidate.content or ""
        score = 0.0
        if len(title) > 30 and is_quality_title(title):
            score += 0.25
        elif len(title) > 10:
            score += 0.15
        elif title:
            score += 0.08
        for threshold, bonus in LENGTH_TIERS:
            if len(content) > threshold:
                score += bonus
                break
        score += self._structure_score(content, candidate.source)
        score += self._metadata_score(candidate)
        return clamp(self._apply_penalties(score, content, title))

    def _structure_score(self, content: str, source: str) -> float:
        score = sum(bonus for marker, bonus in STRUCTURE_MARKERS.items() if marker in content)
        score += SOURCE_BONUS.get(source, 0.0)
        if len(_PARAGRAPH_BREAK_RE.findall(content)) > 2:
            score += 0.03
        sentences = [part for part in _SENTENCE_SPLIT_RE.split(content) if len(part.strip()) > 20]
        if len(sentences) > 3:
            score += 0.03
        return min(score, 0.25)

    @staticmethod
    def _metadata_score(candidate: Candidate) -> float:
        metadata = candidate.metadata
        score = 0.0
        if metadata.get("publishedAt") or metadata.get("date"):
            score += 0.05
        if metadata.get("author"):
            score += 0.03
        if metadata.get("url") and is_http_url(str(metadata["url"])):
            score += 0.03
        if metadata.get("description"):
            score += 0.02
        if metadata.get("tags") or metadata.get("keywords"):
            score += 0.01
        if metadata.get("image"):
            score += 0.01
        return min(score, 0.15)

    def _apply_penalties(self, score: float, content: str, title: str) -> float:
        if len(content) < self.min_content_length:
            score *= 0.3
        words = content.lower().split()
        if words and len(set(words)) / len(words) < 0.3:
            score *= 0.7
        lowered_title = title.lower()
        lowered_content = content.lower()
        if any(
            indicator in lowered_title or f"{indicator} item" in lowered_content for indicator in NAV_INDICATORS
        ):
            score *= 0.8
        if any(indicator in lowered_title for indicator in ERROR_TITLE_INDICATORS) or any(
            indicator in lowered_content for indicator in ERROR_CONTENT_INDICATORS
        ):
            score *= 0.1
        return score

    def dynamic_score(self, candidate: Candidate) -> float:
        reference = reference_text(candidate)
        body = main_content(candidate)
        if not reference.strip() or not body.strip():
            return 0.0
        return clamp(cosine_similarity(self.embed_text(reference), self.embed_text(body)))

    def prototype_score(self, candidate: Candidate) -> float:
        if self.collector is None:
            return 0.0
        vector = self.candidate_embedding(candidate)
        if not vector:
            return 0.0
        try:
            nearest = self.collector.find_nearest(vector, 1)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "prototype_lookup_failed", error=str(exc))
            return 0.0
        return clamp(nearest[0].similarity) if nearest else 0.0

    def centroid_score(self, candidate: Candidate, candidates: list[Candidate]) -> float:
        if len(candidates) < 2:
            return 0.5
        vector = self.candidate_embedding(candidate)
        if not vector:
            return 0.0
        vectors = [v for v in (self.candidate_embedding(other) for other in candidates) if v]
        if len(vectors) < 2:
            return 0.5
        dims = len(vectors[0])
        vectors = [v for v in vectors if len(v) == dims]
        centroid = [sum(v[i] for v in vectors) / len(vectors) for i in range(dims)]
        return clamp(cosine_similarity(vector, centroid))

    # combination

    def score_breakdown(self, candidate: Candidate, candidates: list[Candidate] | None = None) -> dict[str, float]:
        candidates = candidates or [candidate]
        content = candidate.content or ""
        if len(content) < self.min_content_length:
            log_event(
                self._logger,
                logging.INFO,
                "candidate_too_short",
                source=candidate.source,
                length=len(content),
            )
            return {"heuristic": 0.0, "dynamic": 0.0, "prototype": 0.0, "centroid": 0.0, "final": 0.0}
        try:
            parts = {
                "heuristic": self.heuristic_score(candidate),
                "dynamic": self.dynamic_score(candidate),
                "prototype": self.prototype_score(candidate),
                "centroid": self.centroid_score(candidate, candidates),
            }
        except Exception as exc:  # noqa: BLE001
            raise ScoringError(f"{candidate.source}: {exc}") from exc
        final = min(1.0, sum(self.weights[name] * value for name, value in parts.items()))
        parts["final"] = final
        log_event(
            self._logger,
            logging.DEBUG,
            "candidate_scored",
            source=candidate.source,
            length=len(content),
            **{name: round(value, 4) for name, value in parts.items()},
        )
        return parts

    def score_extraction(self, candidate: Candidate, candidates: list[Candidate] | None = None) -> float:
        return self.score_breakdown(candidate, candidates)["final"]

    def rank(self, candidates: list[Candidate]) -> list[ScoredCandidate]:
        """Score every candidate; failures and zero scores are dropped. API candidates rank first."""
        scored: list[ScoredCandidate] = []
        for candidate in candidates:
            try:
                breakdown = self.score_breakdown(candidate, candidates)
            except ScoringError as exc:
                log_event(self._logger, logging.WARNING, "candidate_scoring_failed", source=candidate.source, error=str(exc))
                continue
            if breakdown["final"] <= 0:
                continue
            scored.append(ScoredCandidate(candidate, breakdown["final"], breakdown))
        scored.sort(key=lambda item: (item.candidate.source != STRATEGY_JSON_API, -item.score))
        return scored

    def select_best(self, candidates: list[Candidate]) -> ScoredCandidate | None:
        ranked = self.rank(candidates)
        return ranked[0] if ranked else None
