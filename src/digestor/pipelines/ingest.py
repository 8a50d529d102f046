from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from ..cache import CacheService
from ..config import Config
from ..errors import ExtractionError, FetchError
from ..extraction.dom_scorer import extract_heuristic
from ..extraction.main_content import extract_readable
from ..extraction.site_api import SiteApiFetcher, handles_url
from ..extraction.standardize import MODE_FLAT_WITH_ROLES, standardize_result
from ..extraction.structured_data import structured_items
from ..models import (
    SOURCE_TWITCH,
    SOURCE_YOUTUBE,
    STRATEGY_HTML_PARSING,
    STRATEGY_JSON_API,
    STRATEGY_READABILITY,
    STRATEGY_STRUCTURED_DATA,
    Candidate,
)
from ..notifier import STAGE_CLEANING, STAGE_FETCHING_HTML, Notifier
from ..scoring.prototypes import PrototypeCollector
from ..scoring.scorer import Scorer
from ..sources.twitch import TwitchSource
from ..sources.youtube import YouTubeSource
from ..utils import log_event
from .content_fetch import fetch_html

Strategy = Callable[[], Candidate | None]


class Extractor:
    """Turns a submitted URL into the single best content candidate."""

    def __init__(
        self,
        config: Config,
        *,
        notifier: Notifier,
        embed: Callable[[str], list[float] | None],
        collector: PrototypeCollector | None = None,
        cache: CacheService | None = None,
        logger: logging.Logger | None = None,
        fetch: Callable[[str], str] | None = None,
        site_api: SiteApiFetcher | None = None,
        youtube: YouTubeSource | None = None,
        twitch: TwitchSource | None = None,
    ) -> None:
        self.config = config
        self.notifier = notifier
        self.cache = cache
        self.collector = collector
        self._embed = embed
        self._logger = logger or logging.getLogger("digestor.ingest")
        self._fetch = fetch or (lambda url: fetch_html(url, config.fetch, self._logger))
        self.site_api = site_api or SiteApiFetcher(config.extraction, cache=cache, logger=self._logger)
        timeout = config.extraction.api_timeout_seconds
        self.youtube = youtube or YouTubeSource(cache=cache, logger=self._logger, timeout=timeout)
        self.twitch = twitch or TwitchSource(cache=cache, logger=self._logger, timeout=timeout)

    def extract(self, doc_id: str, url: str, source: str) -> Candidate:
        self.notifier.notify_progress(doc_id, STAGE_FETCHING_HTML)
        candidate: Candidate | None = None
        if source == SOURCE_YOUTUBE:
            candidate = self.youtube.extract(url)
        elif source == SOURCE_TWITCH:
            candidate = self.twitch.extract(url)
        if candidate is not None:
            self.notifier.notify_progress(doc_id, STAGE_CLEANING)
            return candidate
        return self.extract_web(doc_id, url)

    def extract_web(self, doc_id: str, url: str) -> Candidate:
        if self.cache is not None:
            cached = self.cache.get_cached_web_content(url)
            if cached and cached.get("content"):
                log_event(self._logger, logging.INFO, "web_content_cache_hit", doc_id=doc_id)
                self.notifier.notify_progress(doc_id, STAGE_CLEANING)
                return Candidate(cached.get("source") or "", dict(cached.get("metadata") or {}), cached["content"])

        html: str | None = None
        try:
            html = self._fetch(url)
        except FetchError as exc:
            if not handles_url(url):
                raise
            log_event(self._logger, logging.WARNING, "fetch_failed_api_only", doc_id=doc_id, error=str(exc))

        candidates = self.run_strategies(url, html)
        if not candidates:
            raise ExtractionError("all extraction strategies failed")

        self.notifier.notify_progress(doc_id, STAGE_CLEANING)
        scorer = Scorer(self.config.scoring, self._embed, self.collector, self._logger)
        best = scorer.select_best(candidates)
        if best is None:
            raise ExtractionError("no candidate passed scoring")
        log_event(
            self._logger,
            logging.INFO,
            "candidate_selected",
            doc_id=doc_id,
            source=best.candidate.source,
            score=round(best.score, 4),
            candidates=len(candidates),
        )
        self._save_prototype(best.candidate)
        if self.cache is not None:
            self.cache.cache_web_content(url, best.candidate.to_dict())
        return best.candidate

    def run_strategies(self, url: str, html: str | None) -> list[Candidate]:
        """Run every applicable strategy concurrently; failures and stragglers contribute nothing."""
        strategies: dict[str, Strategy] = {STRATEGY_JSON_API: lambda: self._api_candidate(url)}
        if html:
            strategies[STRATEGY_STRUCTURED_DATA] = lambda: self._structured_candidate(url, html)
            strategies[STRATEGY_READABILITY] = lambda: self._readability_candidate(url, html)
            strategies[STRATEGY_HTML_PARSING] = lambda: self._heuristic_candidate(url, html)

        pool = ThreadPoolExecutor(max_workers=len(strategies), thread_name_prefix="extract")
        futures: dict[Future, str] = {pool.submit(strategy): name for name, strategy in strategies.items()}
        done, pending = wait(futures, timeout=self.config.extraction.timeout_seconds)
        pool.shutdown(wait=False, cancel_futures=True)

        for future in pending:
            log_event(self._logger, logging.WARNING, "strategy_timeout", strategy=futures[future], url=url)
        candidates: list[Candidate] = []
        for future in futures:
            if future not in done:
                continue
            name = futures[future]
            try:
                candidate = future.result()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.WARNING,
                    "strategy_failed",
                    strategy=name,
                    url=url,
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue
            if candidate is not None and candidate.content:
                candidates.append(candidate)
        log_event(
            self._logger,
            logging.INFO,
            "strategies_done",
            url=url,
            succeeded=",".join(candidate.source for candidate in candidates) or "none",
        )
        return candidates

    def _standardize(self, strategy: str, result: Any, url: str) -> Candidate | None:
        standardized = standardize_result(result, url, strategy, MODE_FLAT_WITH_ROLES)
        if not standardized or not standardized.get("content"):
            return None
        return Candidate.from_standardized(strategy, standardized)

    def _api_candidate(self, url: str) -> Candidate | None:
        result = self.site_api.fetch(url)
        return self._standardize(STRATEGY_JSON_API, result, url) if result else None

    def _structured_candidate(self, url: str, html: str) -> Candidate | None:
        items = structured_items(html, self.config.extraction.structured_min_length, self._logger)
        return self._standardize(STRATEGY_STRUCTURED_DATA, items, url) if items else None

    def _readability_candidate(self, url: str, html: str) -> Candidate | None:
        cfg = self.config.extraction
        article = extract_readable(
            html,
            url,
            junk_phrases=cfg.junk_phrases,
            retry_length=cfg.readability_retry_length,
            min_length=cfg.readability_min_length,
            logger=self._logger,
        )
        return self._standardize(STRATEGY_READABILITY, [article], url) if article else None

    def _heuristic_candidate(self, url: str, html: str) -> Candidate | None:
        cfg = self.config.extraction
        item = extract_heuristic(
            html,
            url,
            max_fragments=cfg.max_fragments,
            overrides=cfg.heuristic_overrides,
            logger=self._logger,
        )
        return self._standardize(STRATEGY_HTML_PARSING, item, url) if item else None

    def _save_prototype(self, candidate: Candidate) -> None:
        if self.collector is None or not self.config.scoring.save_prototypes:
            return
        try:
            self.collector.save(candidate.content)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "prototype_save_failed", error=str(exc))
