import dataclasses
import threading

import pytest

from digestor.errors import ExtractionError, FetchError
from digestor.models import (
    SOURCE_WEBPAGE,
    SOURCE_YOUTUBE,
    STRATEGY_HTML_PARSING,
    STRATEGY_JSON_API,
    Candidate,
)
from digestor.notifier import STAGE_CLEANING, STAGE_FETCHING_HTML, Notifier
from digestor.pipelines.ingest import Extractor
from digestor.pubsub import CHANNEL_PROGRESS, LocalBroker
from digestor.scoring.embeddings import hashed_embedding
from digestor.scoring.prototypes import InMemoryPrototypeIndex, PrototypeCollector

SENTENCES = [
    "The observatory recorded an unusual burst of radio signals late on Friday night.",
    "Astronomers compared the pattern with archived data from previous surveys of the region.",
    "Several teams have requested follow-up time on larger telescopes to confirm the source.",
    "If confirmed, the event would be the brightest burst detected in the past decade.",
]
PAGE = (
    "<html><head><title>Radio Burst Puzzles Astronomers</title></head><body>"
    "<nav><a href='/'>Home</a></nav><article><h1>Radio Burst Puzzles Astronomers</h1>"
    + "".join(f"<p>{sentence}</p>" for sentence in SENTENCES * 3)
    + "</article></body></html>"
)


class StubSiteApi:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        return self.result


class StubVideoSource:
    def __init__(self, candidate=None):
        self.candidate = candidate
        self.calls = []

    def extract(self, url):
        self.calls.append(url)
        return self.candidate


def _embed(text):
    return hashed_embedding(text, 64)


def _extractor(config, *, fetch=None, site_api=None, youtube=None, cache=None, collector=None):
    broker = LocalBroker()
    stages = []
    broker.subscribe(CHANNEL_PROGRESS, lambda payload: stages.append(payload["stage"]))
    extractor = Extractor(
        config,
        notifier=Notifier(broker),
        embed=_embed,
        collector=collector,
        cache=cache,
        fetch=fetch or (lambda url: PAGE),
        site_api=site_api or StubSiteApi(),
        youtube=youtube or StubVideoSource(),
        twitch=StubVideoSource(),
    )
    return extractor, stages


def test_web_page_extraction_end_to_end(config):
    collector = PrototypeCollector(InMemoryPrototypeIndex(), _embed)
    extractor, stages = _extractor(config, collector=collector)
    candidate = extractor.extract("doc-1", "https://science.example/radio-burst", SOURCE_WEBPAGE)
    assert SENTENCES[0] in candidate.content
    assert stages == [STAGE_FETCHING_HTML, STAGE_CLEANING]
    assert len(collector.index) == 1


def test_graceful_degradation_when_strategies_fail(config):
    extractor, _ = _extractor(config)

    def explode(*args):
        raise RuntimeError("strategy crashed")

    body = "Heuristic body sentence with enough words to matter. " * 80
    extractor._api_candidate = explode
    extractor._structured_candidate = explode
    extractor._readability_candidate = explode
    extractor._heuristic_candidate = lambda url, html: Candidate(
        STRATEGY_HTML_PARSING, {"title": "Heuristic Result Title Here", "url": url}, body
    )
    candidate = extractor.extract("doc-1", "https://example.com/a", SOURCE_WEBPAGE)
    assert candidate.source == STRATEGY_HTML_PARSING
    assert len(candidate.content) >= 4000


def test_all_strategies_failing_raises(config):
    extractor, _ = _extractor(config, fetch=lambda url: "<html><body><p>x</p></body></html>")
    with pytest.raises(ExtractionError):
        extractor.extract("doc-1", "https://example.com/a", SOURCE_WEBPAGE)


def test_slow_strategies_are_abandoned_at_deadline(config):
    cfg = dataclasses.replace(config, extraction=dataclasses.replace(config.extraction, timeout_seconds=1))
    extractor, _ = _extractor(cfg)
    release = threading.Event()

    def slow(url, html):
        release.wait(5)
        return None

    extractor._readability_candidate = slow
    try:
        candidates = extractor.run_strategies("https://example.com/a", PAGE)
    finally:
        release.set()
    assert STRATEGY_HTML_PARSING in {candidate.source for candidate in candidates}


def test_fetch_error_propagates_for_plain_sites(config):
    def fetch(url):
        raise FetchError("http_error 503")

    extractor, _ = _extractor(config, fetch=fetch)
    with pytest.raises(FetchError):
        extractor.extract("doc-1", "https://example.com/a", SOURCE_WEBPAGE)


def test_api_hosts_survive_fetch_errors(config):
    def fetch(url):
        raise FetchError("http_error 403")

    api = StubSiteApi(
        {
            "title": "Ask Python",
            "content": "What logging setup do you use in production services these days?",
            "comments": ["stdlib logging with JSON output"],
        }
    )
    extractor, _ = _extractor(config, fetch=fetch, site_api=api)
    candidate = extractor.extract("doc-1", "https://www.reddit.com/r/python/comments/x/", SOURCE_WEBPAGE)
    assert candidate.source == STRATEGY_JSON_API
    assert "[COMMENT] stdlib logging with JSON output" in candidate.content


def test_video_sources_short_circuit(config):
    video = Candidate("youtube", {"title": "Video"}, "[TITLE] Video [TRANSCRIPT] [0.00-0.05] hello")
    youtube = StubVideoSource(video)

    def fetch(url):
        raise AssertionError("web fetch should not run")

    extractor, stages = _extractor(config, fetch=fetch, youtube=youtube)
    assert extractor.extract("doc-1", "https://youtu.be/dQw4w9WgXcQ", SOURCE_YOUTUBE) is video
    assert stages == [STAGE_FETCHING_HTML, STAGE_CLEANING]


def test_video_without_candidate_falls_back_to_web(config):
    youtube = StubVideoSource(None)
    extractor, _ = _extractor(config, youtube=youtube)
    candidate = extractor.extract("doc-1", "https://www.youtube.com/watch?v=dQw4w9WgXcQ", SOURCE_YOUTUBE)
    assert youtube.calls
    assert SENTENCES[1] in candidate.content


def test_web_content_cache_is_reused(config, cache):
    extractor, _ = _extractor(config, cache=cache)
    first = extractor.extract("doc-1", "https://science.example/radio-burst", SOURCE_WEBPAGE)

    def fetch(url):
        raise AssertionError("cached content should be used")

    second_extractor, _ = _extractor(config, cache=cache, fetch=fetch)
    second = second_extractor.extract("doc-2", "https://science.example/radio-burst", SOURCE_WEBPAGE)
    assert second.content == first.content
    assert second.source == first.source
