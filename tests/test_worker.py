import dataclasses
import logging
import sqlite3
import threading
import time

import pytest

from digestor.artifacts import LocalObjectStore
from digestor.errors import FetchError, UpstreamError
from digestor.models import STATUS_COMPLETED, STATUS_ERROR, STATUS_INGESTED, STATUS_QUEUED
from digestor.notifier import Notifier
from digestor.pipelines.ingest import Extractor
from digestor.pipelines.summarize import MERGE_PROMPT, Summarizer
from digestor.pubsub import CHANNEL_NEW_DOCUMENT, CHANNEL_PROGRESS, LocalBroker
from digestor.scoring.embeddings import hashed_embedding
from digestor.storage import (
    claim_next_document,
    get_document,
    get_latest_summary_for_document,
    init_db,
    list_transactions,
)
from digestor.submissions import submit_url
from digestor.utils import utc_now_iso_offset
from digestor.worker import (
    ROLE_INGEST,
    ROLE_SUMMARIZE,
    WorkerContext,
    drain,
    process_next_ingestion,
    process_next_summarization,
    run_loop,
    run_once,
    sweep_stale_claims,
)

PARAGRAPHS = [
    "The library council voted to extend weekend opening hours starting next month.",
    "Staff said the change follows a survey in which most residents asked for Sunday access.",
    "Funding comes from a reallocation of the events budget, according to the treasurer.",
]
PAGE = (
    "<html><head><title>Library Extends Weekend Hours</title></head><body><article>"
    "<h1>Library Extends Weekend Hours</h1>"
    + "".join(f"<p>{paragraph}</p>" for paragraph in PARAGRAPHS * 3)
    + "</article></body></html>"
)


class FakeLLM:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def complete_json(self, system, user, temperature):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if system == MERGE_PROMPT:
            return {"tldr": "merged", "bullets": [], "content_type": "article"}
        return {"tldr": "The library opens on Sundays.", "bullets": ["Sunday hours"], "content_type": "article"}


class NoVideo:
    def extract(self, url):
        return None


class NoApi:
    def fetch(self, url):
        return None


def _context(config, db_path, tmp_path, cache, *, fetch=None, llm=None):
    broker = LocalBroker()
    notifier = Notifier(broker)
    extractor = Extractor(
        config,
        notifier=notifier,
        embed=lambda text: hashed_embedding(text, 64),
        cache=cache,
        fetch=fetch or (lambda url: PAGE),
        site_api=NoApi(),
        youtube=NoVideo(),
        twitch=NoVideo(),
    )
    return WorkerContext(
        config=config,
        connect=lambda: init_db(db_path),
        broker=broker,
        notifier=notifier,
        cache=cache,
        store=LocalObjectStore(str(tmp_path / "artifacts")),
        extractor=extractor,
        summarizer=Summarizer(config.summarizer, llm or FakeLLM(), cache),
        logger=logging.getLogger("test.worker"),
    )


def _record_progress(ctx):
    events = []
    ctx.broker.subscribe(CHANNEL_PROGRESS, events.append)
    return events


def _submit(ctx, conn, url="https://library.example/news/weekend-hours"):
    document, _ = submit_url(conn, ctx.config, ctx.cache, ctx.notifier, url)
    return document


def test_document_flows_from_queue_to_summary(config, db_path, conn, tmp_path, cache):
    ctx = _context(config, db_path, tmp_path, cache)
    events = _record_progress(ctx)
    document = _submit(ctx, conn)

    assert process_next_ingestion(ctx, "ingest-1") is True
    ingested = get_document(conn, document.id)
    assert ingested.status == STATUS_INGESTED
    assert ingested.artifact_id is not None
    assert ingested.locked_by is None

    assert process_next_summarization(ctx, "summarize-1") is True
    completed = get_document(conn, document.id)
    assert completed.status == STATUS_COMPLETED

    stages = [event["stage"] for event in events if event["id"] == document.id]
    assert stages == [
        "QUEUED",
        "FETCHING_HTML",
        "CLEANING",
        "INGESTING",
        "SUMMARIZING",
        "FINALIZING",
        "COMPLETED",
    ]
    assert events[-1]["summary"]["content_type"] == "article"

    summary = get_latest_summary_for_document(conn, document.id)
    assert summary.content["tldr"] == "The library opens on Sundays."
    assert [tx.status for tx in list_transactions(conn, document.id)] == [STATUS_COMPLETED]
    assert cache.get_cached_summary(document.id)["summary"] == summary.content

    assert process_next_ingestion(ctx, "ingest-1") is False
    assert process_next_summarization(ctx, "summarize-1") is False


def test_fetch_failure_marks_error_and_clears_cache(config, db_path, conn, tmp_path, cache):
    def fetch(url):
        raise FetchError("http_error 500")

    ctx = _context(config, db_path, tmp_path, cache, fetch=fetch)
    events = _record_progress(ctx)
    document = _submit(ctx, conn)

    assert process_next_ingestion(ctx, "ingest-1") is True
    failed = get_document(conn, document.id)
    assert failed.status == STATUS_ERROR
    assert failed.error == "fetch_failed"
    assert events[-1] == {"id": document.id, "stage": "ERROR", "error": "fetch_failed"}
    assert cache.get_cached_url_document(document.normalized_url) is None

    retry, existing = submit_url(conn, ctx.config, ctx.cache, ctx.notifier, document.url)
    assert existing is False
    assert retry.id != document.id


def test_summarization_failure_records_transaction(config, db_path, conn, tmp_path, cache):
    ctx = _context(config, db_path, tmp_path, cache, llm=FakeLLM(error=UpstreamError("bad gateway", 502)))
    document = _submit(ctx, conn)
    process_next_ingestion(ctx, "ingest-1")
    process_next_summarization(ctx, "summarize-1")

    failed = get_document(conn, document.id)
    assert failed.status == STATUS_ERROR
    assert failed.error == "summarization_failed"
    transactions = list_transactions(conn, document.id)
    assert [(tx.status, tx.error) for tx in transactions] == [(STATUS_ERROR, "summarization_failed")]
    assert get_latest_summary_for_document(conn, document.id) is None


def test_drain_and_run_once(config, db_path, conn, tmp_path, cache):
    ctx = _context(config, db_path, tmp_path, cache)
    _submit(ctx, conn, "https://library.example/a")
    _submit(ctx, conn, "https://library.example/b")
    assert drain(ctx, ROLE_INGEST, "ingest-1") == 2
    assert run_once(ctx, ROLE_SUMMARIZE, "summarize-1") is True
    with pytest.raises(ValueError):
        run_once(ctx, "publish", "w")


def test_sweep_fails_stale_claims(config, db_path, conn, tmp_path, cache):
    ctx = _context(config, db_path, tmp_path, cache)
    events = _record_progress(ctx)
    document = _submit(ctx, conn)
    claim_next_document(conn, "crashed-worker", STATUS_QUEUED)
    conn.execute(
        "UPDATE documents SET claimed_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-(config.workers.lock_timeout_seconds + 60)), document.id),
    )

    assert sweep_stale_claims(ctx) == [document.id]
    assert get_document(conn, document.id).status == STATUS_ERROR
    assert events[-1] == {"id": document.id, "stage": "ERROR", "error": "stale_claim"}


def test_run_loop_wakes_on_new_documents(config, db_path, conn, tmp_path, cache):
    cfg = dataclasses.replace(config, workers=dataclasses.replace(config.workers, poll_interval_seconds=0.05))
    ctx = _context(cfg, db_path, tmp_path, cache)
    stop = threading.Event()
    thread = threading.Thread(target=run_loop, args=(ctx, ROLE_INGEST, "ingest-loop", stop))
    thread.start()
    try:
        document = _submit(ctx, conn)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and get_document(conn, document.id).status != STATUS_INGESTED:
            time.sleep(0.02)
        assert get_document(conn, document.id).status == STATUS_INGESTED
    finally:
        stop.set()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert ctx.broker.subscriber_count(CHANNEL_NEW_DOCUMENT) == 0


def test_run_loop_rejects_unknown_role(config, db_path, tmp_path, cache):
    ctx = _context(config, db_path, tmp_path, cache)
    with pytest.raises(ValueError):
        run_loop(ctx, "publish", "w")


def test_run_loop_survives_database_errors(config, db_path, conn, tmp_path, cache):
    cfg = dataclasses.replace(config, workers=dataclasses.replace(config.workers, poll_interval_seconds=0.05))
    ctx = _context(cfg, db_path, tmp_path, cache)
    failures = {"left": 3}

    def flaky_connect():
        if failures["left"]:
            failures["left"] -= 1
            raise sqlite3.OperationalError("database is locked")
        return init_db(db_path)

    ctx.connect = flaky_connect
    document = _submit(ctx, conn)
    stop = threading.Event()
    thread = threading.Thread(target=run_loop, args=(ctx, ROLE_INGEST, "ingest-loop", stop))
    thread.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and get_document(conn, document.id).status != STATUS_INGESTED:
            time.sleep(0.02)
        assert get_document(conn, document.id).status == STATUS_INGESTED
    finally:
        stop.set()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert failures["left"] == 0
