"""Ingestion and summarization workers.

Each role claims one document at a time with the conditional status flip in
``storage.claim_next_document``. A worker drains its queue whenever it is woken on
its channel and, on every poll interval, also fails claims that have gone stale.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .artifacts import ObjectStore, build_object_store, load_artifact_content, save_cleaned_artifact
from .cache import CacheService
from .config import Config, load_config
from .db import DBConn
from .errors import PersistenceError, SummarizationError, error_category
from .llm import LLMClient
from .models import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_INGESTED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    SUMMARY_TYPE_TLDR,
    Document,
)
from .notifier import (
    STAGE_COMPLETED,
    STAGE_ERROR,
    STAGE_FINALIZING,
    STAGE_INGESTING,
    STAGE_SUMMARIZING,
    Notifier,
)
from .pipelines.ingest import Extractor
from .pipelines.summarize import Summarizer
from .pubsub import (
    CHANNEL_INGESTED,
    CHANNEL_NEW_DOCUMENT,
    Broker,
    LocalBroker,
    PollingSubscriber,
    build_broker,
)
from .scoring.embeddings import Embedder
from .scoring.prototypes import PrototypeCollector, SqlPrototypeIndex
from .storage import (
    claim_next_document,
    create_summary,
    create_transaction,
    fail_document,
    fail_stale_documents,
    finish_transaction,
    init_db,
    transition_document,
)
from .utils import configure_logging, log_event

ROLE_INGEST = "ingest"
ROLE_SUMMARIZE = "summarize"
ROLE_CHANNELS = {
    ROLE_INGEST: CHANNEL_NEW_DOCUMENT,
    ROLE_SUMMARIZE: CHANNEL_INGESTED,
}


@dataclass
class WorkerContext:
    config: Config
    connect: Callable[[], DBConn]
    broker: Broker
    notifier: Notifier
    cache: CacheService
    store: ObjectStore
    extractor: Extractor
    summarizer: Summarizer
    logger: logging.Logger


def _setup_logging() -> logging.Logger:
    return configure_logging("digestor.worker")


def build_context(config: Config | None = None, logger: logging.Logger | None = None) -> WorkerContext:
    config = config or load_config()
    logger = logger or _setup_logging()
    broker = build_broker()
    if isinstance(broker, LocalBroker):
        log_event(
            logger,
            logging.WARNING,
            "local_broker_in_use",
            poll_interval_seconds=config.workers.poll_interval_seconds,
        )
    notifier = Notifier(broker)
    cache = CacheService.from_config(config)
    embedder = Embedder.from_env(
        model=config.scoring.embedding_model,
        dimensions=config.scoring.embedding_dimensions,
        timeout=config.scoring.embedding_timeout_seconds,
        logger=logger,
    )
    collector = PrototypeCollector(
        SqlPrototypeIndex(init_db, config.scoring.prototype_scan_limit),
        embedder.embed,
        duplicate_threshold=config.scoring.prototype_duplicate_threshold,
        logger=logger,
    )
    extractor = Extractor(
        config,
        notifier=notifier,
        embed=embedder.embed,
        collector=collector,
        cache=cache,
        logger=logger,
    )
    summarizer = Summarizer(
        config.summarizer,
        LLMClient.from_config(config.summarizer, logger=logger),
        cache=cache,
        logger=logger,
    )
    return WorkerContext(
        config=config,
        connect=init_db,
        broker=broker,
        notifier=notifier,
        cache=cache,
        store=build_object_store(config.paths.artifact_dir),
        extractor=extractor,
        summarizer=summarizer,
        logger=logger,
    )


def process_next_ingestion(ctx: WorkerContext, worker_id: str) -> bool:
    """Claim and ingest one QUEUED document. Returns False when the queue was empty."""
    conn = ctx.connect()
    try:
        document = claim_next_document(conn, worker_id, STATUS_QUEUED)
        if document is None:
            return False
        log_event(ctx.logger, logging.INFO, "job_claimed", role=ROLE_INGEST, doc_id=document.id, worker=worker_id)
        try:
            _ingest(ctx, conn, document)
        except Exception as exc:  # noqa: BLE001
            _fail_job(ctx, conn, document, exc)
        return True
    finally:
        conn.close()


def _ingest(ctx: WorkerContext, conn: DBConn, document: Document) -> None:
    candidate = ctx.extractor.extract(document.id, document.url, document.source)
    ctx.notifier.notify_progress(document.id, STAGE_INGESTING)
    artifact = save_cleaned_artifact(conn, ctx.store, document.id, candidate.content, logger=ctx.logger)
    ctx.cache.cache_extracted_content(document.id, candidate.content)
    if not transition_document(conn, document.id, STATUS_PROCESSING, STATUS_INGESTED):
        raise PersistenceError(f"document {document.id} is no longer PROCESSING")
    ctx.notifier.notify_ingested(document.id)
    log_event(
        ctx.logger,
        logging.INFO,
        "document_ingested",
        doc_id=document.id,
        artifact_id=artifact.id,
        strategy=candidate.source,
        chars=len(candidate.content),
    )


def process_next_summarization(ctx: WorkerContext, worker_id: str) -> bool:
    """Claim and summarize one INGESTED document. Returns False when the queue was empty."""
    conn = ctx.connect()
    try:
        document = claim_next_document(conn, worker_id, STATUS_INGESTED)
        if document is None:
            return False
        log_event(
            ctx.logger, logging.INFO, "job_claimed", role=ROLE_SUMMARIZE, doc_id=document.id, worker=worker_id
        )
        tx_id: str | None = None
        try:
            tx_id = create_transaction(conn, document.id).id
            _summarize(ctx, conn, document, tx_id)
        except Exception as exc:  # noqa: BLE001
            _fail_job(ctx, conn, document, exc, tx_id)
        return True
    finally:
        conn.close()


def _summarize(ctx: WorkerContext, conn: DBConn, document: Document, tx_id: str) -> None:
    ctx.notifier.notify_progress(document.id, STAGE_SUMMARIZING)
    if not document.artifact_id:
        raise PersistenceError(f"document {document.id} has no artifact")
    artifact, stored = load_artifact_content(conn, ctx.store, document.artifact_id)
    cached = ctx.cache.get_cached_extracted_content(document.id)
    content = cached if isinstance(cached, str) and cached else stored

    result = ctx.summarizer.summarize(content)
    if result is None:
        raise SummarizationError("summarizer produced no result")

    ctx.notifier.notify_progress(document.id, STAGE_FINALIZING)
    summary = create_summary(conn, SUMMARY_TYPE_TLDR, result, artifact.uri, tx_id)
    finish_transaction(conn, tx_id, STATUS_COMPLETED)
    if not transition_document(conn, document.id, STATUS_PROCESSING, STATUS_COMPLETED):
        raise PersistenceError(f"document {document.id} is no longer PROCESSING")
    ctx.cache.cache_summary(
        document.id,
        {"summary": summary.content, "type": summary.type, "createdAt": summary.created_at},
    )
    ctx.notifier.notify_progress(document.id, STAGE_COMPLETED, summary=summary.content)
    log_event(
        ctx.logger,
        logging.INFO,
        "document_completed",
        doc_id=document.id,
        summary_id=summary.id,
        content_type=summary.content.get("content_type"),
    )


def _fail_job(
    ctx: WorkerContext,
    conn: DBConn,
    document: Document,
    exc: Exception,
    tx_id: str | None = None,
) -> None:
    category = error_category(exc)
    log_event(
        ctx.logger,
        logging.ERROR,
        "job_failed",
        doc_id=document.id,
        category=category,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    try:
        if tx_id:
            finish_transaction(conn, tx_id, STATUS_ERROR, category)
        fail_document(conn, document.id, category)
    except Exception as record_exc:  # noqa: BLE001
        log_event(
            ctx.logger,
            logging.ERROR,
            "job_failure_not_recorded",
            doc_id=document.id,
            error=str(record_exc),
        )
    ctx.cache.invalidate_document(document.id, url=document.normalized_url, owner_id=document.owner_id)
    ctx.notifier.notify_progress(document.id, STAGE_ERROR, error=category)


def sweep_stale_claims(ctx: WorkerContext) -> list[str]:
    """Move documents stuck in PROCESSING past the lock timeout to ERROR."""
    conn = ctx.connect()
    try:
        stale = fail_stale_documents(conn, ctx.config.workers.lock_timeout_seconds)
    finally:
        conn.close()
    for doc_id in stale:
        log_event(ctx.logger, logging.WARNING, "stale_claim_failed", doc_id=doc_id)
        ctx.notifier.notify_progress(doc_id, STAGE_ERROR, error="stale_claim")
    return stale


def run_once(ctx: WorkerContext, role: str, worker_id: str) -> bool:
    if role == ROLE_INGEST:
        return process_next_ingestion(ctx, worker_id)
    if role == ROLE_SUMMARIZE:
        return process_next_summarization(ctx, worker_id)
    raise ValueError(f"unknown worker role {role}")


def drain(ctx: WorkerContext, role: str, worker_id: str) -> int:
    processed = 0
    while run_once(ctx, role, worker_id):
        processed += 1
    return processed


def run_loop(
    ctx: WorkerContext,
    role: str,
    worker_id: str,
    stop: threading.Event | None = None,
) -> None:
    if role not in ROLE_CHANNELS:
        raise ValueError(f"unknown worker role {role}")
    stop = stop or threading.Event()
    subscriber = PollingSubscriber(ctx.broker, ROLE_CHANNELS[role], ctx.config.workers.poll_interval_seconds)
    log_event(ctx.logger, logging.INFO, "worker_started", role=role, worker=worker_id)
    try:
        _sweep_in_loop(ctx, role)
        while not stop.is_set():
            try:
                processed = drain(ctx, role, worker_id)
            except Exception as exc:  # noqa: BLE001
                log_event(ctx.logger, logging.ERROR, "worker_drain_failed", role=role, error=str(exc))
                processed = 0
            if processed:
                log_event(ctx.logger, logging.INFO, "queue_drained", role=role, processed=processed)
            if stop.is_set():
                break
            if not subscriber.wait():
                _sweep_in_loop(ctx, role)
    finally:
        subscriber.close()
        log_event(ctx.logger, logging.INFO, "worker_stopped", role=role, worker=worker_id)


def _sweep_in_loop(ctx: WorkerContext, role: str) -> None:
    try:
        sweep_stale_claims(ctx)
    except Exception as exc:  # noqa: BLE001
        log_event(ctx.logger, logging.ERROR, "worker_sweep_failed", role=role, error=str(exc))
