from __future__ import annotations

import logging
from typing import Any

from .cache import CacheService
from .config import Config
from .models import SOURCE_TWITCH, SOURCE_WEBPAGE, SOURCE_YOUTUBE, STATUS_ERROR, Document
from .notifier import STAGE_QUEUED, Notifier
from .storage import create_document, find_recent_document, get_document
from .utils import host_of, log_event, normalize_url, utc_now_iso_offset

_YOUTUBE_HOSTS = ("youtube.com", "youtu.be")
_TWITCH_HOSTS = ("twitch.tv",)


def detect_source(url: str) -> str:
    host = host_of(url)
    if _matches_host(host, _YOUTUBE_HOSTS):
        return SOURCE_YOUTUBE
    if _matches_host(host, _TWITCH_HOSTS):
        return SOURCE_TWITCH
    return SOURCE_WEBPAGE


def _matches_host(host: str, domains: tuple[str, ...]) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def document_cache_entry(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "status": document.status,
        "source": document.source,
        "created_at": document.created_at,
    }


def submit_url(
    conn: Any,
    config: Config,
    cache: CacheService,
    notifier: Notifier,
    url: str,
    owner_id: str | None = None,
    logger: logging.Logger | None = None,
) -> tuple[Document, bool]:
    """Queue ``url`` for summarization or reuse a recent document for it.

    Returns the document and whether it already existed.
    """
    logger = logger or logging.getLogger("digestor.submissions")
    normalized = normalize_url(url)

    cached = cache.get_cached_url_document(normalized)
    if isinstance(cached, dict) and cached.get("id"):
        document = get_document(conn, str(cached["id"]))
        if document is not None and document.status != STATUS_ERROR:
            log_event(logger, logging.INFO, "submission_reused", doc_id=document.id, via="cache")
            return document, True

    since = utc_now_iso_offset(seconds=-config.submissions.reuse_window_seconds)
    document = find_recent_document(conn, normalized, since)
    if document is not None:
        cache.cache_url_document(normalized, document_cache_entry(document))
        log_event(logger, logging.INFO, "submission_reused", doc_id=document.id, via="db")
        return document, True

    document = create_document(conn, url, normalized, detect_source(normalized), owner_id)
    cache.cache_url_document(normalized, document_cache_entry(document))
    cache.cache_document(document.id, document_cache_entry(document))
    notifier.notify_new_document(document.id)
    notifier.notify_progress(document.id, STAGE_QUEUED)
    log_event(
        logger,
        logging.INFO,
        "submission_queued",
        doc_id=document.id,
        source=document.source,
        url=normalized,
    )
    return document, False
