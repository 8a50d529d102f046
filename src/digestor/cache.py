"""Best-effort Redis cache for documents, summaries and fetched source data.

Every read and write swallows Redis failures after logging them: a cache outage
degrades to the uncached path and never fails a pipeline step.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

import redis

from .config import Config
from .models import SOURCE_TWITCH, SOURCE_YOUTUBE
from .utils import json_dumps, log_event, parse_iso, sha256_hex

HOUR = 3600

URL_DOC_BASE_TTL = {
    SOURCE_YOUTUBE: 24 * HOUR,
    SOURCE_TWITCH: 2 * HOUR,
}
URL_DOC_DEFAULT_TTL = 6 * HOUR
URL_DOC_MAX_TTL = 7 * 24 * HOUR


def calculate_url_ttl(source: str, created_at: str | None = None, now: datetime | None = None) -> int:
    ttl = URL_DOC_BASE_TTL.get(source, URL_DOC_DEFAULT_TTL)
    if not created_at:
        return ttl
    now = now or datetime.now(tz=timezone.utc)
    try:
        age_hours = (now - parse_iso(created_at)).total_seconds() / HOUR
    except ValueError:
        return ttl
    if age_hours > 24:
        return min(ttl * 2, URL_DOC_MAX_TTL)
    if age_hours > 6:
        return int(ttl * 1.5)
    return ttl


class CacheService:
    def __init__(
        self,
        client: Any | None,
        ttl_seconds: dict[str, int],
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._ttl = dict(ttl_seconds)
        self._logger = logger or logging.getLogger("digestor.cache")

    @classmethod
    def from_config(cls, config: Config, url: str | None = None) -> "CacheService":
        url = url or os.environ.get("DG_REDIS_URL", "").strip()
        client = None
        if config.cache.enabled and url:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=config.cache.socket_timeout_seconds,
                socket_connect_timeout=config.cache.socket_timeout_seconds,
            )
        return cls(client, config.cache.ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @staticmethod
    def generate_key(namespace: str, identifier: str, owner_id: str | None = None) -> str:
        key = f"{namespace}:{identifier}"
        if owner_id:
            key += f":user:{owner_id}"
        return key

    @staticmethod
    def generate_content_hash(content: str, model: str, temperature: float, chunk_size: int) -> str:
        return sha256_hex(f"{content}:{model}:{temperature}:{chunk_size}")

    def cache_document(self, doc_id: str, document: dict[str, Any]) -> bool:
        return self._set("document", doc_id, document)

    def get_cached_document(self, doc_id: str) -> Any | None:
        return self._get("document", doc_id)

    def cache_summary(self, doc_id: str, summary: dict[str, Any], owner_id: str | None = None) -> bool:
        return self._set("summary", doc_id, summary, owner_id=owner_id)

    def get_cached_summary(self, doc_id: str, owner_id: str | None = None) -> Any | None:
        return self._get("summary", doc_id, owner_id=owner_id)

    def cache_ai_summary(self, content_hash: str, summary: dict[str, Any]) -> bool:
        return self._set("ai_summary", content_hash, summary)

    def get_cached_ai_summary(self, content_hash: str) -> Any | None:
        return self._get("ai_summary", content_hash)

    def cache_ai_chunk(self, chunk_hash: str, summary: dict[str, Any]) -> bool:
        return self._set("ai_chunk", chunk_hash, summary)

    def get_cached_ai_chunk(self, chunk_hash: str) -> Any | None:
        return self._get("ai_chunk", chunk_hash)

    def cache_youtube_data(self, video_id: str, data: dict[str, Any]) -> bool:
        return self._set("youtube", video_id, data)

    def get_cached_youtube_data(self, video_id: str) -> Any | None:
        return self._get("youtube", video_id)

    def cache_twitch_data(self, identifier: str, data: dict[str, Any]) -> bool:
        return self._set("twitch", identifier, data)

    def get_cached_twitch_data(self, identifier: str) -> Any | None:
        return self._get("twitch", identifier)

    def cache_reddit_data(self, url: str, data: Any) -> bool:
        return self._set("reddit", sha256_hex(url), data)

    def get_cached_reddit_data(self, url: str) -> Any | None:
        return self._get("reddit", sha256_hex(url))

    def cache_web_content(self, url: str, candidate: dict[str, Any]) -> bool:
        return self._set("web_content", sha256_hex(url), candidate)

    def get_cached_web_content(self, url: str) -> Any | None:
        return self._get("web_content", sha256_hex(url))

    def cache_extracted_content(self, doc_id: str, content: str) -> bool:
        return self._set("extracted", doc_id, content)

    def get_cached_extracted_content(self, doc_id: str) -> Any | None:
        return self._get("extracted", doc_id)

    def cache_url_document(self, url: str, document: dict[str, Any]) -> bool:
        ttl = calculate_url_ttl(str(document.get("source") or ""), document.get("created_at"))
        return self._set("url_doc", sha256_hex(url), document, ttl=ttl)

    def get_cached_url_document(self, url: str) -> Any | None:
        return self._get("url_doc", sha256_hex(url))

    def invalidate_document(self, doc_id: str, url: str | None = None, owner_id: str | None = None) -> None:
        keys = [
            self.generate_key("document", doc_id),
            self.generate_key("summary", doc_id),
            self.generate_key("extracted", doc_id),
        ]
        if owner_id:
            keys.append(self.generate_key("summary", doc_id, owner_id))
        if url:
            keys.append(self.generate_key("url_doc", sha256_hex(url)))
            keys.append(self.generate_key("web_content", sha256_hex(url)))
        if self._client is None:
            return
        try:
            self._client.delete(*keys)
        except redis.RedisError as exc:
            log_event(self._logger, logging.WARNING, "cache_unavailable", op="delete", error=str(exc))

    def _get(self, namespace: str, identifier: str, owner_id: str | None = None) -> Any | None:
        if self._client is None:
            return None
        key = self.generate_key(namespace, identifier, owner_id)
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            log_event(self._logger, logging.WARNING, "cache_unavailable", op="get", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            log_event(self._logger, logging.WARNING, "cache_corrupt_entry", key=key)
            return None

    def _set(
        self,
        namespace: str,
        identifier: str,
        value: Any,
        owner_id: str | None = None,
        ttl: int | None = None,
    ) -> bool:
        if self._client is None:
            return False
        key = self.generate_key(namespace, identifier, owner_id)
        ttl = ttl if ttl is not None else self._ttl.get(namespace, 300)
        try:
            self._client.set(key, json_dumps(value), ex=ttl)
        except redis.RedisError as exc:
            log_event(self._logger, logging.WARNING, "cache_unavailable", op="set", key=key, error=str(exc))
            return False
        return True
