from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from ..cache import CacheService
from ..config import SummarizerConfig
from ..errors import AuthError, SummarizationError, UpstreamError
from ..llm import CONTENT_TYPES, LLMClient
from ..utils import log_event, truncate_at_word

CHUNK_PROMPT = f"""You are an expert assistant that summarizes arbitrary web content.

1. Infer the content type, one of {json.dumps(list(CONTENT_TYPES))}.
2. Reply with a single JSON object containing:
   - "tldr": one-sentence summary
   - "bullets": list of key points
   - "key_sections": list of {{"heading": ..., "summary": ...}}
   - "content_type": the inferred type
   plus the fields that fit the type:
   - social_post: topic, notable_comments, sentiment
   - video: topic, key_timestamps, duration_estimate
   - shopping: product_name, price_range, key_features, ratings
   - article: page_type, topic, author, publication_date
   - stream: topic, chat_highlights, streamer
   - structured_data: topic, notable_fields
"""

MERGE_PROMPT = """You merge partial summaries of one piece of content into a single summary.
Reply with one JSON object using the same fields as the inputs ("tldr", "bullets",
"key_sections", "content_type" and any type-specific fields). Merge overlapping points.
When partial summaries disagree on content_type, pick the most consistent one.
"""

# Break points searched for in the last fifth of a chunk.
_SENTENCE_BREAKS = (". ", "! ", "? ", "\n")
_BREAK_WINDOW = 0.2


def split_into_chunks(text: str, chunk_chars: int) -> list[str]:
    """Split on sentence ends, then whitespace, near each boundary; hard cut as a last resort."""
    chunks: list[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + chunk_chars, length)
        if end < length:
            floor = end - max(1, int(chunk_chars * _BREAK_WINDOW))
            end = _break_point(text, max(floor, start + 1), end) or end
        chunk = text[start:end].strip()
        if chunk:
            chunks.append(chunk)
        start = end
    return chunks


def _break_point(text: str, low: int, high: int) -> int | None:
    sentence_end = max(text.rfind(marker, low, high) for marker in _SENTENCE_BREAKS)
    if sentence_end >= low:
        return sentence_end + 1
    space = text.rfind(" ", low, high)
    if space >= low:
        return space
    return None


class Summarizer:
    def __init__(
        self,
        cfg: SummarizerConfig,
        llm: LLMClient,
        cache: CacheService | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cfg = cfg
        self.llm = llm
        self.cache = cache
        self._logger = logger or logging.getLogger("digestor.summarizer")

    def _hash(self, content: str) -> str:
        return CacheService.generate_content_hash(content, self.cfg.model, self.cfg.temperature, self.cfg.chunk_chars)

    def summarize(self, content: str) -> dict[str, Any] | None:
        """Summarize ``content``; None when it is empty or every chunk failed."""
        if not content or not content.strip():
            log_event(self._logger, logging.WARNING, "summarize_empty")
            return None
        text = truncate_at_word(content, self.cfg.max_input_chars)
        content_hash = self._hash(text)
        if self.cache is not None:
            cached = self.cache.get_cached_ai_summary(content_hash)
            if cached:
                log_event(self._logger, logging.INFO, "summary_cache_hit", hash=content_hash[:12])
                return cached

        chunks = split_into_chunks(text, self.cfg.chunk_chars)
        partials = self._summarize_chunks(chunks)
        succeeded = [partial for partial in partials if partial is not None]
        if not succeeded:
            log_event(self._logger, logging.ERROR, "summarize_all_chunks_failed", chunks=len(chunks))
            return None
        if len(succeeded) < len(partials):
            log_event(
                self._logger,
                logging.WARNING,
                "summarize_partial_chunks",
                chunks=len(chunks),
                failed=len(partials) - len(succeeded),
            )

        summary = succeeded[0] if len(succeeded) == 1 else self.merge_hierarchically(succeeded)
        if self.cache is not None:
            self.cache.cache_ai_summary(content_hash, summary)
        log_event(
            self._logger,
            logging.INFO,
            "summarize_done",
            chunks=len(chunks),
            content_type=summary.get("content_type"),
        )
        return summary

    def _summarize_chunks(self, chunks: list[str]) -> list[dict[str, Any] | None]:
        if len(chunks) == 1:
            return [self.summarize_chunk(chunks[0])]
        workers = max(1, min(self.cfg.max_concurrency, len(chunks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="summarize") as pool:
            futures = [pool.submit(self.summarize_chunk, chunk) for chunk in chunks]
            return [future.result() for future in futures]

    def summarize_chunk(self, chunk: str) -> dict[str, Any] | None:
        """One chunk; AuthError propagates, any other failure yields None."""
        chunk_hash = self._hash(chunk)
        if self.cache is not None:
            cached = self.cache.get_cached_ai_chunk(chunk_hash)
            if cached:
                return cached
        try:
            result = self.llm.complete_json(
                CHUNK_PROMPT,
                f"Summarize this content:\n{chunk}",
                self.cfg.temperature,
            )
        except AuthError:
            raise
        except (UpstreamError, SummarizationError) as exc:
            log_event(self._logger, logging.WARNING, "chunk_failed", chars=len(chunk), error=str(exc)[:200])
            return None
        if self.cache is not None:
            self.cache.cache_ai_chunk(chunk_hash, result)
        return result

    def merge(self, partials: list[dict[str, Any]]) -> dict[str, Any]:
        return self.llm.complete_json(
            MERGE_PROMPT,
            json.dumps(partials, indent=2, ensure_ascii=False),
            self.cfg.temperature,
        )

    def merge_hierarchically(self, partials: list[dict[str, Any]]) -> dict[str, Any]:
        """Merge in batches of ``merge_batch_size`` until one summary remains; a lone batch passes through."""
        batch_size = max(2, self.cfg.merge_batch_size)
        level = list(partials)
        rounds = 0
        while len(level) > 1:
            rounds += 1
            merged = []
            for index in range(0, len(level), batch_size):
                batch = level[index : index + batch_size]
                merged.append(batch[0] if len(batch) == 1 else self.merge(batch))
            log_event(self._logger, logging.DEBUG, "merge_round", round=rounds, inputs=len(level), outputs=len(merged))
            level = merged
        return level[0]
