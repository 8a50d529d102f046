"""Normalize heterogeneous extraction output into ``{source, metadata, content}``.

Two input shapes are understood:

* post-like: one item or a list of items, each with ``content``/``text`` and an
  optional list of ``comments`` (strings);
* video-like: ``title``/``description``/``channel`` plus ``transcript`` segments
  (``start``, ``duration``, ``text``) and ``chat`` messages.

Output modes:

``flat_raw``
    fragment texts joined with spaces.
``flat_with_roles``
    a ``[TITLE] ... [PUBLISHED_AT] ...`` header followed by the body. The body is
    transcript-only when transcript fragments exist, otherwise every fragment is
    prefixed with its role tag (``[POST]``, ``[COMMENT]``, ...).
``structured``
    the fragment list plus both flattened forms.

Everything here is pure; no I/O.
"""

from __future__ import annotations

import re
from typing import Any

MODE_FLAT_RAW = "flat_raw"
MODE_FLAT_WITH_ROLES = "flat_with_roles"
MODE_STRUCTURED = "structured"
MODES = (MODE_FLAT_RAW, MODE_FLAT_WITH_ROLES, MODE_STRUCTURED)

FRAGMENT_TYPES = ("post", "article", "comment", "transcript", "chat", "title", "description", "channel")

_MARKUP_RE = re.compile(
    r"<!--.*?-->|<script\b.*?>.*?</script>|<style\b.*?>.*?</style>",
    re.IGNORECASE | re.DOTALL,
)
_QUOTE_RE = re.compile(r"[\"\\`]|(?<![A-Za-z])'|'(?![A-Za-z])")
_NOISE_RE = re.compile(r"[*\[\]♪]|-{2,}")
_PIPE_RE = re.compile(r"\s*\|\s*")
_WS_RE = re.compile(r"\s+")


def sanitize_text(text: Any) -> str:
    if text is None:
        return ""
    cleaned = _MARKUP_RE.sub(" ", str(text))
    cleaned = cleaned.replace("\u00a0", " ")
    cleaned = _QUOTE_RE.sub("", cleaned)
    cleaned = _NOISE_RE.sub("", cleaned)
    cleaned = _PIPE_RE.sub(" ", cleaned)
    return _WS_RE.sub(" ", cleaned).strip()


def seconds_to_mins(value: float) -> str:
    total = int(value or 0)
    return f"{total // 60}.{total % 60:02d}"


def standardize_result(
    result: Any,
    url: str,
    source: str = "unknown",
    mode: str = MODE_STRUCTURED,
    include_metadata: bool = True,
) -> dict[str, Any] | None:
    if not result:
        return None
    fragments = _post_fragments(result)
    metadata = _post_metadata(result, url) if include_metadata else {}
    return _shape(fragments, metadata, source, mode)


def standardize_video(
    video: dict[str, Any] | None,
    url: str,
    source: str = "unknown",
    mode: str = MODE_STRUCTURED,
    include_metadata: bool = True,
) -> dict[str, Any] | None:
    if not video:
        return None
    fragments = _video_fragments(video)
    metadata = _video_metadata(video, url) if include_metadata else {}
    return _shape(fragments, metadata, source, mode)


def flatten_raw(fragments: list[dict[str, str]]) -> str:
    return " ".join(fragment["text"] for fragment in fragments)


def flatten_with_roles(fragments: list[dict[str, str]], metadata: dict[str, Any] | None = None) -> str:
    metadata = metadata or {}
    header = []
    for key, tag in (
        ("title", "TITLE"),
        ("channel", "CHANNEL"),
        ("author", "AUTHOR"),
        ("description", "DESCRIPTION"),
    ):
        if metadata.get(key):
            header.append(f"[{tag}] {sanitize_text(metadata[key])}")
    if metadata.get("startedAt"):
        header.append(f"[STARTED_AT] {metadata['startedAt']}")
    if metadata.get("publishedAt"):
        header.append(f"[PUBLISHED_AT] {metadata['publishedAt']}")

    transcripts = [fragment for fragment in fragments if fragment["type"] == "transcript"]
    if transcripts:
        body = [
            f"[TRANSCRIPT] {fragment['text']}" if index == 0 else fragment["text"]
            for index, fragment in enumerate(transcripts)
        ]
    else:
        body = [f"[{fragment['type'].upper()}] {fragment['text']}" for fragment in fragments]
    return " ".join(header + body).strip()


def _shape(
    fragments: list[dict[str, str]],
    metadata: dict[str, Any],
    source: str,
    mode: str,
) -> dict[str, Any]:
    if mode == MODE_FLAT_RAW:
        return {"source": source, "content": flatten_raw(fragments)}
    if mode == MODE_FLAT_WITH_ROLES:
        return {
            "source": source,
            "metadata": metadata,
            "content": flatten_with_roles(fragments, metadata),
        }
    if mode != MODE_STRUCTURED:
        raise ValueError(f"unknown standardize mode {mode}")
    return {
        "source": source,
        "metadata": metadata,
        "content": fragments,
        "flattened": {
            MODE_FLAT_RAW: flatten_raw(fragments),
            MODE_FLAT_WITH_ROLES: flatten_with_roles(fragments, metadata),
        },
    }


def _as_items(result: Any) -> list[dict[str, Any]]:
    items = result if isinstance(result, list) else [result]
    return [item for item in items if isinstance(item, dict)]


def _post_fragments(result: Any) -> list[dict[str, str]]:
    fragments = []
    for item in _as_items(result):
        body = item.get("content") or item.get("text")
        if body:
            kind = "article" if item.get("type") == "article" else "post"
            fragments.append({"type": kind, "text": sanitize_text(body)})
        for comment in item.get("comments") or []:
            text = sanitize_text(comment)
            if text:
                fragments.append({"type": "comment", "text": text})
    return [fragment for fragment in fragments if fragment["text"]]


def _video_fragments(video: dict[str, Any]) -> list[dict[str, str]]:
    fragments = [
        {"type": "title", "text": sanitize_text(video.get("title"))},
        {"type": "description", "text": sanitize_text(video.get("description"))},
        {"type": "channel", "text": sanitize_text(video.get("channel"))},
    ]
    for segment in video.get("transcript") or []:
        start = float(segment.get("start") or 0)
        end = start + float(segment.get("duration") or 0)
        text = sanitize_text(segment.get("text"))
        fragments.append(
            {"type": "transcript", "text": f"[{seconds_to_mins(start)}-{seconds_to_mins(end)}] {text}"}
        )
    for message in video.get("chat") or []:
        stamp = f"[{message['timestamp']}] " if message.get("timestamp") else ""
        author = f"[{sanitize_text(message['author'])}] " if message.get("author") else ""
        text = sanitize_text(message.get("text") or message.get("message"))
        fragments.append({"type": "chat", "text": f"{stamp}{author}{text}"})
    return [fragment for fragment in fragments if fragment["text"].strip()]


def _post_metadata(result: Any, url: str) -> dict[str, Any]:
    items = _as_items(result)
    item = items[0] if items else {}
    metadata = {
        "title": item.get("title") or item.get("headline") or "Untitled",
        "author": item.get("author") or "",
        "publishedAt": item.get("created") or item.get("date") or item.get("published") or None,
        "url": item.get("url") or url,
        "score": item.get("score") if item.get("score") is not None else 0,
        "description": item.get("description") or item.get("summary") or "",
    }
    for key in ("image", "keywords", "tags"):
        if item.get(key):
            metadata[key] = item[key]
    return metadata


def _video_metadata(video: dict[str, Any], url: str) -> dict[str, Any]:
    return {
        "title": video.get("title") or "Untitled Video",
        "channel": video.get("channel") or "",
        "publishedAt": video.get("date") or None,
        "startedAt": video.get("startedAt") or None,
        "duration": video.get("duration") or None,
        "live": video.get("live") or None,
        "url": video.get("url") or url,
        "views": video.get("views") if video.get("views") is not None else 0,
        "description": video.get("description") or "",
    }
