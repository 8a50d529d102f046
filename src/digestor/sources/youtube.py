from __future__ import annotations

import logging
import os
import re
from typing import Any, Callable
from urllib.parse import urlencode, urlsplit

from youtube_transcript_api import YouTubeTranscriptApi, YouTubeTranscriptApiException

from ..cache import CacheService
from ..errors import UpstreamError
from ..extraction.standardize import MODE_FLAT_WITH_ROLES, standardize_video
from ..models import Candidate
from ..utils import host_of, log_event
from ..webclient import http_request

SOURCE_TAG = "youtube"
DATA_API_URL = "https://www.googleapis.com/youtube/v3/videos"
TRANSCRIPT_LANGUAGES = ("en", "en-US", "en-GB")

_VIDEO_ID_RE = re.compile(r"(?:v=|/)([0-9A-Za-z_-]{11})(?:[?&#/]|$)")


def extract_video_id(url: str) -> str | None:
    if host_of(url) == "youtu.be":
        path_id = urlsplit(url).path.strip("/").split("/")[0]
        if re.fullmatch(r"[0-9A-Za-z_-]{11}", path_id):
            return path_id
    match = _VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


class YouTubeSource:
    def __init__(
        self,
        *,
        cache: CacheService | None = None,
        logger: logging.Logger | None = None,
        api_key: str | None = None,
        timeout: float = 10,
        request: Callable[..., Any] = http_request,
        transcript_fetcher: Callable[[str], list[dict[str, Any]]] | None = None,
    ) -> None:
        self._cache = cache
        self._logger = logger or logging.getLogger("digestor.sources")
        self._api_key = api_key if api_key is not None else os.environ.get("DG_YOUTUBE_API_KEY", "").strip()
        self._timeout = timeout
        self._request = request
        self._fetch_transcript = transcript_fetcher or self.fetch_transcript

    def fetch_transcript(self, video_id: str) -> list[dict[str, Any]]:
        try:
            fetched = YouTubeTranscriptApi().fetch(video_id, languages=list(TRANSCRIPT_LANGUAGES))
        except YouTubeTranscriptApiException as exc:
            log_event(self._logger, logging.INFO, "youtube_transcript_unavailable", video_id=video_id, error=type(exc).__name__)
            return []
        return fetched.to_raw_data()

    def fetch_metadata(self, video_id: str) -> dict[str, Any]:
        if not self._api_key:
            return {}
        query = urlencode({"part": "snippet,statistics,contentDetails", "id": video_id, "key": self._api_key})
        try:
            data = self._request("GET", f"{DATA_API_URL}?{query}", timeout=self._timeout)
        except UpstreamError as exc:
            log_event(self._logger, logging.WARNING, "youtube_metadata_failed", video_id=video_id, error=type(exc).__name__)
            return {}
        items = (data or {}).get("items") or []
        if not items:
            return {}
        item = items[0]
        snippet = item.get("snippet") or {}
        return {
            "title": snippet.get("title"),
            "description": snippet.get("description"),
            "channel": snippet.get("channelTitle"),
            "date": snippet.get("publishedAt"),
            "views": int((item.get("statistics") or {}).get("viewCount") or 0),
            "duration": (item.get("contentDetails") or {}).get("duration"),
        }

    def load_video(self, video_id: str) -> dict[str, Any] | None:
        if self._cache is not None:
            cached = self._cache.get_cached_youtube_data(video_id)
            if cached:
                return cached
        metadata = self.fetch_metadata(video_id)
        transcript = self._fetch_transcript(video_id)
        if not transcript and not metadata:
            return None
        video = dict(metadata)
        video["transcript"] = [
            {"start": segment.get("start", 0), "duration": segment.get("duration", 0), "text": segment.get("text", "")}
            for segment in transcript
        ]
        video["live"] = False
        if self._cache is not None:
            self._cache.cache_youtube_data(video_id, video)
        return video

    def extract(self, url: str) -> Candidate | None:
        """Candidate built from transcript and metadata; None sends the caller to the web path."""
        video_id = extract_video_id(url)
        if not video_id:
            log_event(self._logger, logging.INFO, "youtube_no_video_id", url=url)
            return None
        video = self.load_video(video_id)
        if not video:
            return None
        video.setdefault("url", url)
        standardized = standardize_video(video, url, SOURCE_TAG, MODE_FLAT_WITH_ROLES)
        if not standardized or not standardized.get("content"):
            return None
        log_event(
            self._logger,
            logging.INFO,
            "youtube_extracted",
            video_id=video_id,
            segments=len(video.get("transcript") or []),
        )
        return Candidate.from_standardized(SOURCE_TAG, standardized)
