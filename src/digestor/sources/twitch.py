from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Any, Callable
from urllib.parse import urlencode, urlsplit

from ..cache import CacheService
from ..errors import UpstreamError
from ..extraction.standardize import MODE_FLAT_WITH_ROLES, standardize_video
from ..models import Candidate
from ..utils import log_event
from ..webclient import http_request

SOURCE_TAG = "twitch"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"
HELIX_URL = "https://api.twitch.tv/helix"

_VOD_RE = re.compile(r"/videos/(\d+)")
_NON_CHANNEL_PATHS = {"videos", "directory", "search", "settings", "downloads", "p"}


def parse_twitch_url(url: str) -> tuple[str, str] | None:
    """Return ``("vod", id)`` or ``("channel", login)``."""
    path = urlsplit(url).path
    vod = _VOD_RE.search(path)
    if vod:
        return "vod", vod.group(1)
    first = path.strip("/").split("/")[0] if path.strip("/") else ""
    if first and first.lower() not in _NON_CHANNEL_PATHS:
        return "channel", first.lower()
    return None


class TwitchSource:
    def __init__(
        self,
        *,
        cache: CacheService | None = None,
        logger: logging.Logger | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float = 10,
        request: Callable[..., Any] = http_request,
    ) -> None:
        self._cache = cache
        self._logger = logger or logging.getLogger("digestor.sources")
        self._client_id = client_id if client_id is not None else os.environ.get("DG_TWITCH_CLIENT_ID", "").strip()
        self._client_secret = (
            client_secret if client_secret is not None else os.environ.get("DG_TWITCH_CLIENT_SECRET", "").strip()
        )
        self._timeout = timeout
        self._request = request
        self._lock = threading.Lock()
        self._token: str | None = None
        self._token_expiry = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _access_token(self) -> str:
        with self._lock:
            if self._token and time.time() < self._token_expiry:
                return self._token
            data = self._request(
                "POST",
                TOKEN_URL,
                form={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self._timeout,
            )
            self._token = (data or {}).get("access_token")
            if not self._token:
                raise UpstreamError("twitch token response missing access_token")
            self._token_expiry = time.time() + float(data.get("expires_in") or 3600) - 60
            return self._token

    def helix(self, endpoint: str, params: dict[str, str]) -> list[dict[str, Any]]:
        token = self._access_token()
        data = self._request(
            "GET",
            f"{HELIX_URL}/{endpoint}?{urlencode(params)}",
            headers={"Client-ID": self._client_id, "Authorization": f"Bearer {token}"},
            timeout=self._timeout,
        )
        return (data or {}).get("data") or []

    def load_vod(self, video_id: str) -> dict[str, Any] | None:
        items = self.helix("videos", {"id": video_id})
        if not items:
            return None
        item = items[0]
        return {
            "title": item.get("title"),
            "description": item.get("description"),
            "channel": item.get("user_name"),
            "date": item.get("created_at"),
            "views": item.get("view_count") or 0,
            "duration": item.get("duration"),
            "live": False,
            "url": item.get("url"),
            "transcript": [],
            "chat": [],
        }

    def load_channel(self, login: str) -> dict[str, Any] | None:
        streams = self.helix("streams", {"user_login": login})
        if streams:
            item = streams[0]
            return {
                "title": item.get("title"),
                "channel": item.get("user_name"),
                "description": item.get("game_name") or "",
                "startedAt": item.get("started_at"),
                "views": item.get("viewer_count") or 0,
                "live": True,
                "transcript": [],
                "chat": [],
            }
        users = self.helix("users", {"login": login})
        if not users:
            return None
        user = users[0]
        return {
            "title": user.get("display_name") or login,
            "channel": user.get("display_name") or login,
            "description": user.get("description") or "",
            "date": user.get("created_at"),
            "views": user.get("view_count") or 0,
            "live": False,
            "transcript": [],
            "chat": [],
        }

    def extract(self, url: str) -> Candidate | None:
        target = parse_twitch_url(url)
        if target is None or not self.configured:
            log_event(self._logger, logging.INFO, "twitch_web_fallback", url=url, configured=self.configured)
            return None
        kind, identifier = target
        cache_key = f"{kind}:{identifier}"
        data = self._cache.get_cached_twitch_data(cache_key) if self._cache is not None else None
        if not data:
            try:
                data = self.load_vod(identifier) if kind == "vod" else self.load_channel(identifier)
            except UpstreamError as exc:
                log_event(self._logger, logging.WARNING, "twitch_api_failed", url=url, error=str(exc)[:200])
                return None
            if not data:
                return None
            if self._cache is not None:
                self._cache.cache_twitch_data(cache_key, data)
        standardized = standardize_video(data, url, SOURCE_TAG, MODE_FLAT_WITH_ROLES)
        if not standardized or not standardized.get("content"):
            return None
        log_event(self._logger, logging.INFO, "twitch_extracted", kind=kind, identifier=identifier)
        return Candidate.from_standardized(SOURCE_TAG, standardized)
