"""Native JSON endpoints for sites whose HTML is a poor extraction source.

Supported hosts: Reddit (OAuth when credentials are configured, public
``.json`` otherwise), Hacker News (Firebase), GitHub (issues, pull requests,
repositories with README), Stack Overflow / Stack Exchange and dev.to. Every
fetcher returns post-like items understood by ``standardize_result`` or None
when the URL is not one it handles.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from ..cache import CacheService
from ..config import ExtractionConfig
from ..errors import AuthError, UpstreamError
from ..utils import host_of, log_event
from ..webclient import call_with_backoff, http_request

Requester = Callable[..., Any]

REDDIT_TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
REDDIT_OAUTH_BASE = "https://oauth.reddit.com"
HN_ITEM_URL = "https://hacker-news.firebaseio.com/v0/item/{item_id}.json"
GITHUB_API = "https://api.github.com"
STACKEXCHANGE_API = "https://api.stackexchange.com/2.3"
DEVTO_API = "https://dev.to/api/articles"

_HN_ITEM_RE = re.compile(r"[?&]id=(\d+)")
_GITHUB_RE = re.compile(r"^/([\w.-]+)/([\w.-]+)(?:/(issues|pull)/(\d+))?")
_SO_QUESTION_RE = re.compile(r"^/questions/(\d+)")
_DEVTO_RE = re.compile(r"^/([\w-]+)/([\w-]+)/?$")
_GITHUB_RESERVED = {"orgs", "settings", "marketplace", "topics", "features", "about", "login"}


def epoch_to_iso(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def html_to_text(value: str | None) -> str:
    if not value:
        return ""
    return BeautifulSoup(value, "html.parser").get_text("\n", strip=True)


def handles_url(url: str) -> bool:
    host = host_of(url)
    return any(
        host == suffix or host.endswith("." + suffix)
        for suffix in ("reddit.com", "news.ycombinator.com", "github.com", "stackoverflow.com", "stackexchange.com", "dev.to")
    )


class SiteApiFetcher:
    def __init__(
        self,
        cfg: ExtractionConfig,
        *,
        cache: CacheService | None = None,
        logger: logging.Logger | None = None,
        request: Requester = http_request,
        sleep: Callable[[float], None] = time.sleep,
        user_agent: str | None = None,
    ) -> None:
        self._cfg = cfg
        self._cache = cache
        self._logger = logger or logging.getLogger("digestor.extraction")
        self._request = request
        self._sleep = sleep
        self._user_agent = user_agent or os.environ.get("DG_REDDIT_USER_AGENT", "digestor/0.1 (content extraction)")
        self._token_lock = threading.Lock()
        self._reddit_token: str | None = None
        self._reddit_token_expiry = 0.0

    def fetch(self, url: str) -> list[dict[str, Any]] | dict[str, Any] | None:
        host = host_of(url)
        if host == "reddit.com" or host.endswith(".reddit.com"):
            return self.fetch_reddit(url)
        if host == "news.ycombinator.com":
            return self.fetch_hackernews(url)
        if host == "github.com":
            return self.fetch_github(url)
        if host == "stackoverflow.com" or host.endswith(".stackexchange.com"):
            return self.fetch_stackexchange(url)
        if host == "dev.to":
            return self.fetch_devto(url)
        # Medium only exposes RSS; the HTML strategies handle it.
        return None

    def _get(self, url: str, headers: dict[str, str] | None = None) -> Any:
        merged = {"User-Agent": self._user_agent}
        merged.update(headers or {})
        return self._request("GET", url, headers=merged, timeout=self._cfg.api_timeout_seconds)

    # Reddit

    def _reddit_credentials(self) -> tuple[str, str, str, str] | None:
        values = tuple(
            os.environ.get(name, "").strip()
            for name in ("DG_REDDIT_CLIENT_ID", "DG_REDDIT_CLIENT_SECRET", "DG_REDDIT_USERNAME", "DG_REDDIT_PASSWORD")
        )
        return values if all(values) else None  # type: ignore[return-value]

    def _reddit_access_token(self) -> str | None:
        credentials = self._reddit_credentials()
        if credentials is None:
            return None
        with self._token_lock:
            if self._reddit_token and time.time() < self._reddit_token_expiry - 60:
                return self._reddit_token
            client_id, client_secret, username, password = credentials
            basic = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
            data = self._request(
                "POST",
                REDDIT_TOKEN_URL,
                headers={"Authorization": f"Basic {basic}", "User-Agent": self._user_agent},
                form={"grant_type": "password", "username": username, "password": password},
                timeout=self._cfg.api_timeout_seconds,
            )
            token = (data or {}).get("access_token")
            if not token:
                raise AuthError("reddit token response missing access_token")
            self._reddit_token = token
            self._reddit_token_expiry = time.time() + float(data.get("expires_in") or 3600)
            return token

    def fetch_reddit(self, url: str) -> list[dict[str, Any]] | None:
        if self._cache is not None:
            cached = self._cache.get_cached_reddit_data(url)
            if cached:
                return cached
        path = urlsplit(url).path.rstrip("/") or "/"

        def attempt() -> Any:
            token = self._reddit_access_token()
            if token:
                return self._get(f"{REDDIT_OAUTH_BASE}{path}", {"Authorization": f"Bearer {token}"})
            return self._get(f"https://www.reddit.com{path}.json")

        try:
            data = call_with_backoff(
                attempt,
                max_attempts=3,
                initial_delay=2.0,
                logger=self._logger,
                operation="reddit_fetch",
                sleep=self._sleep,
            )
        except UpstreamError as exc:
            log_event(self._logger, logging.WARNING, "reddit_fetch_failed", url=url, error=str(exc))
            return None
        items = parse_reddit_payload(data, self._cfg.api_max_comments)
        if items and self._cache is not None:
            self._cache.cache_reddit_data(url, items)
        return items or None

    # Hacker News

    def fetch_hackernews(self, url: str) -> dict[str, Any] | None:
        match = _HN_ITEM_RE.search(url)
        if not match:
            return None
        data = self._get(HN_ITEM_URL.format(item_id=match.group(1)))
        if not data:
            return None
        comments = []
        for kid in (data.get("kids") or [])[: self._cfg.api_max_comments]:
            try:
                comment = self._get(HN_ITEM_URL.format(item_id=kid))
            except UpstreamError as exc:
                log_event(self._logger, logging.DEBUG, "hn_comment_failed", item=kid, error=str(exc))
                continue
            if comment and not comment.get("deleted") and comment.get("text"):
                comments.append(html_to_text(comment["text"]))
        return {
            "title": data.get("title") or "",
            "content": html_to_text(data.get("text")) or data.get("title") or "",
            "author": data.get("by") or "",
            "score": data.get("score") or 0,
            "created": epoch_to_iso(data.get("time")),
            "url": data.get("url") or url,
            "comments": comments,
        }

    # GitHub

    def fetch_github(self, url: str) -> dict[str, Any] | None:
        match = _GITHUB_RE.match(urlsplit(url).path)
        if not match or match.group(1) in _GITHUB_RESERVED:
            return None
        owner, repo, kind, number = match.groups()
        repo = repo.removesuffix(".git")
        headers = {"Accept": "application/vnd.github+json"}
        token = os.environ.get("DG_GITHUB_TOKEN", "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        base = f"{GITHUB_API}/repos/{owner}/{repo}"

        if kind:
            endpoint = "issues" if kind == "issues" else "pulls"
            data = self._get(f"{base}/{endpoint}/{number}", headers)
            if not data:
                return None
            return {
                "title": data.get("title") or "",
                "content": data.get("body") or "",
                "author": (data.get("user") or {}).get("login") or "",
                "created": data.get("created_at"),
                "url": data.get("html_url") or url,
            }

        info = self._get(base, headers) or {}
        readme = ""
        try:
            readme_data = self._get(f"{base}/readme", headers) or {}
            if readme_data.get("content"):
                readme = base64.b64decode(readme_data["content"]).decode("utf-8", errors="replace")
        except UpstreamError as exc:
            log_event(self._logger, logging.DEBUG, "github_readme_missing", repo=f"{owner}/{repo}", error=str(exc))
        content = "\n\n".join(part for part in (info.get("description") or "", readme) if part)
        if not content:
            return None
        return {
            "title": info.get("full_name") or f"{owner}/{repo}",
            "content": content,
            "author": (info.get("owner") or {}).get("login") or owner,
            "created": info.get("created_at"),
            "url": info.get("html_url") or url,
            "score": info.get("stargazers_count") or 0,
        }

    # Stack Exchange

    def fetch_stackexchange(self, url: str) -> dict[str, Any] | None:
        parts = urlsplit(url)
        match = _SO_QUESTION_RE.match(parts.path)
        if not match:
            return None
        host = host_of(url)
        site = "stackoverflow" if host == "stackoverflow.com" else host.removesuffix(".stackexchange.com")
        question_id = match.group(1)
        data = self._get(
            f"{STACKEXCHANGE_API}/questions/{question_id}?order=desc&sort=activity&site={site}&filter=withbody"
        )
        items = (data or {}).get("items") or []
        if not items:
            return None
        question = items[0]
        answers: list[str] = []
        try:
            answer_data = self._get(
                f"{STACKEXCHANGE_API}/questions/{question_id}/answers"
                f"?order=desc&sort=votes&site={site}&filter=withbody&pagesize={self._cfg.api_max_comments}"
            )
            answers = [html_to_text(item.get("body")) for item in (answer_data or {}).get("items") or []]
        except UpstreamError as exc:
            log_event(self._logger, logging.DEBUG, "stackexchange_answers_failed", question=question_id, error=str(exc))
        return {
            "title": html_to_text(question.get("title")),
            "content": html_to_text(question.get("body")),
            "author": (question.get("owner") or {}).get("display_name") or "",
            "score": question.get("score") or 0,
            "created": epoch_to_iso(question.get("creation_date")),
            "url": url,
            "tags": question.get("tags") or [],
            "comments": [answer for answer in answers if answer],
        }

    # dev.to

    def fetch_devto(self, url: str) -> dict[str, Any] | None:
        match = _DEVTO_RE.match(urlsplit(url).path)
        if not match:
            return None
        username, slug = match.groups()
        data = self._get(f"{DEVTO_API}/{username}/{slug}")
        if not data:
            return None
        return {
            "title": data.get("title") or "",
            "content": data.get("body_markdown") or data.get("description") or "",
            "author": (data.get("user") or {}).get("name") or "",
            "created": data.get("published_at"),
            "url": data.get("url") or url,
            "tags": data.get("tag_list") or [],
        }


def parse_reddit_payload(data: Any, max_comments: int) -> list[dict[str, Any]]:
    """Handle both the ``[post listing, comment listing]`` permalink shape and plain listings."""
    if isinstance(data, list):
        posts = ((data[0] if data else {}).get("data") or {}).get("children") or []
        comments = ((data[1] if len(data) > 1 else {}).get("data") or {}).get("children") or []
        comment_bodies = [
            child["data"]["body"]
            for child in comments
            if child.get("kind") == "t1" and (child.get("data") or {}).get("body")
        ][:max_comments]
        return [
            _reddit_item(post.get("data") or {}, comment_bodies if index == 0 else [])
            for index, post in enumerate(posts)
        ]
    posts = ((data or {}).get("data") or {}).get("children") or []
    return [_reddit_item(post.get("data") or {}, []) for post in posts]


def _reddit_item(post: dict[str, Any], comments: list[str]) -> dict[str, Any]:
    return {
        "title": post.get("title") or "",
        "content": post.get("selftext") or post.get("title") or "",
        "author": post.get("author") or "",
        "created": epoch_to_iso(post.get("created_utc")),
        "url": f"https://reddit.com{post['permalink']}" if post.get("permalink") else "",
        "score": post.get("score") or 0,
        "comments": comments,
    }
