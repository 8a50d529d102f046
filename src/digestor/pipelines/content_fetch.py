from __future__ import annotations

import logging
import re
import socket
import time
import urllib.error
import urllib.request
from typing import Callable

from ..config import FetchConfig
from ..errors import FetchError
from ..utils import log_event

# Progressively more lenient completion criteria, one per rendering attempt.
RENDER_WAIT_STATES = ("networkidle", "load", "domcontentloaded")

_SCRIPT_STYLE_RE = re.compile(r"<(script|style|noscript)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

Renderer = Callable[[str, FetchConfig, logging.Logger], str]


def fetch_static(url: str, cfg: FetchConfig, logger: logging.Logger) -> str:
    request = urllib.request.Request(
        url,
        headers={
            "User-Agent": cfg.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": cfg.accept_language,
        },
    )
    try:
        with urllib.request.urlopen(request, timeout=cfg.timeout_seconds) as response:
            raw = response.read()
            charset = response.headers.get_content_charset() or "utf-8"
    except urllib.error.HTTPError as exc:
        log_event(logger, logging.WARNING, "static_fetch_failed", url=url, status=exc.code)
        raise FetchError(f"http_error {exc.code}") from exc
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        log_event(logger, logging.WARNING, "static_fetch_failed", url=url, error=str(exc))
        raise FetchError(f"network_error: {exc}") from exc
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def visible_text(html: str) -> str:
    stripped = _SCRIPT_STYLE_RE.sub(" ", html)
    stripped = _TAG_RE.sub(" ", stripped)
    return _WS_RE.sub(" ", stripped).strip()


def insufficiency_reason(html: str | None, cfg: FetchConfig) -> str | None:
    """Return why static markup cannot be used as-is, or None when it looks usable."""
    if not html:
        return "empty"
    if len(html) < cfg.min_html_length:
        return "too_short"
    lowered = html.lower()
    for signature in cfg.shell_signatures:
        if signature.lower() in lowered:
            return "app_shell"
    text = visible_text(html)
    if len(text) < cfg.min_text_chars:
        return "too_little_text"
    if len(text) / len(html) < cfg.min_text_density:
        return "low_text_density"
    return None


def fetch_rendered(
    url: str,
    cfg: FetchConfig,
    logger: logging.Logger,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    try:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright
    except ImportError as exc:  # pragma: no cover - depends on env
        raise FetchError("playwright is required for rendered fetches") from exc

    attempts = 1 + max(0, cfg.render_retries)
    last_error: Exception | None = None
    for attempt in range(attempts):
        wait_until = RENDER_WAIT_STATES[min(attempt, len(RENDER_WAIT_STATES) - 1)]
        try:
            with sync_playwright() as playwright:
                browser = playwright.chromium.launch(headless=True)
                try:
                    context = browser.new_context(
                        user_agent=cfg.user_agent,
                        viewport={"width": cfg.viewport_width, "height": cfg.viewport_height},
                        locale="en-US",
                    )
                    page = context.new_page()
                    page.goto(url, wait_until=wait_until, timeout=cfg.render_timeout_seconds * 1000)
                    html = page.content()
                finally:
                    browser.close()
            log_event(logger, logging.INFO, "render_fetch_ok", url=url, attempt=attempt + 1, wait_until=wait_until)
            return html
        except PlaywrightError as exc:
            last_error = exc
            log_event(
                logger,
                logging.WARNING,
                "render_fetch_failed",
                url=url,
                attempt=attempt + 1,
                wait_until=wait_until,
                error=str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
            )
            if attempt < attempts - 1:
                sleep(cfg.render_backoff_seconds * (2**attempt))
    raise FetchError(f"render_failed: {last_error}")


def fetch_html(
    url: str,
    cfg: FetchConfig,
    logger: logging.Logger,
    renderer: Renderer | None = None,
) -> str:
    """Fetch markup statically, falling back to a headless browser when it looks insufficient."""
    renderer = renderer or fetch_rendered
    static_html: str | None = None
    static_error: FetchError | None = None
    try:
        static_html = fetch_static(url, cfg, logger)
    except FetchError as exc:
        static_error = exc

    reason = insufficiency_reason(static_html, cfg) if static_error is None else "static_failed"
    if reason is None:
        log_event(logger, logging.INFO, "static_fetch_ok", url=url, length=len(static_html or ""))
        return static_html or ""
    if not cfg.render_enabled:
        if static_html:
            return static_html
        raise static_error or FetchError(f"insufficient_markup: {reason}")

    log_event(logger, logging.INFO, "render_fallback", url=url, reason=reason)
    try:
        return renderer(url, cfg, logger)
    except FetchError:
        if static_html:
            log_event(logger, logging.WARNING, "render_degraded_to_static", url=url)
            return static_html
        raise
