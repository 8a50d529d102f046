from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, TypeVar

from .errors import RETRYABLE_ERRORS, TransientServerError, UpstreamError, classify_http_status
from .utils import log_event

T = TypeVar("T")

DEFAULT_USER_AGENT = "digestor/0.1"


def http_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    payload: Any | None = None,
    form: dict[str, str] | None = None,
    timeout: float = 10,
) -> Any:
    """Send a request and decode a JSON answer.

    HTTP failures are raised as classified ``UpstreamError`` subclasses; network
    failures and timeouts as ``TransientServerError``.
    """
    data = None
    request_headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
    elif form is not None:
        data = urllib.parse.urlencode(form).encode("utf-8")
        request_headers["Content-Type"] = "application/x-www-form-urlencoded"
    request_headers.update(headers or {})
    request = urllib.request.Request(url, data=data, method=method, headers=request_headers)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise classify_http_status(exc.code, f"http_error {exc.code}: {body[:500]}") from exc
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise TransientServerError(f"network_error: {exc}") from exc
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"invalid_json: {raw[:200]}") from exc


def call_with_backoff(
    func: Callable[[], T],
    *,
    max_attempts: int,
    initial_delay: float,
    logger: logging.Logger,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry rate-limit and transient failures with doubling delays; re-raise anything else."""
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= max_attempts:
                raise
            log_event(
                logger,
                logging.WARNING,
                "retrying",
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                error=type(exc).__name__,
            )
            sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
