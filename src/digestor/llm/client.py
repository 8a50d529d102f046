from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable

import jsonschema

from ..config import SummarizerConfig
from ..errors import SummarizationError, UpstreamError
from ..utils import log_event
from ..webclient import call_with_backoff, http_request

DEFAULT_BASE_URL = "https://api.openai.com/v1"

CONTENT_TYPES = (
    "article",
    "social_post",
    "video",
    "shopping",
    "stream",
    "structured_data",
    "generic",
)

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tldr", "bullets", "content_type"],
    "properties": {
        "tldr": {"type": "string", "minLength": 1},
        "bullets": {"type": "array", "items": {"type": "string"}},
        "key_sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "heading": {"type": "string"},
                    "summary": {"type": "string"},
                },
            },
        },
        "content_type": {"type": "string"},
    },
}

Requester = Callable[..., Any]


class LLMClient:
    """OpenAI-compatible chat completions returning schema-checked JSON objects."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout: float = 120,
        max_attempts: int = 5,
        initial_backoff: float = 5.0,
        logger: logging.Logger | None = None,
        request: Requester = http_request,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self._logger = logger or logging.getLogger("digestor.llm")
        self._request = request
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: SummarizerConfig, logger: logging.Logger | None = None) -> "LLMClient":
        return cls(
            base_url=os.environ.get("DG_LLM_BASE_URL", "").strip() or DEFAULT_BASE_URL,
            api_key=os.environ.get("DG_LLM_API_KEY", "").strip() or None,
            model=cfg.model,
            timeout=cfg.timeout_seconds,
            max_attempts=cfg.max_attempts,
            initial_backoff=cfg.initial_backoff_seconds,
            logger=logger,
        )

    def chat(self, system: str, user: str, temperature: float) -> str:
        """One completion, retried on rate limits and transient failures. Auth errors are raised at once."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "model": self.model,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }

        def call() -> Any:
            return self._request(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=headers,
                payload=payload,
                timeout=self.timeout,
            )

        response = call_with_backoff(
            call,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_backoff,
            logger=self._logger,
            operation="chat_completion",
            sleep=self._sleep,
        )
        return _read_openai(response)

    def complete_json(self, system: str, user: str, temperature: float) -> dict[str, Any]:
        raw = self.chat(system, user, temperature)
        parsed = _maybe_parse_json(raw)
        validation = _validate_json(SUMMARY_SCHEMA, parsed)
        if not validation["ok"]:
            log_event(self._logger, logging.WARNING, "llm_schema_repair", error=validation["error"][:200])
            raw = self.chat(system, user + "\n\nReturn valid JSON only. Fix schema violations.", temperature)
            parsed = _maybe_parse_json(raw)
            validation = _validate_json(SUMMARY_SCHEMA, parsed)
        if not validation["ok"]:
            raise SummarizationError(f"schema_invalid: {validation['error'][:200]}")
        return normalize_summary(parsed)


def normalize_summary(summary: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(summary)
    content_type = str(normalized.get("content_type") or "").strip().lower().replace("-", "_").replace(" ", "_")
    normalized["content_type"] = content_type if content_type in CONTENT_TYPES else "generic"
    return normalized


def _read_openai(response: Any) -> str:
    if not isinstance(response, dict):
        raise UpstreamError("openai_invalid_response")
    choices = response.get("choices") or []
    if not choices:
        raise UpstreamError("openai_missing_choices")
    return (choices[0].get("message") or {}).get("content") or ""


def _maybe_parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": str(exc)}
