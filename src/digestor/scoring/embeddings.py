from __future__ import annotations

import hashlib
import logging
import math
import os
import re
from typing import Callable

from ..errors import UpstreamError
from ..utils import log_event
from ..webclient import http_request

_TOKEN_RE = re.compile(r"[a-z0-9]+")

Requester = Callable[..., object]


def hashed_embedding(text: str, dimensions: int = 256) -> list[float]:
    """Deterministic bag-of-words vector: each token adds 1.0 to a hashed bucket, then L2 normalized."""
    vector = [0.0] * dimensions
    for token in _TOKEN_RE.findall(text.lower()):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[bucket] += sign
    norm = math.sqrt(sum(component * component for component in vector))
    if not norm:
        return vector
    return [component / norm for component in vector]


def cosine_similarity(left: list[float] | None, right: list[float] | None) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm_left = math.sqrt(sum(a * a for a in left))
    norm_right = math.sqrt(sum(b * b for b in right))
    if not norm_left or not norm_right:
        return 0.0
    return dot / (norm_left * norm_right)


class Embedder:
    """Embeds text through an OpenAI-compatible ``/embeddings`` endpoint or the hashed fallback."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimensions: int = 256,
        timeout: float = 20,
        logger: logging.Logger | None = None,
        request: Requester = http_request,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/") or None
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self._logger = logger or logging.getLogger("digestor.scoring")
        self._request = request

    @classmethod
    def from_env(cls, *, model: str, dimensions: int, timeout: float, logger: logging.Logger | None = None) -> "Embedder":
        return cls(
            base_url=os.environ.get("DG_EMBEDDINGS_BASE_URL", "").strip() or None,
            api_key=os.environ.get("DG_EMBEDDINGS_API_KEY", "").strip() or None,
            model=model,
            dimensions=dimensions,
            timeout=timeout,
            logger=logger,
        )

    @property
    def remote(self) -> bool:
        return bool(self.base_url)

    def embed(self, text: str) -> list[float] | None:
        if not text or not text.strip():
            return None
        if not self.remote:
            return hashed_embedding(text, self.dimensions)
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"model": self.model, "input": text, "dimensions": self.dimensions}
        try:
            response = self._request(
                "POST",
                f"{self.base_url}/embeddings",
                headers=headers,
                payload=payload,
                timeout=self.timeout,
            )
        except UpstreamError as exc:
            log_event(self._logger, logging.WARNING, "embedding_failed", error=str(exc), chars=len(text))
            return None
        try:
            vector = response["data"][0]["embedding"]  # type: ignore[index]
        except (KeyError, IndexError, TypeError):
            log_event(self._logger, logging.WARNING, "embedding_malformed")
            return None
        return [float(component) for component in vector]
