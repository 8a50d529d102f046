from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from ..db import DBConn
from ..models import Prototype
from ..storage import insert_prototype, list_prototypes
from ..utils import log_event, utc_now_iso
from .embeddings import cosine_similarity


@dataclass(frozen=True)
class Neighbor:
    prototype: Prototype
    similarity: float


class PrototypeIndex:
    """Nearest-neighbour store of embeddings for previously accepted content."""

    def insert(self, text: str, embedding: list[float]) -> Prototype:
        raise NotImplementedError

    def nearest(self, embedding: list[float], k: int = 1) -> list[Neighbor]:
        raise NotImplementedError


def _rank(prototypes: list[Prototype], embedding: list[float], k: int) -> list[Neighbor]:
    scored = [
        Neighbor(prototype, cosine_similarity(embedding, prototype.embedding))
        for prototype in prototypes
        if prototype.embedding
    ]
    scored.sort(key=lambda neighbor: (-neighbor.similarity, neighbor.prototype.id))
    return scored[:k]


class SqlPrototypeIndex(PrototypeIndex):
    """Prototypes stored as JSON vectors; similarity computed over the newest ``scan_limit`` rows."""

    def __init__(self, connect: Callable[[], DBConn], scan_limit: int = 1000) -> None:
        self._connect = connect
        self._scan_limit = scan_limit

    def insert(self, text: str, embedding: list[float]) -> Prototype:
        conn = self._connect()
        try:
            return insert_prototype(conn, text, embedding)
        finally:
            conn.close()

    def nearest(self, embedding: list[float], k: int = 1) -> list[Neighbor]:
        conn = self._connect()
        try:
            prototypes = list_prototypes(conn, limit=self._scan_limit)
        finally:
            conn.close()
        return _rank(prototypes, embedding, k)


class InMemoryPrototypeIndex(PrototypeIndex):
    def __init__(self) -> None:
        self._items: list[Prototype] = []
        self._lock = threading.Lock()

    def insert(self, text: str, embedding: list[float]) -> Prototype:
        with self._lock:
            prototype = Prototype(
                id=f"proto-{len(self._items) + 1}",
                text=text,
                embedding=list(embedding),
                created_at=utc_now_iso(),
            )
            self._items.append(prototype)
            return prototype

    def nearest(self, embedding: list[float], k: int = 1) -> list[Neighbor]:
        with self._lock:
            items = list(self._items)
        return _rank(items, embedding, k)

    def __len__(self) -> int:
        return len(self._items)


@dataclass(frozen=True)
class SaveResult:
    prototype: Prototype
    duplicate: bool
    similarity: float


class PrototypeCollector:
    def __init__(
        self,
        index: PrototypeIndex,
        embed: Callable[[str], list[float] | None],
        *,
        duplicate_threshold: float = 0.98,
        logger: logging.Logger | None = None,
    ) -> None:
        self.index = index
        self._embed = embed
        self._threshold = duplicate_threshold
        self._logger = logger or logging.getLogger("digestor.scoring")

    def find_nearest(self, embedding: list[float], k: int = 1) -> list[Neighbor]:
        return self.index.nearest(embedding, k)

    def save(self, text: str) -> SaveResult | None:
        """Store ``text`` as a prototype unless a near-duplicate already exists; None when it cannot be embedded."""
        embedding = self._embed(text)
        if not embedding:
            log_event(self._logger, logging.INFO, "prototype_skipped", reason="no_embedding")
            return None
        nearest = self.index.nearest(embedding, 1)
        if nearest and nearest[0].similarity >= self._threshold:
            log_event(
                self._logger,
                logging.INFO,
                "prototype_duplicate",
                prototype_id=nearest[0].prototype.id,
                similarity=round(nearest[0].similarity, 4),
            )
            return SaveResult(nearest[0].prototype, True, nearest[0].similarity)
        prototype = self.index.insert(text, embedding)
        log_event(self._logger, logging.INFO, "prototype_saved", prototype_id=prototype.id)
        return SaveResult(prototype, False, nearest[0].similarity if nearest else 0.0)
