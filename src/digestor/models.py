from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SOURCE_WEBPAGE = "WEBPAGE"
SOURCE_YOUTUBE = "YOUTUBE"
SOURCE_TWITCH = "TWITCH"
DOCUMENT_SOURCES = (SOURCE_WEBPAGE, SOURCE_YOUTUBE, SOURCE_TWITCH)

STATUS_QUEUED = "QUEUED"
STATUS_PROCESSING = "PROCESSING"
STATUS_INGESTED = "INGESTED"
STATUS_COMPLETED = "COMPLETED"
STATUS_ERROR = "ERROR"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_ERROR)

# Forward-only document lifecycle. ERROR is reachable from any non-terminal status.
DOCUMENT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_QUEUED: (STATUS_PROCESSING, STATUS_ERROR),
    STATUS_PROCESSING: (STATUS_INGESTED, STATUS_COMPLETED, STATUS_ERROR),
    STATUS_INGESTED: (STATUS_PROCESSING, STATUS_ERROR),
    STATUS_COMPLETED: (),
    STATUS_ERROR: (),
}

ARTIFACT_KIND_TEXT = "TEXT"
SUMMARY_TYPE_TLDR = "TLDR"

STRATEGY_JSON_API = "json_api"
STRATEGY_STRUCTURED_DATA = "structured_data"
STRATEGY_READABILITY = "readability"
STRATEGY_HTML_PARSING = "html_parsing"


@dataclass(frozen=True)
class Document:
    id: str
    url: str
    normalized_url: str
    source: str
    status: str
    owner_id: str | None
    artifact_id: str | None
    locked_by: str | None
    claimed_at: str | None
    error: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Artifact:
    id: str
    kind: str
    uri: str
    hash: str
    created_at: str


@dataclass(frozen=True)
class Transaction:
    id: str
    document_id: str
    status: str
    error: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Summary:
    id: str
    type: str
    content: dict[str, Any]
    artifact_url: str | None
    transaction_id: str
    created_at: str


@dataclass(frozen=True)
class Prototype:
    id: str
    text: str
    embedding: list[float]
    created_at: str


@dataclass(frozen=True)
class Candidate:
    source: str
    metadata: dict[str, Any]
    content: str

    @classmethod
    def from_standardized(cls, strategy: str, standardized: dict[str, Any]) -> "Candidate":
        return cls(
            source=strategy,
            metadata=dict(standardized.get("metadata") or {}),
            content=str(standardized.get("content") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "metadata": self.metadata, "content": self.content}


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    breakdown: dict[str, float] = field(default_factory=dict)
