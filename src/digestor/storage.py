from __future__ import annotations

import json
import uuid
from typing import Any

from .db import connect_db
from .models import (
    DOCUMENT_TRANSITIONS,
    STATUS_ERROR,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    Artifact,
    Document,
    Prototype,
    Summary,
    Transaction,
)
from .utils import json_dumps, utc_now_iso, utc_now_iso_offset

_DOCUMENT_COLUMNS = (
    "id, url, normalized_url, source, status, owner_id, artifact_id, locked_by, "
    "claimed_at, error, created_at, updated_at"
)
_ARTIFACT_COLUMNS = "id, kind, uri, hash, created_at"
_TRANSACTION_COLUMNS = "id, document_id, status, error, created_at, updated_at"
_SUMMARY_COLUMNS = "id, type, content_json, artifact_url, transaction_id, created_at"


def init_db(path: str | None = None):
    return connect_db(path)


def create_document(
    conn: Any,
    url: str,
    normalized_url: str,
    source: str,
    owner_id: str | None = None,
) -> Document:
    doc_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO documents ({_DOCUMENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (doc_id, url, normalized_url, source, STATUS_QUEUED, owner_id, None, None, None, None, now, now),
    )
    conn.commit()
    return Document(
        id=doc_id,
        url=url,
        normalized_url=normalized_url,
        source=source,
        status=STATUS_QUEUED,
        owner_id=owner_id,
        artifact_id=None,
        locked_by=None,
        claimed_at=None,
        error=None,
        created_at=now,
        updated_at=now,
    )


def get_document(conn: Any, doc_id: str) -> Document | None:
    cursor = conn.execute(f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (doc_id,))
    row = cursor.fetchone()
    return _row_to_document(row) if row else None


def find_recent_document(conn: Any, normalized_url: str, since_iso: str) -> Document | None:
    cursor = conn.execute(
        f"""
        SELECT {_DOCUMENT_COLUMNS}
        FROM documents
        WHERE normalized_url = ? AND status != ? AND created_at >= ?
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (normalized_url, STATUS_ERROR, since_iso),
    )
    row = cursor.fetchone()
    return _row_to_document(row) if row else None


def claim_next_document(conn: Any, worker_id: str, from_status: str) -> Document | None:
    """Claim the oldest document in ``from_status`` and move it to PROCESSING.

    The status flip is conditional on the row still being in ``from_status``; a
    claimant that loses the race gets ``None`` rather than a shared row.
    """
    with conn.transaction():
        cursor = conn.execute(
            """
            SELECT id FROM documents
            WHERE status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
            """,
            (from_status,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        now = utc_now_iso()
        cursor = conn.execute(
            f"""
            UPDATE documents
            SET status = ?, locked_by = ?, claimed_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING {_DOCUMENT_COLUMNS}
            """,
            (STATUS_PROCESSING, worker_id, now, now, row[0], from_status),
        )
        updated = cursor.fetchall()
    if not updated:
        return None
    return _row_to_document(updated[0])


def transition_document(
    conn: Any,
    doc_id: str,
    from_status: str,
    to_status: str,
    error: str | None = None,
) -> bool:
    if to_status not in DOCUMENT_TRANSITIONS.get(from_status, ()):
        raise ValueError(f"illegal document transition {from_status} -> {to_status}")
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE documents
        SET status = ?, error = ?, updated_at = ?,
            locked_by = CASE WHEN ? = ? THEN locked_by ELSE NULL END
        WHERE id = ? AND status = ?
        """,
        (to_status, error, now, to_status, STATUS_PROCESSING, doc_id, from_status),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_document(conn: Any, doc_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE documents
        SET status = ?, error = ?, locked_by = NULL, updated_at = ?
        WHERE id = ? AND status NOT IN (?, ?)
        """,
        (STATUS_ERROR, error, now, doc_id, *TERMINAL_STATUSES),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_stale_documents(conn: Any, lock_timeout_seconds: int) -> list[str]:
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE documents
            SET status = ?, error = 'stale_claim', locked_by = NULL, updated_at = ?
            WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ?
            RETURNING id
            """,
            (STATUS_ERROR, utc_now_iso(), STATUS_PROCESSING, cutoff),
        )
        rows = cursor.fetchall()
    return [row[0] for row in rows]


def link_document_artifact(conn: Any, doc_id: str, artifact_id: str) -> None:
    conn.execute(
        "UPDATE documents SET artifact_id = ?, updated_at = ? WHERE id = ?",
        (artifact_id, utc_now_iso(), doc_id),
    )
    conn.commit()


def get_artifact(conn: Any, artifact_id: str) -> Artifact | None:
    cursor = conn.execute(f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE id = ?", (artifact_id,))
    row = cursor.fetchone()
    return Artifact(*row) if row else None


def find_artifact_by_hash(conn: Any, digest: str) -> Artifact | None:
    cursor = conn.execute(f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE hash = ?", (digest,))
    row = cursor.fetchone()
    return Artifact(*row) if row else None


def insert_artifact(conn: Any, kind: str, uri: str, digest: str) -> bool:
    """Insert an artifact unless one with the same hash exists. Returns True if inserted."""
    cursor = conn.execute(
        f"INSERT OR IGNORE INTO artifacts ({_ARTIFACT_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
        (str(uuid.uuid4()), kind, uri, digest, utc_now_iso()),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_artifacts(conn: Any) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM artifacts").fetchone()[0])


def create_transaction(conn: Any, document_id: str) -> Transaction:
    tx_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
        (tx_id, document_id, STATUS_PROCESSING, None, now, now),
    )
    conn.commit()
    return Transaction(tx_id, document_id, STATUS_PROCESSING, None, now, now)


def finish_transaction(conn: Any, tx_id: str, status: str, error: str | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE transactions
        SET status = ?, error = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (status, error, utc_now_iso(), tx_id, STATUS_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_transactions(conn: Any, document_id: str) -> list[Transaction]:
    cursor = conn.execute(
        f"""
        SELECT {_TRANSACTION_COLUMNS} FROM transactions
        WHERE document_id = ?
        ORDER BY created_at ASC
        """,
        (document_id,),
    )
    return [Transaction(*row) for row in cursor.fetchall()]


def create_summary(
    conn: Any,
    summary_type: str,
    content: dict[str, Any],
    artifact_url: str | None,
    transaction_id: str,
) -> Summary:
    summary_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        f"INSERT INTO summaries ({_SUMMARY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
        (summary_id, summary_type, json_dumps(content), artifact_url, transaction_id, now),
    )
    conn.commit()
    return Summary(summary_id, summary_type, content, artifact_url, transaction_id, now)


def get_latest_summary_for_document(conn: Any, document_id: str) -> Summary | None:
    cursor = conn.execute(
        """
        SELECT s.id, s.type, s.content_json, s.artifact_url, s.transaction_id, s.created_at
        FROM summaries s
        JOIN transactions t ON t.id = s.transaction_id
        WHERE t.document_id = ?
        ORDER BY s.created_at DESC
        LIMIT 1
        """,
        (document_id,),
    )
    row = cursor.fetchone()
    return _row_to_summary(row) if row else None


def insert_prototype(conn: Any, text: str, embedding: list[float]) -> Prototype:
    proto_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        "INSERT INTO prototypes (id, text, embedding_json, created_at) VALUES (?, ?, ?, ?)",
        (proto_id, text, json.dumps(list(embedding)), now),
    )
    conn.commit()
    return Prototype(proto_id, text, list(embedding), now)


def list_prototypes(conn: Any, limit: int = 1000) -> list[Prototype]:
    cursor = conn.execute(
        """
        SELECT id, text, embedding_json, created_at
        FROM prototypes
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    prototypes = []
    for proto_id, text, embedding_json, created_at in cursor.fetchall():
        try:
            embedding = [float(value) for value in json.loads(embedding_json)]
        except (TypeError, ValueError):
            continue
        prototypes.append(Prototype(proto_id, text, embedding, created_at))
    return prototypes


def _row_to_document(row: tuple) -> Document:
    (
        doc_id,
        url,
        normalized_url,
        source,
        status,
        owner_id,
        artifact_id,
        locked_by,
        claimed_at,
        error,
        created_at,
        updated_at,
    ) = row
    return Document(
        id=doc_id,
        url=url,
        normalized_url=normalized_url,
        source=source,
        status=status,
        owner_id=owner_id,
        artifact_id=artifact_id,
        locked_by=locked_by,
        claimed_at=claimed_at,
        error=error,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_summary(row: tuple) -> Summary:
    summary_id, summary_type, content_json, artifact_url, transaction_id, created_at = row
    try:
        content = json.loads(content_json) if content_json else {}
    except json.JSONDecodeError:
        content = {}
    return Summary(
        id=summary_id,
        type=summary_type,
        content=content,
        artifact_url=artifact_url,
        transaction_id=transaction_id,
        created_at=created_at,
    )
