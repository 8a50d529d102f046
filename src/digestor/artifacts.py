"""Content-addressed persistence of cleaned text.

Bytes live in an object store under an opaque key; the relational ``artifacts``
row carries the sha256 of the text, so saving identical text twice reuses one row.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any

from .errors import PersistenceError
from .models import ARTIFACT_KIND_TEXT, Artifact
from .storage import find_artifact_by_hash, get_artifact, insert_artifact, link_document_artifact
from .utils import log_event, sha256_hex


class ObjectStore:
    def put_text(self, key: str, text: str) -> None:
        raise NotImplementedError

    def get_text(self, key: str) -> str:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise PersistenceError(f"object key escapes store root: {key}")
        return path

    def put_text(self, key: str, text: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceError(f"local write failed: {exc}") from exc

    def get_text(self, key: str) -> str:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"local read failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"local delete failed: {exc}") from exc


class S3ObjectStore(ObjectStore):
    def __init__(self, bucket: str, endpoint_url: str | None = None, region: str | None = None) -> None:
        try:
            import boto3
            from botocore.exceptions import BotoCoreError, ClientError
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("boto3 is required for the s3 storage backend") from exc
        self._bucket = bucket
        self._client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self._errors = (BotoCoreError, ClientError)

    def put_text(self, key: str, text: str) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=text.encode("utf-8"),
                ContentType="text/plain; charset=utf-8",
            )
        except self._errors as exc:
            raise PersistenceError(f"S3 upload failed: {exc}") from exc

    def get_text(self, key: str) -> str:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read().decode("utf-8")
        except self._errors as exc:
            raise PersistenceError(f"S3 download failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except self._errors as exc:
            raise PersistenceError(f"S3 delete failed: {exc}") from exc


def build_object_store(artifact_dir: str) -> ObjectStore:
    backend = os.environ.get("DG_STORAGE_BACKEND", "local").strip().lower()
    if backend == "s3":
        bucket = os.environ.get("DG_S3_BUCKET", "").strip()
        if not bucket:
            raise PersistenceError("DG_S3_BUCKET is required for the s3 storage backend")
        return S3ObjectStore(
            bucket,
            endpoint_url=os.environ.get("DG_S3_ENDPOINT_URL") or None,
            region=os.environ.get("DG_S3_REGION") or None,
        )
    return LocalObjectStore(artifact_dir)


def save_cleaned_artifact(
    conn: Any,
    store: ObjectStore,
    document_id: str,
    content: str,
    kind: str = ARTIFACT_KIND_TEXT,
    logger: logging.Logger | None = None,
) -> Artifact:
    """Persist cleaned text once per distinct hash and link it to the document."""
    logger = logger or logging.getLogger("digestor.artifacts")
    digest = sha256_hex(content)
    artifact = find_artifact_by_hash(conn, digest)
    if artifact is None:
        key = f"cleaned/{uuid.uuid4()}.txt"
        store.put_text(key, content)
        if not insert_artifact(conn, kind, key, digest):
            # Another worker stored the same text first; keep its row.
            store.delete(key)
        artifact = find_artifact_by_hash(conn, digest)
        if artifact is None:
            raise PersistenceError(f"artifact missing after insert hash={digest}")
        log_event(logger, logging.INFO, "artifact_saved", artifact_id=artifact.id, hash=digest[:12])
    else:
        log_event(logger, logging.INFO, "artifact_reused", artifact_id=artifact.id, hash=digest[:12])
    link_document_artifact(conn, document_id, artifact.id)
    return artifact


def load_artifact_content(conn: Any, store: ObjectStore, artifact_id: str) -> tuple[Artifact, str]:
    artifact = get_artifact(conn, artifact_id)
    if artifact is None:
        raise PersistenceError(f"artifact not found: {artifact_id}")
    return artifact, store.get_text(artifact.uri)
