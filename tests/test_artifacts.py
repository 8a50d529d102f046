import pytest

from digestor.artifacts import LocalObjectStore, build_object_store, load_artifact_content, save_cleaned_artifact
from digestor.errors import PersistenceError
from digestor.models import SOURCE_WEBPAGE
from digestor.storage import count_artifacts, create_document, get_document, insert_artifact


def test_same_text_is_stored_once(conn, tmp_path):
    store = LocalObjectStore(str(tmp_path / "artifacts"))
    first = create_document(conn, "https://a.example/1", "https://a.example/1", SOURCE_WEBPAGE)
    second = create_document(conn, "https://b.example/2", "https://b.example/2", SOURCE_WEBPAGE)

    a = save_cleaned_artifact(conn, store, first.id, "Identical cleaned text.")
    b = save_cleaned_artifact(conn, store, second.id, "Identical cleaned text.")

    assert a.id == b.id
    assert count_artifacts(conn) == 1
    assert get_document(conn, first.id).artifact_id == a.id
    assert get_document(conn, second.id).artifact_id == a.id
    assert len(list((tmp_path / "artifacts" / "cleaned").iterdir())) == 1


def test_load_artifact_content_round_trip(conn, tmp_path):
    store = LocalObjectStore(str(tmp_path / "artifacts"))
    doc = create_document(conn, "https://a.example/1", "https://a.example/1", SOURCE_WEBPAGE)
    artifact = save_cleaned_artifact(conn, store, doc.id, "Body text with ünïcode.")
    loaded, content = load_artifact_content(conn, store, artifact.id)
    assert loaded.hash == artifact.hash
    assert content == "Body text with ünïcode."


def test_load_missing_artifact_raises(conn, tmp_path):
    store = LocalObjectStore(str(tmp_path / "artifacts"))
    with pytest.raises(PersistenceError):
        load_artifact_content(conn, store, "nope")


def test_duplicate_hash_insert_is_ignored(conn):
    assert insert_artifact(conn, "TEXT", "cleaned/a.txt", "abc") is True
    assert insert_artifact(conn, "TEXT", "cleaned/b.txt", "abc") is False
    assert count_artifacts(conn) == 1


def test_local_store_rejects_keys_outside_root(tmp_path):
    store = LocalObjectStore(str(tmp_path / "artifacts"))
    with pytest.raises(PersistenceError):
        store.put_text("../escape.txt", "x")


def test_s3_backend_requires_bucket(monkeypatch, tmp_path):
    monkeypatch.setenv("DG_STORAGE_BACKEND", "s3")
    monkeypatch.delenv("DG_S3_BUCKET", raising=False)
    with pytest.raises(PersistenceError):
        build_object_store(str(tmp_path))


def test_default_backend_is_local(tmp_path):
    assert isinstance(build_object_store(str(tmp_path)), LocalObjectStore)
