from __future__ import annotations

import threading
from typing import Any

import pytest
import redis

from digestor.cache import CacheService
from digestor.config import load_config
from digestor.storage import init_db

_ENV_VARS = (
    "DG_DB_URL",
    "DG_REDIS_URL",
    "DG_CONFIG",
    "DG_LOG_FILE",
    "DG_LOG_LEVELS",
    "DG_STORAGE_BACKEND",
    "DG_LLM_BASE_URL",
    "DG_LLM_API_KEY",
    "DG_EMBEDDINGS_BASE_URL",
    "DG_EMBEDDINGS_API_KEY",
    "DG_REDDIT_CLIENT_ID",
    "DG_REDDIT_CLIENT_SECRET",
    "DG_REDDIT_USERNAME",
    "DG_REDDIT_PASSWORD",
    "DG_GITHUB_TOKEN",
    "DG_YOUTUBE_API_KEY",
    "DG_TWITCH_CLIENT_ID",
    "DG_TWITCH_CLIENT_SECRET",
)


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self.store.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        with self._lock:
            self.store[key] = value
            self.ttls[key] = ex
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self.store.pop(key, None) is not None:
                    removed += 1
                self.ttls.pop(key, None)
        return removed


class DownRedis:
    def get(self, key: str) -> Any:
        raise redis.ConnectionError("connection refused")

    def set(self, key: str, value: str, ex: int | None = None) -> Any:
        raise redis.ConnectionError("connection refused")

    def delete(self, *keys: str) -> Any:
        raise redis.ConnectionError("connection refused")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DG_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(config, fake_redis):
    return CacheService(fake_redis, config.cache.ttl_seconds)


@pytest.fixture
def down_cache(config):
    return CacheService(DownRedis(), config.cache.ttl_seconds)
