from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    artifact_dir: str


@dataclass(frozen=True)
class FetchConfig:
    timeout_seconds: int
    user_agent: str
    accept_language: str
    min_html_length: int
    min_text_chars: int
    min_text_density: float
    shell_signatures: list[str]
    render_enabled: bool
    render_timeout_seconds: int
    render_retries: int
    render_backoff_seconds: float
    viewport_width: int
    viewport_height: int


@dataclass(frozen=True)
class ExtractionConfig:
    timeout_seconds: int
    api_timeout_seconds: int
    api_max_comments: int
    readability_retry_length: int
    readability_min_length: int
    junk_phrases: list[str]
    structured_min_length: int
    max_fragments: int
    heuristic_overrides: dict[str, Any]


@dataclass(frozen=True)
class ScoringConfig:
    heuristic_weight: float
    dynamic_weight: float
    prototype_weight: float
    centroid_weight: float
    min_content_length: int
    prototype_duplicate_threshold: float
    prototype_scan_limit: int
    save_prototypes: bool
    embedding_cache_size: int
    max_embedding_chars: int
    embedding_model: str
    embedding_dimensions: int
    embedding_timeout_seconds: int


@dataclass(frozen=True)
class SummarizerConfig:
    model: str
    temperature: float
    chunk_chars: int
    max_input_chars: int
    merge_batch_size: int
    max_concurrency: int
    max_attempts: int
    initial_backoff_seconds: float
    timeout_seconds: int


@dataclass(frozen=True)
class WorkersConfig:
    poll_interval_seconds: int
    lock_timeout_seconds: int


@dataclass(frozen=True)
class ProgressConfig:
    heartbeat_seconds: int


@dataclass(frozen=True)
class SubmissionConfig:
    reuse_window_seconds: int


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool
    socket_timeout_seconds: float
    ttl_seconds: dict[str, int]


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    fetch: FetchConfig
    extraction: ExtractionConfig
    scoring: ScoringConfig
    summarizer: SummarizerConfig
    workers: WorkersConfig
    progress: ProgressConfig
    submissions: SubmissionConfig
    cache: CacheConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Digestor",
    },
    "paths": {
        "data_dir": "/data",
        "artifact_dir": "/data/artifacts",
    },
    "fetch": {
        "timeout_seconds": 10,
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
        ),
        "accept_language": "en-US,en;q=0.9",
        "min_html_length": 200,
        "min_text_chars": 300,
        "min_text_density": 0.05,
        "shell_signatures": [
            "<app-root",
            "<shreddit-app",
            '<div id="root"',
            '<div id="__next"',
        ],
        "render_enabled": True,
        "render_timeout_seconds": 30,
        "render_retries": 2,
        "render_backoff_seconds": 1.0,
        "viewport_width": 1280,
        "viewport_height": 720,
    },
    "extraction": {
        "timeout_seconds": 45,
        "api_timeout_seconds": 10,
        "api_max_comments": 10,
        "readability_retry_length": 250,
        "readability_min_length": 200,
        "junk_phrases": [
            "sign in",
            "subscribe",
            "login",
            "unlock member-only",
            "newsletter",
            "cookie",
            "consent",
            "one tap",
            "gsi_overlay",
        ],
        "structured_min_length": 100,
        "max_fragments": 5,
        "heuristic_overrides": {},
    },
    "scoring": {
        "heuristic_weight": 0.40,
        "dynamic_weight": 0.30,
        "prototype_weight": 0.20,
        "centroid_weight": 0.10,
        "min_content_length": 50,
        "prototype_duplicate_threshold": 0.98,
        "prototype_scan_limit": 1000,
        "save_prototypes": True,
        "embedding_cache_size": 500,
        "max_embedding_chars": 800,
        "embedding_model": "text-embedding-3-small",
        "embedding_dimensions": 256,
        "embedding_timeout_seconds": 20,
    },
    "summarizer": {
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "chunk_chars": 48000,
        "max_input_chars": 400000,
        "merge_batch_size": 5,
        "max_concurrency": 4,
        "max_attempts": 5,
        "initial_backoff_seconds": 5.0,
        "timeout_seconds": 120,
    },
    "workers": {
        "poll_interval_seconds": 300,
        "lock_timeout_seconds": 1800,
    },
    "progress": {
        "heartbeat_seconds": 30,
    },
    "submissions": {
        "reuse_window_seconds": 21600,
    },
    "cache": {
        "enabled": True,
        "socket_timeout_seconds": 1.0,
        "ttl_seconds": {
            "document": 300,
            "summary": 3600,
            "ai_summary": 86400,
            "ai_chunk": 43200,
            "youtube": 86400,
            "twitch": 1800,
            "reddit": 7200,
            "web_content": 7200,
            "extracted": 14400,
        },
    },
}

# Keys whose values are free-form mappings and are not checked against the defaults.
_OPEN_KEYS = {"config.extraction.heuristic_overrides"}


def get_data_dir() -> str:
    return os.environ.get("DG_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])


def get_state_db_path() -> str:
    return os.path.join(get_data_dir(), "state.sqlite3")


def load_config(path: str | None = None) -> Config:
    """Build the runtime config from defaults, an optional YAML file and DG_* env vars."""
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get("DG_CONFIG")
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    data_dir = os.environ.get("DG_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["artifact_dir"] = os.path.join(data_dir, "artifacts")
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"config file unreadable: {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError("config file must contain a mapping")
    return loaded


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    scoring = cfg.get("scoring") if isinstance(cfg.get("scoring"), dict) else {}
    weights = [
        scoring.get(key)
        for key in ("heuristic_weight", "dynamic_weight", "prototype_weight", "centroid_weight")
    ]
    if all(isinstance(value, (int, float)) for value in weights):
        if any(value < 0 for value in weights) or sum(weights) <= 0:
            errors.append("config.scoring weights must be non-negative with a positive sum")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if path in _OPEN_KEYS:
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")


def _build_config(cfg: dict[str, Any]) -> Config:
    fetch_cfg = cfg["fetch"]
    extraction_cfg = cfg["extraction"]
    scoring_cfg = cfg["scoring"]
    summarizer_cfg = cfg["summarizer"]
    workers_cfg = cfg["workers"]
    cache_cfg = cfg["cache"]

    fetch = FetchConfig(
        timeout_seconds=int(fetch_cfg["timeout_seconds"]),
        user_agent=str(fetch_cfg["user_agent"]),
        accept_language=str(fetch_cfg["accept_language"]),
        min_html_length=int(fetch_cfg["min_html_length"]),
        min_text_chars=int(fetch_cfg["min_text_chars"]),
        min_text_density=float(fetch_cfg["min_text_density"]),
        shell_signatures=list(fetch_cfg["shell_signatures"]),
        render_enabled=bool(fetch_cfg["render_enabled"]),
        render_timeout_seconds=int(fetch_cfg["render_timeout_seconds"]),
        render_retries=int(fetch_cfg["render_retries"]),
        render_backoff_seconds=float(fetch_cfg["render_backoff_seconds"]),
        viewport_width=int(fetch_cfg["viewport_width"]),
        viewport_height=int(fetch_cfg["viewport_height"]),
    )

    extraction = ExtractionConfig(
        timeout_seconds=int(extraction_cfg["timeout_seconds"]),
        api_timeout_seconds=int(extraction_cfg["api_timeout_seconds"]),
        api_max_comments=int(extraction_cfg["api_max_comments"]),
        readability_retry_length=int(extraction_cfg["readability_retry_length"]),
        readability_min_length=int(extraction_cfg["readability_min_length"]),
        junk_phrases=[phrase.lower() for phrase in extraction_cfg["junk_phrases"]],
        structured_min_length=int(extraction_cfg["structured_min_length"]),
        max_fragments=int(extraction_cfg["max_fragments"]),
        heuristic_overrides=dict(extraction_cfg["heuristic_overrides"]),
    )

    scoring = ScoringConfig(
        heuristic_weight=float(scoring_cfg["heuristic_weight"]),
        dynamic_weight=float(scoring_cfg["dynamic_weight"]),
        prototype_weight=float(scoring_cfg["prototype_weight"]),
        centroid_weight=float(scoring_cfg["centroid_weight"]),
        min_content_length=int(scoring_cfg["min_content_length"]),
        prototype_duplicate_threshold=float(scoring_cfg["prototype_duplicate_threshold"]),
        prototype_scan_limit=int(scoring_cfg["prototype_scan_limit"]),
        save_prototypes=bool(scoring_cfg["save_prototypes"]),
        embedding_cache_size=int(scoring_cfg["embedding_cache_size"]),
        max_embedding_chars=int(scoring_cfg["max_embedding_chars"]),
        embedding_model=str(scoring_cfg["embedding_model"]),
        embedding_dimensions=int(scoring_cfg["embedding_dimensions"]),
        embedding_timeout_seconds=int(scoring_cfg["embedding_timeout_seconds"]),
    )

    summarizer = SummarizerConfig(
        model=str(summarizer_cfg["model"]),
        temperature=float(summarizer_cfg["temperature"]),
        chunk_chars=int(summarizer_cfg["chunk_chars"]),
        max_input_chars=int(summarizer_cfg["max_input_chars"]),
        merge_batch_size=max(2, int(summarizer_cfg["merge_batch_size"])),
        max_concurrency=max(1, int(summarizer_cfg["max_concurrency"])),
        max_attempts=max(1, int(summarizer_cfg["max_attempts"])),
        initial_backoff_seconds=float(summarizer_cfg["initial_backoff_seconds"]),
        timeout_seconds=int(summarizer_cfg["timeout_seconds"]),
    )

    return Config(
        app=AppConfig(name=str(cfg["app"]["name"])),
        paths=PathsConfig(
            data_dir=str(cfg["paths"]["data_dir"]),
            artifact_dir=str(cfg["paths"]["artifact_dir"]),
        ),
        fetch=fetch,
        extraction=extraction,
        scoring=scoring,
        summarizer=summarizer,
        workers=WorkersConfig(
            poll_interval_seconds=int(workers_cfg["poll_interval_seconds"]),
            lock_timeout_seconds=int(workers_cfg["lock_timeout_seconds"]),
        ),
        progress=ProgressConfig(heartbeat_seconds=int(cfg["progress"]["heartbeat_seconds"])),
        submissions=SubmissionConfig(
            reuse_window_seconds=int(cfg["submissions"]["reuse_window_seconds"])
        ),
        cache=CacheConfig(
            enabled=bool(cache_cfg["enabled"]),
            socket_timeout_seconds=float(cache_cfg["socket_timeout_seconds"]),
            ttl_seconds={key: int(value) for key, value in cache_cfg["ttl_seconds"].items()},
        ),
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
