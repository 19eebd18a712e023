from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    return max(minimum, value)


def debounce_ms() -> int:
    return _int_env("HOUSING_MAP_DEBOUNCE_MS", 300)


def cache_ttl_ms() -> int:
    return _int_env("HOUSING_MAP_CACHE_TTL_MS", 5 * 60 * 1000, minimum=1)


def fetch_limit() -> int:
    return _int_env("HOUSING_MAP_FETCH_LIMIT", 1000, minimum=1)


def page_size() -> int:
    return _int_env("HOUSING_MAP_PAGE_SIZE", 20, minimum=1)


def session_idle_timeout_s() -> int:
    return _int_env("HOUSING_MAP_SESSION_IDLE_S", 30 * 60, minimum=1)


def data_source_name() -> str:
    n = (os.getenv("HOUSING_MAP_DATA_SOURCE") or "in_memory").strip().lower()
    if n in {"http", "in_memory"}:
        return n
    return "in_memory"


def data_service_url() -> str | None:
    return (os.getenv("HOUSING_MAP_DATA_URL") or "").strip() or None


def data_service_api_key() -> str | None:
    return (os.getenv("HOUSING_MAP_DATA_API_KEY") or "").strip() or None


def entities_path() -> Path:
    return Path(
        os.getenv("HOUSING_MAP_ENTITIES_PATH")
        or (_repo_root() / "data" / "entities")
    )


def mapbox_token() -> str | None:
    return (os.getenv("HOUSING_MAP_MAPBOX_TOKEN") or "").strip() or None
