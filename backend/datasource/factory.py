from __future__ import annotations

from functools import lru_cache

from loguru import logger

from datasource.http import HttpDataService
from datasource.in_memory import InMemoryDataService
from datasource.types import DataService
from fetch.config import (
    data_service_api_key,
    data_service_url,
    data_source_name,
    entities_path,
    mapbox_token,
)
from locations.geocoder import MapboxGeocoder
from locations.registry import get_registry
from locations.resolver import LocationResolver


def normalize_source(name: str | None) -> str:
    n = (name or "in_memory").strip().lower()
    if n in {"http", "in_memory"}:
        return n
    return "in_memory"


@lru_cache(maxsize=2)
def data_service(name: str | None = None) -> DataService:
    n = normalize_source(name or data_source_name())
    if n == "http":
        url = data_service_url()
        if not url:
            raise ValueError("HOUSING_MAP_DATA_URL is required when HOUSING_MAP_DATA_SOURCE=http")
        logger.info(f"Using HTTP data service at {url}")
        return HttpDataService(url, api_key=data_service_api_key())
    path = entities_path()
    logger.info(f"Using in-memory data service from {path}")
    return InMemoryDataService.from_path(path)


def location_resolver() -> LocationResolver:
    token = mapbox_token()
    return LocationResolver(
        registry=get_registry(),
        geocoder=MapboxGeocoder(token) if token else None,
    )
