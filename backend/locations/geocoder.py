"""Geocoding of raw place/ZIP strings the local registry does not know.

Uses the Mapbox Geocoding API v5
(https://docs.mapbox.com/api/search/geocoding-v5/). Requires an access token.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx
from loguru import logger

from locations.types import LocationKind

MAPBOX_PLACES_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
DEFAULT_TIMEOUT = 10.0

_PLACE_TYPE_KIND: dict[str, LocationKind] = {
    "postcode": LocationKind.zip,
    "place": LocationKind.city,
    "locality": LocationKind.city,
    "district": LocationKind.county,
    "region": LocationKind.state,
}


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    display_name: str
    kind: LocationKind = LocationKind.city
    state_code: str | None = None


class GeocoderError(Exception):
    """Transport or service failure while geocoding (distinct from "no match")."""

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider_name}: {message}")


class GeocodeFailure(Exception):
    """
    A query could not be resolved to a place. Shown to the user as "not found";
    never retried.
    """

    def __init__(self, query: str, message: str = "Location not found") -> None:
        self.query = query
        self.message = message
        super().__init__(f"{message}: {query!r}")


class Geocoder(Protocol):
    async def resolve(self, query: str) -> GeocodeResult | None: ...


class MapboxGeocoder:
    """Mapbox forward geocoder limited to US places."""

    provider_name = "mapbox"

    def __init__(
        self,
        access_token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token)

    async def resolve(self, query: str) -> GeocodeResult | None:
        """Resolve a free-form place or ZIP string.

        Returns:
            GeocodeResult, or None when the provider answered without a match.

        Raises:
            GeocoderError: On timeout, HTTP error or connection failure.
        """
        cleaned = " ".join((query or "").split())
        if not cleaned or not self.is_configured:
            return None

        params = {
            "access_token": self._access_token,
            "country": "US",
            "limit": 1,
            "types": "postcode,place,locality,district,region",
        }
        url = MAPBOX_PLACES_URL.format(query=quote(cleaned, safe=""))

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Mapbox geocoder timeout")
            raise GeocoderError(self.provider_name, "Geocoding request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning(f"Mapbox geocoder HTTP error {e.response.status_code}")
            raise GeocoderError(
                self.provider_name,
                f"Provider returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            logger.warning("Mapbox geocoder connection error")
            raise GeocoderError(self.provider_name, "Connection to geocoding provider failed") from e
        except ValueError as e:
            raise GeocoderError(self.provider_name, "Provider returned invalid JSON") from e

        return self._parse_response(data)

    def _parse_response(self, data: dict) -> GeocodeResult | None:
        features = (data or {}).get("features") or []
        if not features:
            return None
        best = features[0] or {}
        center = best.get("center") or []
        if len(center) < 2:
            return None
        lng, lat = float(center[0]), float(center[1])

        place_types = best.get("place_type") or []
        kind = next(
            (_PLACE_TYPE_KIND[t] for t in place_types if t in _PLACE_TYPE_KIND),
            LocationKind.city,
        )

        state_code = None
        for ctx in best.get("context") or []:
            # Mapbox sends "US-MI"; older responses used "us-mi".
            short = str((ctx or {}).get("short_code") or "").lower()
            if str((ctx or {}).get("id") or "").startswith("region.") and short.startswith("us-"):
                state_code = short[3:].upper()
                break
        if kind == LocationKind.state:
            short = str((best.get("properties") or {}).get("short_code") or "").lower()
            if short.startswith("us-"):
                state_code = short[3:].upper()

        name = str(best.get("text") or best.get("place_name") or "")
        return GeocodeResult(
            lat=lat,
            lng=lng,
            display_name=name,
            kind=kind,
            state_code=state_code,
        )
