from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from locations.geocoder import GeocodeFailure, Geocoder, GeocoderError
from locations.registry import LocationRegistry
from locations.types import SearchLocation


@dataclass
class LocationResolver:
    """
    Turn a typed query into a `SearchLocation`.

    The local registry answers known states/cities/ZIPs; the geocoder is only
    consulted for strings the registry cannot place.
    """

    registry: LocationRegistry
    geocoder: Geocoder | None = None

    async def resolve(self, query: str) -> SearchLocation:
        q = " ".join((query or "").split())
        if not q:
            raise GeocodeFailure(query, "Empty location query")

        local = self.registry.lookup(q)
        if local is not None:
            return local

        if self.geocoder is None:
            raise GeocodeFailure(q)

        try:
            result = await self.geocoder.resolve(q)
        except GeocoderError as e:
            logger.warning(f"Geocoder unavailable for query: {e}")
            raise GeocodeFailure(q, "Location lookup unavailable") from e

        if result is None:
            raise GeocodeFailure(q)

        logger.debug(f"Geocoded {q!r} -> {result.display_name} ({result.lat:.4f}, {result.lng:.4f})")
        return SearchLocation(
            name=result.display_name or q,
            kind=result.kind,
            state_code=result.state_code,
            latitude=result.lat,
            longitude=result.lng,
        )
