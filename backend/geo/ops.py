from __future__ import annotations

from functools import lru_cache

from pyproj import Geod

from geo.bounds import HasLatLng, has_coordinates

METERS_PER_MILE = 1609.344


@lru_cache(maxsize=1)
def wgs84_geod() -> Geod:
    return Geod(ellps="WGS84")


def distance_miles(a: tuple[float, float], b: tuple[float, float]) -> float:
    """
    Geodesic distance between two (lat, lng) points, in miles.
    """
    _az, _back_az, meters = wgs84_geod().inv(
        float(a[1]), float(a[0]), float(b[1]), float(b[0])
    )
    return float(meters) / METERS_PER_MILE


def distance_from(origin: tuple[float, float], entity: HasLatLng) -> float | None:
    if not has_coordinates(entity):
        return None
    return distance_miles(origin, (float(entity.latitude), float(entity.longitude)))  # type: ignore[arg-type]
