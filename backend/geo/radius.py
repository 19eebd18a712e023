from __future__ import annotations

import math

from geo.bounds import ViewportBounds

KM_PER_MILE = 1.609344
KM_PER_DEGREE_LAT = 110.574
KM_PER_DEGREE_LNG_AT_EQUATOR = 111.320

DEFAULT_PADDING_FACTOR = 1.2

# cos() floor near the poles; keeps the longitude span finite.
_MIN_COS_LAT = 1e-6


def bounding_box_for_radius(
    center: tuple[float, float],
    radius_miles: float,
    padding_factor: float = DEFAULT_PADDING_FACTOR,
) -> ViewportBounds:
    """
    Padded search box around `center` (lat, lng) covering `radius_miles`.

    Longitude degrees shrink toward the poles, so the east/west span is scaled by
    1 / cos(lat): at 60°N the same radius covers roughly twice as many degrees of
    longitude as at the equator.
    """
    radius = float(radius_miles)
    if not math.isfinite(radius) or radius <= 0:
        raise ValueError(f"radius_miles must be > 0, got {radius_miles}")
    padding = float(padding_factor)
    if not math.isfinite(padding) or padding <= 0:
        raise ValueError(f"padding_factor must be > 0, got {padding_factor}")

    lat = max(-90.0, min(90.0, float(center[0])))
    lng = float(center[1])

    radius_km = radius * KM_PER_MILE * padding
    cos_lat = max(_MIN_COS_LAT, math.cos(math.radians(lat)))

    d_lat = radius_km / KM_PER_DEGREE_LAT
    d_lng = radius_km / (KM_PER_DEGREE_LNG_AT_EQUATOR * cos_lat)

    return ViewportBounds(
        north=lat + d_lat,
        south=lat - d_lat,
        east=lng + d_lng,
        west=lng - d_lng,
    )
