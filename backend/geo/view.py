from __future__ import annotations

import math
from typing import Iterable

from geo.bounds import HasLatLng, ViewportBounds, has_coordinates

# Never zoom in past street level when fitting a handful of results.
FIT_MAX_ZOOM = 12.0


def bounds_for_points(
    points: Iterable[HasLatLng], *, min_pad_deg: float = 0.003, pad_ratio: float = 0.1
) -> ViewportBounds | None:
    located = [p for p in points if has_coordinates(p)]
    if not located:
        return None

    min_lng = min(float(p.longitude) for p in located)  # type: ignore[arg-type]
    max_lng = max(float(p.longitude) for p in located)  # type: ignore[arg-type]
    min_lat = min(float(p.latitude) for p in located)  # type: ignore[arg-type]
    max_lat = max(float(p.latitude) for p in located)  # type: ignore[arg-type]

    pad_lng = max(min_pad_deg, (max_lng - min_lng) * pad_ratio)
    pad_lat = max(min_pad_deg, (max_lat - min_lat) * pad_ratio)
    return ViewportBounds(
        north=min(90.0, max_lat + pad_lat),
        south=max(-90.0, min_lat - pad_lat),
        east=max_lng + pad_lng,
        west=min_lng - pad_lng,
    )


def fit_view(
    bounds: ViewportBounds,
    *,
    viewport: dict[str, int] | None = None,
    max_zoom: float = FIT_MAX_ZOOM,
) -> tuple[dict[str, float], float]:
    center_lat, center_lng = bounds.center
    width = int((viewport or {}).get("width") or 900)
    height = int((viewport or {}).get("height") or 600)
    zoom = bbox_to_zoom(bounds, width=width, height=height)
    return {"lat": center_lat, "lng": center_lng}, min(float(max_zoom), zoom)


def bbox_to_zoom(bounds: ViewportBounds, *, width: int, height: int) -> float:
    # WebMercator bbox -> zoom heuristic.

    def lat_to_rad(lat: float) -> float:
        lat = max(-85.0, min(85.0, lat))
        s = math.sin(lat * math.pi / 180.0)
        return math.log((1 + s) / (1 - s)) / 2.0

    b = bounds.normalized()
    lng_delta = b.east - b.west
    lat_delta = (lat_to_rad(b.north) - lat_to_rad(b.south)) * 180.0 / math.pi

    # avoid division by zero
    lng_delta = max(lng_delta, 1e-6)
    lat_delta = max(lat_delta, 1e-6)

    # 256px tiles
    zoom_x = math.log2((width * 360.0) / (256.0 * lng_delta))
    zoom_y = math.log2((height * 170.0) / (256.0 * lat_delta))
    return float(max(0.0, min(zoom_x, zoom_y)))
