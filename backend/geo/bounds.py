from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class HasLatLng(Protocol):
    latitude: float | None
    longitude: float | None


@dataclass(frozen=True)
class ViewportBounds:
    """
    WGS84 rectangle in degrees.

    Convention used throughout this repo:
    - north/south are latitudes, east/west are longitudes
    - derived only (search radius or live map viewport), never persisted
    """

    north: float
    south: float
    east: float
    west: float

    def normalized(self) -> "ViewportBounds":
        return ViewportBounds(
            north=max(self.north, self.south),
            south=min(self.north, self.south),
            east=max(self.east, self.west),
            west=min(self.east, self.west),
        )

    @property
    def center(self) -> tuple[float, float]:
        # (lat, lng)
        return ((self.north + self.south) / 2.0, (self.east + self.west) / 2.0)

    def rounded_key(self, decimals: int = 4) -> tuple[float, float, float, float]:
        """
        A stable, hashable key for comparing viewports.

        decimals=4 is ~11m-ish in latitude, plenty for pan/zoom comparisons.
        """
        b = self.normalized()
        return (
            round(b.north, decimals),
            round(b.south, decimals),
            round(b.east, decimals),
            round(b.west, decimals),
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViewportBounds":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        ).normalized()


def has_coordinates(entity: HasLatLng) -> bool:
    return entity.latitude is not None and entity.longitude is not None


def point_in_bounds(point: HasLatLng, bounds: ViewportBounds) -> bool:
    """
    Inclusive containment on all four edges.

    Shared by the data-service filter, the search scope and viewport culling so the
    three paths agree on boundary points.
    """
    if not has_coordinates(point):
        return False
    lat = float(point.latitude)  # type: ignore[arg-type]
    lng = float(point.longitude)  # type: ignore[arg-type]
    return bounds.south <= lat <= bounds.north and bounds.west <= lng <= bounds.east
