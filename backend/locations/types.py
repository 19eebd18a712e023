from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LocationKind(str, Enum):
    city = "city"
    county = "county"
    state = "state"
    zip = "zip"


DEFAULT_RADIUS_MILES: dict[LocationKind, float] = {
    LocationKind.zip: 10.0,
    LocationKind.city: 50.0,
    LocationKind.county: 60.0,
    LocationKind.state: 250.0,
}


@dataclass(frozen=True)
class SearchLocation:
    """
    A resolved place the user searched for.

    Immutable: geocoding produces a new value, never edits one in place.
    """

    name: str
    kind: LocationKind
    latitude: float
    longitude: float
    state_code: str | None = None

    @property
    def center(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def display_name(self) -> str:
        if self.kind == LocationKind.state or not self.state_code:
            return self.name
        return f"{self.name}, {self.state_code}"

    @property
    def default_radius_miles(self) -> float:
        return DEFAULT_RADIUS_MILES[self.kind]

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "stateCode": self.state_code,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "displayName": self.display_name,
        }


def location_key(location: SearchLocation, radius_miles: float | None = None) -> str:
    """
    Cache/debounce identity of a location.

    Named places are keyed by kind + name + state; ZIP codes by their resolved
    centroid. A manually-set radius that differs from the kind's default is part
    of the key, since it changes the fetched area.
    """
    if location.kind == LocationKind.zip:
        base = f"zip:{location.latitude:.4f},{location.longitude:.4f}"
    else:
        name = " ".join(location.name.strip().lower().split())
        state = (location.state_code or "").strip().lower()
        base = f"{location.kind.value}:{name}|{state}"
    if radius_miles is not None and float(radius_miles) != location.default_radius_miles:
        base = f"{base}@{float(radius_miles):g}"
    return base
