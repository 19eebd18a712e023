from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field

from locations.types import LocationKind, SearchLocation

_ZIP_RE = re.compile(r"^\d{5}(?:-\d{4})?$")
_COUNTY_SUFFIX_RE = re.compile(r"\s+(county|parish|borough)$")


class LocationRecord(BaseModel):
    name: str
    kind: LocationKind
    stateCode: str | None = None
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)

    def to_location(self) -> SearchLocation:
        return SearchLocation(
            name=self.name,
            kind=self.kind,
            state_code=self.stateCode.upper() if self.stateCode else None,
            latitude=self.latitude,
            longitude=self.longitude,
        )


class LocationFile(BaseModel):
    locations: list[LocationRecord] = Field(default_factory=list)


def _repo_root() -> Path:
    # .../backend/locations/registry.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def locations_dir() -> Path:
    return Path(
        os.getenv("HOUSING_MAP_LOCATIONS_DIR") or (_repo_root() / "data" / "locations")
    )


def _iter_location_files() -> Iterable[Path]:
    root = locations_dir()
    if not root.exists():
        return []
    # Convention: data/locations/*.yaml
    return root.glob("*.yaml")


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid locations yaml root: {path}")
    return data


def _norm(s: str | None) -> str:
    return " ".join((s or "").strip().lower().split())


@dataclass(frozen=True)
class LocationRegistry:
    """
    Known US places (states, cities, counties, ZIP centroids) with coordinates.

    Used to resolve a typed query without calling a geocoder.
    """

    locations: tuple[SearchLocation, ...]

    def lookup(self, query: str) -> SearchLocation | None:
        q = _norm(query)
        if not q:
            return None

        if _ZIP_RE.match(q):
            zip5 = q[:5]
            for loc in self.locations:
                if loc.kind == LocationKind.zip and loc.name == zip5:
                    return loc
            return None

        name, _, state = q.partition(",")
        name = name.strip()
        state = state.strip()

        if not state:
            # "Michigan" or "MI"
            for loc in self.locations:
                if loc.kind != LocationKind.state:
                    continue
                if _norm(loc.name) == name or _norm(loc.state_code) == name:
                    return loc

        candidates = [
            loc
            for loc in self.locations
            if loc.kind in {LocationKind.city, LocationKind.county}
            and (not state or _norm(loc.state_code) == state or self._state_name(loc) == state)
        ]
        county_name = _COUNTY_SUFFIX_RE.sub("", name)
        for loc in candidates:
            if loc.kind == LocationKind.city and _norm(loc.name) == name:
                return loc
        for loc in candidates:
            if loc.kind == LocationKind.county and _COUNTY_SUFFIX_RE.sub("", _norm(loc.name)) == county_name:
                return loc
        return None

    def suggest(self, prefix: str, *, limit: int = 10) -> list[SearchLocation]:
        """
        Autocomplete: names starting with the query first, then substring matches.
        """
        q = _norm(prefix)
        if not q:
            return []
        starts: list[SearchLocation] = []
        contains: list[SearchLocation] = []
        for loc in self.locations:
            if loc.kind == LocationKind.zip:
                if loc.name.startswith(q):
                    starts.append(loc)
                continue
            n = _norm(loc.name)
            if n.startswith(q):
                starts.append(loc)
            elif q in n or q == _norm(loc.state_code):
                contains.append(loc)
        return [*starts, *contains][: max(0, int(limit))]

    def _state_name(self, loc: SearchLocation) -> str:
        for s in self.locations:
            if s.kind == LocationKind.state and s.state_code == loc.state_code:
                return _norm(s.name)
        return ""


@lru_cache(maxsize=1)
def get_registry() -> LocationRegistry:
    out: list[SearchLocation] = []
    for p in sorted(_iter_location_files(), key=lambda x: str(x)):
        cfg = LocationFile.model_validate(_load_yaml(p))
        out.extend(r.to_location() for r in cfg.locations)
    return LocationRegistry(locations=tuple(out))


def clear_registry_cache() -> None:
    """
    Clear in-memory location registry cache (tests and data reloads).
    """
    get_registry.cache_clear()
