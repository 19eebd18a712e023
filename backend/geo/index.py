from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from entities.types import PointEntity
from geo.bounds import ViewportBounds, has_coordinates, point_in_bounds


@dataclass
class EntityIndex:
    """
    STRtree over located entities for fast bounding-box queries.

    Notes:
    - Input data is EPSG:4326 (lon/lat degrees); shapely points are (lng, lat).
    - The tree is a first cut; `point_in_bounds` makes the final inclusive call so
      results agree exactly with viewport culling.
    """

    entities: list[PointEntity]

    _tree: STRtree | None = field(default=None, repr=False)
    _located: list[PointEntity] = field(default_factory=list, repr=False)
    _unlocated: list[PointEntity] = field(default_factory=list, repr=False)

    def query(self, bounds: ViewportBounds) -> list[PointEntity]:
        if self._tree is None or not self._located:
            return []
        b = bounds.normalized()
        rect = shapely_box(b.west, b.south, b.east, b.north)
        idxs = _to_int_list(self._tree.query(rect))
        hits = [self._located[i] for i in idxs]
        return [e for e in hits if point_in_bounds(e, b)]

    @property
    def unlocated(self) -> list[PointEntity]:
        return list(self._unlocated)


def build_entity_index(entities: list[PointEntity]) -> EntityIndex:
    idx = EntityIndex(entities=list(entities))
    for e in entities:
        if has_coordinates(e):
            idx._located.append(e)
        else:
            idx._unlocated.append(e)
    geoms = [Point(float(e.longitude), float(e.latitude)) for e in idx._located]  # type: ignore[arg-type]
    idx._tree = STRtree(geoms) if geoms else None
    return idx


def _to_int_list(idxs: Any) -> list[int]:
    if idxs is None:
        return []
    return [int(i) for i in idxs]
