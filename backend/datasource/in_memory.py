from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from datasource.types import DataServiceError, DataServiceErrorCode, EntityPage
from entities.loaders import load_entities_dir, load_entities_file
from entities.types import PointEntity
from geo.bounds import ViewportBounds
from geo.index import EntityIndex, build_entity_index
from locations.matching import matches_place
from locations.types import SearchLocation


class InMemoryDataService:
    """
    Serves fixture entities from memory, sliced by bounding box via an STRtree.

    Unlocated entities are included when their recorded place matches the search
    textually, mirroring what the hosted service returns for list views.
    """

    name = "in_memory"

    def __init__(self, entities: list[PointEntity]) -> None:
        self._index: EntityIndex = build_entity_index(entities)

    @classmethod
    def from_path(cls, path: Path) -> "InMemoryDataService":
        return cls(_load_cached(str(path)))

    async def fetch_entities_near(
        self,
        location: SearchLocation,
        bounds: ViewportBounds,
        page: int,
        limit: int,
    ) -> EntityPage:
        if int(page) < 1 or int(limit) < 1:
            raise DataServiceError(
                DataServiceErrorCode.validation, f"Invalid page/limit: {page}/{limit}"
            )

        located = self._index.query(bounds)
        unlocated = [e for e in self._index.unlocated if matches_place(e, location)]
        matched = sorted([*located, *unlocated], key=lambda e: (e.kind.value, e.id))

        start = (int(page) - 1) * int(limit)
        return EntityPage(data=tuple(matched[start : start + int(limit)]), total=len(matched))


@lru_cache(maxsize=4)
def _load_cached(path: str) -> list[PointEntity]:
    p = Path(path)
    if p.is_dir():
        return load_entities_dir(p)
    if not p.exists():
        raise FileNotFoundError(f"Entities fixture not found: {p}")
    return load_entities_file(p)
