from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from entities.types import EntityKind, PointEntity
from geo.bounds import ViewportBounds
from locations.types import SearchLocation

DEFAULT_PAGE_SIZE = 20


class SearchStatus(str, Enum):
    idle = "idle"
    loading = "loading"
    loaded = "loaded"
    errored = "errored"


@dataclass(frozen=True)
class LayerToggles:
    agency: bool = True
    property: bool = True

    def is_visible(self, kind: EntityKind) -> bool:
        return bool(getattr(self, EntityKind(kind).value))

    def with_kind(self, kind: EntityKind, visible: bool) -> "LayerToggles":
        return replace(self, **{EntityKind(kind).value: bool(visible)})

    def to_dict(self) -> dict[str, bool]:
        return {k.value: self.is_visible(k) for k in EntityKind}


@dataclass(frozen=True)
class SearchError:
    """
    User-facing failure. `reason` is a fetch failure reason, `not_found` for an
    unresolvable place, or `unexpected`.
    """

    reason: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason, "message": self.message}


@dataclass(frozen=True)
class SearchState:
    """
    Snapshot of one search session.

    `filtered_entities`, `paginated_entities` and `total_count` are derived from
    `entities`, the place those entities were fetched for (`results_location`,
    `results_bounds`) and `toggles`; only the reducer computes them.

    `location`/`search_bounds` move as soon as the user picks a new place, while
    the results scope only moves when results for it arrive. Until then the
    previous list stays on screen, also when the fetch fails.
    """

    status: SearchStatus = SearchStatus.idle
    location: SearchLocation | None = None
    radius_miles: float | None = None
    search_bounds: ViewportBounds | None = None
    results_location: SearchLocation | None = None
    results_bounds: ViewportBounds | None = None
    entities: tuple[PointEntity, ...] = ()
    filtered_entities: tuple[PointEntity, ...] = ()
    paginated_entities: tuple[PointEntity, ...] = ()
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    total_count: int = 0
    selection: PointEntity | None = None
    toggles: LayerToggles = field(default_factory=LayerToggles)
    error: SearchError | None = None

    @property
    def loading(self) -> bool:
        return self.status == SearchStatus.loading

    @property
    def total_pages(self) -> int:
        return total_pages(self.total_count, self.page_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "loading": self.loading,
            "location": self.location.to_dict() if self.location else None,
            "radiusMiles": self.radius_miles,
            "searchBounds": self.search_bounds.to_dict() if self.search_bounds else None,
            "resultsLocation": self.results_location.to_dict() if self.results_location else None,
            "entities": len(self.entities),
            "filteredCount": len(self.filtered_entities),
            "paginatedEntities": [e.to_dict() for e in self.paginated_entities],
            "page": self.page,
            "pageSize": self.page_size,
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
            "selection": self.selection.to_dict() if self.selection else None,
            "toggles": self.toggles.to_dict(),
            "error": self.error.to_dict() if self.error else None,
        }


def total_pages(total_count: int, page_size: int) -> int:
    if page_size <= 0:
        return 1
    return max(1, math.ceil(max(0, total_count) / page_size))


def initial_state(*, page_size: int = DEFAULT_PAGE_SIZE) -> SearchState:
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    return SearchState(page_size=int(page_size))
