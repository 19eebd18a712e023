from __future__ import annotations

from typing import Iterable, Sequence, TypeVar

from entities.types import PointEntity
from geo.bounds import ViewportBounds, has_coordinates, point_in_bounds
from geo.ops import distance_from
from locations.matching import matches_place
from locations.types import LocationKind, SearchLocation
from search.state import LayerToggles, total_pages

T = TypeVar("T")


def in_search_scope(
    entity: PointEntity, location: SearchLocation, bounds: ViewportBounds | None
) -> bool:
    """
    Whether an entity belongs to the list view of a search.

    - state searches: the entity's recorded state matches (a state is not a circle)
    - located entities: inside the search bounds, whatever their city label says
    - unlocated entities: their recorded city/county/ZIP names the searched place

    Map culling uses the live viewport instead (see `markers.plan`); the two
    membership tests intentionally stay separate.
    """
    if location.kind == LocationKind.state:
        return matches_place(entity, location)
    if has_coordinates(entity):
        return bounds is not None and point_in_bounds(entity, bounds)
    return matches_place(entity, location)


def dedupe_entities(entities: Iterable[PointEntity]) -> tuple[PointEntity, ...]:
    seen: set[tuple[str, str]] = set()
    out: list[PointEntity] = []
    for e in entities:
        k = (e.id, e.kind.value)
        if k in seen:
            continue
        seen.add(k)
        out.append(e)
    return tuple(out)


def filter_entities(
    entities: Iterable[PointEntity],
    *,
    location: SearchLocation | None,
    bounds: ViewportBounds | None,
    toggles: LayerToggles,
) -> tuple[PointEntity, ...]:
    if location is None:
        return ()
    return order_by_distance(
        (
            e
            for e in entities
            if toggles.is_visible(e.kind) and in_search_scope(e, location, bounds)
        ),
        location.center,
    )


def order_by_distance(
    entities: Iterable[PointEntity], origin: tuple[float, float]
) -> tuple[PointEntity, ...]:
    """
    Nearest first; unlocated entities go last. Ties break on (kind, id) so the
    order, and with it every page, is stable.
    """

    def key(e: PointEntity) -> tuple[float, str, str]:
        d = distance_from(origin, e)
        return (d if d is not None else float("inf"), e.kind.value, e.id)

    return tuple(sorted(entities, key=key))


def clamp_page(page: int, total_count: int, page_size: int) -> int:
    return max(1, min(int(page), total_pages(total_count, page_size)))


def paginate(items: Sequence[T], page: int, page_size: int) -> tuple[int, tuple[T, ...]]:
    """
    Returns `(clamped_page, window)`. An out-of-range page is pulled back to the
    last page rather than yielding an empty window.
    """
    p = clamp_page(page, len(items), page_size)
    start = (p - 1) * page_size
    return p, tuple(items[start : start + page_size])
