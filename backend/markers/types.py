from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Protocol, Union

from entities.types import EntityKind, PointEntity
from geo.bounds import ViewportBounds

MarkerHandle = Hashable


class MapRenderer(Protocol):
    """
    Whatever paints pins. The engine only pushes add/remove/fit operations into it
    and listens to its viewport changes.
    """

    def add_marker(self, lat: float, lng: float, meta: dict[str, Any]) -> MarkerHandle: ...

    def remove_marker(self, handle: MarkerHandle) -> None: ...

    def get_viewport_bounds(self) -> ViewportBounds | None: ...

    def on_viewport_change(
        self, callback: Callable[[ViewportBounds], None]
    ) -> Callable[[], None]: ...

    def fit_bounds(self, bounds: ViewportBounds) -> None: ...


@dataclass(frozen=True)
class MarkerRecord:
    entity: PointEntity
    handle: MarkerHandle
    highlighted: bool = False

    @property
    def entity_id(self) -> str:
        return self.entity.id

    @property
    def kind(self) -> EntityKind:
        return self.entity.kind

    @property
    def key(self) -> tuple[str, EntityKind]:
        return self.entity.key


@dataclass(frozen=True)
class AddMarker:
    entity: PointEntity


@dataclass(frozen=True)
class RemoveMarker:
    entity_id: str
    kind: EntityKind

    @property
    def key(self) -> tuple[str, EntityKind]:
        return (self.entity_id, self.kind)


MarkerOp = Union[AddMarker, RemoveMarker]


def marker_meta(entity: PointEntity, *, highlighted: bool = False) -> dict[str, Any]:
    return {
        "entityId": entity.id,
        "kind": entity.kind.value,
        "name": entity.name,
        "highlighted": bool(highlighted),
    }
