from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from entities.types import EntityKind, PointEntity
from geo.bounds import ViewportBounds, has_coordinates, point_in_bounds
from markers.types import AddMarker, MarkerOp, RemoveMarker
from search.state import LayerToggles

# Minimum change in visible count that justifies repainting a layer.
SIGNIFICANCE_THRESHOLD = 5


@dataclass(frozen=True)
class KindSnapshot:
    # None until the first reconcile of this kind.
    toggle: bool | None = None
    rendered: tuple[PointEntity, ...] = ()

    @property
    def count(self) -> int:
        return len(self.rendered)


@dataclass(frozen=True)
class RenderSnapshot:
    """
    What was last painted, per kind. The only memory the planner has.
    """

    kinds: Mapping[EntityKind, KindSnapshot] = field(default_factory=dict)

    def for_kind(self, kind: EntityKind) -> KindSnapshot:
        return self.kinds.get(kind, KindSnapshot())

    @property
    def total(self) -> int:
        return sum(s.count for s in self.kinds.values())


def visible_entities(
    filtered: Iterable[PointEntity],
    viewport: ViewportBounds | None,
    toggles: LayerToggles,
) -> dict[EntityKind, list[PointEntity]]:
    """
    Entities that deserve a marker right now: located, inside the live viewport,
    and on a visible layer. Grouped by kind, order preserved.
    """
    out: dict[EntityKind, list[PointEntity]] = {k: [] for k in EntityKind}
    if viewport is None:
        return out
    for e in filtered:
        if not toggles.is_visible(e.kind):
            continue
        if has_coordinates(e) and point_in_bounds(e, viewport):
            out[e.kind].append(e)
    return out


def needs_redraw(
    previous: KindSnapshot,
    visible_count: int,
    *,
    toggle: bool,
    has_stale: bool,
    threshold: int = SIGNIFICANCE_THRESHOLD,
) -> bool:
    if has_stale:
        return True
    if previous.toggle is not None and previous.toggle != toggle:
        return True
    if (previous.count == 0) != (visible_count == 0):
        return True
    return abs(visible_count - previous.count) > threshold


def plan_markers(
    previous: RenderSnapshot,
    visible: Mapping[EntityKind, Sequence[PointEntity]],
    toggles: LayerToggles,
    filtered_keys: set[tuple[str, EntityKind]],
    *,
    threshold: int = SIGNIFICANCE_THRESHOLD,
) -> tuple[list[MarkerOp], RenderSnapshot]:
    """
    Decide, per kind, whether to repaint and with which operations.

    A kind is repainted when its visible count moved by more than `threshold`,
    its toggle flipped, it went from empty to non-empty (or back), or something
    it shows has left the filtered results. Small pans below the threshold leave
    the painted set as is.

    A repaint emits the diff between what is painted and what is visible
    (removals first), which leaves the map in the same state a clear-and-recreate
    would.
    """
    ops: list[MarkerOp] = []
    kinds: dict[EntityKind, KindSnapshot] = {}

    for kind in EntityKind:
        prev = previous.for_kind(kind)
        now = list(visible.get(kind, ()))
        toggle = toggles.is_visible(kind)
        has_stale = any(e.key not in filtered_keys for e in prev.rendered)

        if not needs_redraw(prev, len(now), toggle=toggle, has_stale=has_stale, threshold=threshold):
            kinds[kind] = KindSnapshot(toggle=toggle, rendered=prev.rendered)
            continue

        now_by_id = {e.id: e for e in now}
        prev_by_id = {e.id: e for e in prev.rendered}
        for e in prev.rendered:
            # Moved entities are re-added at their new position.
            if now_by_id.get(e.id) != e:
                ops.append(RemoveMarker(entity_id=e.id, kind=kind))
        rendered: list[PointEntity] = []
        for e in now_by_id.values():
            if prev_by_id.get(e.id) != e:
                ops.append(AddMarker(entity=e))
            rendered.append(e)
        kinds[kind] = KindSnapshot(toggle=toggle, rendered=tuple(rendered))

    return ops, RenderSnapshot(kinds=kinds)
