from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from entities.types import EntityKind, PointEntity
from fetch.scheduler import Scheduler
from geo.bounds import ViewportBounds
from geo.view import bounds_for_points
from locations.types import SearchLocation
from markers.plan import (
    SIGNIFICANCE_THRESHOLD,
    RenderSnapshot,
    plan_markers,
    visible_entities,
)
from markers.types import (
    AddMarker,
    MapRenderer,
    MarkerHandle,
    MarkerOp,
    MarkerRecord,
    RemoveMarker,
    marker_meta,
)
from search.state import SearchState

VIEWPORT_DEBOUNCE_MS = 300


@dataclass(frozen=True)
class _LocationMarker:
    location: SearchLocation
    handle: MarkerHandle


class MarkerReconciler:
    """
    Keeps the renderer's pins consistent with a `SearchState`.

    Owns the handle table. Invariants:
    - at most one record per `(entity_id, kind)`
    - every record points at an entity in the current `filtered_entities`
    - at most one record is highlighted
    """

    def __init__(
        self,
        renderer: MapRenderer,
        scheduler: Scheduler,
        *,
        debounce_ms: float = VIEWPORT_DEBOUNCE_MS,
        threshold: int = SIGNIFICANCE_THRESHOLD,
        timer_key: str = "markers:viewport",
    ) -> None:
        self._renderer = renderer
        self._scheduler = scheduler
        self._debounce_ms = float(debounce_ms)
        self._threshold = int(threshold)
        self._timer_key = timer_key
        self._records: dict[tuple[str, EntityKind], MarkerRecord] = {}
        self._by_handle: dict[MarkerHandle, tuple[str, EntityKind]] = {}
        self._snapshot = RenderSnapshot()
        self._state: SearchState | None = None
        self._location_marker: _LocationMarker | None = None
        self._highlighted: tuple[str, EntityKind] | None = None
        self._unsubscribe = renderer.on_viewport_change(self._on_viewport_change)

    @property
    def records(self) -> list[MarkerRecord]:
        return list(self._records.values())

    @property
    def snapshot(self) -> RenderSnapshot:
        return self._snapshot

    @property
    def location_handle(self) -> MarkerHandle | None:
        return self._location_marker.handle if self._location_marker else None

    @property
    def highlighted(self) -> tuple[str, EntityKind] | None:
        return self._highlighted

    def record_for(self, entity_id: str, kind: EntityKind) -> MarkerRecord | None:
        return self._records.get((entity_id, EntityKind(kind)))

    def entity_for_handle(self, handle: MarkerHandle) -> PointEntity | None:
        key = self._by_handle.get(handle)
        if key is None:
            return None
        return self._records[key].entity

    def sync(self, state: SearchState, *, immediate: bool = True) -> None:
        """
        Adopt a new state. New results and toggle changes reconcile right away;
        `immediate=False` defers to the viewport debounce.
        """
        self._state = state
        self._sync_location_marker(state.location)
        if immediate:
            self._scheduler.cancel(self._timer_key)
            self.reconcile()
        else:
            self._scheduler.schedule_debounced(self._timer_key, self._debounce_ms, self.reconcile)

    def reconcile(self) -> list[MarkerOp]:
        state = self._state
        if state is None:
            return []
        viewport = self._renderer.get_viewport_bounds() or state.search_bounds
        visible = visible_entities(state.filtered_entities, viewport, state.toggles)
        filtered_keys = {e.key for e in state.filtered_entities}
        ops, self._snapshot = plan_markers(
            self._snapshot,
            visible,
            state.toggles,
            filtered_keys,
            threshold=self._threshold,
        )
        for op in ops:
            self._apply(op)
        if ops:
            logger.debug(
                f"Reconciled markers: {sum(isinstance(o, AddMarker) for o in ops)} added, "
                f"{sum(isinstance(o, RemoveMarker) for o in ops)} removed, "
                f"{len(self._records)} live"
            )
        return ops

    def highlight(self, entity: PointEntity | None) -> None:
        """
        Make `entity` the only highlighted marker (None clears). An entity that has
        no marker yet is highlighted when its marker is created.
        """
        key = entity.key if entity is not None else None
        if key == self._highlighted:
            return
        previous = self._highlighted
        self._highlighted = key
        if previous is not None:
            self._repaint(previous)
        if key is not None:
            self._repaint(key)

    def fit_to_results(self, state: SearchState) -> ViewportBounds | None:
        """
        Frame the located results, or the search area when none are located.
        """
        bounds = bounds_for_points(state.filtered_entities) or state.search_bounds
        if bounds is not None:
            self._renderer.fit_bounds(bounds)
        return bounds

    def clear(self) -> None:
        self._scheduler.cancel(self._timer_key)
        for record in list(self._records.values()):
            self._renderer.remove_marker(record.handle)
        self._records.clear()
        self._by_handle.clear()
        self._snapshot = RenderSnapshot()
        self._highlighted = None
        self._sync_location_marker(None)

    def close(self) -> None:
        self._unsubscribe()
        self.clear()
        self._state = None

    def _on_viewport_change(self, bounds: ViewportBounds) -> None:
        if self._state is None:
            return
        self._scheduler.schedule_debounced(self._timer_key, self._debounce_ms, self.reconcile)

    def _sync_location_marker(self, location: SearchLocation | None) -> None:
        current = self._location_marker
        if current is not None and current.location == location:
            return
        if current is not None:
            self._renderer.remove_marker(current.handle)
            self._location_marker = None
        if location is not None:
            handle = self._renderer.add_marker(
                location.latitude,
                location.longitude,
                {"kind": "location", "name": location.display_name},
            )
            self._location_marker = _LocationMarker(location=location, handle=handle)

    def _apply(self, op: MarkerOp) -> None:
        if isinstance(op, RemoveMarker):
            record = self._records.pop(op.key, None)
            if record is not None:
                self._by_handle.pop(record.handle, None)
                self._renderer.remove_marker(record.handle)
            return
        self._add(op.entity)

    def _add(self, entity: PointEntity) -> None:
        key = entity.key
        existing = self._records.pop(key, None)
        if existing is not None:
            self._by_handle.pop(existing.handle, None)
            self._renderer.remove_marker(existing.handle)
        highlighted = key == self._highlighted
        handle = self._renderer.add_marker(
            float(entity.latitude),  # type: ignore[arg-type]
            float(entity.longitude),  # type: ignore[arg-type]
            marker_meta(entity, highlighted=highlighted),
        )
        self._records[key] = MarkerRecord(entity=entity, handle=handle, highlighted=highlighted)
        self._by_handle[handle] = key

    def _repaint(self, key: tuple[str, EntityKind]) -> None:
        record = self._records.get(key)
        if record is None:
            return
        if record.highlighted == (key == self._highlighted):
            return
        self._add(record.entity)
