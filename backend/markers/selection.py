from __future__ import annotations

from typing import Callable, Protocol

from loguru import logger

from entities.types import EntityKind, PointEntity
from markers.reconciler import MarkerReconciler
from markers.types import MarkerHandle
from search.actions import Action, SelectEntity
from search.state import SearchState

SelectionListener = Callable[[PointEntity | None], None]


class StateStore(Protocol):
    @property
    def state(self) -> SearchState: ...

    def dispatch(self, action: Action) -> SearchState: ...


class SelectionController:
    """
    One path for every way of selecting: list rows, marker clicks, ids from the
    client. Each ends in `select_entity`, which updates the state and moves the
    single highlight.
    """

    def __init__(self, store: StateStore, reconciler: MarkerReconciler) -> None:
        self._store = store
        self._reconciler = reconciler
        self._listeners: list[SelectionListener] = []
        self._last: PointEntity | None = None

    def select_entity(self, entity: PointEntity | None) -> PointEntity | None:
        self._store.dispatch(SelectEntity(entity))
        return self.sync()

    def clear_selection(self) -> None:
        self.select_entity(None)

    def select_by_id(self, entity_id: str, kind: EntityKind | None = None) -> PointEntity | None:
        for e in self._store.state.filtered_entities:
            if e.id == entity_id and (kind is None or e.kind == EntityKind(kind)):
                return self.select_entity(e)
        logger.debug(f"Ignoring selection of unknown entity {entity_id!r}")
        return self._store.state.selection

    def handle_marker_click(self, handle: MarkerHandle) -> PointEntity | None:
        entity = self._reconciler.entity_for_handle(handle)
        if entity is None:
            # The search pin, or a marker removed since the click was sent.
            return self._store.state.selection
        return self.select_entity(entity)

    def on_selection_change(self, listener: SelectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sync(self) -> PointEntity | None:
        """
        Bring the highlight in line with the state's selection and notify on change.
        Also called after transitions that may drop the selection on their own.
        """
        selection = self._store.state.selection
        self._reconciler.highlight(selection)
        if selection != self._last:
            self._last = selection
            for listener in list(self._listeners):
                listener(selection)
        return selection
