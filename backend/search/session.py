from __future__ import annotations

import math
from typing import Callable

from loguru import logger

from entities.types import EntityKind, PointEntity
from fetch.errors import FetchError, SupersededRequest
from fetch.orchestrator import FetchOrchestrator
from fetch.scheduler import Scheduler
from locations.geocoder import GeocodeFailure
from locations.resolver import LocationResolver
from locations.types import SearchLocation, location_key
from markers.reconciler import MarkerReconciler
from markers.selection import SelectionController, SelectionListener
from markers.types import MapRenderer, MarkerHandle
from search.actions import (
    Action,
    Clear,
    SetError,
    SetLocation,
    SetPage,
    SetRadius,
    SetResults,
    ToggleLayer,
)
from search.reducer import reduce
from search.state import DEFAULT_PAGE_SIZE, SearchError, SearchState, initial_state

StateListener = Callable[[SearchState], None]


class SearchSession:
    """
    The effect layer around the reducer: one user's search.

    Transitions go through `reduce`; this class issues the fetches they call for,
    keeps the markers and the highlight in step, and notifies listeners. Every
    failure ends up in `state.error`.
    """

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        renderer: MapRenderer,
        scheduler: Scheduler,
        *,
        resolver: LocationResolver | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        viewport_debounce_ms: float = 300,
    ) -> None:
        self._orchestrator = orchestrator
        self._renderer = renderer
        self._resolver = resolver
        self._state = initial_state(page_size=page_size)
        self._listeners: list[StateListener] = []
        self._query_seq = 0
        self.reconciler = MarkerReconciler(renderer, scheduler, debounce_ms=viewport_debounce_ms)
        self.selection = SelectionController(self, self.reconciler)

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def renderer(self) -> MapRenderer:
        return self._renderer

    @property
    def orchestrator(self) -> FetchOrchestrator:
        return self._orchestrator

    def dispatch(self, action: Action) -> SearchState:
        previous = self._state
        self._state = reduce(previous, action)
        if self._state is not previous:
            for listener in list(self._listeners):
                listener(self._state)
        return self._state

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_selection_change(self, listener: SelectionListener) -> Callable[[], None]:
        return self.selection.on_selection_change(listener)

    async def search(self, query: str) -> SearchState:
        """
        Resolve a typed place, then search it. Only the latest query is applied.
        """
        self._query_seq += 1
        seq = self._query_seq
        if self._resolver is None:
            return self._fail("not_found", "Location lookup unavailable")
        try:
            location = await self._resolver.resolve(query)
        except GeocodeFailure as e:
            if seq == self._query_seq:
                self._fail("not_found", e.message)
            return self._state
        if seq != self._query_seq:
            logger.debug(f"Dropping resolution of superseded query {query!r}")
            return self._state
        return await self.set_location(location)

    async def set_location(
        self, location: SearchLocation | None, *, radius_miles: float | None = None
    ) -> SearchState:
        if location is None:
            return self.clear()
        if radius_miles is not None:
            _validate_radius(radius_miles)
        self._commit(SetLocation(location, radius_miles))
        return await self._load()

    async def set_radius(self, radius_miles: float) -> SearchState:
        _validate_radius(radius_miles)
        if self._state.location is None:
            return self._state
        self._commit(SetRadius(float(radius_miles)))
        return await self._load()

    async def refetch(self) -> SearchState:
        """
        Drop the cached result of the current search and fetch it again.
        """
        state = self._state
        if state.location is None or state.radius_miles is None:
            return state
        self._orchestrator.cache.invalidate(location_key(state.location, state.radius_miles))
        self._commit(SetRadius(state.radius_miles))
        return await self._load()

    def set_page(self, page: int) -> SearchState:
        return self._commit(SetPage(int(page)))

    def toggle_layer(self, kind: EntityKind, visible: bool) -> SearchState:
        return self._commit(ToggleLayer(EntityKind(kind), bool(visible)))

    def select_entity(self, entity: PointEntity | None) -> PointEntity | None:
        return self.selection.select_entity(entity)

    def click_marker(self, handle: MarkerHandle) -> PointEntity | None:
        return self.selection.handle_marker_click(handle)

    def clear(self) -> SearchState:
        self._orchestrator.cancel()
        self.reconciler.clear()
        return self._commit(Clear())

    async def aclose(self) -> None:
        self._listeners.clear()
        self.reconciler.close()
        await self._orchestrator.aclose()

    async def _load(self) -> SearchState:
        state = self._state
        if state.location is None:
            return state
        try:
            entities = await self._orchestrator.request_for_location(
                state.location, radius_miles=state.radius_miles
            )
        except SupersededRequest:
            return self._state
        except FetchError as e:
            return self._fail(e.reason.value, e.message)
        except Exception as e:
            logger.exception(f"Unexpected failure while loading {state.location.display_name}")
            return self._fail("unexpected", f"{type(e).__name__}: {e}")

        if self._state.location != state.location:
            return self._state
        return self._commit(SetResults.of(entities), fit=True)

    def _fail(self, reason: str, message: str) -> SearchState:
        return self._commit(SetError(SearchError(reason=reason, message=message)))

    def _commit(self, action: Action, *, fit: bool = False) -> SearchState:
        state = self.dispatch(action)
        if fit:
            self.reconciler.fit_to_results(state)
        self.reconciler.sync(state, immediate=True)
        self.selection.sync()
        return state


def _validate_radius(radius_miles: float) -> None:
    r = float(radius_miles)
    if not math.isfinite(r) or r <= 0:
        raise ValueError("radius_miles must be a positive number")
