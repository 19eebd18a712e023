from __future__ import annotations

from dataclasses import replace

from geo.radius import bounding_box_for_radius
from search.actions import (
    Action,
    Clear,
    SelectEntity,
    SetError,
    SetLocation,
    SetPage,
    SetRadius,
    SetResults,
    ToggleLayer,
)
from search.scope import dedupe_entities, filter_entities, paginate
from search.state import SearchState, SearchStatus, initial_state


def _derive(state: SearchState, *, page: int | None = None) -> SearchState:
    """
    Recompute every derived field from the source fields.
    """
    filtered = filter_entities(
        state.entities,
        location=state.results_location,
        bounds=state.results_bounds,
        toggles=state.toggles,
    )
    clamped, window = paginate(filtered, state.page if page is None else page, state.page_size)
    selection = state.selection
    if selection is not None and selection.key not in {e.key for e in filtered}:
        selection = None
    return replace(
        state,
        filtered_entities=filtered,
        paginated_entities=window,
        total_count=len(filtered),
        page=clamped,
        selection=selection,
    )


def reduce(state: SearchState, action: Action) -> SearchState:
    """
    Pure transition function: no I/O, no clocks, same input same output.

    Fetches are the caller's business; `SetLocation`/`SetRadius` only move the
    state to `loading`.
    """
    if isinstance(action, SetLocation):
        loc = action.location
        if loc is None:
            return replace(initial_state(page_size=state.page_size), toggles=state.toggles)
        radius = (
            float(action.radius_miles)
            if action.radius_miles is not None
            else loc.default_radius_miles
        )
        return _derive(
            replace(
                state,
                status=SearchStatus.loading,
                location=loc,
                radius_miles=radius,
                search_bounds=bounding_box_for_radius(loc.center, radius),
                # Previous results stay listed until results for `loc` arrive.
                selection=None,
                error=None,
            ),
            page=1,
        )

    if isinstance(action, SetRadius):
        if state.location is None:
            return state
        radius = float(action.radius_miles)
        return _derive(
            replace(
                state,
                status=SearchStatus.loading,
                radius_miles=radius,
                search_bounds=bounding_box_for_radius(state.location.center, radius),
                error=None,
            ),
            page=1,
        )

    if isinstance(action, SetResults):
        if state.location is None:
            # Results for a cleared search.
            return state
        return _derive(
            replace(
                state,
                status=SearchStatus.loaded,
                results_location=state.location,
                results_bounds=state.search_bounds,
                entities=dedupe_entities(action.entities),
                error=None,
            )
        )

    if isinstance(action, SetError):
        # Keep whatever was last shown; the error is displayed alongside it.
        return replace(state, status=SearchStatus.errored, error=action.error)

    if isinstance(action, SetPage):
        return _derive(state, page=int(action.page))

    if isinstance(action, ToggleLayer):
        return _derive(replace(state, toggles=state.toggles.with_kind(action.kind, action.visible)))

    if isinstance(action, SelectEntity):
        entity = action.entity
        if entity is None:
            return replace(state, selection=None)
        if entity.key not in {e.key for e in state.filtered_entities}:
            return state
        return replace(state, selection=entity)

    if isinstance(action, Clear):
        return replace(initial_state(page_size=state.page_size), toggles=state.toggles)

    raise TypeError(f"Unknown action: {action!r}")
