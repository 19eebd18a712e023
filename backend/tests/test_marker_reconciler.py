import asyncio
from collections import Counter

from entities.types import EntityKind
from fetch.scheduler import VirtualScheduler
from geo.bounds import ViewportBounds
from markers.reconciler import MarkerReconciler
from markers.selection import SelectionController
from search.actions import Action, SetLocation, SetResults, ToggleLayer
from search.reducer import reduce
from search.state import SearchState, initial_state
from fakes import DETROIT, TOLEDO, RecordingMap, detroit_cluster, entity

DOWNTOWN = ViewportBounds(north=42.5, south=42.2, east=-82.9, west=-83.2)


class Store:
    def __init__(self, state: SearchState) -> None:
        self.state = state

    def dispatch(self, action: Action) -> SearchState:
        self.state = reduce(self.state, action)
        return self.state


def _state(entities, location=DETROIT):
    s = reduce(initial_state(), SetLocation(location))
    return reduce(s, SetResults.of(entities))


def _setup(viewport=DOWNTOWN):
    renderer = RecordingMap(viewport=viewport)
    scheduler = VirtualScheduler()
    return renderer, scheduler, MarkerReconciler(renderer, scheduler)


def _assert_unique(renderer):
    counts = Counter((m["entityId"], m["kind"]) for m in renderer.entity_markers())
    assert all(n == 1 for n in counts.values()), counts


def test_sync_renders_visible_entities_and_location_pin():
    renderer, _, rec = _setup()
    rec.sync(_state(detroit_cluster(3)))
    assert len(renderer.entity_markers()) == 3
    pins = [m for m in renderer.live.values() if m["kind"] == "location"]
    assert [p["name"] for p in pins] == ["Detroit, MI"]
    assert rec.location_handle is not None


def test_entities_outside_viewport_get_no_marker():
    renderer, _, rec = _setup(ViewportBounds(north=42.331, south=42.329, east=-83.049, west=-83.051))
    rec.sync(_state(detroit_cluster(5)))
    assert [m["entityId"] for m in renderer.entity_markers()] == ["a0"]


def test_unlocated_entities_never_get_a_marker():
    renderer, _, rec = _setup()
    rec.sync(_state([entity("u", city="Detroit", state="MI"), *detroit_cluster(1)]))
    assert [m["entityId"] for m in renderer.entity_markers()] == ["a0"]


def test_location_pin_is_replaced_when_location_changes():
    renderer, _, rec = _setup()
    rec.sync(_state(detroit_cluster(2)))
    first = rec.location_handle
    rec.sync(reduce(_state(detroit_cluster(2)), SetLocation(TOLEDO)))
    assert rec.location_handle != first
    assert first not in renderer.live
    assert [m["name"] for m in renderer.live.values() if m["kind"] == "location"] == ["Toledo, OH"]


def test_viewport_changes_are_debounced():
    async def run():
        renderer, scheduler, rec = _setup(ViewportBounds(north=42.3301, south=42.3299, east=-83.0499, west=-83.0501))
        rec.sync(_state(detroit_cluster(20)))
        assert len(renderer.entity_markers()) == 1

        for _ in range(5):
            renderer.pan_to(DOWNTOWN)
            scheduler.advance(100)
        assert len(renderer.entity_markers()) == 1
        scheduler.advance(300)
        assert len(renderer.entity_markers()) == 20

    asyncio.run(run())


def test_small_pan_keeps_markers():
    renderer, scheduler, rec = _setup()
    ents = detroit_cluster(10)
    rec.sync(_state(ents))
    log_before = list(renderer.log)
    # Shrink the viewport so 3 fewer entities are visible: below threshold.
    renderer.pan_to(ViewportBounds(north=42.343, south=42.2, east=-82.9, west=-83.2))
    scheduler.advance(300)
    assert renderer.log == log_before
    assert len(renderer.entity_markers()) == 10


def test_toggle_off_removes_layer_immediately():
    renderer, _, rec = _setup()
    agencies = detroit_cluster(3)
    props = detroit_cluster(2, prefix="p", kind=EntityKind.property)
    s = _state([*agencies, *props])
    rec.sync(s)
    assert len(renderer.entity_markers()) == 5
    rec.sync(reduce(s, ToggleLayer(EntityKind.property, False)))
    assert {m["kind"] for m in renderer.entity_markers()} == {"agency"}
    assert len(rec.records) == 3


def test_records_stay_unique_across_toggles_and_pans():
    renderer, scheduler, rec = _setup()
    agencies = detroit_cluster(12)
    props = detroit_cluster(12, prefix="p", kind=EntityKind.property)
    s = _state([*agencies, *props])
    views = [
        DOWNTOWN,
        ViewportBounds(north=42.345, south=42.2, east=-82.9, west=-83.2),
        ViewportBounds(north=42.3, south=42.2, east=-82.9, west=-83.2),
        DOWNTOWN,
    ]
    for i in range(12):
        s = reduce(s, ToggleLayer(EntityKind.property if i % 2 else EntityKind.agency, i % 3 != 0))
        rec.sync(s)
        renderer.pan_to(views[i % len(views)])
        scheduler.advance(300)
        _assert_unique(renderer)
        assert len(rec.records) == len(renderer.entity_markers())
        filtered = {e.key for e in s.filtered_entities}
        assert all(r.key in filtered for r in rec.records)


def test_new_results_never_leave_markers_for_dropped_entities():
    renderer, _, rec = _setup()
    ents = detroit_cluster(10)
    rec.sync(_state(ents))
    rec.sync(_state(ents[:8]))
    assert {m["entityId"] for m in renderer.entity_markers()} == {e.id for e in ents[:8]}


def test_shared_coordinates_get_separate_markers_and_single_highlight():
    renderer, _, rec = _setup()
    a = entity("a-det-2", 42.3688, -83.0766, city="Detroit", state="MI")
    b = entity("a-det-3", 42.3688, -83.0766, city="Detroit", state="MI")
    store = Store(_state([a, b]))
    rec.sync(store.state)
    selection = SelectionController(store, rec)

    assert rec.record_for("a-det-2", EntityKind.agency) is not None
    assert rec.record_for("a-det-3", EntityKind.agency) is not None
    assert rec.record_for("a-det-2", EntityKind.agency).handle != rec.record_for("a-det-3", EntityKind.agency).handle

    selection.select_entity(a)
    assert renderer.highlighted() == ["a-det-2"]
    selection.select_entity(b)
    assert renderer.highlighted() == ["a-det-3"]
    selection.clear_selection()
    assert renderer.highlighted() == []
    _assert_unique(renderer)


def test_marker_click_and_list_select_converge():
    renderer, _, rec = _setup()
    ents = detroit_cluster(3)
    store = Store(_state(ents))
    rec.sync(store.state)
    selection = SelectionController(store, rec)
    seen = []
    selection.on_selection_change(seen.append)

    handle = rec.record_for("a1", EntityKind.agency).handle
    via_click = selection.handle_marker_click(handle)
    state_after_click = store.state

    selection.clear_selection()
    via_list = selection.select_by_id("a1")
    assert via_click == via_list == ents[1]
    assert store.state == state_after_click
    assert renderer.highlighted() == ["a1"]
    assert seen == [ents[1], None, ents[1]]


def test_click_on_location_pin_or_stale_handle_is_ignored():
    renderer, _, rec = _setup()
    store = Store(_state(detroit_cluster(2)))
    rec.sync(store.state)
    selection = SelectionController(store, rec)
    assert selection.handle_marker_click(rec.location_handle) is None
    assert selection.handle_marker_click(9999) is None
    assert store.state.selection is None


def test_highlight_survives_marker_recreation():
    renderer, scheduler, rec = _setup(ViewportBounds(north=42.3301, south=42.3299, east=-83.0499, west=-83.0501))
    ents = detroit_cluster(10)
    store = Store(_state(ents))
    rec.sync(store.state)
    selection = SelectionController(store, rec)
    # Selected from the list while off screen: no marker yet.
    selection.select_entity(ents[7])
    assert renderer.highlighted() == []
    renderer.pan_to(DOWNTOWN)
    scheduler.advance(300)
    assert renderer.highlighted() == [ents[7].id]


def test_clear_removes_everything():
    renderer, _, rec = _setup()
    rec.sync(_state(detroit_cluster(4)))
    rec.clear()
    assert renderer.live == {}
    assert rec.records == []


def test_fit_to_results_frames_located_entities():
    renderer, _, rec = _setup()
    s = _state(detroit_cluster(3))
    bounds = rec.fit_to_results(s)
    assert renderer.fits == [bounds]
    assert bounds.south < 42.33 and bounds.north > 42.334


def test_fit_falls_back_to_search_bounds():
    renderer, _, rec = _setup()
    s = _state([entity("u", city="Detroit", state="MI")])
    assert rec.fit_to_results(s) == s.search_bounds
