from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from api.session_stream import SessionRegistry, stream_session_events
from datasource.factory import data_service
from locations.registry import clear_registry_cache
from fakes import DETROIT, StaticService, detroit_cluster

DETROIT_BODY = {
    "location": {"name": "Detroit", "kind": "city", "latitude": 42.33, "longitude": -83.05, "stateCode": "MI"}
}


@pytest.fixture()
def client(monkeypatch):
    monkeypatch.setenv("HOUSING_MAP_DEBOUNCE_MS", "0")
    monkeypatch.delenv("HOUSING_MAP_DATA_SOURCE", raising=False)
    monkeypatch.delenv("HOUSING_MAP_ENTITIES_PATH", raising=False)
    monkeypatch.delenv("HOUSING_MAP_MAPBOX_TOKEN", raising=False)
    data_service.cache_clear()
    clear_registry_cache()

    from main import app

    # One event loop for the whole test: sessions own timers on it.
    with TestClient(app) as c:
        yield c
    data_service.cache_clear()


def _session(client, **headers) -> str:
    res = client.post("/sessions", headers=headers)
    assert res.status_code == 200
    return res.json()["sessionId"]


def test_create_session_starts_idle(client):
    res = client.post("/sessions")
    body = res.json()
    assert body["state"]["status"] == "idle"
    assert body["markers"] == []
    assert body["constrainedNetwork"] is False


def test_mobile_user_agent_marks_network_constrained(client):
    res = client.post("/sessions", headers={"user-agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)"})
    assert res.json()["constrainedNetwork"] is True


def test_location_search_loads_list_and_markers(client):
    sid = _session(client)
    body = client.post(f"/sessions/{sid}/location", json=DETROIT_BODY).json()
    state = body["state"]

    assert state["status"] == "loaded"
    assert state["radiusMiles"] == 50
    ids = {e["id"] for e in state["paginatedEntities"]}
    assert "a-det-1" in ids
    assert "a-det-unlocated" in ids
    assert "a-det-remote" not in ids

    marker_ids = [m.get("entityId") for m in body["markers"] if m["kind"] != "location"]
    assert len(marker_ids) == len(set(marker_ids))
    assert "a-det-unlocated" not in marker_ids
    assert {"a-det-2", "a-det-3"} <= set(marker_ids)
    assert [m["name"] for m in body["markers"] if m["kind"] == "location"] == ["Detroit, MI"]


def test_typed_search_and_not_found(client):
    sid = _session(client)
    state = client.post(f"/sessions/{sid}/search", json={"query": "Detroit, MI"}).json()["state"]
    assert state["location"]["displayName"] == "Detroit, MI"
    assert state["status"] == "loaded"

    state = client.post(f"/sessions/{sid}/search", json={"query": "Atlantis, ZZ"}).json()["state"]
    assert state["error"]["reason"] == "not_found"
    assert state["location"]["name"] == "Detroit"


def test_page_layers_and_radius(client):
    sid = _session(client)
    client.post(f"/sessions/{sid}/location", json=DETROIT_BODY)

    state = client.post(f"/sessions/{sid}/page", json={"page": 99}).json()["state"]
    assert state["page"] == state["totalPages"]

    body = client.post(f"/sessions/{sid}/layers", json={"kind": "property", "visible": False}).json()
    assert body["state"]["toggles"] == {"agency": True, "property": False}
    assert {e["kind"] for e in body["state"]["paginatedEntities"]} == {"agency"}
    assert all(m["kind"] != "property" for m in body["markers"])

    state = client.post(f"/sessions/{sid}/radius", json={"radiusMiles": 5}).json()["state"]
    assert state["radiusMiles"] == 5
    assert "a-aa-1" not in {e["id"] for e in state["paginatedEntities"]}

    assert client.post(f"/sessions/{sid}/radius", json={"radiusMiles": 0}).status_code == 422


def test_select_by_id_and_by_marker_click(client):
    sid = _session(client)
    body = client.post(f"/sessions/{sid}/location", json=DETROIT_BODY).json()

    state = client.post(f"/sessions/{sid}/select", json={"entityId": "a-det-1", "kind": "agency"}).json()["state"]
    assert state["selection"]["id"] == "a-det-1"

    handle = next(m["handle"] for m in body["markers"] if m.get("entityId") == "a-det-2")
    body = client.post(f"/sessions/{sid}/markers/{handle}/click").json()
    assert body["state"]["selection"]["id"] == "a-det-2"
    highlighted = [m["entityId"] for m in body["markers"] if m.get("highlighted")]
    assert highlighted == ["a-det-2"]

    state = client.post(f"/sessions/{sid}/select", json={"entityId": None}).json()["state"]
    assert state["selection"] is None


def test_clear_search(client):
    sid = _session(client)
    client.post(f"/sessions/{sid}/location", json=DETROIT_BODY)
    body = client.delete(f"/sessions/{sid}/search").json()
    assert body["state"]["status"] == "idle"
    assert body["markers"] == []


def test_unknown_session_is_404(client):
    assert client.get("/sessions/nope/state").status_code == 404
    assert client.post("/sessions/nope/page", json={"page": 1}).status_code == 404
    assert client.delete("/sessions/nope").status_code == 404


def test_close_session(client):
    sid = _session(client)
    assert client.delete(f"/sessions/{sid}").json() == {"ok": True}
    assert client.get(f"/sessions/{sid}/state").status_code == 404


def test_location_suggestions(client):
    rows = client.get("/locations/suggest", params={"q": "det"}).json()
    assert rows[0]["displayName"] == "Detroit, MI"
    assert client.get("/locations/suggest", params={"q": ""}).json() == []


def test_telemetry_endpoints_are_empty_when_disabled(client):
    assert client.get("/telemetry/summary").json() == []
    assert client.get("/telemetry/slowest").json() == []


def _parse_sse(chunks: list[str]) -> list[tuple[str, dict]]:
    out = []
    for chunk in chunks:
        event_line, data_line = chunk.strip().split("\n")
        out.append((event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))))
    return out


def test_event_stream_replays_state_then_streams_changes(monkeypatch):
    monkeypatch.setenv("HOUSING_MAP_DEBOUNCE_MS", "0")

    async def run():
        registry = SessionRegistry(
            service_factory=lambda: StaticService(detroit_cluster(3)),
            resolver_factory=lambda: None,
        )
        handle = await registry.create()
        await handle.session.set_location(DETROIT)

        first = [c async for c in stream_session_events(handle, once=True)]
        events = _parse_sse(first)
        assert events[0][0] == "state"
        assert events[0][1]["status"] == "loaded"
        adds = [data for name, data in events[1:] if name == "markers"]
        assert len(adds) == 4
        assert all(a["op"] == "add" for a in adds)

        # A reconnecting client gets the current picture, not the backlog.
        handle.session.toggle_layer("agency", False)
        events = _parse_sse([c async for c in stream_session_events(handle, once=True)])
        assert events[0][1]["toggles"]["agency"] is False
        assert [data["marker"]["kind"] for _, data in events[1:]] == ["location"]

        await registry.close_all()
        assert len(registry) == 0

    asyncio.run(run())


def test_event_stream_forwards_live_events(monkeypatch):
    monkeypatch.setenv("HOUSING_MAP_DEBOUNCE_MS", "0")

    async def run():
        registry = SessionRegistry(
            service_factory=lambda: StaticService(detroit_cluster(3)),
            resolver_factory=lambda: None,
        )
        handle = await registry.create()
        stream = stream_session_events(handle)
        initial = await stream.__anext__()
        assert initial.startswith("event: state\n")

        await handle.session.set_location(DETROIT)
        events = []
        while not handle.events.empty():
            events += _parse_sse([await stream.__anext__()])
        names = [name for name, _ in events]
        assert names[0] == "state"
        assert names.count("state") >= 2
        assert "fitBounds" in names
        added = [data["marker"]["handle"] for name, data in events if name == "markers" and data["op"] == "add"]
        assert len(added) == 4
        assert len(set(added)) == len(added)

        await registry.close(handle.id)
        with pytest.raises(StopAsyncIteration):
            while True:
                await stream.__anext__()

    asyncio.run(run())


def test_event_stream_resyncs_after_backlog_overflow(monkeypatch):
    monkeypatch.setenv("HOUSING_MAP_DEBOUNCE_MS", "0")

    async def run():
        registry = SessionRegistry(
            service_factory=lambda: StaticService(detroit_cluster(3)),
            resolver_factory=lambda: None,
            backlog_size=3,
        )
        handle = await registry.create()
        stream = stream_session_events(handle)
        await stream.__anext__()

        # The client does not read while the search produces more events than the backlog holds.
        await handle.session.set_location(DETROIT)
        events = []
        while not any(name == "markers" and data["op"] == "reset" for name, data in events):
            events += _parse_sse([await stream.__anext__()])

        assert [name for name, _ in events] == ["state", "markers"]
        assert events[0][1]["status"] == "loaded"
        markers = events[1][1]["markers"]
        assert len(markers) == 4
        assert len({m["handle"] for m in markers}) == 4

        # Events after the resync flow normally again.
        handle.session.toggle_layer("agency", False)
        name, data = _parse_sse([await stream.__anext__()])[0]
        assert name in {"state", "markers"}

        await registry.close_all()

    asyncio.run(run())


def test_idle_sessions_expire_unless_streaming():
    async def run():
        now = [0.0]
        registry = SessionRegistry(
            service_factory=lambda: StaticService(detroit_cluster(3)),
            resolver_factory=lambda: None,
            idle_timeout_s=60,
            clock=lambda: now[0],
        )
        idle = await registry.create()
        watched = await registry.create()
        busy = await registry.create()
        stream = stream_session_events(watched, registry=registry)
        await stream.__anext__()

        now[0] = 30.0
        registry.get(busy.id)
        now[0] = 61.0
        await registry.create()

        with pytest.raises(KeyError):
            registry.get(idle.id)
        assert registry.get(watched.id) is watched
        assert registry.get(busy.id) is busy
        assert len(registry) == 3

        # The open stream ends, then the session ages out like any other.
        await stream.aclose()
        assert watched.streams == 0
        now[0] = 200.0
        assert await registry.reap_idle() == 3
        assert len(registry) == 0

    asyncio.run(run())


def test_app_shutdown_closes_sessions(monkeypatch):
    monkeypatch.setenv("HOUSING_MAP_DEBOUNCE_MS", "0")
    monkeypatch.delenv("HOUSING_MAP_DATA_SOURCE", raising=False)
    data_service.cache_clear()

    from main import SESSIONS, app

    with TestClient(app) as c:
        sid = _session(c)
        assert SESSIONS.get(sid).id == sid

    with pytest.raises(KeyError):
        SESSIONS.get(sid)
    data_service.cache_clear()
