from __future__ import annotations

from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from api.session_stream import SessionHandle, SessionRegistry, stream_session_events
from datasource.factory import data_service, location_resolver
from entities.types import EntityKind
from geo.bounds import ViewportBounds
from locations.registry import get_registry
from locations.types import LocationKind, SearchLocation
from telemetry.singleton import get_store, reset_store

SESSIONS = SessionRegistry(
    service_factory=lambda: data_service(),
    resolver_factory=location_resolver,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Close every live search session on shutdown."""
    yield
    await SESSIONS.close_all()


app = FastAPI(title="Housing map search", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ApiLayerKind(str, Enum):
    agency = "agency"
    property = "property"


class ApiLocation(BaseModel):
    name: str
    kind: LocationKind
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    stateCode: str | None = None


class ApiSetLocation(BaseModel):
    # null clears the search
    location: ApiLocation | None = None
    radiusMiles: float | None = Field(default=None, gt=0)


class ApiSearch(BaseModel):
    query: str = Field(min_length=1)


class ApiRadius(BaseModel):
    radiusMiles: float = Field(gt=0)


class ApiPage(BaseModel):
    page: int


class ApiLayerToggle(BaseModel):
    kind: ApiLayerKind
    visible: bool


class ApiSelect(BaseModel):
    entityId: str | None = None
    kind: ApiLayerKind | None = None


class ApiViewport(BaseModel):
    north: float = Field(ge=-90, le=90)
    south: float = Field(ge=-90, le=90)
    east: float
    west: float
    width: int | None = None
    height: int | None = None


def _handle(session_id: str) -> SessionHandle:
    try:
        return SESSIONS.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown session") from None


@app.post("/sessions")
async def create_session(request: Request):
    handle = await SESSIONS.create(user_agent=request.headers.get("user-agent"))
    return handle.snapshot()


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    if not await SESSIONS.close(session_id):
        raise HTTPException(status_code=404, detail="Unknown session")
    return {"ok": True}


@app.get("/sessions/{session_id}/state")
async def get_state(session_id: str):
    return _handle(session_id).snapshot()


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str):
    return StreamingResponse(
        stream_session_events(_handle(session_id), registry=SESSIONS),
        media_type="text/event-stream",
    )


@app.post("/sessions/{session_id}/search")
async def search(session_id: str, body: ApiSearch):
    handle = _handle(session_id)
    await handle.session.search(body.query)
    return handle.snapshot()


@app.delete("/sessions/{session_id}/search")
async def clear_search(session_id: str):
    handle = _handle(session_id)
    handle.session.clear()
    return handle.snapshot()


@app.post("/sessions/{session_id}/location")
async def set_location(session_id: str, body: ApiSetLocation):
    handle = _handle(session_id)
    loc = body.location
    location = (
        SearchLocation(
            name=loc.name,
            kind=loc.kind,
            latitude=loc.latitude,
            longitude=loc.longitude,
            state_code=loc.stateCode,
        )
        if loc is not None
        else None
    )
    await handle.session.set_location(location, radius_miles=body.radiusMiles)
    return handle.snapshot()


@app.post("/sessions/{session_id}/radius")
async def set_radius(session_id: str, body: ApiRadius):
    handle = _handle(session_id)
    await handle.session.set_radius(body.radiusMiles)
    return handle.snapshot()


@app.post("/sessions/{session_id}/refetch")
async def refetch(session_id: str):
    handle = _handle(session_id)
    await handle.session.refetch()
    return handle.snapshot()


@app.post("/sessions/{session_id}/page")
async def set_page(session_id: str, body: ApiPage):
    handle = _handle(session_id)
    handle.session.set_page(body.page)
    return handle.snapshot()


@app.post("/sessions/{session_id}/layers")
async def toggle_layer(session_id: str, body: ApiLayerToggle):
    handle = _handle(session_id)
    handle.session.toggle_layer(EntityKind(body.kind.value), body.visible)
    return handle.snapshot()


@app.post("/sessions/{session_id}/select")
async def select(session_id: str, body: ApiSelect):
    handle = _handle(session_id)
    if body.entityId is None:
        handle.session.selection.clear_selection()
    else:
        kind = EntityKind(body.kind.value) if body.kind is not None else None
        handle.session.selection.select_by_id(body.entityId, kind)
    return handle.snapshot()


@app.post("/sessions/{session_id}/markers/{marker_handle}/click")
async def click_marker(session_id: str, marker_handle: str):
    handle = _handle(session_id)
    handle.session.click_marker(marker_handle)
    return handle.snapshot()


@app.post("/sessions/{session_id}/viewport")
async def set_viewport(session_id: str, body: ApiViewport):
    handle = _handle(session_id)
    bounds = ViewportBounds(
        north=body.north, south=body.south, east=body.east, west=body.west
    ).normalized()
    size = (
        {"width": int(body.width), "height": int(body.height)}
        if body.width and body.height
        else None
    )
    # Reconciliation runs on the debounced trailing edge.
    handle.map.set_viewport(bounds, size=size)
    return {"ok": True}


@app.get("/locations/suggest")
async def suggest_locations(q: str = "", limit: int = 10):
    rows = get_registry().suggest(q, limit=max(1, min(50, limit)))
    return [loc.to_dict() for loc in rows]


@app.get("/telemetry/summary")
async def telemetry_summary(source: str | None = None, event: str | None = None):
    store = get_store()
    if store is None:
        return []
    return store.summary(source=source, event=event)


@app.get("/telemetry/slowest")
async def telemetry_slowest(source: str | None = None, limit: int = 25):
    store = get_store()
    if store is None:
        return []
    return store.slowest(source=source, limit=limit)


@app.post("/telemetry/reset")
async def telemetry_reset():
    reset_store()
    return {"ok": True}
