from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable

from loguru import logger

from datasource.types import DataService
from entities.types import PointEntity
from fetch.cache import EntityCache
from fetch.config import cache_ttl_ms, debounce_ms, fetch_limit, page_size, session_idle_timeout_s
from fetch.network import is_constrained_network
from fetch.orchestrator import FetchOrchestrator
from fetch.scheduler import AsyncioScheduler, Scheduler
from locations.resolver import LocationResolver
from markers.streaming_map import StreamingMap
from search.session import SearchSession
from telemetry.singleton import get_store


class EventType(str, Enum):
    state = "state"
    markers = "markers"
    selection = "selection"
    fit_bounds = "fitBounds"


def format_event(type: EventType, data: str):
    return f"event: {type.value}\ndata: {data}\n\n"


_CLOSED = object()
_RESYNC = object()

# Events kept for a client that is not connected yet, or not keeping up.
MAX_BACKLOG = 1000


class EventBacklog:
    """
    Events waiting for the session's SSE client.

    When the backlog overflows it is dropped as a whole and replaced by a single
    resync marker; the stream answers that with a full snapshot. Events pushed
    while the resync is pending are covered by that snapshot and not queued.
    """

    def __init__(self, max_size: int | None = None) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._max_size = max_size
        self._resync_pending = False

    def push(self, type: EventType, payload: Any) -> None:
        if self._resync_pending:
            return
        limit = self._max_size or MAX_BACKLOG
        if self._queue.qsize() >= limit:
            logger.warning(f"Session event backlog over {limit} events, dropping it for a resync")
            self._discard()
            self._resync_pending = True
            self._queue.put_nowait(_RESYNC)
            return
        self._queue.put_nowait((type, payload))

    def close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def drain(self) -> bool:
        """
        Drop everything queued. Returns True when the backlog was closed.
        """
        closed = self._discard()
        self._resync_pending = False
        return closed

    def empty(self) -> bool:
        return self._queue.empty()

    async def get(self) -> Any:
        item = await self._queue.get()
        if item is _RESYNC:
            self._resync_pending = False
        return item

    def _discard(self) -> bool:
        closed = False
        while not self._queue.empty():
            if self._queue.get_nowait() is _CLOSED:
                closed = True
        if closed:
            self._queue.put_nowait(_CLOSED)
        return closed


@dataclass
class SessionHandle:
    """
    A live search session plus the backlog its SSE stream drains.
    """

    id: str
    session: SearchSession
    map: StreamingMap
    constrained_network: bool
    events: EventBacklog = field(default_factory=EventBacklog)
    last_seen: float = 0.0
    streams: int = 0

    def push(self, type: EventType, payload: Any) -> None:
        self.events.push(type, payload)

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "constrainedNetwork": self.constrained_network,
            "state": self.session.state.to_dict(),
            "markers": list(self.map.markers.values()),
        }


class SessionRegistry:
    """
    Sessions of this process. The entity cache is shared so one user's search
    warms it for the next; tokens and markers stay per session.

    Sessions nobody touched for `idle_timeout_s` and with no open event stream
    are closed on the next `create`.
    """

    def __init__(
        self,
        *,
        service_factory: Callable[[], DataService],
        resolver_factory: Callable[[], LocationResolver | None],
        scheduler_factory: Callable[[], Scheduler] = AsyncioScheduler,
        cache: EntityCache | None = None,
        idle_timeout_s: float | None = None,
        backlog_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._service_factory = service_factory
        self._resolver_factory = resolver_factory
        # Timer keys are per session, so is the scheduler.
        self._scheduler_factory = scheduler_factory
        self.cache = cache or EntityCache(ttl_ms=cache_ttl_ms())
        self._idle_timeout_s = idle_timeout_s
        self._backlog_size = backlog_size
        self._clock = clock
        self._sessions: dict[str, SessionHandle] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def idle_timeout_s(self) -> float:
        if self._idle_timeout_s is not None:
            return float(self._idle_timeout_s)
        return float(session_idle_timeout_s())

    async def create(self, *, user_agent: str | None = None) -> SessionHandle:
        await self.reap_idle()

        sid = uuid.uuid4().hex
        constrained = is_constrained_network(user_agent)
        events = EventBacklog(self._backlog_size)

        def emit(type: str, payload: dict[str, Any]) -> None:
            events.push(EventType(type), payload)

        streaming_map = StreamingMap(emit)
        scheduler = self._scheduler_factory()
        orchestrator = FetchOrchestrator(
            self._service_factory(),
            self.cache,
            scheduler,
            debounce_ms=debounce_ms(),
            limit=fetch_limit(),
            constrained_network=constrained,
            telemetry=get_store(),
        )
        session = SearchSession(
            orchestrator,
            streaming_map,
            scheduler,
            resolver=self._resolver_factory(),
            page_size=page_size(),
        )
        handle = SessionHandle(
            id=sid,
            session=session,
            map=streaming_map,
            constrained_network=constrained,
            events=events,
            last_seen=self._clock(),
        )
        session.on_state_change(lambda s: handle.push(EventType.state, s.to_dict()))
        session.on_selection_change(lambda e: handle.push(EventType.selection, _selection_payload(e)))
        self._sessions[sid] = handle
        logger.info(f"Created search session {sid} (constrained network: {constrained})")
        return handle

    def get(self, session_id: str) -> SessionHandle:
        handle = self._sessions.get(session_id)
        if handle is None:
            raise KeyError(session_id)
        self.touch(handle)
        return handle

    def touch(self, handle: SessionHandle) -> None:
        handle.last_seen = self._clock()

    async def reap_idle(self) -> int:
        now = self._clock()
        idle = [
            sid
            for sid, h in self._sessions.items()
            if h.streams == 0 and now - h.last_seen > self.idle_timeout_s
        ]
        for sid in idle:
            logger.info(f"Expiring idle search session {sid}")
            await self.close(sid)
        return len(idle)

    async def close(self, session_id: str) -> bool:
        handle = self._sessions.pop(session_id, None)
        if handle is None:
            return False
        await handle.session.aclose()
        handle.events.close()
        logger.info(f"Closed search session {session_id}")
        return True

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.close(sid)


def _selection_payload(entity: PointEntity | None) -> dict[str, Any]:
    return {"entity": entity.to_dict() if entity is not None else None}


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


async def stream_session_events(
    handle: SessionHandle,
    *,
    once: bool = False,
    registry: SessionRegistry | None = None,
) -> AsyncIterator[str]:
    """
    SSE stream for one session: the current state first, then every change.

    The snapshot is taken in the same step as the backlog drain, so nothing in it
    is replayed by a queued event. `once=True` stops after draining what is
    queued (used by tests). While the stream is open the session does not expire.
    """
    if handle.events.drain():
        return
    state = handle.session.state.to_dict()
    markers = list(handle.map.markers.values())

    handle.streams += 1
    try:
        yield format_event(EventType.state, _dumps(state))
        for marker in markers:
            yield format_event(EventType.markers, _dumps({"op": "add", "marker": marker}))
        while True:
            if once and handle.events.empty():
                return
            item = await handle.events.get()
            if item is _CLOSED:
                return
            if item is _RESYNC:
                state = handle.session.state.to_dict()
                markers = list(handle.map.markers.values())
                yield format_event(EventType.state, _dumps(state))
                yield format_event(EventType.markers, _dumps({"op": "reset", "markers": markers}))
                continue
            type, payload = item
            yield format_event(type, _dumps(payload))
    finally:
        handle.streams -= 1
        if registry is not None:
            registry.touch(handle)
