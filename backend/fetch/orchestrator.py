from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from loguru import logger

from datasource.types import DataService, DataServiceError, DataServiceErrorCode
from entities.payload import MalformedPayload
from entities.types import PointEntity
from fetch.cache import EntityCache
from fetch.errors import FetchError, FetchFailureReason, SupersededRequest
from fetch.scheduler import Scheduler
from geo.bounds import ViewportBounds
from geo.radius import bounding_box_for_radius
from locations.types import SearchLocation, location_key
from telemetry.store import TelemetryStore

DEFAULT_SLOT = "search"
DEFAULT_DEBOUNCE_MS = 300
DEFAULT_FETCH_LIMIT = 1000
MAX_RETRIES = 2
RETRY_BACKOFF_MS = 1000

_REASON_BY_CODE: dict[DataServiceErrorCode, FetchFailureReason] = {
    DataServiceErrorCode.network: FetchFailureReason.network,
    DataServiceErrorCode.timeout: FetchFailureReason.timeout,
    DataServiceErrorCode.validation: FetchFailureReason.validation,
}


@dataclass
class _Pending:
    token: int
    key: str
    location: SearchLocation
    radius_miles: float
    future: "asyncio.Future[tuple[PointEntity, ...]]"


@dataclass
class _Slot:
    token: int = 0
    current_key: str | None = None
    pending: _Pending | None = None


class FetchOrchestrator:
    """
    Debounced, cached, stale-safe entity fetching for a location.

    Each call takes a new token on its slot. Only the holder of the slot's latest
    token may resolve with data or write to the cache; everyone else gets
    `SupersededRequest`. Obsolete network calls are not aborted, their results are
    just dropped on arrival.
    """

    def __init__(
        self,
        service: DataService,
        cache: EntityCache,
        scheduler: Scheduler,
        *,
        debounce_ms: float = DEFAULT_DEBOUNCE_MS,
        limit: int = DEFAULT_FETCH_LIMIT,
        constrained_network: bool = False,
        max_retries: int = MAX_RETRIES,
        retry_backoff_ms: float = RETRY_BACKOFF_MS,
        telemetry: TelemetryStore | None = None,
    ) -> None:
        self._service = service
        self._cache = cache
        self._scheduler = scheduler
        self._debounce_ms = float(debounce_ms)
        self._limit = int(limit)
        self._constrained = bool(constrained_network)
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_ms = float(retry_backoff_ms)
        self._telemetry = telemetry
        self._slots: dict[str, _Slot] = {}
        self._inflight: dict[str, asyncio.Task[tuple[PointEntity, ...]]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.network_calls = 0

    @property
    def cache(self) -> EntityCache:
        return self._cache

    @property
    def constrained_network(self) -> bool:
        return self._constrained

    def current_token(self, slot: str = DEFAULT_SLOT) -> int:
        return self._slots.get(slot, _Slot()).token

    def in_flight(self) -> list[str]:
        return list(self._inflight.keys())

    def request_for_location(
        self,
        location: SearchLocation,
        *,
        radius_miles: float | None = None,
        slot: str = DEFAULT_SLOT,
    ) -> "asyncio.Future[tuple[PointEntity, ...]]":
        """
        Resolve the entities around `location`.

        Cache hits resolve immediately. Misses wait for a quiet period of
        `debounce_ms` since the slot's last call; rapid re-selection collapses
        into a single fetch for the final location.
        """
        loop = asyncio.get_running_loop()
        state = self._slots.setdefault(slot, _Slot())
        state.token += 1
        token = state.token
        radius = float(radius_miles) if radius_miles is not None else location.default_radius_miles
        key = location_key(location, radius_miles)
        state.current_key = key
        fut: asyncio.Future[tuple[PointEntity, ...]] = loop.create_future()

        self._supersede_pending(slot, state)

        entry = self._cache.get(key)
        if entry is not None:
            self._scheduler.cancel(self._timer_key(slot))
            logger.debug(f"Cache hit for {key} (token {token})")
            self._record(key=key, cache_hit=True, bounds=None, stats={"entities": len(entry.entities)})
            fut.set_result(entry.entities)
            return fut

        state.pending = _Pending(
            token=token, key=key, location=location, radius_miles=radius, future=fut
        )
        self._scheduler.schedule_debounced(
            self._timer_key(slot), self._debounce_ms, lambda: self._dispatch(slot)
        )
        return fut

    def cancel(self, slot: str = DEFAULT_SLOT) -> None:
        """
        Invalidate everything outstanding on `slot` (search cleared).
        """
        state = self._slots.setdefault(slot, _Slot())
        state.token += 1
        state.current_key = None
        self._scheduler.cancel(self._timer_key(slot))
        self._supersede_pending(slot, state)

    async def aclose(self) -> None:
        for slot in list(self._slots):
            self.cancel(slot)
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _timer_key(self, slot: str) -> str:
        return f"fetch:{slot}"

    def _supersede_pending(self, slot: str, state: _Slot) -> None:
        pending = state.pending
        state.pending = None
        if pending is not None and not pending.future.done():
            pending.future.set_exception(SupersededRequest(slot, pending.token))
            # Nobody is required to await a superseded request.
            pending.future.exception()

    def _dispatch(self, slot: str) -> None:
        state = self._slots.get(slot)
        if state is None or state.pending is None:
            return
        pending = state.pending
        state.pending = None
        if pending.future.done():
            return
        task = asyncio.ensure_future(self._run(slot, pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, slot: str, pending: _Pending) -> None:
        state = self._slots[slot]
        fut = pending.future
        try:
            entities = await self._fetch_shared(pending)
        except Exception as e:
            # Unexpected service errors reach the caller as-is.
            if fut.done():
                return
            if state.token != pending.token:
                fut.set_exception(SupersededRequest(slot, pending.token))
                fut.exception()
            else:
                fut.set_exception(e)
            return

        if fut.done():
            return
        if state.token != pending.token:
            logger.debug(
                f"Discarding stale response for {pending.key} "
                f"(token {pending.token}, current {state.token})"
            )
            fut.set_exception(SupersededRequest(slot, pending.token))
            fut.exception()
            return

        self._cache.put(pending.key, entities)
        fut.set_result(entities)

    async def _fetch_shared(self, pending: _Pending) -> tuple[PointEntity, ...]:
        # A hit may have landed while this request sat in the debounce window.
        entry = self._cache.get(pending.key)
        if entry is not None:
            return entry.entities

        task = self._inflight.get(pending.key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_with_retry(pending))
            self._inflight[pending.key] = task
            task.add_done_callback(lambda t, k=pending.key: self._forget_inflight(k, t))
        return await asyncio.shield(task)

    def _forget_inflight(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    def _is_key_wanted(self, key: str) -> bool:
        return any(s.current_key == key for s in self._slots.values())

    async def _fetch_with_retry(self, pending: _Pending) -> tuple[PointEntity, ...]:
        bounds = bounding_box_for_radius(pending.location.center, pending.radius_miles)
        attempt = 0
        while True:
            t0 = self._scheduler.now_ms()
            self.network_calls += 1
            try:
                page = await self._service.fetch_entities_near(
                    pending.location, bounds, 1, self._limit
                )
            except DataServiceError as e:
                err = FetchError(_REASON_BY_CODE[e.code], e.message)
            except MalformedPayload as e:
                err = FetchError(FetchFailureReason.malformed, str(e))
            else:
                self._record(
                    key=pending.key,
                    cache_hit=False,
                    bounds=bounds,
                    stats={
                        "entities": len(page.data),
                        "total": page.total,
                        "attempt": attempt + 1,
                        "timingsMs": {"total": round(self._scheduler.now_ms() - t0, 2)},
                    },
                )
                return page.data

            self._record(
                key=pending.key,
                cache_hit=False,
                bounds=bounds,
                stats={
                    "error": err.reason.value,
                    "attempt": attempt + 1,
                    "timingsMs": {"total": round(self._scheduler.now_ms() - t0, 2)},
                },
            )
            retry = (
                self._constrained
                and err.is_transient
                and attempt < self._max_retries
                and self._is_key_wanted(pending.key)
            )
            if not retry:
                logger.warning(f"Fetch for {pending.key} failed: {err.reason.value}: {err.message}")
                raise err

            attempt += 1
            logger.info(f"Retrying fetch for {pending.key} (attempt {attempt + 1})")
            await self._scheduler.sleep(self._retry_backoff_ms * attempt)
            if not self._is_key_wanted(pending.key):
                raise err

    def _record(
        self,
        *,
        key: str,
        cache_hit: bool,
        bounds: ViewportBounds | None,
        stats: dict[str, Any],
    ) -> None:
        if self._telemetry is None:
            return
        self._telemetry.record(
            event="fetch",
            source=getattr(self._service, "name", type(self._service).__name__),
            location_kind=key.split(":", 1)[0],
            cache_hit=cache_hit,
            bounds=bounds,
            stats=stats,
        )
