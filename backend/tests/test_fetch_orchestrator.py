import asyncio

import pytest

from datasource.types import DataServiceErrorCode
from entities.payload import MalformedPayload
from fetch.cache import EntityCache
from fetch.errors import FetchError, FetchFailureReason, SupersededRequest
from fetch.orchestrator import FetchOrchestrator
from fetch.scheduler import VirtualScheduler, settle
from locations.types import location_key
from fakes import CHICAGO, DETROIT, TOLEDO, ControlledService, StaticService, entity


def _orchestrator(service, scheduler, **kw):
    cache = EntityCache(clock=scheduler.now_ms)
    return FetchOrchestrator(service, cache, scheduler, **kw)


def test_rapid_requests_collapse_into_one_fetch_for_the_last_location():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)

        f1 = orch.request_for_location(DETROIT)
        scheduler.advance(100)
        f2 = orch.request_for_location(TOLEDO)
        scheduler.advance(100)
        f3 = orch.request_for_location(CHICAGO)
        scheduler.advance(299)
        await settle()
        assert service.calls == []

        scheduler.advance(1)
        await settle()
        assert [c.location for c in service.calls] == [CHICAGO]
        assert service.calls[0].page == 1
        assert service.calls[0].limit == 1000

        service.calls[0].resolve([entity("c1", 41.88, -87.63)])
        assert [e.id for e in await f3] == ["c1"]
        for f in (f1, f2):
            with pytest.raises(SupersededRequest):
                await f

    asyncio.run(run())


def test_late_response_of_older_request_is_discarded():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)

        f1 = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        f2 = orch.request_for_location(TOLEDO)
        await scheduler.run_for(300)
        assert [c.location for c in service.calls] == [DETROIT, TOLEDO]

        # Newer answers first, the stale one trails in afterwards.
        service.calls[1].resolve([entity("t1", 41.65, -83.54)])
        assert [e.id for e in await f2] == ["t1"]
        service.calls[0].resolve([entity("d1", 42.33, -83.05)])
        with pytest.raises(SupersededRequest):
            await f1

        assert orch.cache.get(location_key(TOLEDO)) is not None
        assert orch.cache.get(location_key(DETROIT)) is None

    asyncio.run(run())


def test_stale_response_arriving_first_is_discarded_too():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)

        f1 = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        f2 = orch.request_for_location(TOLEDO)
        await scheduler.run_for(300)

        service.calls[0].resolve([entity("d1", 42.33, -83.05)])
        await settle()
        with pytest.raises(SupersededRequest):
            await f1
        assert not f2.done()
        assert orch.cache.get(location_key(DETROIT)) is None

        service.calls[1].resolve([])
        assert await f2 == ()

    asyncio.run(run())


def test_repeat_request_for_in_flight_key_shares_the_call():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)

        f1 = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        f2 = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        assert len(service.calls) == 1
        assert orch.in_flight() == [location_key(DETROIT)]

        service.calls[0].resolve([entity("d1", 42.33, -83.05)])
        assert [e.id for e in await f2] == ["d1"]
        with pytest.raises(SupersededRequest):
            await f1
        assert orch.in_flight() == []

    asyncio.run(run())


def test_cache_hit_resolves_immediately_and_cancels_pending_debounce():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)
        orch.cache.put(location_key(DETROIT), [entity("d1", 42.33, -83.05)])

        pending = orch.request_for_location(TOLEDO)
        assert scheduler.is_pending("fetch:search")
        hit = orch.request_for_location(DETROIT)

        assert hit.done()
        assert [e.id for e in hit.result()] == ["d1"]
        assert not scheduler.is_pending("fetch:search")
        with pytest.raises(SupersededRequest):
            await pending

        await scheduler.run_for(1000)
        assert service.calls == []

    asyncio.run(run())


def test_second_search_of_same_place_is_served_from_cache():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([entity("d1", 42.33, -83.05)])
        orch = _orchestrator(service, scheduler)

        first = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        assert [e.id for e in await first] == ["d1"]

        second = orch.request_for_location(DETROIT)
        assert second.done()
        assert service.calls == 1

    asyncio.run(run())


def test_expired_cache_entry_is_refetched():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([entity("d1", 42.33, -83.05)])
        orch = FetchOrchestrator(service, EntityCache(ttl_ms=1000, clock=scheduler.now_ms), scheduler)

        first = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        await first
        await scheduler.run_for(1001)

        again = orch.request_for_location(DETROIT)
        assert not again.done()
        await scheduler.run_for(300)
        await again
        assert service.calls == 2

    asyncio.run(run())


def test_transient_failures_are_retried_on_constrained_network():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([entity("d1", 42.33, -83.05)], failures=2)
        orch = _orchestrator(service, scheduler, constrained_network=True)

        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        assert service.calls == 1
        # backoff: 1000 ms, then 2000 ms
        await scheduler.run_for(1000)
        assert service.calls == 2
        await scheduler.run_for(2000)
        assert service.calls == 3
        assert [e.id for e in await f] == ["d1"]

    asyncio.run(run())


def test_retries_give_up_after_two_extra_attempts():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([], failures=10, code=DataServiceErrorCode.timeout)
        orch = _orchestrator(service, scheduler, constrained_network=True)

        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(300 + 1000 + 2000 + 100)
        with pytest.raises(FetchError) as exc:
            await f
        assert exc.value.reason == FetchFailureReason.timeout
        assert service.calls == 3

    asyncio.run(run())


def test_no_retry_off_constrained_network():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([entity("d1", 42.33, -83.05)], failures=1)
        orch = _orchestrator(service, scheduler)

        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        with pytest.raises(FetchError) as exc:
            await f
        assert exc.value.reason == FetchFailureReason.network
        assert service.calls == 1

    asyncio.run(run())


def test_validation_errors_are_not_retried():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService([], failures=1, code=DataServiceErrorCode.validation)
        orch = _orchestrator(service, scheduler, constrained_network=True)

        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(3500)
        with pytest.raises(FetchError) as exc:
            await f
        assert exc.value.reason == FetchFailureReason.validation
        assert not exc.value.is_transient
        assert service.calls == 1

    asyncio.run(run())


def test_malformed_payload_maps_to_malformed_reason():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService(error=MalformedPayload("Response root must be an object"))
        orch = _orchestrator(service, scheduler, constrained_network=True)

        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        with pytest.raises(FetchError) as exc:
            await f
        assert exc.value.reason == FetchFailureReason.malformed
        assert service.calls == 1
        assert orch.cache.get(location_key(DETROIT)) is None

    asyncio.run(run())


def test_retry_stops_once_the_location_is_superseded():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService(lambda loc: [entity(loc.name, loc.latitude, loc.longitude)], failures=1)
        orch = _orchestrator(service, scheduler, constrained_network=True)

        f1 = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        assert service.calls == 1

        f2 = orch.request_for_location(TOLEDO)
        await scheduler.run_for(1100)
        assert [e.id for e in await f2] == ["Toledo"]
        with pytest.raises(SupersededRequest):
            await f1
        # Detroit was never retried.
        assert service.calls == 2

    asyncio.run(run())


def test_cancel_supersedes_pending_and_in_flight():
    async def run():
        scheduler = VirtualScheduler()
        service = ControlledService()
        orch = _orchestrator(service, scheduler)

        in_flight = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        orch.cancel()
        service.calls[0].resolve([entity("d1", 42.33, -83.05)])
        with pytest.raises(SupersededRequest):
            await in_flight
        assert orch.cache.get(location_key(DETROIT)) is None

        pending = orch.request_for_location(TOLEDO)
        orch.cancel()
        with pytest.raises(SupersededRequest):
            await pending
        await scheduler.run_for(600)
        assert len(service.calls) == 1

    asyncio.run(run())


def test_slots_do_not_supersede_each_other():
    async def run():
        scheduler = VirtualScheduler()
        service = StaticService(lambda loc: [entity(loc.name, loc.latitude, loc.longitude)])
        orch = _orchestrator(service, scheduler)

        a = orch.request_for_location(DETROIT, slot="search")
        b = orch.request_for_location(TOLEDO, slot="preview")
        await scheduler.run_for(300)
        assert [e.id for e in await a] == ["Detroit"]
        assert [e.id for e in await b] == ["Toledo"]

    asyncio.run(run())


def test_fetches_are_reported_to_telemetry():
    class Sink:
        def __init__(self):
            self.events = []

        def record(self, **kw):
            self.events.append(kw)

    async def run():
        scheduler = VirtualScheduler()
        sink = Sink()
        orch = _orchestrator(StaticService([entity("d1", 42.33, -83.05)]), scheduler, telemetry=sink)
        f = orch.request_for_location(DETROIT)
        await scheduler.run_for(300)
        await f
        orch.request_for_location(DETROIT)
        return sink.events

    events = asyncio.run(run())
    assert [e["cache_hit"] for e in events] == [False, True]
    assert events[0]["source"] == "static"
    assert events[0]["location_kind"] == "city"
    assert events[0]["stats"]["entities"] == 1
    assert events[0]["bounds"] is not None
