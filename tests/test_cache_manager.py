from datetime import timedelta

import pytest

from conftest import START, ManualClock
from route_planner.errors import InvalidInputError, NotFoundError, UnavailableError
from route_planner.models.domain import GeoPoint, StartingPoint
from route_planner.persistence.memory import InMemoryOrderPool, InMemoryRouteCacheRepository
from route_planner.services.cache.manager import RouteCacheManager
from route_planner.services.routing.builder import RouteBuilder
from route_planner.services.routing.estimator import HaversineEstimator
from route_planner.services.routing.problem import RoutingParameters

COURIER = "courier-1"
BUCKETS = [30, 60]


class CountingPool(InMemoryOrderPool):
    def __init__(self, orders=(), on_list=None):
        super().__init__(orders)
        self.calls = 0
        self.on_list = on_list

    def list_available(self, vehicle, near=None):
        self.calls += 1
        if self.on_list is not None:
            self.on_list(self.calls)
        return super().list_available(vehicle, near)


class RejectFirstWrite(InMemoryRouteCacheRepository):
    def __init__(self):
        super().__init__()
        self.writes = 0

    def write_generation(self, courier_id, **kwargs):
        self.writes += 1
        if self.writes == 1:
            return False
        return super().write_generation(courier_id, **kwargs)


def _manager(clock, orders=(), *, repository=None, pool=None):
    builder = RouteBuilder(HaversineEstimator(30), RoutingParameters(handling_time_minutes=2), clock=clock)
    return RouteCacheManager(
        repository or InMemoryRouteCacheRepository(),
        pool if pool is not None else InMemoryOrderPool(orders),
        builder,
        clock=clock,
        cache_ttl_seconds=300,
        empty_cache_ttl_seconds=30,
        generation_timeout_seconds=30,
        stale_lock_margin_seconds=10,
        max_generation_attempts=3,
        background_workers=2,
    )


@pytest.fixture
def world(three_stop_world):
    _, orders = three_stop_world
    return orders


@pytest.fixture
def manager(clock, world):
    manager = _manager(clock, world)
    yield manager
    manager.shutdown()


def _get(manager, start, **kwargs):
    kwargs.setdefault("buckets", BUCKETS)
    buckets = kwargs.pop("buckets")
    vehicle = kwargs.pop("vehicle", "car")
    return manager.get_or_generate_routes(COURIER, vehicle, start, buckets, **kwargs)


def test_first_request_generates_then_serves_from_cache(manager, start):
    first = _get(manager, start)
    second = _get(manager, start)

    assert not first.from_cache
    assert first.version == 1
    assert not first.stale
    assert [route.target_duration for route in first.routes] == BUCKETS
    assert first.available_order_count == 3
    assert second.from_cache
    assert second.version == 1
    assert [route.route_id for route in second.routes] == [route.route_id for route in first.routes]


def test_subset_of_cached_buckets_is_a_cache_hit(manager, start):
    _get(manager, start)

    hit = _get(manager, start, buckets=[60])
    miss = _get(manager, start, buckets=[90])

    assert hit.from_cache
    assert [route.target_duration for route in hit.routes] == [60]
    assert not miss.from_cache
    assert miss.version == 2


def test_every_invalidation_costs_exactly_one_regeneration(manager, start):
    _get(manager, start)
    for _ in range(3):
        assert manager.invalidate(courier_ids=[COURIER]) == [COURIER]
        assert _get(manager, start).from_cache is False

    assert _get(manager, start).version == 4
    assert manager.repository.get(COURIER).version == 4


def test_invalidation_by_order_and_by_location(manager, start):
    _get(manager, start)

    assert manager.invalidate(order_ids=["missing"]) == []
    assert manager.invalidate(order_ids=["A"]) == [COURIER]
    _get(manager, start)
    assert manager.invalidate(locations=[GeoPoint(48.85, 2.35)]) == []
    assert manager.invalidate(locations=[GeoPoint(START.lat + 0.02, START.lng)]) == [COURIER]
    assert manager.repository.get(COURIER).needs_revalidation


def test_invalidating_unknown_courier_marks_nothing(manager):
    assert manager.invalidate(courier_ids=["ghost"]) == ["ghost"]
    assert manager.repository.get("ghost") is None


def test_expired_cache_is_regenerated(manager, clock, start):
    _get(manager, start)
    clock.advance(299)
    assert _get(manager, start).from_cache

    clock.advance(2)
    refreshed = _get(manager, start)

    assert not refreshed.from_cache
    assert refreshed.version == 2


def test_empty_pool_uses_short_ttl(clock, start):
    manager = _manager(clock)
    result = _get(manager, start)

    assert result.expires_at - result.generated_at == timedelta(seconds=30)
    assert all(route.stop_count == 0 for route in result.routes)
    manager.shutdown()


def test_moving_or_switching_vehicle_invalidates(manager, start):
    _get(manager, start)

    nearby = StartingPoint(GeoPoint(START.lat + 0.001, START.lng))
    assert _get(manager, nearby).from_cache

    moved = StartingPoint(GeoPoint(START.lat + 0.05, START.lng))
    assert _get(manager, moved).version == 2
    assert _get(manager, moved, vehicle="van").version == 3


def test_live_lock_returns_last_known_routes(manager, clock, start):
    _get(manager, start)
    manager.repository.try_acquire_generation(
        COURIER, generation_id="other-worker", now=clock.now(), stale_after_seconds=40
    )
    manager.invalidate(courier_ids=[COURIER])

    result = _get(manager, start)

    assert result.from_cache
    assert result.stale
    assert result.is_generating
    assert result.version == 1
    assert len(result.routes) == 2


def test_stale_lock_is_taken_over(manager, clock, start):
    _get(manager, start)
    manager.repository.try_acquire_generation(
        COURIER, generation_id="crashed-worker", now=clock.now(), stale_after_seconds=40
    )
    manager.invalidate(courier_ids=[COURIER])
    clock.advance(41)

    result = _get(manager, start)

    assert not result.from_cache
    assert result.version == 2
    assert not manager.repository.get(COURIER).is_generating


def test_waiting_for_someone_elses_first_generation_times_out(manager, clock, start):
    manager.repository.try_acquire_generation(
        COURIER, generation_id="other-worker", now=clock.now(), stale_after_seconds=40
    )

    result = _get(manager, start)

    assert result.routes == []
    assert result.is_generating
    assert clock.sleeps[:4] == [0.05, 0.1, 0.2, 0.4]
    assert max(clock.sleeps) == 1.0


def test_wait_for_routes_without_entry_is_not_found(manager):
    with pytest.raises(NotFoundError):
        manager.wait_for_routes("nobody", timeout_seconds=1)


def test_failed_generation_releases_lock_and_writes_nothing(clock, start):
    def explode(_):
        raise UnavailableError("order source down")

    manager = _manager(clock, pool=CountingPool(on_list=explode))

    with pytest.raises(UnavailableError):
        _get(manager, start)

    entry = manager.repository.get(COURIER)
    assert not entry.is_generating
    assert entry.needs_revalidation
    assert entry.version == 0
    assert not entry.has_data
    manager.shutdown()


def test_rejected_write_is_discarded_and_retried(clock, world, start):
    repository = RejectFirstWrite()
    manager = _manager(clock, world, repository=repository)

    result = _get(manager, start)

    assert repository.writes == 2
    assert result.version == 1
    assert not repository.get(COURIER).is_generating
    manager.shutdown()


def test_invalidation_during_generation_triggers_another_run(clock, world, start):
    holder = {}

    def invalidate_once(call):
        if call == 1:
            holder["manager"].invalidate(courier_ids=[COURIER])

    pool = CountingPool(world, on_list=invalidate_once)
    manager = _manager(clock, pool=pool)
    holder["manager"] = manager

    result = _get(manager, start)

    assert pool.calls == 2
    assert result.version == 2
    assert not result.stale
    manager.shutdown()


def test_constant_invalidation_gives_up_after_max_attempts(clock, world, start):
    holder = {}
    pool = CountingPool(world, on_list=lambda call: holder["manager"].invalidate(courier_ids=[COURIER]))
    manager = _manager(clock, pool=pool)
    holder["manager"] = manager

    result = _get(manager, start)

    assert pool.calls == 3
    assert result.version == 3
    assert result.stale
    manager.shutdown()


def test_background_refresh_fills_the_cache(manager, start):
    pending = _get(manager, start, wait=False)
    assert pending.stale

    manager.shutdown(wait=True)
    entry = manager.repository.get(COURIER)

    assert entry.version == 1
    assert entry.has_data


def test_refresh_in_background_returns_a_future(manager, start):
    future = manager.refresh_in_background(COURIER, "car", start, BUCKETS)
    entry = future.result(timeout=10)

    assert entry.version == 1
    assert sorted(entry.buckets) == BUCKETS


@pytest.mark.parametrize(
    "courier_id, vehicle, buckets, algorithm",
    [
        ("", "car", [60], None),
        (COURIER, "hovercraft", [60], None),
        (COURIER, "car", [0], None),
        (COURIER, "car", [60], "fastest"),
    ],
)
def test_invalid_requests_are_rejected(manager, start, courier_id, vehicle, buckets, algorithm):
    with pytest.raises(InvalidInputError):
        manager.get_or_generate_routes(courier_id, vehicle, start, buckets, algorithm=algorithm)


def test_clock_is_shared_with_builder(manager, clock):
    assert isinstance(manager.clock, ManualClock)
    assert manager.builder.clock is clock
