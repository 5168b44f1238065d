import random
from datetime import timedelta

import pytest

from conftest import T0, ManualClock, delivery_order, pickup_order
from route_planner.errors import InvalidInputError
from route_planner.models.domain import GeoPoint, StartingPoint, resolve_vehicle
from route_planner.services.routing.builder import RouteBuilder, validate_buckets
from route_planner.services.routing.estimator import HaversineEstimator
from route_planner.services.routing.models import StopType
from route_planner.services.routing.problem import RoutingParameters
from route_planner.services.routing.service import generate_candidate_routes
from route_planner.services.routing.stops import build_stop_pool

PARAMS = RoutingParameters(tolerance_minutes=5, handling_time_minutes=0)


def _pool(orders, vehicle="car", handling=0):
    return build_stop_pool(orders, resolve_vehicle(vehicle), earnings_percentage=0.8, handling_minutes=handling)


def _ids(route):
    return [planned.stop.stop_id for planned in route.stops]


def test_route_per_bucket_sorted_by_target(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS, clock=ManualClock())

    routes = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [60, 15, 30], departure=T0)

    assert [route.target_duration for route in routes] == [15, 30, 60]
    assert [route.duration_label for route in routes] == ["15m", "30m", "1h"]


def test_heuristic_route_has_expected_stops_and_times(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS)

    (route,) = builder.build_routes(
        start, _pool(orders), resolve_vehicle("car"), [30], algorithm="heuristic", departure=T0
    )

    assert _ids(route) == ["A:delivery", "B:delivery", "C:delivery"]
    assert route.estimated_earnings == 17.0
    assert route.estimated_duration_minutes == 12.0
    assert route.estimated_end_time == T0 + timedelta(minutes=12)
    assert [planned.estimated_arrival for planned in route.stops] == [
        T0 + timedelta(minutes=5),
        T0 + timedelta(minutes=8),
        T0 + timedelta(minutes=12),
    ]
    assert [planned.sequence for planned in route.stops] == [1, 2, 3]
    assert route.order_ids == ["A", "B", "C"]
    assert route.algorithm == "greedy"


def test_optimal_route_takes_the_bigger_earning(budget_trap_world, start):
    estimator, orders = budget_trap_world
    builder = RouteBuilder(estimator, RoutingParameters(tolerance_minutes=0, handling_time_minutes=0))

    (greedy,) = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [15], algorithm="heuristic")
    (optimal,) = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [15], algorithm="optimal")

    assert greedy.estimated_earnings == 7.0
    assert optimal.estimated_earnings == 10.0
    assert optimal.is_optimal
    assert optimal.metadata["search_truncated"] is False


def test_node_ceiling_is_reported_in_metadata(three_stop_world, start):
    estimator, orders = three_stop_world
    params = RoutingParameters(handling_time_minutes=0, exact_search_threshold=0, search_max_nodes=1)
    builder = RouteBuilder(estimator, params)

    (route,) = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [60], algorithm="optimal")

    assert route.metadata["search_truncated"] is True
    assert not route.is_optimal
    assert route.estimated_earnings == pytest.approx(17.0)


def test_long_bucket_reserves_and_inserts_a_break(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS)

    short, long = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [60, 240], departure=T0)

    assert all(planned.stop.stop_type is not StopType.BREAK for planned in short.stops)
    assert _ids(long) == ["A:delivery", "break:1", "B:delivery", "C:delivery"]
    assert long.estimated_duration_minutes == 42.0
    assert long.metadata["limit_minutes"] == 215.0
    assert long.stops[2].estimated_arrival == T0 + timedelta(minutes=38)


def test_breaks_can_be_turned_off(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS)

    (route,) = builder.build_routes(
        start, _pool(orders), resolve_vehicle("car"), [240], departure=T0, include_breaks=False
    )

    assert _ids(route) == ["A:delivery", "B:delivery", "C:delivery"]
    assert route.metadata["limit_minutes"] == 245.0


def test_break_is_moved_before_a_stop_whose_deadline_it_would_break(three_stop_world, start):
    estimator, orders = three_stop_world
    orders[2].delivery_deadline = T0 + timedelta(minutes=20)
    builder = RouteBuilder(estimator, PARAMS)

    (route,) = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [240], departure=T0)

    assert _ids(route) == ["A:delivery", "B:delivery", "C:delivery", "break:1"]


@pytest.mark.parametrize("algorithm", ["heuristic", "optimal"])
def test_routes_respect_duration_and_precedence(algorithm, start):
    rng = random.Random(11)
    orders = []
    for i in range(6):
        pickup = GeoPoint(rng.uniform(41.65, 41.75), rng.uniform(44.70, 44.85))
        drop = GeoPoint(rng.uniform(41.65, 41.75), rng.uniform(44.70, 44.85))
        orders.append(pickup_order(f"P{i}", pickup, drop, rng.uniform(3, 12)))
    for i in range(6):
        orders.append(delivery_order(f"H{i}", GeoPoint(rng.uniform(41.65, 41.75), rng.uniform(44.70, 44.85)), 4.0))
    builder = RouteBuilder(HaversineEstimator(25), RoutingParameters(tolerance_minutes=5, handling_time_minutes=4))
    buckets = [30, 60, 240]

    routes = builder.build_routes(start, _pool(orders, handling=4), resolve_vehicle("bicycle"), buckets, algorithm=algorithm)

    for route in routes:
        assert route.estimated_duration_minutes <= route.target_duration + 5 + 1e-6
        picked: set[str] = set()
        load = 0
        for planned in route.stops:
            stop = planned.stop
            if stop.stop_type is StopType.PICKUP:
                picked.add(stop.order_id)
                load += 1
            elif stop.stop_type is StopType.DELIVERY and stop.order_id.startswith("P"):
                assert stop.order_id in picked
                load -= 1
            assert load <= resolve_vehicle("bicycle").max_items
        assert load == 0
        arrivals = [planned.estimated_arrival for planned in route.stops]
        assert arrivals == sorted(arrivals)


def test_same_inputs_give_same_routes(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS)

    first = builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [15, 240], departure=T0)
    second = builder.build_routes(start, list(reversed(_pool(orders))), resolve_vehicle("car"), [15, 240], departure=T0)

    assert [_ids(route) for route in first] == [_ids(route) for route in second]
    assert [route.estimated_earnings for route in first] == [route.estimated_earnings for route in second]
    assert first[0].route_id != second[0].route_id


def test_legs_are_estimated_once_per_run(three_stop_world, start):
    estimator, orders = three_stop_world
    builder = RouteBuilder(estimator, PARAMS)

    builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [30], departure=T0)
    single = estimator.calls
    estimator.calls = 0
    builder.build_routes(start, _pool(orders), resolve_vehicle("car"), [30, 60, 120, 240], departure=T0)

    assert estimator.calls == single


def test_empty_pool_gives_empty_routes(start):
    builder = RouteBuilder(HaversineEstimator(30), PARAMS)

    routes = builder.build_routes(start, [], resolve_vehicle("car"), [60, 240], departure=T0)

    assert [route.stop_count for route in routes] == [0, 0]
    assert all(route.estimated_earnings == 0 for route in routes)
    assert routes[1].estimated_duration_minutes == 0


@pytest.mark.parametrize("buckets", [[], [0], [60, -30]])
def test_invalid_buckets_are_rejected(buckets, start):
    with pytest.raises(InvalidInputError):
        RouteBuilder(HaversineEstimator(30)).build_routes(start, [], resolve_vehicle("car"), buckets)


def test_bucket_validation_dedupes_and_sorts():
    assert validate_buckets([120, 60, 120]) == [60, 120]


def test_invalid_start_and_algorithm_are_rejected(start):
    builder = RouteBuilder(HaversineEstimator(30))

    with pytest.raises(InvalidInputError):
        builder.build_routes(StartingPoint(GeoPoint(0.0, 0.0)), [], resolve_vehicle("car"), [60])
    with pytest.raises(InvalidInputError):
        builder.build_routes(start, [], resolve_vehicle("car"), [60], algorithm="fastest")


def test_generation_skips_expired_and_oversized_orders(three_stop_world, start):
    estimator, orders = three_stop_world
    orders[0].delivery_deadline = T0 - timedelta(minutes=1)
    orders[1].shipping_size = "large"
    builder = RouteBuilder(estimator, PARAMS, clock=ManualClock())

    result = generate_candidate_routes(
        builder,
        orders,
        start=start,
        vehicle=resolve_vehicle("car"),
        buckets=[60],
        algorithm="optimal",
    )

    assert result.available_order_count == 3
    assert result.routable_stop_count == 1
    assert _ids(result.routes[0]) == ["C:delivery"]
    assert len(result.warnings) == 2
