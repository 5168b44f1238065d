import itertools
import random
from datetime import timedelta

import pytest

from conftest import START, T0, MatrixEstimator, delivery_order, pickup_order, point
from route_planner.models.domain import GeoPoint
from route_planner.services.routing.estimator import HaversineEstimator, LegMatrix
from route_planner.services.routing.heuristic import solve_greedy
from route_planner.services.routing.optimal import (
    BRANCH_AND_BOUND,
    HELD_KARP,
    solve_branch_and_bound,
    solve_held_karp,
    solve_near_optimal,
)
from route_planner.services.routing.problem import RoutingParameters, RoutingProblem
from route_planner.services.routing.stops import to_stops


def _problem(orders, estimator, limit, *, handling=0, max_items=6, max_stops=40):
    stops = []
    for order in orders:
        stops.extend(to_stops(order, earnings_percentage=0.8, handling_minutes=handling))
    stops.sort(key=lambda stop: stop.stop_id)
    legs = LegMatrix.build([START] + [stop.location for stop in stops], estimator)
    return RoutingProblem.create(
        stops,
        legs,
        limit_minutes=limit,
        departure=T0,
        max_items=max_items,
        max_stops=max_stops,
    )


def _random_point(rng: random.Random) -> GeoPoint:
    return GeoPoint(round(rng.uniform(41.65, 41.75), 5), round(rng.uniform(44.70, 44.85), 5))


def _random_orders(rng: random.Random, held: int, with_pickup: int):
    orders = []
    for i in range(held):
        deadline = None
        if rng.random() < 0.3:
            deadline = T0 + timedelta(minutes=rng.uniform(10, 40))
        orders.append(
            delivery_order(f"H{i}", _random_point(rng), round(rng.uniform(2, 15), 2), delivery_deadline=deadline)
        )
    for i in range(with_pickup):
        orders.append(pickup_order(f"P{i}", _random_point(rng), _random_point(rng), round(rng.uniform(2, 15), 2)))
    return orders


def _brute_force_earnings(problem: RoutingProblem) -> float:
    best = 0.0
    for size in range(1, problem.size + 1):
        for order in itertools.permutations(range(problem.size), size):
            if problem.is_feasible(order):
                best = max(best, problem.totals(order)[2])
    return best


def test_optimal_beats_greedy_when_greedy_spends_budget_badly(budget_trap_world):
    estimator, orders = budget_trap_world
    problem = _problem(orders, estimator, limit=15)

    greedy = solve_greedy(problem)
    optimal = solve_near_optimal(problem, RoutingParameters(tolerance_minutes=0, handling_time_minutes=0))

    assert greedy.earnings == 7.0
    assert optimal.earnings == 10.0
    assert [stop.stop_id for stop in optimal.stops] == ["C:delivery"]
    assert optimal.algorithm == HELD_KARP
    assert optimal.is_optimal


def test_held_karp_prefers_shorter_route_on_equal_earnings():
    a, b = point(1), point(2)
    estimator = MatrixEstimator({START: "S", a: "A", b: "B"}, {("S", "A"): 10, ("S", "B"): 4, ("A", "B"): 50})
    orders = [delivery_order("A", a, 5.0), delivery_order("B", b, 5.0)]

    result = solve_held_karp(_problem(orders, estimator, limit=30))

    assert [stop.stop_id for stop in result.stops] == ["B:delivery"]
    assert result.duration_minutes == 4.0


@pytest.mark.parametrize("seed", range(8))
def test_held_karp_matches_exhaustive_search(seed):
    rng = random.Random(seed)
    orders = _random_orders(rng, held=2, with_pickup=2)
    problem = _problem(orders, HaversineEstimator(30), limit=35, handling=2, max_items=1)

    result = solve_held_karp(problem)

    assert result.earnings == pytest.approx(_brute_force_earnings(problem))
    assert problem.is_feasible(result.order)
    assert result.is_optimal


@pytest.mark.parametrize("seed", range(5))
def test_unbounded_branch_and_bound_matches_held_karp(seed):
    rng = random.Random(100 + seed)
    orders = _random_orders(rng, held=4, with_pickup=2)
    problem = _problem(orders, HaversineEstimator(30), limit=40, handling=2)
    parameters = RoutingParameters(beam_width=0, search_max_nodes=5_000_000, search_time_limit_seconds=60)

    exact = solve_held_karp(problem)
    searched = solve_branch_and_bound(problem, parameters)

    assert searched.earnings == pytest.approx(exact.earnings)
    assert searched.is_optimal


@pytest.mark.parametrize("seed", range(5))
def test_near_optimal_is_never_worse_than_greedy(seed):
    rng = random.Random(200 + seed)
    orders = _random_orders(rng, held=8, with_pickup=4)
    problem = _problem(orders, HaversineEstimator(30), limit=60, handling=3)

    greedy = solve_greedy(problem)
    result = solve_near_optimal(problem, RoutingParameters())

    restricted = problem.restrict(problem.reachable())
    assert result.earnings >= greedy.earnings - 1e-9
    assert result.algorithm == (BRANCH_AND_BOUND if restricted.size > 10 else HELD_KARP)
    assert restricted.is_feasible(result.order)


def test_node_ceiling_returns_best_found_and_clears_optimal_flag():
    rng = random.Random(7)
    orders = _random_orders(rng, held=12, with_pickup=0)
    problem = _problem(orders, HaversineEstimator(30), limit=60, handling=3)
    greedy = solve_greedy(problem)

    result = solve_branch_and_bound(problem, RoutingParameters(search_max_nodes=5), incumbent=greedy)

    assert not result.is_optimal
    assert result.nodes_explored <= 5
    assert result.earnings >= greedy.earnings - 1e-9
    assert result.truncated


def test_beam_cut_is_not_reported_as_a_ceiling_hit():
    rng = random.Random(7)
    orders = _random_orders(rng, held=12, with_pickup=0)
    problem = _problem(orders, HaversineEstimator(30), limit=60, handling=3)

    result = solve_branch_and_bound(problem, RoutingParameters(beam_width=1, search_time_limit_seconds=60))

    assert not result.is_optimal
    assert not result.truncated
    assert result.order


def test_unreachable_stops_are_dropped_before_search():
    a, far = point(1), point(2)
    estimator = MatrixEstimator({START: "S", a: "A", far: "F"}, {("S", "A"): 5, ("S", "F"): 500, ("A", "F"): 500})
    orders = [delivery_order("A", a, 1.0), delivery_order("F", far, 100.0)]
    problem = _problem(orders, estimator, limit=30)

    assert problem.reachable() == [0]
    result = solve_near_optimal(problem, RoutingParameters())

    assert [stop.stop_id for stop in result.stops] == ["A:delivery"]


def test_pickups_precede_deliveries_in_optimal_routes():
    rng = random.Random(42)
    orders = _random_orders(rng, held=1, with_pickup=3)
    problem = _problem(orders, HaversineEstimator(30), limit=90, handling=2, max_items=2)

    result = solve_near_optimal(problem, RoutingParameters())

    seen = set()
    for stop in result.stops:
        if stop.stop_type.value == "delivery" and stop.order_id.startswith("P"):
            assert stop.order_id in seen
        if stop.stop_type.value == "pickup":
            seen.add(stop.order_id)
    assert problem.restrict(problem.reachable()).is_feasible(result.order)
