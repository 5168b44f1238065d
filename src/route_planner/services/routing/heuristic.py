"""Greedy nearest-neighbour route construction."""

from __future__ import annotations

from .models import StopType
from .problem import RouteSequence, RoutingProblem, empty_sequence

ALGORITHM = "greedy"


def solve_greedy(problem: RoutingProblem) -> RouteSequence:
    """Append the nearest eligible stop until nothing else fits.

    A stop is eligible when its pickup (if any) is already on the route, the
    vehicle has room, its deadline can be met and the route still closes within
    the time limit. Pickups are only taken when their delivery could follow
    directly. A stop that misses the budget or its deadline is skipped for the
    rest of the pass, and so is any delivery whose pickup was skipped.
    Ties go to the higher value, then the earlier deadline, then the stop id.
    """
    if problem.size == 0:
        return empty_sequence(ALGORITHM)

    order: list[int] = []
    visited: set[int] = set()
    skipped: set[int] = set()
    position = -1
    elapsed = 0.0
    load = 0

    while len(order) < problem.max_stops:
        best: int | None = None
        best_key: tuple | None = None
        for index, stop in enumerate(problem.stops):
            if index in visited or index in skipped:
                continue
            pickup = problem.pickup_of[index]
            if pickup is not None and pickup not in visited:
                if pickup in skipped:
                    skipped.add(index)
                continue

            delivery = problem.delivery_of[index]
            if stop.stop_type is StopType.PICKUP:
                if load >= problem.max_items:
                    continue
                if delivery is not None and len(order) + 2 > problem.max_stops:
                    continue

            travel = problem.travel(position, index)
            arrival = elapsed + travel
            if arrival > problem.deadlines[index]:
                skipped.add(index)
                continue
            end = arrival + problem.service(index)
            last = index
            if delivery is not None:
                delivery_arrival = end + problem.travel(index, delivery)
                if delivery_arrival > problem.deadlines[delivery]:
                    skipped.add(index)
                    continue
                end = delivery_arrival + problem.service(delivery)
                last = delivery
            if end + problem.closing_leg(last) > problem.limit_minutes:
                skipped.add(index)
                continue

            key = (travel, -stop.value, problem.deadlines[index], stop.stop_id)
            if best_key is None or key < best_key:
                best, best_key = index, key

        if best is None:
            break

        elapsed += problem.travel(position, best) + problem.service(best)
        stop_type = problem.stops[best].stop_type
        if stop_type is StopType.PICKUP:
            load += 1
        elif stop_type is StopType.DELIVERY and problem.pickup_of[best] is not None:
            load -= 1
        order.append(best)
        visited.add(best)
        position = best

    return problem.finalize(order, ALGORITHM, is_optimal=False)
