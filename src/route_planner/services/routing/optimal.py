"""Earnings-maximizing route search.

Small stop pools are solved exactly with a Held-Karp style dynamic program over
(visited subset, last stop). Larger pools use a depth-first branch-and-bound
seeded with the greedy route and capped by node count and wall-clock time.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import replace

from .heuristic import solve_greedy
from .models import StopType
from .problem import EPSILON, RouteSequence, RoutingParameters, RoutingProblem, empty_sequence

logger = logging.getLogger(__name__)

HELD_KARP = "held-karp"
BRANCH_AND_BOUND = "branch-and-bound"


def _mask_tables(problem: RoutingProblem) -> tuple[list[int], list[float]]:
    """Open pickups and earnings for every subset of stops."""
    n = problem.size
    loads = [0] * (1 << n)
    earnings = [0.0] * (1 << n)
    for mask in range(1, 1 << n):
        low = mask & -mask
        index = low.bit_length() - 1
        rest = mask ^ low
        stop = problem.stops[index]
        load = loads[rest]
        if stop.stop_type is StopType.PICKUP:
            load += 1
        elif stop.stop_type is StopType.DELIVERY and problem.pickup_of[index] is not None:
            load -= 1
        loads[mask] = load
        earnings[mask] = earnings[rest] + problem.earning(index)
    return loads, earnings


def solve_held_karp(problem: RoutingProblem, time_limit_seconds: float | None = None) -> RouteSequence:
    """Exact search over every (subset, last stop) state.

    ``best[mask][last]`` keeps the earliest time the route can finish serving
    ``last`` having visited exactly ``mask``. Arriving earlier never hurts: the
    deadlines and the time limit are both upper bounds. Earnings depend only on
    the subset, so the answer is the closed subset (no pickup left without its
    delivery) with the highest earnings, ties going to the shorter route.

    Args:
        problem: Routing problem, usually already restricted to reachable stops.
        time_limit_seconds: Wall-clock ceiling. When hit, the best route found
            so far is returned with ``is_optimal`` false.

    Returns:
        The finalized route sequence.
    """
    n = problem.size
    if n == 0:
        return empty_sequence(HELD_KARP)

    started = time.perf_counter()
    full = 1 << n
    loads, earnings = _mask_tables(problem)
    stop_types = [stop.stop_type for stop in problem.stops]

    best: list[list[float]] = [[math.inf] * n for _ in range(full)]
    parent: list[list[int]] = [[-1] * n for _ in range(full)]
    for index in range(n):
        if problem.pickup_of[index] is not None:
            continue
        if stop_types[index] is StopType.PICKUP and problem.max_items < 1:
            continue
        arrival = problem.travel(-1, index)
        if arrival > problem.deadlines[index]:
            continue
        end = arrival + problem.service(index)
        if end <= problem.limit_minutes:
            best[1 << index][index] = end

    best_mask = 0
    best_last = -1
    best_duration = 0.0
    nodes = 0
    truncated = False

    # Masks grow numerically, so every predecessor state is final before it is extended.
    for mask in range(1, full):
        if time_limit_seconds is not None and time.perf_counter() - started > time_limit_seconds:
            truncated = True
            break
        size = bin(mask).count("1")
        row = best[mask]
        for last in range(n):
            elapsed = row[last]
            if elapsed == math.inf:
                continue
            nodes += 1

            if loads[mask] == 0:
                duration = elapsed + problem.closing_leg(last)
                if duration <= problem.limit_minutes:
                    gain = earnings[mask] - earnings[best_mask]
                    if gain > EPSILON or (abs(gain) <= EPSILON and duration < best_duration - EPSILON):
                        best_mask, best_last, best_duration = mask, last, duration

            if size >= problem.max_stops:
                continue
            for nxt in range(n):
                bit = 1 << nxt
                if mask & bit:
                    continue
                pickup = problem.pickup_of[nxt]
                if pickup is not None and not mask & (1 << pickup):
                    continue
                if stop_types[nxt] is StopType.PICKUP and loads[mask] >= problem.max_items:
                    continue
                arrival = elapsed + problem.travel(last, nxt)
                if arrival > problem.deadlines[nxt]:
                    continue
                end = arrival + problem.service(nxt)
                if end > problem.limit_minutes:
                    continue
                target = mask | bit
                if end < best[target][nxt]:
                    best[target][nxt] = end
                    parent[target][nxt] = last

    order: list[int] = []
    mask, last = best_mask, best_last
    while mask and last >= 0:
        order.append(last)
        previous = parent[mask][last]
        mask ^= 1 << last
        last = previous
    order.reverse()

    if truncated:
        logger.warning(f"Held-Karp search hit its {time_limit_seconds}s ceiling after {nodes} states")
    return problem.finalize(order, HELD_KARP, is_optimal=not truncated, nodes_explored=nodes, truncated=truncated)


def _best_rate(problem: RoutingProblem) -> float:
    """Highest earnings per minute any single delivery can contribute.

    Every delivery costs at least its cheapest inbound leg plus handling, and
    those minutes are never shared with another stop.
    """
    rate = 0.0
    for index in range(problem.size):
        earning = problem.earning(index)
        if earning <= 0:
            continue
        inbound = min(problem.travel(origin, index) for origin in range(-1, problem.size) if origin != index)
        cost = inbound + problem.service(index)
        if cost <= EPSILON:
            return math.inf
        rate = max(rate, earning / cost)
    return rate


def solve_branch_and_bound(
    problem: RoutingProblem,
    parameters: RoutingParameters,
    incumbent: RouteSequence | None = None,
) -> RouteSequence:
    """Depth-first branch-and-bound with a beam on the candidate list.

    Upper bound for a partial route::

        earnings + min(remaining earnings, remaining minutes * best rate)

    where the best rate is the highest earnings per minute of any delivery
    given its cheapest inbound legs. A (subset, last stop) state reached no
    earlier than before is pruned. The search is exhaustive, and the result
    optimal, only when neither the beam nor the node and time ceilings cut it.
    """
    n = problem.size
    if n == 0:
        return empty_sequence(BRANCH_AND_BOUND)

    started = time.perf_counter()
    deadline = started + parameters.search_time_limit_seconds
    rate = _best_rate(problem)
    total_earnings = sum(problem.earning(index) for index in range(n))

    best_order: list[int] = list(incumbent.order) if incumbent is not None else []
    best_earnings = incumbent.earnings if incumbent is not None else 0.0
    best_duration = incumbent.duration_minutes if incumbent is not None else 0.0
    seen: dict[tuple[int, int], float] = {}
    nodes = 0
    truncated = False
    beam_cut = False

    def bound(earned: float, elapsed: float) -> float:
        remaining_minutes = max(problem.limit_minutes - elapsed, 0.0)
        return earned + min(total_earnings - earned, remaining_minutes * rate)

    def expand(order: list[int], mask: int, last: int, elapsed: float, load: int, earned: float) -> None:
        nonlocal best_order, best_earnings, best_duration, nodes, truncated, beam_cut
        if truncated:
            return
        nodes += 1
        if nodes >= parameters.search_max_nodes or time.perf_counter() > deadline:
            truncated = True
            return

        if load == 0:
            duration = elapsed + problem.closing_leg(last)
            if duration <= problem.limit_minutes:
                gain = earned - best_earnings
                if gain > EPSILON or (abs(gain) <= EPSILON and duration < best_duration - EPSILON):
                    best_order, best_earnings, best_duration = list(order), earned, duration

        if len(order) >= problem.max_stops:
            return
        ceiling = bound(earned, elapsed)
        if ceiling < best_earnings - EPSILON:
            return
        if ceiling <= best_earnings + EPSILON and elapsed >= best_duration:
            return

        candidates: list[tuple[float, str, int, float]] = []
        for nxt in range(n):
            if mask & (1 << nxt):
                continue
            pickup = problem.pickup_of[nxt]
            if pickup is not None and not mask & (1 << pickup):
                continue
            stop = problem.stops[nxt]
            if stop.stop_type is StopType.PICKUP and load >= problem.max_items:
                continue
            travel = problem.travel(last, nxt)
            arrival = elapsed + travel
            if arrival > problem.deadlines[nxt]:
                continue
            end = arrival + problem.service(nxt)
            delivery = problem.delivery_of[nxt]
            closing_end = end
            closing_from = nxt
            if delivery is not None:
                closing_end = end + problem.travel(nxt, delivery)
                if closing_end > problem.deadlines[delivery]:
                    continue
                closing_end += problem.service(delivery)
                closing_from = delivery
            if closing_end + problem.closing_leg(closing_from) > problem.limit_minutes:
                continue
            candidates.append((travel, stop.stop_id, nxt, end))

        candidates.sort()
        if parameters.beam_width and len(candidates) > parameters.beam_width:
            candidates = candidates[: parameters.beam_width]
            beam_cut = True

        for _, _, nxt, end in candidates:
            target = mask | (1 << nxt)
            key = (target, nxt)
            if seen.get(key, math.inf) <= end + EPSILON:
                continue
            seen[key] = end
            stop_type = problem.stops[nxt].stop_type
            next_load = load
            if stop_type is StopType.PICKUP:
                next_load += 1
            elif stop_type is StopType.DELIVERY and problem.pickup_of[nxt] is not None:
                next_load -= 1
            order.append(nxt)
            expand(order, target, nxt, end, next_load, earned + problem.earning(nxt))
            order.pop()
            if truncated:
                return

    expand([], 0, -1, 0.0, 0, 0.0)

    if truncated:
        logger.warning(
            f"Branch-and-bound stopped after {nodes} nodes and {time.perf_counter() - started:.2f}s; "
            f"returning best route found ({best_earnings:.2f} earnings)"
        )
    exhaustive = not truncated and not beam_cut
    return problem.finalize(
        best_order, BRANCH_AND_BOUND, is_optimal=exhaustive, nodes_explored=nodes, truncated=truncated
    )


def solve_near_optimal(problem: RoutingProblem, parameters: RoutingParameters) -> RouteSequence:
    """Best route the search can find, never worse than the greedy one.

    Stops that cannot fit in any route on their own are dropped first, then the
    remaining pool is solved exactly when it is small enough and by
    branch-and-bound otherwise.
    """
    reachable = problem.reachable()
    restricted = problem.restrict(reachable)
    if restricted.size == 0:
        return empty_sequence(HELD_KARP)

    greedy = solve_greedy(restricted)
    if restricted.size <= parameters.exact_search_threshold:
        result = solve_held_karp(restricted, parameters.search_time_limit_seconds)
    else:
        result = solve_branch_and_bound(restricted, parameters, incumbent=greedy)

    if greedy.beats(result):
        return replace(
            greedy,
            algorithm=result.algorithm,
            is_optimal=False,
            nodes_explored=result.nodes_explored,
            truncated=result.truncated,
        )
    return result
