"""Candidate route construction for a courier, one route per duration bucket."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Sequence

from ...clock import Clock, SystemClock
from ...errors import InvalidInputError
from ...models.domain import StartingPoint, VehicleProfile
from .estimator import LegMatrix, MemoizedEstimator, TravelEstimator
from .heuristic import solve_greedy
from .models import CandidateRoute, PlannedStop, Stop
from .optimal import solve_near_optimal
from .problem import RouteSequence, RoutingParameters, RoutingProblem
from .stops import make_break_stop

logger = logging.getLogger(__name__)

ALGORITHMS = ("heuristic", "optimal")


def validate_buckets(buckets: Sequence[int]) -> list[int]:
    if not buckets:
        raise InvalidInputError("At least one duration bucket is required.")
    cleaned: list[int] = []
    for bucket in buckets:
        if bucket is None or bucket <= 0:
            raise InvalidInputError(f"Duration bucket must be positive, got {bucket}.")
        if bucket not in cleaned:
            cleaned.append(int(bucket))
    return sorted(cleaned)


def _break_position(sequence: RouteSequence, departure: datetime, minutes: float) -> int:
    """Index after which the break goes: closest to the route midpoint without breaking a later deadline."""
    finishes: list[float] = []
    elapsed = 0.0
    for (travel, _), stop in zip(sequence.legs, sequence.stops):
        elapsed += travel + stop.service_minutes
        finishes.append(elapsed)

    midpoint = elapsed / 2.0
    ranked = sorted(range(len(finishes)), key=lambda i: (abs(finishes[i] - midpoint), i))
    for position in ranked:
        arrival = finishes[position]
        ok = True
        for later in range(position + 1, len(sequence.stops)):
            arrival += sequence.legs[later][0]
            deadline = sequence.stops[later].deadline
            if deadline is not None and departure + timedelta(minutes=arrival + minutes) > deadline:
                ok = False
                break
            arrival += sequence.stops[later].service_minutes
        if ok:
            return position
    return len(finishes) - 1


class RouteBuilder:
    """Builds ranked candidate routes from a stop pool.

    One leg matrix is computed per call and shared by every bucket, so each
    coordinate pair is estimated at most once per generation run.
    """

    def __init__(
        self,
        estimator: TravelEstimator,
        parameters: RoutingParameters | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.estimator = estimator
        self.parameters = parameters or RoutingParameters()
        self.clock = clock or SystemClock()

    def build_routes(
        self,
        start: StartingPoint,
        stops: Sequence[Stop],
        vehicle: VehicleProfile,
        buckets: Sequence[int],
        *,
        algorithm: str = "optimal",
        departure: datetime | None = None,
        include_breaks: bool = True,
    ) -> list[CandidateRoute]:
        """Build one candidate route per duration bucket.

        Args:
            start: Courier starting point.
            stops: Stop pool, normally from ``build_stop_pool``.
            vehicle: Vehicle profile bounding how many items are carried at once.
            buckets: Target durations in minutes.
            algorithm: ``heuristic`` or ``optimal``.
            departure: Route start time, defaults to now.
            include_breaks: Reserve and insert a break on long routes.

        Returns:
            Candidate routes sorted by target duration.

        Raises:
            InvalidInputError: On a bad bucket, start point or algorithm.
            UnavailableError: When travel estimates cannot be obtained.
        """
        targets = validate_buckets(buckets)
        if not start.location.is_valid():
            raise InvalidInputError("Starting location has invalid coordinates.")
        if algorithm not in ALGORITHMS:
            raise InvalidInputError(f"Unknown algorithm '{algorithm}'. Expected one of {', '.join(ALGORITHMS)}.")

        departure = departure or self.clock.now()
        params = self.parameters
        ordered = sorted(stops, key=lambda stop: stop.stop_id)
        estimator = MemoizedEstimator(self.estimator)
        legs = LegMatrix.build([start.location] + [stop.location for stop in ordered], estimator)
        base = RoutingProblem.create(
            ordered,
            legs,
            limit_minutes=0.0,
            departure=departure,
            max_items=vehicle.max_items,
            max_stops=params.max_stops,
            return_to_start=params.return_to_start,
        )

        routes: list[CandidateRoute] = []
        for target in targets:
            started = time.perf_counter()
            reserve = 0.0
            if include_breaks and target >= params.break_min_route_minutes:
                reserve = params.break_duration_minutes
            limit = max(target + params.tolerance_minutes - reserve, 0.0)
            problem = base.with_limit(limit)

            if algorithm == "heuristic":
                sequence = solve_greedy(problem)
            else:
                sequence = solve_near_optimal(problem, params)

            route = self._to_candidate(
                sequence,
                start=start,
                target=target,
                departure=departure,
                break_minutes=reserve if sequence.order else 0.0,
            )
            route.compute_time_ms = round((time.perf_counter() - started) * 1000.0, 2)
            route.metadata.update(
                {
                    "limit_minutes": limit,
                    "pool_size": len(ordered),
                    "nodes_explored": sequence.nodes_explored,
                    "search_truncated": sequence.truncated,
                }
            )
            logger.info(
                f"Built {target}min route with {sequence.algorithm}: {route.stop_count} stops, "
                f"{route.estimated_earnings:.2f} earnings, {route.estimated_duration_minutes:.1f}min"
            )
            routes.append(route)
        return routes

    def _to_candidate(
        self,
        sequence: RouteSequence,
        *,
        start: StartingPoint,
        target: int,
        departure: datetime,
        break_minutes: float,
    ) -> CandidateRoute:
        stops = list(sequence.stops)
        legs = list(sequence.legs)
        if break_minutes > 0:
            position = _break_position(sequence, departure, break_minutes)
            anchor = stops[position]
            stops.insert(
                position + 1,
                make_break_stop(anchor.location, break_minutes, city=anchor.city),
            )
            legs.insert(position + 1, (0.0, 0.0))

        planned: list[PlannedStop] = []
        clock = departure
        for sequence_number, (stop, (travel, km)) in enumerate(zip(stops, legs), start=1):
            clock = clock + timedelta(minutes=travel)
            planned.append(
                PlannedStop(
                    stop=stop,
                    sequence=sequence_number,
                    estimated_arrival=clock,
                    travel_minutes_from_previous=round(travel, 2),
                    distance_km_from_previous=round(km, 3),
                )
            )
            clock = clock + timedelta(minutes=stop.service_minutes)

        duration = sequence.duration_minutes + break_minutes
        return CandidateRoute(
            route_id=str(uuid.uuid4()),
            target_duration=target,
            starting_point=start,
            stops=planned,
            estimated_duration_minutes=round(duration, 2),
            estimated_distance_km=round(sequence.distance_km, 3),
            estimated_earnings=round(sequence.earnings, 2),
            estimated_start_time=departure,
            estimated_end_time=departure + timedelta(minutes=duration),
            algorithm=sequence.algorithm,
            is_optimal=sequence.is_optimal,
        )
