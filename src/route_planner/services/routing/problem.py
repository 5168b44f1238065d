"""Index-based view of one route-building problem shared by the solvers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Sequence

from ...config import settings
from .estimator import LegMatrix
from .models import Stop, StopType

EPSILON = 1e-9


@dataclass(frozen=True, slots=True)
class RoutingParameters:
    """Immutable snapshot of the tunables used for one generation run."""

    handling_time_minutes: float = settings.handling_time_minutes
    tolerance_minutes: float = settings.duration_tolerance_minutes
    return_to_start: bool = settings.return_to_start
    max_stops: int = settings.max_stops_per_route
    exact_search_threshold: int = settings.exact_search_threshold
    search_max_nodes: int = settings.search_max_nodes
    search_time_limit_seconds: float = settings.search_time_limit_seconds
    beam_width: int = settings.beam_width
    break_duration_minutes: float = settings.break_duration_minutes
    break_min_route_minutes: int = settings.break_min_route_minutes
    courier_earnings_percentage: float = settings.courier_earnings_percentage


@dataclass(slots=True)
class RouteSequence:
    """A solver result: stop indices in visiting order plus their totals."""

    order: list[int]
    stops: list[Stop]
    legs: list[tuple[float, float]]
    duration_minutes: float
    distance_km: float
    earnings: float
    algorithm: str
    is_optimal: bool
    nodes_explored: int = 0
    truncated: bool = False

    def beats(self, other: "RouteSequence") -> bool:
        """Higher earnings win; equal earnings go to the shorter route."""
        if abs(self.earnings - other.earnings) > EPSILON:
            return self.earnings > other.earnings
        return self.duration_minutes < other.duration_minutes - EPSILON


@dataclass(slots=True)
class RoutingProblem:
    stops: list[Stop]
    legs: LegMatrix
    limit_minutes: float
    max_items: int
    max_stops: int
    return_to_start: bool = False
    deadlines: list[float] = field(default_factory=list)
    pickup_of: list[int | None] = field(default_factory=list)
    delivery_of: list[int | None] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        stops: Sequence[Stop],
        legs: LegMatrix,
        *,
        limit_minutes: float,
        departure: datetime,
        max_items: int,
        max_stops: int,
        return_to_start: bool = False,
    ) -> "RoutingProblem":
        stops = list(stops)
        deadlines = [
            (stop.deadline - departure).total_seconds() / 60.0 if stop.deadline else math.inf
            for stop in stops
        ]
        pickup_index: dict[str, int] = {}
        delivery_index: dict[str, int] = {}
        for i, stop in enumerate(stops):
            if stop.stop_type is StopType.PICKUP:
                pickup_index[stop.order_id] = i
            elif stop.stop_type is StopType.DELIVERY:
                delivery_index[stop.order_id] = i
        pickup_of = [
            pickup_index.get(stop.order_id) if stop.stop_type is StopType.DELIVERY else None for stop in stops
        ]
        delivery_of = [
            delivery_index.get(stop.order_id) if stop.stop_type is StopType.PICKUP else None for stop in stops
        ]
        return cls(
            stops=stops,
            legs=legs,
            limit_minutes=limit_minutes,
            max_items=max_items,
            max_stops=max_stops,
            return_to_start=return_to_start,
            deadlines=deadlines,
            pickup_of=pickup_of,
            delivery_of=delivery_of,
        )

    def with_limit(self, limit_minutes: float) -> "RoutingProblem":
        return replace(self, limit_minutes=limit_minutes)

    @property
    def size(self) -> int:
        return len(self.stops)

    def travel(self, origin: int, destination: int) -> float:
        """Minutes from stop ``origin`` (-1 for the start) to stop ``destination`` (-1 for the start)."""
        return self.legs.durations[origin + 1][destination + 1]

    def distance(self, origin: int, destination: int) -> float:
        return self.legs.distances[origin + 1][destination + 1]

    def service(self, index: int) -> float:
        return self.stops[index].service_minutes

    def earning(self, index: int) -> float:
        return self.stops[index].earning

    def closing_leg(self, last: int) -> float:
        if not self.return_to_start or last < 0:
            return 0.0
        return self.travel(last, -1)

    def is_feasible(self, order: Sequence[int]) -> bool:
        if len(order) > self.max_stops:
            return False
        seen: set[int] = set()
        load = 0
        elapsed = 0.0
        position = -1
        for index in order:
            if index in seen:
                return False
            stop = self.stops[index]
            pickup = self.pickup_of[index]
            if pickup is not None and pickup not in seen:
                return False
            if stop.stop_type is StopType.PICKUP:
                load += 1
                if load > self.max_items:
                    return False
            elif stop.stop_type is StopType.DELIVERY and pickup is not None:
                load -= 1
            elapsed += self.travel(position, index)
            if elapsed > self.deadlines[index]:
                return False
            elapsed += self.service(index)
            seen.add(index)
            position = index
        for index in order:
            delivery = self.delivery_of[index]
            if delivery is not None and delivery not in seen:
                return False
        return elapsed + self.closing_leg(position) <= self.limit_minutes

    def totals(self, order: Sequence[int]) -> tuple[float, float, float]:
        """Return (duration minutes, distance km, earnings) for a visiting order."""
        duration = 0.0
        distance = 0.0
        earnings = 0.0
        position = -1
        for index in order:
            duration += self.travel(position, index) + self.service(index)
            distance += self.distance(position, index)
            earnings += self.earning(index)
            position = index
        if self.return_to_start and position >= 0:
            duration += self.travel(position, -1)
            distance += self.distance(position, -1)
        return duration, distance, earnings

    def strip_orphans(self, order: Sequence[int]) -> list[int]:
        """Drop pickups whose delivery is not in ``order``."""
        included = set(order)
        return [
            index
            for index in order
            if self.delivery_of[index] is None or self.delivery_of[index] in included
        ]

    def restrict(self, indices: Sequence[int]) -> "RoutingProblem":
        """Sub-problem over the given stops, keeping the start as index 0 of the matrix."""
        keep = [-1, *indices]
        durations = [[self.legs.durations[i + 1][j + 1] for j in keep] for i in keep]
        distances = [[self.legs.distances[i + 1][j + 1] for j in keep] for i in keep]
        position = {old: new for new, old in enumerate(indices)}
        return RoutingProblem(
            stops=[self.stops[i] for i in indices],
            legs=LegMatrix(durations=durations, distances=distances),
            limit_minutes=self.limit_minutes,
            max_items=self.max_items,
            max_stops=self.max_stops,
            return_to_start=self.return_to_start,
            deadlines=[self.deadlines[i] for i in indices],
            pickup_of=[position.get(self.pickup_of[i]) if self.pickup_of[i] is not None else None for i in indices],
            delivery_of=[
                position.get(self.delivery_of[i]) if self.delivery_of[i] is not None else None for i in indices
            ],
        )

    def reachable(self) -> list[int]:
        """Indices of stops that fit in a route on their own (with their pickup or delivery)."""
        kept: list[int] = []
        for index in range(self.size):
            pickup = self.pickup_of[index]
            delivery = self.delivery_of[index]
            if pickup is not None:
                candidate = [pickup, index]
            elif delivery is not None:
                candidate = [index, delivery]
            else:
                candidate = [index]
            if self.is_feasible(candidate):
                kept.append(index)
        return kept

    def finalize(
        self,
        order: Sequence[int],
        algorithm: str,
        is_optimal: bool,
        nodes_explored: int = 0,
        truncated: bool = False,
    ) -> RouteSequence:
        """Close the route and trim trailing stops until every constraint holds.

        ``truncated`` records that a node or time ceiling stopped the search.
        """
        trimmed = self.strip_orphans(order)
        while trimmed and not self.is_feasible(trimmed):
            trimmed = self.strip_orphans(trimmed[:-1])
        duration, distance, earnings = self.totals(trimmed)
        legs: list[tuple[float, float]] = []
        position = -1
        for index in trimmed:
            legs.append((self.travel(position, index), self.distance(position, index)))
            position = index
        return RouteSequence(
            order=trimmed,
            stops=[self.stops[index] for index in trimmed],
            legs=legs,
            duration_minutes=duration,
            distance_km=distance,
            earnings=earnings,
            algorithm=algorithm,
            is_optimal=is_optimal,
            nodes_explored=nodes_explored,
            truncated=truncated,
        )


def empty_sequence(algorithm: str) -> RouteSequence:
    return RouteSequence(
        order=[],
        stops=[],
        legs=[],
        duration_minutes=0.0,
        distance_km=0.0,
        earnings=0.0,
        algorithm=algorithm,
        is_optimal=True,
    )
