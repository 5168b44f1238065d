"""Travel time and distance estimation between stops."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence

from ...errors import UnavailableError
from ...models.domain import GeoPoint
from ..geospatial import distance_km
from .osrm_client import OSRMClient

logger = logging.getLogger(__name__)

UNREACHABLE = math.inf


@dataclass(frozen=True, slots=True)
class LegEstimate:
    duration_minutes: float
    distance_km: float


class TravelEstimator(Protocol):
    def estimate_leg(self, origin: GeoPoint, destination: GeoPoint) -> LegEstimate: ...


class HaversineEstimator:
    """Great-circle distance at a constant average speed."""

    def __init__(self, average_speed_kmh: float = 30.0) -> None:
        if average_speed_kmh <= 0:
            raise ValueError("Average speed must be positive.")
        self.average_speed_kmh = average_speed_kmh

    def estimate_leg(self, origin: GeoPoint, destination: GeoPoint) -> LegEstimate:
        km = distance_km(origin, destination)
        return LegEstimate(duration_minutes=km / self.average_speed_kmh * 60.0, distance_km=km)


class OSRMEstimator:
    """Road-network estimates from OSRM, with an optional haversine fallback."""

    def __init__(self, client: OSRMClient, fallback: TravelEstimator | None = None) -> None:
        self.client = client
        self.fallback = fallback

    def estimate_leg(self, origin: GeoPoint, destination: GeoPoint) -> LegEstimate:
        durations, distances = self.matrix([origin, destination])
        return LegEstimate(duration_minutes=durations[0][1], distance_km=distances[0][1])

    def matrix(self, points: Sequence[GeoPoint]) -> tuple[list[list[float]], list[list[float]]]:
        """Return (minutes, km) matrices for ``points``."""
        if len(points) < 2:
            return [[0.0] * len(points) for _ in points], [[0.0] * len(points) for _ in points]
        try:
            table = self.client.table([point.as_tuple() for point in points])
        except (UnavailableError, ValueError) as exc:
            if self.fallback is None:
                raise UnavailableError(f"Travel estimator unavailable: {exc}") from exc
            logger.warning(f"OSRM table request failed: {exc}. Using haversine fallback.")
            return _pairwise(points, self.fallback)

        durations = [
            [UNREACHABLE if value is None else value / 60.0 for value in row] for row in table["durations"]
        ]
        distances = [
            [UNREACHABLE if value is None else value / 1000.0 for value in row] for row in table["distances"]
        ]
        return durations, distances


class MemoizedEstimator:
    """Per-run memo of leg estimates keyed by coordinate pair.

    Create one per generation pass; never share across couriers.
    """

    def __init__(self, inner: TravelEstimator) -> None:
        self.inner = inner
        self._legs: dict[tuple[GeoPoint, GeoPoint], LegEstimate] = {}

    def estimate_leg(self, origin: GeoPoint, destination: GeoPoint) -> LegEstimate:
        key = (origin, destination)
        leg = self._legs.get(key)
        if leg is None:
            leg = self.inner.estimate_leg(origin, destination)
            self._legs[key] = leg
        return leg

    def matrix(self, points: Sequence[GeoPoint]) -> tuple[list[list[float]], list[list[float]]]:
        bulk = getattr(self.inner, "matrix", None)
        if bulk is not None:
            durations, distances = bulk(points)
            for i, origin in enumerate(points):
                for j, destination in enumerate(points):
                    self._legs[(origin, destination)] = LegEstimate(durations[i][j], distances[i][j])
            return durations, distances
        return _pairwise(points, self)


def _pairwise(points: Sequence[GeoPoint], estimator: TravelEstimator) -> tuple[list[list[float]], list[list[float]]]:
    n = len(points)
    durations = [[0.0] * n for _ in range(n)]
    distances = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(n):
            if i == j or points[i] == points[j]:
                continue
            leg = estimator.estimate_leg(points[i], points[j])
            durations[i][j] = leg.duration_minutes
            distances[i][j] = leg.distance_km
    return durations, distances


@dataclass(slots=True)
class LegMatrix:
    """All pairwise legs for one generation pass. Index 0 is the starting point."""

    durations: list[list[float]]
    distances: list[list[float]]

    @classmethod
    def build(cls, points: Sequence[GeoPoint], estimator: TravelEstimator) -> "LegMatrix":
        bulk = getattr(estimator, "matrix", None)
        if bulk is not None:
            durations, distances = bulk(points)
        else:
            durations, distances = _pairwise(points, estimator)
        return cls(durations=durations, distances=distances)
