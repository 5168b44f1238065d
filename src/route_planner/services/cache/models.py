"""Route cache records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from ...models.domain import StartingPoint
from ..routing.models import CandidateRoute


@dataclass(slots=True)
class RouteCacheEntry:
    """The single cache document kept per courier."""

    courier_id: str
    candidate_routes: List[CandidateRoute] = field(default_factory=list)
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    needs_revalidation: bool = True
    is_generating: bool = False
    generation_started_at: Optional[datetime] = None
    generation_id: Optional[str] = None
    version: int = 0
    vehicle_type: Optional[str] = None
    starting_point: Optional[StartingPoint] = None
    buckets: List[int] = field(default_factory=list)
    available_order_count: int = 0
    invalidated_at: Optional[datetime] = None

    @property
    def has_data(self) -> bool:
        return self.generated_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or now >= self.expires_at

    def lock_is_stale(self, now: datetime, stale_after_seconds: float) -> bool:
        if not self.is_generating:
            return False
        if self.generation_started_at is None:
            return True
        return now - self.generation_started_at > timedelta(seconds=stale_after_seconds)

    @property
    def order_ids(self) -> set[str]:
        ids: set[str] = set()
        for route in self.candidate_routes:
            ids.update(route.order_ids)
        return ids

    def find_route(self, route_id: str) -> CandidateRoute | None:
        for route in self.candidate_routes:
            if route.route_id == route_id:
                return route
        return None


@dataclass(slots=True)
class CachedRouteSet:
    """What a courier gets back from the cache manager."""

    courier_id: str
    routes: List[CandidateRoute]
    generated_at: Optional[datetime]
    expires_at: Optional[datetime]
    version: int
    stale: bool
    is_generating: bool
    from_cache: bool
    available_order_count: int = 0
