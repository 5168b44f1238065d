"""Claimed courier routes and their per-stop progress."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ...models.domain import StartingPoint
from ..routing.models import Stop, StopType


class RouteStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (RouteStatus.COMPLETED, RouteStatus.ABANDONED)


class StopStatus(str, Enum):
    PENDING = "pending"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_done(self) -> bool:
        return self in (StopStatus.COMPLETED, StopStatus.SKIPPED)


@dataclass(slots=True)
class RouteStopProgress:
    stop: Stop
    sequence: int
    status: StopStatus = StopStatus.PENDING
    estimated_arrival: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None

    @property
    def stop_id(self) -> str:
        return self.stop.stop_id


@dataclass(slots=True)
class CourierRoute:
    """A candidate route a courier has claimed and is working through."""

    route_id: str
    courier_id: str
    status: RouteStatus
    starting_point: StartingPoint
    target_duration: int
    stops: List[RouteStopProgress]
    order_ids: List[str]
    estimated_duration_minutes: float = 0.0
    estimated_distance_km: float = 0.0
    estimated_earnings: float = 0.0
    actual_earnings: float = 0.0
    current_stop_index: int = 0
    completed_stops: int = 0
    include_breaks: bool = True
    algorithm: str = ""
    source_candidate_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    abandon_reason: Optional[str] = None
    actual_duration_minutes: Optional[float] = None
    version: int = 0
    metadata: dict = field(default_factory=dict)

    @property
    def total_stops(self) -> int:
        return len(self.stops)

    @property
    def skipped_stops(self) -> int:
        return sum(1 for progress in self.stops if progress.status is StopStatus.SKIPPED)

    @property
    def current_stop(self) -> RouteStopProgress | None:
        if self.current_stop_index < len(self.stops):
            return self.stops[self.current_stop_index]
        return None

    def find_stop(self, stop_id: str) -> tuple[int, RouteStopProgress] | None:
        for index, progress in enumerate(self.stops):
            if progress.stop_id == stop_id:
                return index, progress
        return None

    def delivered_order_ids(self) -> set[str]:
        return {
            progress.stop.order_id
            for progress in self.stops
            if progress.stop.stop_type is StopType.DELIVERY and progress.status is StopStatus.COMPLETED
        }

    def finished_at(self) -> datetime | None:
        return self.completed_at or self.abandoned_at


@dataclass(slots=True)
class PostponeResult:
    """Outcome of postponing the current pickup.

    ``nothing_in_bag`` is set, and the route left untouched, when the courier
    holds no picked-up item whose delivery could be made first.
    """

    route: CourierRoute
    nothing_in_bag: bool = False
