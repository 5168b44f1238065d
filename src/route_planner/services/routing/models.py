"""Routing domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ...errors import InvalidInputError
from ...models.domain import GeoPoint, StartingPoint


class StopType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"
    BREAK = "break"


@dataclass(frozen=True, slots=True)
class Stop:
    """A routable unit of work at a location."""

    stop_id: str
    stop_type: StopType
    location: GeoPoint
    address: str = ""
    city: str = ""
    order_id: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    store_name: Optional[str] = None
    order_value: Optional[float] = None
    courier_earning: Optional[float] = None
    shipping_size: Optional[str] = None
    deadline: Optional[datetime] = None
    handling_minutes: float = 0.0
    break_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if self.stop_type is StopType.BREAK:
            if self.order_id is not None:
                raise InvalidInputError("Break stops cannot reference an order.")
            if not self.break_minutes or self.break_minutes <= 0:
                raise InvalidInputError("Break stops need a positive duration.")
        elif not self.order_id:
            raise InvalidInputError(f"{self.stop_type.value} stop '{self.stop_id}' has no order.")
        if not self.location.is_valid():
            raise InvalidInputError(f"Stop '{self.stop_id}' has invalid coordinates.")

    @property
    def service_minutes(self) -> float:
        if self.stop_type is StopType.BREAK:
            return float(self.break_minutes or 0.0)
        return self.handling_minutes

    @property
    def earning(self) -> float:
        """Earning realised when this stop is completed."""
        if self.stop_type is StopType.DELIVERY:
            return self.courier_earning or 0.0
        return 0.0

    @property
    def value(self) -> float:
        """Monetary weight used to break ties between equally near stops."""
        if self.courier_earning is not None:
            return self.courier_earning
        return self.order_value or 0.0


@dataclass(slots=True)
class PlannedStop:
    stop: Stop
    sequence: int
    estimated_arrival: datetime
    travel_minutes_from_previous: float
    distance_km_from_previous: float


@dataclass(slots=True)
class CandidateRoute:
    route_id: str
    target_duration: int
    starting_point: StartingPoint
    stops: List[PlannedStop]
    estimated_duration_minutes: float
    estimated_distance_km: float
    estimated_earnings: float
    estimated_start_time: datetime
    estimated_end_time: datetime
    algorithm: str
    is_optimal: bool
    compute_time_ms: float = 0.0
    metadata: dict = field(default_factory=dict)

    @property
    def order_ids(self) -> list[str]:
        seen: list[str] = []
        for planned in self.stops:
            order_id = planned.stop.order_id
            if order_id and order_id not in seen:
                seen.append(order_id)
        return seen

    @property
    def order_count(self) -> int:
        return len(self.order_ids)

    @property
    def stop_count(self) -> int:
        return len(self.stops)

    @property
    def duration_label(self) -> str:
        return format_duration(self.target_duration)


def format_duration(minutes: float) -> str:
    hours, rest = divmod(int(round(minutes)), 60)
    if hours and rest:
        return f"{hours}h{rest}m"
    if hours:
        return f"{hours}h"
    return f"{rest}m"
