"""Domain models for orders, locations and courier vehicles."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..errors import InvalidInputError

SHIPPING_SIZES = ("small", "medium", "large", "extra_large")


@dataclass(frozen=True, slots=True)
class GeoPoint:
    lat: float
    lng: float

    def is_valid(self) -> bool:
        """Finite, within WGS84 range and not the (0, 0) placeholder."""
        if not (math.isfinite(self.lat) and math.isfinite(self.lng)):
            return False
        if self.lat == 0 and self.lng == 0:
            return False
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True, slots=True)
class StartingPoint:
    """Where the courier begins a route."""

    location: GeoPoint
    address: str = ""
    city: str = ""


@dataclass(frozen=True, slots=True)
class VehicleProfile:
    """Carrying limits of a courier vehicle.

    ``size_capacity`` maps each shipping size to how many items of that size
    fit; 0 means the size cannot be carried and -1 means unlimited.
    """

    vehicle_type: str
    max_items: int
    size_capacity: dict[str, int] = field(default_factory=dict)

    def can_carry(self, shipping_size: str | None) -> bool:
        return self.size_capacity.get(shipping_size or "small", 0) != 0

    @property
    def compatible_sizes(self) -> tuple[str, ...]:
        return tuple(size for size in SHIPPING_SIZES if self.can_carry(size))


VEHICLE_PROFILES: dict[str, VehicleProfile] = {
    "walking": VehicleProfile("walking", 2, {"small": 5, "medium": 0, "large": 0, "extra_large": 0}),
    "bicycle": VehicleProfile("bicycle", 3, {"small": 5, "medium": 0, "large": 0, "extra_large": 0}),
    "motorcycle": VehicleProfile("motorcycle", 4, {"small": 5, "medium": 0, "large": 0, "extra_large": 0}),
    "car": VehicleProfile("car", 6, {"small": -1, "medium": 3, "large": 0, "extra_large": 0}),
    "suv": VehicleProfile("suv", 8, {"small": -1, "medium": -1, "large": 2, "extra_large": 0}),
    "van": VehicleProfile("van", 12, {"small": -1, "medium": -1, "large": -1, "extra_large": 2}),
}


def resolve_vehicle(vehicle_type: str | None) -> VehicleProfile:
    key = (vehicle_type or "").strip().lower()
    profile = VEHICLE_PROFILES.get(key)
    if profile is None:
        raise InvalidInputError(f"Unknown vehicle type '{vehicle_type}'.")
    return profile


@dataclass(slots=True)
class AvailableOrder:
    """An unclaimed order as reported by the order source."""

    order_id: str
    pickup: Optional[GeoPoint]
    delivery: Optional[GeoPoint]
    pickup_address: str = ""
    pickup_city: str = ""
    delivery_address: str = ""
    delivery_city: str = ""
    store_name: Optional[str] = None
    pickup_phone: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    order_value: float = 0.0
    shipping_price: float = 0.0
    courier_earning: Optional[float] = None
    shipping_size: str = "small"
    delivery_deadline: Optional[datetime] = None
    picked_up: bool = False
