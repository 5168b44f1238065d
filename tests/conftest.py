from datetime import datetime, timedelta, timezone

import pytest

from route_planner.models.domain import AvailableOrder, GeoPoint, StartingPoint
from route_planner.services.routing.estimator import LegEstimate

START = GeoPoint(41.70, 44.75)
T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to; sleeping advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class MatrixEstimator:
    """Travel minutes looked up from an explicit symmetric table keyed by point name."""

    def __init__(self, names: dict[GeoPoint, str], minutes: dict[tuple[str, str], float], default: float = 60.0):
        self.names = names
        self.minutes = minutes
        self.default = default
        self.calls = 0

    def estimate_leg(self, origin: GeoPoint, destination: GeoPoint) -> LegEstimate:
        self.calls += 1
        a, b = self.names[origin], self.names[destination]
        if a == b:
            return LegEstimate(0.0, 0.0)
        value = self.minutes.get((a, b), self.minutes.get((b, a), self.default))
        return LegEstimate(duration_minutes=value, distance_km=value / 2.0)


def point(index: int) -> GeoPoint:
    """Distinct valid coordinates near the test start point."""
    return GeoPoint(41.70 + 0.01 * index, 44.75 + 0.01 * index)


def delivery_order(order_id: str, location: GeoPoint, earning: float, **kwargs) -> AvailableOrder:
    """An order the courier already holds: only the delivery stop is routed."""
    return AvailableOrder(
        order_id=order_id,
        pickup=None,
        delivery=location,
        delivery_address=f"{order_id} street",
        courier_earning=earning,
        picked_up=True,
        **kwargs,
    )


def pickup_order(order_id: str, pickup: GeoPoint, delivery: GeoPoint, earning: float, **kwargs) -> AvailableOrder:
    return AvailableOrder(
        order_id=order_id,
        pickup=pickup,
        delivery=delivery,
        pickup_address=f"{order_id} store",
        delivery_address=f"{order_id} street",
        store_name="Store",
        courier_earning=earning,
        **kwargs,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def start() -> StartingPoint:
    return StartingPoint(location=START, address="Depot", city="Tbilisi")


@pytest.fixture
def three_stop_world():
    """Three held deliveries 5, 8 and 12 minutes from the start earning 4, 3 and 10."""
    a, b, c = point(1), point(2), point(3)
    names = {START: "S", a: "A", b: "B", c: "C"}
    minutes = {
        ("S", "A"): 5,
        ("S", "B"): 8,
        ("S", "C"): 12,
        ("A", "B"): 3,
        ("A", "C"): 7,
        ("B", "C"): 4,
    }
    orders = [
        delivery_order("A", a, 4.0),
        delivery_order("B", b, 3.0),
        delivery_order("C", c, 10.0),
    ]
    return MatrixEstimator(names, minutes), orders


@pytest.fixture
def budget_trap_world():
    """Same three stops, but C is far from A and B so it cannot share a short route."""
    a, b, c = point(1), point(2), point(3)
    names = {START: "S", a: "A", b: "B", c: "C"}
    minutes = {
        ("S", "A"): 5,
        ("S", "B"): 8,
        ("S", "C"): 12,
        ("A", "B"): 3,
        ("A", "C"): 14,
        ("B", "C"): 14,
    }
    orders = [
        delivery_order("A", a, 4.0),
        delivery_order("B", b, 3.0),
        delivery_order("C", c, 10.0),
    ]
    return MatrixEstimator(names, minutes), orders
