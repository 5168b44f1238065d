"""In-process stores used when Supabase is not configured, and by the tests.

A single lock per store makes each conditional method atomic. Entries are
deep-copied on the way in and out so callers never share mutable state with
the store.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..config import settings
from ..models.domain import AvailableOrder, GeoPoint, StartingPoint, VehicleProfile
from ..services.cache.models import RouteCacheEntry
from ..services.geospatial import distance_km
from ..services.lifecycle.models import CourierRoute
from ..services.routing.models import CandidateRoute


class InMemoryRouteCacheRepository:
    def __init__(self) -> None:
        self._entries: dict[str, RouteCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, courier_id: str) -> RouteCacheEntry | None:
        with self._lock:
            entry = self._entries.get(courier_id)
            return copy.deepcopy(entry) if entry else None

    def get_or_create(self, courier_id: str) -> RouteCacheEntry:
        with self._lock:
            entry = self._entries.get(courier_id)
            if entry is None:
                entry = RouteCacheEntry(courier_id=courier_id)
                self._entries[courier_id] = entry
            return copy.deepcopy(entry)

    def try_acquire_generation(
        self,
        courier_id: str,
        *,
        generation_id: str,
        now: datetime,
        stale_after_seconds: float,
    ) -> RouteCacheEntry | None:
        with self._lock:
            entry = self._entries.get(courier_id)
            if entry is None:
                entry = RouteCacheEntry(courier_id=courier_id)
                self._entries[courier_id] = entry
            if entry.is_generating and not entry.lock_is_stale(now, stale_after_seconds):
                return None
            entry.is_generating = True
            entry.generation_started_at = now
            entry.generation_id = generation_id
            entry.needs_revalidation = False
            return copy.deepcopy(entry)

    def write_generation(
        self,
        courier_id: str,
        *,
        expected_version: int,
        generation_id: str,
        routes: Sequence[CandidateRoute],
        generated_at: datetime,
        expires_at: datetime,
        vehicle_type: str,
        starting_point: StartingPoint,
        buckets: Sequence[int],
        available_order_count: int,
    ) -> bool:
        with self._lock:
            entry = self._entries.get(courier_id)
            if entry is None or entry.version != expected_version or entry.generation_id != generation_id:
                return False
            entry.candidate_routes = copy.deepcopy(list(routes))
            entry.generated_at = generated_at
            entry.expires_at = expires_at
            entry.vehicle_type = vehicle_type
            entry.starting_point = starting_point
            entry.buckets = list(buckets)
            entry.available_order_count = available_order_count
            entry.is_generating = False
            entry.generation_started_at = None
            entry.generation_id = None
            entry.version += 1
            return True

    def release_generation(self, courier_id: str, *, generation_id: str, needs_revalidation: bool = True) -> bool:
        with self._lock:
            entry = self._entries.get(courier_id)
            if entry is None or entry.generation_id != generation_id:
                return False
            entry.is_generating = False
            entry.generation_started_at = None
            entry.generation_id = None
            entry.needs_revalidation = entry.needs_revalidation or needs_revalidation
            return True

    def mark_needs_revalidation(self, courier_ids: Iterable[str], now: datetime) -> int:
        marked = 0
        with self._lock:
            for courier_id in courier_ids:
                entry = self._entries.get(courier_id)
                if entry is None:
                    continue
                entry.needs_revalidation = True
                entry.invalidated_at = now
                marked += 1
        return marked

    def list_entries(self) -> list[RouteCacheEntry]:
        with self._lock:
            return [copy.deepcopy(entry) for entry in self._entries.values()]


class InMemoryCourierRouteRepository:
    def __init__(self) -> None:
        self._routes: dict[str, CourierRoute] = {}
        self._lock = threading.Lock()

    def create(self, route: CourierRoute) -> None:
        with self._lock:
            if route.route_id in self._routes:
                raise ValueError(f"Route {route.route_id} already exists.")
            self._routes[route.route_id] = copy.deepcopy(route)

    def get(self, route_id: str) -> CourierRoute | None:
        with self._lock:
            route = self._routes.get(route_id)
            return copy.deepcopy(route) if route else None

    def update(self, route: CourierRoute, *, expected_version: int) -> bool:
        with self._lock:
            stored = self._routes.get(route.route_id)
            if stored is None or stored.version != expected_version:
                return False
            route.version = expected_version + 1
            self._routes[route.route_id] = copy.deepcopy(route)
            return True

    def find_active(self, courier_id: str) -> CourierRoute | None:
        with self._lock:
            for route in self._routes.values():
                if route.courier_id == courier_id and not route.status.is_terminal:
                    return copy.deepcopy(route)
        return None

    def list_for_courier(self, courier_id: str, limit: int = 20) -> list[CourierRoute]:
        with self._lock:
            routes = [
                route
                for route in self._routes.values()
                if route.courier_id == courier_id and route.status.is_terminal
            ]
        routes.sort(key=lambda route: (route.finished_at() is not None, route.finished_at()), reverse=True)
        return [copy.deepcopy(route) for route in routes[:limit]]


@dataclass(slots=True)
class _PoolRecord:
    order: AvailableOrder
    courier_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled: bool = False


class InMemoryOrderPool:
    """Order source with atomic claim-if-unclaimed semantics."""

    def __init__(self, orders: Iterable[AvailableOrder] = (), radius_km: float | None = None) -> None:
        self._records: dict[str, _PoolRecord] = {}
        self._lock = threading.Lock()
        self.radius_km = radius_km if radius_km is not None else settings.invalidation_radius_km
        for order in orders:
            self.add(order)

    def add(self, order: AvailableOrder) -> None:
        with self._lock:
            self._records[order.order_id] = _PoolRecord(order=copy.deepcopy(order))

    def cancel(self, order_id: str) -> AvailableOrder | None:
        with self._lock:
            record = self._records.get(order_id)
            if record is None:
                return None
            record.cancelled = True
            return copy.deepcopy(record.order)

    def list_available(self, vehicle: VehicleProfile, near: GeoPoint | None = None) -> list[AvailableOrder]:
        with self._lock:
            records = list(self._records.values())
        available: list[AvailableOrder] = []
        for record in records:
            if record.cancelled or record.courier_id is not None or record.delivered_at is not None:
                continue
            if not vehicle.can_carry(record.order.shipping_size):
                continue
            anchor = record.order.pickup or record.order.delivery
            if near is not None and anchor is not None and anchor.is_valid():
                if distance_km(near, anchor) > self.radius_km:
                    continue
            available.append(copy.deepcopy(record.order))
        available.sort(key=lambda order: order.order_id)
        return available

    def claim(self, order_id: str, courier_id: str, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(order_id)
            if record is None or record.cancelled or record.delivered_at is not None:
                return False
            if record.courier_id is not None:
                return False
            record.courier_id = courier_id
            record.claimed_at = now
            return True

    def release(self, order_id: str, courier_id: str) -> bool:
        with self._lock:
            record = self._records.get(order_id)
            if record is None or record.courier_id != courier_id or record.delivered_at is not None:
                return False
            record.courier_id = None
            record.claimed_at = None
            return True

    def mark_delivered(self, order_id: str, courier_id: str, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(order_id)
            if record is None or record.courier_id != courier_id:
                return False
            record.delivered_at = now
            return True

    def claimed_by(self, order_id: str) -> str | None:
        with self._lock:
            record = self._records.get(order_id)
            return record.courier_id if record else None

    def get(self, order_id: str) -> AvailableOrder | None:
        with self._lock:
            record = self._records.get(order_id)
            return copy.deepcopy(record.order) if record else None
