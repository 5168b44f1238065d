"""Storage contracts used by the cache manager and the lifecycle controller.

Every conditional method must be a single atomic compare-and-set in the
backing store, never a read followed by a blind write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, Sequence

from ..models.domain import AvailableOrder, GeoPoint, StartingPoint, VehicleProfile
from ..services.cache.models import RouteCacheEntry
from ..services.lifecycle.models import CourierRoute
from ..services.routing.models import CandidateRoute


class RouteCacheRepository(Protocol):
    def get(self, courier_id: str) -> RouteCacheEntry | None: ...

    def get_or_create(self, courier_id: str) -> RouteCacheEntry: ...

    def try_acquire_generation(
        self,
        courier_id: str,
        *,
        generation_id: str,
        now: datetime,
        stale_after_seconds: float,
    ) -> RouteCacheEntry | None:
        """Take the generation lock if it is free or stale.

        On success ``needs_revalidation`` is cleared and the locked entry is
        returned; its ``version`` is the one the write must be conditioned on.
        """
        ...

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
        """Store a generation result and release the lock, bumping ``version`` by one.

        Returns False, writing nothing, when the version moved or the lock now
        belongs to another generation.
        """
        ...

    def release_generation(self, courier_id: str, *, generation_id: str, needs_revalidation: bool = True) -> bool: ...

    def mark_needs_revalidation(self, courier_ids: Iterable[str], now: datetime) -> int: ...

    def list_entries(self) -> list[RouteCacheEntry]: ...


class CourierRouteRepository(Protocol):
    def create(self, route: CourierRoute) -> None: ...

    def get(self, route_id: str) -> CourierRoute | None: ...

    def update(self, route: CourierRoute, *, expected_version: int) -> bool:
        """Persist ``route`` if the stored version still equals ``expected_version``."""
        ...

    def find_active(self, courier_id: str) -> CourierRoute | None: ...

    def list_for_courier(self, courier_id: str, limit: int = 20) -> list[CourierRoute]:
        """Completed and abandoned routes, most recently finished first."""
        ...


class OrderPool(Protocol):
    def list_available(self, vehicle: VehicleProfile, near: GeoPoint | None = None) -> list[AvailableOrder]: ...

    def claim(self, order_id: str, courier_id: str, now: datetime) -> bool:
        """Claim the order only if nobody holds it."""
        ...

    def release(self, order_id: str, courier_id: str) -> bool: ...

    def mark_delivered(self, order_id: str, courier_id: str, now: datetime) -> bool: ...
