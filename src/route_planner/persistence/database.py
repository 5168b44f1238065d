"""Supabase persistence for route caches, courier routes and the order pool.

Conditional writes are expressed as filtered updates (``update ... eq(version)``)
and succeed only when Supabase returns the updated row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence, TypeVar

from supabase import Client

from ..config import settings
from ..db.supabase import get_supabase_client
from ..errors import UnavailableError
from ..models.domain import AvailableOrder, GeoPoint, StartingPoint, VehicleProfile
from ..services.cache.models import RouteCacheEntry
from ..services.geospatial import distance_km
from ..services.lifecycle.models import CourierRoute, RouteStatus
from ..services.routing.models import CandidateRoute
from .records import (
    cache_entry_from_row,
    cached_data,
    courier_route_from_row,
    courier_route_to_row,
    order_from_row,
)

ROUTE_CACHE_TABLE = "route_cache"
COURIER_ROUTES_TABLE = "courier_routes"
ORDERS_TABLE = "orders"

T = TypeVar("T")


def _require_client(client: Client | None) -> Client:
    client = client or get_supabase_client()
    if client is None:
        raise UnavailableError("Supabase is not configured.")
    return client


def _execute(action: str, call: Callable[[], T]) -> T:
    try:
        return call()
    except Exception as e:
        logging.error(f"Supabase {action} failed: {e}")
        raise UnavailableError(f"Database {action} failed: {e}") from e


class SupabaseRouteCacheRepository:
    def __init__(self, client: Client | None = None) -> None:
        self.client = _require_client(client)

    def _table(self):
        return self.client.table(ROUTE_CACHE_TABLE)

    def get(self, courier_id: str) -> RouteCacheEntry | None:
        response = _execute(
            "route cache read",
            lambda: self._table().select("*").eq("courier_id", courier_id).limit(1).execute(),
        )
        rows = response.data or []
        return cache_entry_from_row(rows[0]) if rows else None

    def get_or_create(self, courier_id: str) -> RouteCacheEntry:
        entry = self.get(courier_id)
        if entry is not None:
            return entry
        # courier_id is unique: a concurrent insert is simply ignored.
        _execute(
            "route cache insert",
            lambda: self._table()
            .upsert(
                {"courier_id": courier_id, "version": 0, "needs_revalidation": True, "is_generating": False},
                on_conflict="courier_id",
                ignore_duplicates=True,
            )
            .execute(),
        )
        return self.get(courier_id) or RouteCacheEntry(courier_id=courier_id)

    def try_acquire_generation(
        self,
        courier_id: str,
        *,
        generation_id: str,
        now: datetime,
        stale_after_seconds: float,
    ) -> RouteCacheEntry | None:
        self.get_or_create(courier_id)
        payload = {
            "is_generating": True,
            "generation_started_at": now.isoformat(),
            "generation_id": generation_id,
            "needs_revalidation": False,
        }
        response = _execute(
            "generation lock",
            lambda: self._table().update(payload).eq("courier_id", courier_id).eq("is_generating", False).execute(),
        )
        if not response.data:
            cutoff = (now - timedelta(seconds=stale_after_seconds)).isoformat()
            response = _execute(
                "stale generation lock takeover",
                lambda: self._table()
                .update(payload)
                .eq("courier_id", courier_id)
                .eq("is_generating", True)
                .lt("generation_started_at", cutoff)
                .execute(),
            )
        if not response.data:
            return None
        return cache_entry_from_row(response.data[0])

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
        payload = {
            "cached_data": cached_data(list(routes), vehicle_type, starting_point, list(buckets), available_order_count),
            "generated_at": generated_at.isoformat(),
            "expires_at": expires_at.isoformat(),
            "is_generating": False,
            "generation_started_at": None,
            "generation_id": None,
            "version": expected_version + 1,
        }
        response = _execute(
            "route cache write",
            lambda: self._table()
            .update(payload)
            .eq("courier_id", courier_id)
            .eq("version", expected_version)
            .eq("generation_id", generation_id)
            .execute(),
        )
        return bool(response.data)

    def release_generation(self, courier_id: str, *, generation_id: str, needs_revalidation: bool = True) -> bool:
        payload: dict[str, Any] = {"is_generating": False, "generation_started_at": None, "generation_id": None}
        if needs_revalidation:
            payload["needs_revalidation"] = True
        response = _execute(
            "generation lock release",
            lambda: self._table().update(payload).eq("courier_id", courier_id).eq("generation_id", generation_id).execute(),
        )
        return bool(response.data)

    def mark_needs_revalidation(self, courier_ids: Iterable[str], now: datetime) -> int:
        ids = list(courier_ids)
        if not ids:
            return 0
        response = _execute(
            "route cache invalidation",
            lambda: self._table()
            .update({"needs_revalidation": True, "invalidated_at": now.isoformat()})
            .in_("courier_id", ids)
            .execute(),
        )
        return len(response.data or [])

    def list_entries(self) -> list[RouteCacheEntry]:
        response = _execute("route cache listing", lambda: self._table().select("*").execute())
        return [cache_entry_from_row(row) for row in response.data or []]


class SupabaseCourierRouteRepository:
    def __init__(self, client: Client | None = None) -> None:
        self.client = _require_client(client)

    def _table(self):
        return self.client.table(COURIER_ROUTES_TABLE)

    def create(self, route: CourierRoute) -> None:
        row = courier_route_to_row(route)
        _execute("courier route insert", lambda: self._table().insert(row).execute())

    def get(self, route_id: str) -> CourierRoute | None:
        response = _execute(
            "courier route read",
            lambda: self._table().select("*").eq("id", route_id).limit(1).execute(),
        )
        rows = response.data or []
        return courier_route_from_row(rows[0]) if rows else None

    def update(self, route: CourierRoute, *, expected_version: int) -> bool:
        row = courier_route_to_row(route)
        row["version"] = expected_version + 1
        response = _execute(
            "courier route update",
            lambda: self._table().update(row).eq("id", route.route_id).eq("version", expected_version).execute(),
        )
        if not response.data:
            return False
        route.version = expected_version + 1
        return True

    def find_active(self, courier_id: str) -> CourierRoute | None:
        open_states = [RouteStatus.DRAFT.value, RouteStatus.ACTIVE.value]
        response = _execute(
            "active route lookup",
            lambda: self._table()
            .select("*")
            .eq("courier_id", courier_id)
            .in_("status", open_states)
            .order("created_at", desc=True)
            .limit(1)
            .execute(),
        )
        rows = response.data or []
        return courier_route_from_row(rows[0]) if rows else None

    def list_for_courier(self, courier_id: str, limit: int = 20) -> list[CourierRoute]:
        response = _execute(
            "route history",
            lambda: self._table()
            .select("*")
            .eq("courier_id", courier_id)
            .in_("status", [RouteStatus.COMPLETED.value, RouteStatus.ABANDONED.value])
            # Finished routes accept no further updates, so updated_at is the finish time.
            .order("updated_at", desc=True)
            .limit(limit)
            .execute(),
        )
        return [courier_route_from_row(row) for row in response.data or []]


class SupabaseOrderPool:
    """Orders table with claim-if-unclaimed updates on ``courier_id``."""

    def __init__(self, client: Client | None = None, radius_km: float | None = None) -> None:
        self.client = _require_client(client)
        self.radius_km = radius_km if radius_km is not None else settings.invalidation_radius_km

    def _table(self):
        return self.client.table(ORDERS_TABLE)

    def list_available(self, vehicle: VehicleProfile, near: GeoPoint | None = None) -> list[AvailableOrder]:
        response = _execute(
            "available orders",
            lambda: self._table()
            .select("*")
            .eq("status", "ready")
            .is_("courier_id", "null")
            .in_("shipping_size", list(vehicle.compatible_sizes))
            .execute(),
        )
        orders: list[AvailableOrder] = []
        for row in response.data or []:
            order = order_from_row(row)
            anchor = order.pickup or order.delivery
            if near is not None and anchor is not None and anchor.is_valid():
                if distance_km(near, anchor) > self.radius_km:
                    continue
            orders.append(order)
        orders.sort(key=lambda order: order.order_id)
        return orders

    def claim(self, order_id: str, courier_id: str, now: datetime) -> bool:
        response = _execute(
            "order claim",
            lambda: self._table()
            .update({"courier_id": courier_id, "claimed_at": now.isoformat(), "status": "claimed"})
            .eq("id", order_id)
            .eq("status", "ready")
            .is_("courier_id", "null")
            .execute(),
        )
        return bool(response.data)

    def release(self, order_id: str, courier_id: str) -> bool:
        response = _execute(
            "order release",
            lambda: self._table()
            .update({"courier_id": None, "claimed_at": None, "status": "ready"})
            .eq("id", order_id)
            .eq("courier_id", courier_id)
            .neq("status", "delivered")
            .execute(),
        )
        return bool(response.data)

    def mark_delivered(self, order_id: str, courier_id: str, now: datetime) -> bool:
        response = _execute(
            "order delivery",
            lambda: self._table()
            .update({"status": "delivered", "delivered_at": now.isoformat()})
            .eq("id", order_id)
            .eq("courier_id", courier_id)
            .execute(),
        )
        return bool(response.data)


def check_connection(client: Client | None = None) -> bool:
    """Cheap round trip against the route cache table."""
    client = client or get_supabase_client()
    if client is None:
        return False
    try:
        client.table(ROUTE_CACHE_TABLE).select("courier_id").limit(1).execute()
        return True
    except Exception as e:
        logging.warning(f"Supabase health check failed: {e}")
        return False
