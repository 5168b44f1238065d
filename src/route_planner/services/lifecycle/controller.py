"""State machine for claimed courier routes."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from ...clock import Clock, SystemClock
from ...errors import ConflictError, InvalidInputError, NotFoundError
from ...persistence.base import CourierRouteRepository, OrderPool, RouteCacheRepository
from ..cache.manager import RouteCacheManager
from ..routing.models import CandidateRoute, StopType
from .models import CourierRoute, PostponeResult, RouteStatus, RouteStopProgress, StopStatus

logger = logging.getLogger(__name__)


class RouteLifecycleController:
    """Claims candidate routes and walks couriers through their stops.

    Orders are claimed one at a time through the order pool's atomic
    claim-if-unclaimed; that is the only cross-courier exclusion. Everything
    else is guarded by the route's own version.
    """

    def __init__(
        self,
        routes: CourierRouteRepository,
        cache: RouteCacheRepository,
        order_pool: OrderPool,
        cache_manager: RouteCacheManager,
        clock: Clock | None = None,
    ) -> None:
        self.routes = routes
        self.cache = cache
        self.order_pool = order_pool
        self.cache_manager = cache_manager
        self.clock = clock or SystemClock()

    def claim_route(self, courier_id: str, candidate_route_id: str) -> CourierRoute:
        """Turn a cached candidate into a draft route owned by the courier.

        Raises:
            NotFoundError: The candidate is not in the courier's cache.
            ConflictError: The courier already has an open route, or another
                courier claimed one of the orders first.
        """
        entry = self.cache.get(courier_id)
        candidate = entry.find_route(candidate_route_id) if entry else None
        if candidate is None:
            raise NotFoundError(f"Candidate route {candidate_route_id} not found for courier {courier_id}.")
        if not candidate.stops:
            raise InvalidInputError("Cannot claim a route without stops.")
        existing = self.routes.find_active(courier_id)
        if existing is not None:
            raise ConflictError(f"Courier {courier_id} already has an open route {existing.route_id}.")

        now = self.clock.now()
        order_ids = sorted(candidate.order_ids)
        claimed: list[str] = []
        for order_id in order_ids:
            if self.order_pool.claim(order_id, courier_id, now):
                claimed.append(order_id)
                continue
            for held in claimed:
                self.order_pool.release(held, courier_id)
            self.cache_manager.invalidate(courier_ids=[courier_id])
            logger.info(f"Courier {courier_id} lost the claim on order {order_id}; route {candidate_route_id} rejected")
            raise ConflictError(f"Order {order_id} was already claimed by another courier.")

        route = self._draft_from(candidate, courier_id)
        try:
            self.routes.create(route)
        except Exception:
            for held in claimed:
                self.order_pool.release(held, courier_id)
            self.cache_manager.invalidate(courier_ids=[courier_id])
            logger.warning(f"Could not store route for courier {courier_id}; released {len(claimed)} order(s)")
            raise
        self.cache_manager.invalidate(courier_ids=[courier_id], order_ids=order_ids)
        logger.info(f"Courier {courier_id} claimed route {route.route_id} with {len(order_ids)} order(s)")
        return route

    def arrive_at_stop(self, route_id: str, stop_id: str, courier_id: Optional[str] = None) -> CourierRoute:
        route = self._load(route_id, courier_id)
        _, progress = self._current(route, stop_id)
        if progress.status is not StopStatus.PENDING:
            raise ConflictError(f"Stop {stop_id} is already {progress.status.value}.")
        now = self.clock.now()
        self._activate(route, now)
        progress.status = StopStatus.ARRIVED
        progress.arrived_at = now
        return self._save(route, now)

    def complete_stop(self, route_id: str, stop_id: str, courier_id: Optional[str] = None) -> CourierRoute:
        """Complete the current stop. Breaks may be completed without arriving first."""
        route = self._load(route_id, courier_id)
        _, progress = self._current(route, stop_id)
        is_break = progress.stop.stop_type is StopType.BREAK
        if progress.status is StopStatus.PENDING and not is_break:
            raise ConflictError(f"Stop {stop_id} must be arrived at before it is completed.")
        if progress.status.is_done:
            raise ConflictError(f"Stop {stop_id} is already {progress.status.value}.")

        now = self.clock.now()
        self._activate(route, now)
        if progress.arrived_at is None:
            progress.arrived_at = now
        progress.status = StopStatus.COMPLETED
        progress.completed_at = now
        route.completed_stops += 1
        if progress.stop.stop_type is StopType.DELIVERY:
            route.actual_earnings = round(route.actual_earnings + (progress.stop.courier_earning or 0.0), 2)
        self._advance(route, now)
        saved = self._save(route, now)
        if progress.stop.stop_type is StopType.DELIVERY:
            self.order_pool.mark_delivered(progress.stop.order_id, route.courier_id, now)
        return saved

    def skip_stop(
        self,
        route_id: str,
        stop_id: str,
        reason: str | None = None,
        courier_id: Optional[str] = None,
    ) -> CourierRoute:
        """Skip the current stop. Skipping a pickup also drops its delivery and frees the order."""
        route = self._load(route_id, courier_id)
        index, progress = self._current(route, stop_id)
        if progress.status.is_done:
            raise ConflictError(f"Stop {stop_id} is already {progress.status.value}.")

        now = self.clock.now()
        progress.status = StopStatus.SKIPPED
        progress.skip_reason = reason or "skipped by courier"
        is_pickup = progress.stop.stop_type is StopType.PICKUP
        if is_pickup:
            for later in route.stops[index + 1:]:
                if later.stop.order_id == progress.stop.order_id and later.stop.stop_type is StopType.DELIVERY:
                    later.status = StopStatus.SKIPPED
                    later.skip_reason = "pickup skipped"

        self._advance(route, now)
        saved = self._save(route, now)
        if is_pickup and self.order_pool.release(progress.stop.order_id, route.courier_id):
            self.cache_manager.invalidate(locations=[progress.stop.location])
        return saved

    def abandon_route(self, route_id: str, reason: str | None = None, courier_id: Optional[str] = None) -> CourierRoute:
        """Give up a route and put every undelivered order back in the pool."""
        route = self._load(route_id, courier_id)
        if route.status.is_terminal:
            raise ConflictError(f"Route {route_id} is already {route.status.value}.")

        now = self.clock.now()
        route.status = RouteStatus.ABANDONED
        route.abandoned_at = now
        route.abandon_reason = reason or "abandoned by courier"
        saved = self._save(route, now)

        delivered = route.delivered_order_ids()
        released = [
            order_id
            for order_id in route.order_ids
            if order_id not in delivered and self.order_pool.release(order_id, route.courier_id)
        ]
        locations = [progress.stop.location for progress in route.stops if progress.stop.order_id in released]
        self.cache_manager.invalidate(courier_ids=[route.courier_id], order_ids=released, locations=locations)
        logger.info(f"Route {route_id} abandoned by courier {route.courier_id}; released {len(released)} order(s)")
        return saved

    def postpone_pickup(self, route_id: str, courier_id: Optional[str] = None) -> PostponeResult:
        """Handle a courier who cannot carry the current pickup yet.

        The pickup and its delivery move to just after the next pending
        delivery of an item already in the bag, so space is freed first.
        """
        route = self._load(route_id, courier_id)
        if route.status.is_terminal:
            raise ConflictError(f"Route {route_id} is {route.status.value}; no further stop updates allowed.")
        index = route.current_stop_index
        current = route.current_stop
        if current is None or current.stop.stop_type is not StopType.PICKUP:
            raise InvalidInputError("Only a pickup stop can be postponed.")

        order_id = current.stop.order_id
        in_bag = {
            progress.stop.order_id
            for progress in route.stops[:index]
            if progress.stop.stop_type is StopType.PICKUP and progress.status is StopStatus.COMPLETED
        }
        remaining = [progress for progress in route.stops[index + 1:] if progress.stop.order_id != order_id]
        moved = [current] + [
            progress for progress in route.stops[index + 1:] if progress.stop.order_id == order_id
        ]
        first_drop = next(
            (
                position
                for position, progress in enumerate(remaining)
                if progress.stop.stop_type is StopType.DELIVERY
                and progress.status is StopStatus.PENDING
                and progress.stop.order_id in in_bag
            ),
            None,
        )
        if first_drop is None:
            return PostponeResult(route=route, nothing_in_bag=True)

        now = self.clock.now()
        current.status = StopStatus.PENDING
        current.arrived_at = None
        remaining[first_drop + 1:first_drop + 1] = moved
        route.stops = route.stops[:index] + remaining
        for sequence, progress in enumerate(route.stops, start=1):
            progress.sequence = sequence
        saved = self._save(route, now)
        logger.info(f"Postponed order {order_id} in route {route_id} until after the next delivery")
        return PostponeResult(route=saved)

    def remove_order(self, courier_id: str, order_id: str) -> CourierRoute | None:
        """Drop one order from the courier's open route and return it to the pool.

        Returns None when the order is not on an open route of the courier. A
        route left without deliveries is completed.
        """
        route = self.routes.find_active(courier_id)
        if route is None or order_id not in {progress.stop.order_id for progress in route.stops}:
            return None
        if order_id in route.delivered_order_ids():
            raise ConflictError(f"Order {order_id} was already delivered.")

        now = self.clock.now()
        index = route.current_stop_index
        dropped = [progress for progress in route.stops if progress.stop.order_id == order_id]
        removed_before = sum(1 for progress in route.stops[:index] if progress.stop.order_id == order_id)
        route.stops = [progress for progress in route.stops if progress.stop.order_id != order_id]
        route.order_ids = [held for held in route.order_ids if held != order_id]
        route.completed_stops = max(
            0, route.completed_stops - sum(1 for progress in dropped if progress.status is StopStatus.COMPLETED)
        )
        route.estimated_earnings = round(
            sum(
                progress.stop.courier_earning or 0.0
                for progress in route.stops
                if progress.stop.stop_type is StopType.DELIVERY
            ),
            2,
        )
        for sequence, progress in enumerate(route.stops, start=1):
            progress.sequence = sequence
        route.current_stop_index = max(0, index - removed_before)
        if not any(progress.stop.stop_type is StopType.DELIVERY for progress in route.stops):
            route.current_stop_index = len(route.stops)
        self._advance(route, now)
        saved = self._save(route, now)

        self.order_pool.release(order_id, courier_id)
        self.cache_manager.invalidate(
            courier_ids=[courier_id],
            order_ids=[order_id],
            locations=[progress.stop.location for progress in dropped],
        )
        logger.info(
            f"Removed order {order_id} from route {route.route_id}; {len(route.stops)} stop(s) left, status {route.status.value}"
        )
        return saved

    def get_route(self, route_id: str, courier_id: Optional[str] = None) -> CourierRoute:
        return self._load(route_id, courier_id)

    def get_active_route(self, courier_id: str) -> CourierRoute | None:
        return self.routes.find_active(courier_id)

    def route_history(self, courier_id: str, limit: int = 20) -> list[CourierRoute]:
        if limit <= 0:
            raise InvalidInputError("History limit must be positive.")
        return self.routes.list_for_courier(courier_id, limit)

    def _draft_from(self, candidate: CandidateRoute, courier_id: str) -> CourierRoute:
        now = self.clock.now()
        return CourierRoute(
            route_id=str(uuid.uuid4()),
            courier_id=courier_id,
            status=RouteStatus.DRAFT,
            starting_point=candidate.starting_point,
            target_duration=candidate.target_duration,
            stops=[
                RouteStopProgress(
                    stop=planned.stop,
                    sequence=planned.sequence,
                    estimated_arrival=planned.estimated_arrival,
                )
                for planned in candidate.stops
            ],
            order_ids=candidate.order_ids,
            estimated_duration_minutes=candidate.estimated_duration_minutes,
            estimated_distance_km=candidate.estimated_distance_km,
            estimated_earnings=candidate.estimated_earnings,
            include_breaks=any(planned.stop.stop_type is StopType.BREAK for planned in candidate.stops),
            algorithm=candidate.algorithm,
            source_candidate_id=candidate.route_id,
            created_at=now,
            updated_at=now,
        )

    def _load(self, route_id: str, courier_id: Optional[str]) -> CourierRoute:
        route = self.routes.get(route_id)
        if route is None or (courier_id is not None and route.courier_id != courier_id):
            raise NotFoundError(f"Route {route_id} not found.")
        return route

    def _current(self, route: CourierRoute, stop_id: str) -> tuple[int, RouteStopProgress]:
        if route.status.is_terminal:
            raise ConflictError(f"Route {route.route_id} is {route.status.value}; no further stop updates allowed.")
        found = route.find_stop(stop_id)
        if found is None:
            raise NotFoundError(f"Stop {stop_id} is not part of route {route.route_id}.")
        index, progress = found
        if index != route.current_stop_index:
            current = route.current_stop
            expected = current.stop_id if current else "none"
            raise ConflictError(f"Stop {stop_id} is out of sequence; current stop is {expected}.")
        return index, progress

    def _activate(self, route: CourierRoute, now: datetime) -> None:
        if route.status is RouteStatus.DRAFT:
            route.status = RouteStatus.ACTIVE
            route.actual_start_time = now

    def _advance(self, route: CourierRoute, now: datetime) -> None:
        index = route.current_stop_index
        while index < len(route.stops) and route.stops[index].status.is_done:
            index += 1
        route.current_stop_index = index
        if index >= len(route.stops):
            route.status = RouteStatus.COMPLETED
            route.completed_at = now
            if route.actual_start_time is None:
                route.actual_start_time = now
            route.actual_duration_minutes = round((now - route.actual_start_time).total_seconds() / 60.0, 2)

    def _save(self, route: CourierRoute, now: datetime) -> CourierRoute:
        expected = route.version
        route.updated_at = now
        if not self.routes.update(route, expected_version=expected):
            raise ConflictError(f"Route {route.route_id} was modified concurrently; reload and retry.")
        return route
