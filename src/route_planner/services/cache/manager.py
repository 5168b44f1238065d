"""Per-courier route cache with optimistic versioning and a reclaimable generation lock."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from ...clock import Clock, SystemClock
from ...config import settings
from ...errors import InvalidInputError, NotFoundError
from ...models.domain import GeoPoint, StartingPoint, VehicleProfile, resolve_vehicle
from ...persistence.base import OrderPool, RouteCacheRepository
from ..geospatial import any_within_radius, distance_km
from ..routing.builder import ALGORITHMS, RouteBuilder, validate_buckets
from ..routing.service import generate_candidate_routes
from .models import CachedRouteSet, RouteCacheEntry

logger = logging.getLogger(__name__)

POLL_INITIAL_SECONDS = 0.05
POLL_MAX_SECONDS = 1.0


class RouteCacheManager:
    """Decides when to run the route builder for a courier and serves cached routes otherwise.

    The stored ``version`` only moves on a successful generation write. An
    invalidation flips ``needs_revalidation`` whatever the entry is doing; if it
    lands while a generation is running, the flag survives the write and the
    manager runs again straight away.
    """

    def __init__(
        self,
        repository: RouteCacheRepository,
        order_pool: OrderPool,
        builder: RouteBuilder,
        *,
        clock: Clock | None = None,
        cache_ttl_seconds: int | None = None,
        empty_cache_ttl_seconds: int | None = None,
        generation_timeout_seconds: int | None = None,
        stale_lock_margin_seconds: int | None = None,
        max_generation_attempts: int | None = None,
        invalidation_radius_km: float | None = None,
        location_change_threshold_km: float | None = None,
        background_workers: int | None = None,
    ) -> None:
        self.repository = repository
        self.order_pool = order_pool
        self.builder = builder
        self.clock = clock or builder.clock or SystemClock()
        self.cache_ttl_seconds = cache_ttl_seconds or settings.cache_ttl_seconds
        self.empty_cache_ttl_seconds = empty_cache_ttl_seconds or settings.empty_cache_ttl_seconds
        self.generation_timeout_seconds = generation_timeout_seconds or settings.generation_timeout_seconds
        self.stale_lock_margin_seconds = (
            stale_lock_margin_seconds if stale_lock_margin_seconds is not None else settings.stale_lock_margin_seconds
        )
        self.max_generation_attempts = max_generation_attempts or settings.max_generation_attempts
        self.invalidation_radius_km = (
            invalidation_radius_km if invalidation_radius_km is not None else settings.invalidation_radius_km
        )
        self.location_change_threshold_km = (
            location_change_threshold_km
            if location_change_threshold_km is not None
            else settings.location_change_threshold_km
        )
        self._executor = ThreadPoolExecutor(
            max_workers=background_workers or settings.background_workers,
            thread_name_prefix="route-cache",
        )
        self._pending: dict[str, Future] = {}
        self._pending_lock = threading.Lock()

    @property
    def stale_after_seconds(self) -> float:
        return self.generation_timeout_seconds + self.stale_lock_margin_seconds

    def get_or_generate_routes(
        self,
        courier_id: str,
        vehicle_type: str,
        start: StartingPoint,
        buckets: Sequence[int] | None = None,
        *,
        algorithm: str | None = None,
        include_breaks: bool = True,
        wait: bool = True,
    ) -> CachedRouteSet:
        """Return cached routes when fresh, regenerating them otherwise.

        With ``wait=False`` generation is scheduled on the background pool and
        the last known routes (possibly none) are returned immediately, marked
        stale. When another request already holds the generation lock the last
        known routes are returned, or, if there are none yet, the call polls
        until that generation finishes.
        """
        if not courier_id:
            raise InvalidInputError("Courier id is required.")
        vehicle = resolve_vehicle(vehicle_type)
        targets = validate_buckets(buckets or settings.duration_buckets)
        if not start.location.is_valid():
            raise InvalidInputError("Starting location has invalid coordinates.")
        algorithm = algorithm or settings.default_algorithm
        if algorithm not in ALGORITHMS:
            raise InvalidInputError(f"Unknown algorithm '{algorithm}'. Expected one of {', '.join(ALGORITHMS)}.")

        now = self.clock.now()
        entry = self.repository.get_or_create(courier_id)
        if self._is_fresh(entry, now, vehicle, start, targets):
            return self._view(entry, targets, from_cache=True, now=now)

        if entry.has_data and not entry.needs_revalidation and self._inputs_changed(entry, vehicle, start):
            logger.info(f"Courier {courier_id} changed vehicle or location; marking route cache stale")
            self.repository.mark_needs_revalidation([courier_id], now)

        if not wait:
            self._schedule(courier_id, vehicle, start, targets, algorithm, include_breaks)
            latest = self.repository.get(courier_id) or entry
            view = self._view(latest, targets, from_cache=True, now=now)
            view.stale = True
            view.is_generating = True
            return view

        regenerated = self._regenerate(courier_id, vehicle, start, targets, algorithm, include_breaks)
        if regenerated is not None:
            return self._view(regenerated, targets, from_cache=False, now=self.clock.now())

        latest = self.repository.get(courier_id) or entry
        if latest.has_data:
            return self._view(latest, targets, from_cache=True, now=self.clock.now())
        return self.wait_for_routes(courier_id, buckets=targets)

    def invalidate(
        self,
        courier_ids: Iterable[str] | None = None,
        order_ids: Iterable[str] | None = None,
        locations: Iterable[GeoPoint] | None = None,
    ) -> list[str]:
        """Mark the affected caches as needing revalidation.

        Affected are the named couriers, couriers whose cached routes contain
        any of the orders, and couriers whose cached starting point lies within
        the invalidation radius of any location.

        Returns:
            Sorted ids of the couriers whose caches were marked.
        """
        targets = set(courier_ids or ())
        wanted_orders = set(order_ids or ())
        points = [point for point in (locations or ()) if point.is_valid()]
        if wanted_orders or points:
            for entry in self.repository.list_entries():
                if wanted_orders and entry.order_ids & wanted_orders:
                    targets.add(entry.courier_id)
                elif points and entry.starting_point is not None and any_within_radius(
                    entry.starting_point.location, points, self.invalidation_radius_km
                ):
                    targets.add(entry.courier_id)
        if not targets:
            return []
        marked = sorted(targets)
        self.repository.mark_needs_revalidation(marked, self.clock.now())
        logger.info(f"Invalidated route caches for {len(marked)} courier(s)")
        return marked

    def wait_for_routes(
        self,
        courier_id: str,
        timeout_seconds: float | None = None,
        buckets: Sequence[int] | None = None,
    ) -> CachedRouteSet:
        """Poll until no generation is running for the courier, with bounded backoff.

        Returns whatever the cache holds when the generation finishes, the lock
        goes stale, or the timeout passes. Raises NotFoundError when the
        courier has no cache entry at all.
        """
        timeout = timeout_seconds if timeout_seconds is not None else float(self.generation_timeout_seconds)
        deadline = self.clock.now() + timedelta(seconds=timeout)
        delay = POLL_INITIAL_SECONDS
        while True:
            entry = self.repository.get(courier_id)
            if entry is None:
                raise NotFoundError(f"No route cache for courier {courier_id}.")
            now = self.clock.now()
            targets = list(buckets) if buckets else list(entry.buckets)
            if not entry.is_generating or entry.lock_is_stale(now, self.stale_after_seconds) or now >= deadline:
                return self._view(entry, targets, from_cache=True, now=now)
            self.clock.sleep(delay)
            delay = min(delay * 2, POLL_MAX_SECONDS)

    def refresh_in_background(
        self,
        courier_id: str,
        vehicle_type: str,
        start: StartingPoint,
        buckets: Sequence[int] | None = None,
        *,
        algorithm: str | None = None,
        include_breaks: bool = True,
    ) -> Future:
        vehicle = resolve_vehicle(vehicle_type)
        targets = validate_buckets(buckets or settings.duration_buckets)
        return self._schedule(
            courier_id, vehicle, start, targets, algorithm or settings.default_algorithm, include_breaks
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _schedule(
        self,
        courier_id: str,
        vehicle: VehicleProfile,
        start: StartingPoint,
        buckets: list[int],
        algorithm: str,
        include_breaks: bool,
    ) -> Future:
        with self._pending_lock:
            pending = self._pending.get(courier_id)
            if pending is not None and not pending.done():
                return pending
            future = self._executor.submit(
                self._regenerate, courier_id, vehicle, start, buckets, algorithm, include_breaks
            )
            self._pending[courier_id] = future

        def _finished(done: Future) -> None:
            with self._pending_lock:
                if self._pending.get(courier_id) is done:
                    del self._pending[courier_id]
            error = done.exception()
            if error is not None:
                logger.error(f"Background route generation failed for courier {courier_id}: {error}")

        future.add_done_callback(_finished)
        return future

    def _regenerate(
        self,
        courier_id: str,
        vehicle: VehicleProfile,
        start: StartingPoint,
        buckets: list[int],
        algorithm: str,
        include_breaks: bool,
    ) -> RouteCacheEntry | None:
        """Run generation under the lock until a write sticks.

        Returns the freshly written entry, or None when another generation
        holds a live lock.
        """
        for attempt in range(1, self.max_generation_attempts + 1):
            now = self.clock.now()
            before = self.repository.get(courier_id)
            generation_id = uuid.uuid4().hex
            locked = self.repository.try_acquire_generation(
                courier_id,
                generation_id=generation_id,
                now=now,
                stale_after_seconds=self.stale_after_seconds,
            )
            if locked is None:
                logger.debug(f"Route generation for courier {courier_id} already running elsewhere")
                return None
            if before is not None and before.is_generating:
                logger.warning(
                    f"Reclaimed stale generation lock for courier {courier_id} "
                    f"(started {before.generation_started_at})"
                )

            try:
                orders = self.order_pool.list_available(vehicle, start.location)
                result = generate_candidate_routes(
                    self.builder,
                    orders,
                    start=start,
                    vehicle=vehicle,
                    buckets=buckets,
                    algorithm=algorithm,
                    include_breaks=include_breaks,
                    now=now,
                )
            except Exception:
                self.repository.release_generation(courier_id, generation_id=generation_id, needs_revalidation=True)
                raise

            generated_at = self.clock.now()
            ttl = self.cache_ttl_seconds if result.routable_stop_count else self.empty_cache_ttl_seconds
            written = self.repository.write_generation(
                courier_id,
                expected_version=locked.version,
                generation_id=generation_id,
                routes=result.routes,
                generated_at=generated_at,
                expires_at=generated_at + timedelta(seconds=ttl),
                vehicle_type=vehicle.vehicle_type,
                starting_point=start,
                buckets=buckets,
                available_order_count=result.available_order_count,
            )
            if not written:
                self.repository.release_generation(courier_id, generation_id=generation_id, needs_revalidation=False)
                logger.warning(
                    f"Route cache write for courier {courier_id} rejected at version {locked.version}; "
                    f"discarding result (attempt {attempt}/{self.max_generation_attempts})"
                )
                continue

            entry = self.repository.get(courier_id)
            if entry is not None and entry.needs_revalidation:
                logger.info(f"Route cache for courier {courier_id} invalidated during generation; regenerating")
                continue
            logger.info(
                f"Generated {len(result.routes)} route(s) for courier {courier_id} "
                f"at version {locked.version + 1} from {result.available_order_count} order(s)"
            )
            return entry

        logger.warning(f"Gave up regenerating routes for courier {courier_id} after {self.max_generation_attempts} attempts")
        entry = self.repository.get(courier_id)
        if entry is not None and entry.has_data and not entry.is_generating:
            return entry
        return None

    def _inputs_changed(self, entry: RouteCacheEntry, vehicle: VehicleProfile, start: StartingPoint) -> bool:
        if entry.vehicle_type != vehicle.vehicle_type:
            return True
        if entry.starting_point is None:
            return True
        return distance_km(entry.starting_point.location, start.location) > self.location_change_threshold_km

    def _is_fresh(
        self,
        entry: RouteCacheEntry,
        now: datetime,
        vehicle: VehicleProfile,
        start: StartingPoint,
        buckets: Sequence[int],
    ) -> bool:
        if not entry.has_data or entry.needs_revalidation or entry.is_expired(now):
            return False
        if self._inputs_changed(entry, vehicle, start):
            return False
        return set(buckets) <= set(entry.buckets)

    def _view(self, entry: RouteCacheEntry, buckets: Sequence[int], *, from_cache: bool, now: datetime) -> CachedRouteSet:
        wanted = set(buckets)
        routes = sorted(
            (route for route in entry.candidate_routes if route.target_duration in wanted),
            key=lambda route: route.target_duration,
        )
        stale = not entry.has_data or entry.needs_revalidation or entry.is_expired(now)
        return CachedRouteSet(
            courier_id=entry.courier_id,
            routes=routes,
            generated_at=entry.generated_at,
            expires_at=entry.expires_at,
            version=entry.version,
            stale=stale,
            is_generating=entry.is_generating,
            from_cache=from_cache,
            available_order_count=entry.available_order_count,
        )
