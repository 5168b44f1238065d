"""Service wiring for the API layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from ..clock import Clock, SystemClock
from ..db.supabase import get_supabase_client
from ..persistence.base import CourierRouteRepository, OrderPool, RouteCacheRepository
from ..persistence.database import SupabaseCourierRouteRepository, SupabaseOrderPool, SupabaseRouteCacheRepository
from ..persistence.memory import InMemoryCourierRouteRepository, InMemoryOrderPool, InMemoryRouteCacheRepository
from ..services.cache.manager import RouteCacheManager
from ..services.lifecycle.controller import RouteLifecycleController
from ..services.routing.builder import RouteBuilder
from ..services.routing.estimator import TravelEstimator
from ..services.routing.service import build_estimator


@dataclass(slots=True)
class RoutePlannerServices:
    cache_repository: RouteCacheRepository
    route_repository: CourierRouteRepository
    order_pool: OrderPool
    builder: RouteBuilder
    cache_manager: RouteCacheManager
    lifecycle: RouteLifecycleController


def build_services(
    *,
    cache_repository: RouteCacheRepository,
    route_repository: CourierRouteRepository,
    order_pool: OrderPool,
    estimator: TravelEstimator,
    clock: Clock | None = None,
) -> RoutePlannerServices:
    clock = clock or SystemClock()
    builder = RouteBuilder(estimator, clock=clock)
    cache_manager = RouteCacheManager(cache_repository, order_pool, builder, clock=clock)
    lifecycle = RouteLifecycleController(route_repository, cache_repository, order_pool, cache_manager, clock=clock)
    return RoutePlannerServices(
        cache_repository=cache_repository,
        route_repository=route_repository,
        order_pool=order_pool,
        builder=builder,
        cache_manager=cache_manager,
        lifecycle=lifecycle,
    )


@lru_cache()
def get_services() -> RoutePlannerServices:
    """Supabase-backed services when configured, in-memory stores otherwise."""
    client = get_supabase_client()
    if client is not None:
        return build_services(
            cache_repository=SupabaseRouteCacheRepository(client),
            route_repository=SupabaseCourierRouteRepository(client),
            order_pool=SupabaseOrderPool(client),
            estimator=build_estimator(),
        )
    logging.warning("Supabase not configured - using in-memory route cache, routes and order pool")
    return build_services(
        cache_repository=InMemoryRouteCacheRepository(),
        route_repository=InMemoryCourierRouteRepository(),
        order_pool=InMemoryOrderPool(),
        estimator=build_estimator(),
    )
