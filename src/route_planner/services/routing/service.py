"""Routing orchestration service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from ...config import settings
from ...models.domain import AvailableOrder, StartingPoint, VehicleProfile
from .builder import RouteBuilder
from .estimator import HaversineEstimator, OSRMEstimator, TravelEstimator
from .models import CandidateRoute
from .osrm_client import OSRMClient
from .stops import build_stop_pool


@dataclass(slots=True)
class GenerationResult:
    routes: list[CandidateRoute]
    available_order_count: int
    routable_stop_count: int
    warnings: list[str] = field(default_factory=list)


def build_estimator() -> TravelEstimator:
    """OSRM-backed estimator when configured, haversine otherwise."""
    fallback = HaversineEstimator(settings.average_speed_kmh)
    if not settings.osrm_base_url:
        logging.warning("OSRM base URL is not configured. Using haversine travel estimates.")
        return fallback
    client = OSRMClient()
    return OSRMEstimator(client, fallback=fallback if settings.osrm_fallback_to_haversine else None)


def _open_orders(orders: Sequence[AvailableOrder], now: datetime) -> tuple[list[AvailableOrder], list[str]]:
    kept: list[AvailableOrder] = []
    warnings: list[str] = []
    for order in orders:
        if order.delivery_deadline is not None and order.delivery_deadline <= now:
            warnings.append(f"Order {order.order_id} skipped: delivery deadline has passed.")
            continue
        kept.append(order)
    return kept, warnings


def generate_candidate_routes(
    builder: RouteBuilder,
    orders: Sequence[AvailableOrder],
    *,
    start: StartingPoint,
    vehicle: VehicleProfile,
    buckets: Sequence[int],
    algorithm: str,
    include_breaks: bool = True,
    now: datetime | None = None,
) -> GenerationResult:
    """Turn the live order pool into one candidate route per bucket."""
    now = now or builder.clock.now()
    open_orders, warnings = _open_orders(orders, now)
    pool = build_stop_pool(
        open_orders,
        vehicle,
        earnings_percentage=builder.parameters.courier_earnings_percentage,
        handling_minutes=builder.parameters.handling_time_minutes,
    )
    uncarried = sum(1 for order in open_orders if not vehicle.can_carry(order.shipping_size))
    if uncarried:
        warnings.append(f"{uncarried} order(s) exceed what a {vehicle.vehicle_type} can carry.")
    for warning in warnings:
        logging.info(warning)

    routes = builder.build_routes(
        start,
        pool,
        vehicle,
        buckets,
        algorithm=algorithm,
        departure=now,
        include_breaks=include_breaks,
    )
    return GenerationResult(
        routes=routes,
        available_order_count=len(orders),
        routable_stop_count=len(pool),
        warnings=warnings,
    )
