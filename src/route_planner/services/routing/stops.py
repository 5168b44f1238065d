"""Conversion of available orders and break requests into routable stops."""

from __future__ import annotations

import logging
from typing import Sequence

from ...errors import InvalidInputError
from ...models.domain import AvailableOrder, GeoPoint, VehicleProfile
from .models import Stop, StopType

logger = logging.getLogger(__name__)


def courier_earning_for(order: AvailableOrder, earnings_percentage: float) -> float:
    if order.courier_earning is not None:
        return round(order.courier_earning, 2)
    return round(order.shipping_price * earnings_percentage, 2)


def to_stops(
    order: AvailableOrder,
    *,
    earnings_percentage: float,
    handling_minutes: float,
) -> list[Stop]:
    """Build the pickup/delivery stops for an order.

    Returns an empty list when the order lacks usable coordinates. Orders the
    courier already holds only need the delivery stop.
    """
    delivery_ok = order.delivery is not None and order.delivery.is_valid()
    pickup_needed = not order.picked_up
    pickup_ok = order.pickup is not None and order.pickup.is_valid()
    if not delivery_ok or (pickup_needed and not pickup_ok):
        logger.warning(f"Order {order.order_id} has no valid coordinates, excluding it from routing")
        return []

    earning = courier_earning_for(order, earnings_percentage)
    stops: list[Stop] = []
    if pickup_needed:
        stops.append(
            Stop(
                stop_id=f"{order.order_id}:pickup",
                stop_type=StopType.PICKUP,
                location=order.pickup,
                address=order.pickup_address,
                city=order.pickup_city,
                order_id=order.order_id,
                contact_name=order.store_name,
                contact_phone=order.pickup_phone,
                store_name=order.store_name,
                order_value=order.order_value,
                courier_earning=earning,
                shipping_size=order.shipping_size,
                handling_minutes=handling_minutes,
            )
        )
    stops.append(
        Stop(
            stop_id=f"{order.order_id}:delivery",
            stop_type=StopType.DELIVERY,
            location=order.delivery,
            address=order.delivery_address,
            city=order.delivery_city,
            order_id=order.order_id,
            contact_name=order.recipient_name,
            contact_phone=order.recipient_phone,
            order_value=order.order_value,
            courier_earning=earning,
            shipping_size=order.shipping_size,
            deadline=order.delivery_deadline,
            handling_minutes=handling_minutes,
        )
    )
    return stops


def build_stop_pool(
    orders: Sequence[AvailableOrder],
    vehicle: VehicleProfile,
    *,
    earnings_percentage: float,
    handling_minutes: float,
) -> list[Stop]:
    """Materialize the stops for every order the vehicle can carry, sorted by stop id."""
    pool: list[Stop] = []
    for order in orders:
        if not vehicle.can_carry(order.shipping_size):
            continue
        pool.extend(
            to_stops(order, earnings_percentage=earnings_percentage, handling_minutes=handling_minutes)
        )
    pool.sort(key=lambda stop: stop.stop_id)
    return pool


def make_break_stop(location: GeoPoint, minutes: float, index: int = 1, address: str = "Break", city: str = "") -> Stop:
    if minutes <= 0:
        raise InvalidInputError("Break duration must be positive.")
    return Stop(
        stop_id=f"break:{index}",
        stop_type=StopType.BREAK,
        location=location,
        address=address,
        city=city,
        break_minutes=float(minutes),
    )
