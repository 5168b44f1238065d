"""Row codecs between the domain dataclasses and Supabase JSON columns."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ..models.domain import AvailableOrder, GeoPoint, StartingPoint
from ..services.cache.models import RouteCacheEntry
from ..services.lifecycle.models import CourierRoute, RouteStatus, RouteStopProgress, StopStatus
from ..services.routing.models import CandidateRoute, PlannedStop, Stop, StopType


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def point_to_dict(point: Optional[GeoPoint]) -> Optional[dict]:
    return {"lat": point.lat, "lng": point.lng} if point else None


def point_from_dict(data: Optional[dict]) -> Optional[GeoPoint]:
    if not data or data.get("lat") is None or data.get("lng") is None:
        return None
    return GeoPoint(float(data["lat"]), float(data["lng"]))


def starting_point_to_dict(start: Optional[StartingPoint]) -> Optional[dict]:
    if start is None:
        return None
    return {"location": point_to_dict(start.location), "address": start.address, "city": start.city}


def starting_point_from_dict(data: Optional[dict]) -> Optional[StartingPoint]:
    if not data:
        return None
    return StartingPoint(
        location=point_from_dict(data.get("location")),
        address=data.get("address") or "",
        city=data.get("city") or "",
    )


def stop_to_dict(stop: Stop) -> dict:
    return {
        "stop_id": stop.stop_id,
        "stop_type": stop.stop_type.value,
        "location": point_to_dict(stop.location),
        "address": stop.address,
        "city": stop.city,
        "order_id": stop.order_id,
        "contact_name": stop.contact_name,
        "contact_phone": stop.contact_phone,
        "store_name": stop.store_name,
        "order_value": stop.order_value,
        "courier_earning": stop.courier_earning,
        "shipping_size": stop.shipping_size,
        "deadline": _iso(stop.deadline),
        "handling_minutes": stop.handling_minutes,
        "break_minutes": stop.break_minutes,
    }


def stop_from_dict(data: dict) -> Stop:
    return Stop(
        stop_id=data["stop_id"],
        stop_type=StopType(data["stop_type"]),
        location=point_from_dict(data.get("location")),
        address=data.get("address") or "",
        city=data.get("city") or "",
        order_id=data.get("order_id"),
        contact_name=data.get("contact_name"),
        contact_phone=data.get("contact_phone"),
        store_name=data.get("store_name"),
        order_value=data.get("order_value"),
        courier_earning=data.get("courier_earning"),
        shipping_size=data.get("shipping_size"),
        deadline=_parse(data.get("deadline")),
        handling_minutes=float(data.get("handling_minutes") or 0.0),
        break_minutes=data.get("break_minutes"),
    )


def candidate_to_dict(route: CandidateRoute) -> dict:
    return {
        "route_id": route.route_id,
        "target_duration": route.target_duration,
        "starting_point": starting_point_to_dict(route.starting_point),
        "stops": [
            {
                "stop": stop_to_dict(planned.stop),
                "sequence": planned.sequence,
                "estimated_arrival": _iso(planned.estimated_arrival),
                "travel_minutes_from_previous": planned.travel_minutes_from_previous,
                "distance_km_from_previous": planned.distance_km_from_previous,
            }
            for planned in route.stops
        ],
        "estimated_duration_minutes": route.estimated_duration_minutes,
        "estimated_distance_km": route.estimated_distance_km,
        "estimated_earnings": route.estimated_earnings,
        "estimated_start_time": _iso(route.estimated_start_time),
        "estimated_end_time": _iso(route.estimated_end_time),
        "algorithm": route.algorithm,
        "is_optimal": route.is_optimal,
        "compute_time_ms": route.compute_time_ms,
        "metadata": route.metadata,
    }


def candidate_from_dict(data: dict) -> CandidateRoute:
    return CandidateRoute(
        route_id=data["route_id"],
        target_duration=int(data["target_duration"]),
        starting_point=starting_point_from_dict(data.get("starting_point")),
        stops=[
            PlannedStop(
                stop=stop_from_dict(item["stop"]),
                sequence=int(item["sequence"]),
                estimated_arrival=_parse(item.get("estimated_arrival")),
                travel_minutes_from_previous=float(item.get("travel_minutes_from_previous") or 0.0),
                distance_km_from_previous=float(item.get("distance_km_from_previous") or 0.0),
            )
            for item in data.get("stops") or []
        ],
        estimated_duration_minutes=float(data.get("estimated_duration_minutes") or 0.0),
        estimated_distance_km=float(data.get("estimated_distance_km") or 0.0),
        estimated_earnings=float(data.get("estimated_earnings") or 0.0),
        estimated_start_time=_parse(data.get("estimated_start_time")),
        estimated_end_time=_parse(data.get("estimated_end_time")),
        algorithm=data.get("algorithm") or "",
        is_optimal=bool(data.get("is_optimal")),
        compute_time_ms=float(data.get("compute_time_ms") or 0.0),
        metadata=data.get("metadata") or {},
    )


def cache_entry_from_row(row: dict) -> RouteCacheEntry:
    cached = row.get("cached_data") or {}
    return RouteCacheEntry(
        courier_id=row["courier_id"],
        candidate_routes=[candidate_from_dict(item) for item in cached.get("routes") or []],
        generated_at=_parse(row.get("generated_at")),
        expires_at=_parse(row.get("expires_at")),
        needs_revalidation=bool(row.get("needs_revalidation")),
        is_generating=bool(row.get("is_generating")),
        generation_started_at=_parse(row.get("generation_started_at")),
        generation_id=row.get("generation_id"),
        version=int(row.get("version") or 0),
        vehicle_type=cached.get("vehicle_type"),
        starting_point=starting_point_from_dict(cached.get("starting_point")),
        buckets=[int(bucket) for bucket in cached.get("buckets") or []],
        available_order_count=int(cached.get("available_order_count") or 0),
        invalidated_at=_parse(row.get("invalidated_at")),
    )


def cached_data(
    routes: list[CandidateRoute],
    vehicle_type: str,
    starting_point: StartingPoint,
    buckets: list[int],
    available_order_count: int,
) -> dict:
    return {
        "routes": [candidate_to_dict(route) for route in routes],
        "vehicle_type": vehicle_type,
        "starting_point": starting_point_to_dict(starting_point),
        "buckets": list(buckets),
        "available_order_count": available_order_count,
    }


def courier_route_to_row(route: CourierRoute) -> dict:
    return {
        "id": route.route_id,
        "courier_id": route.courier_id,
        "status": route.status.value,
        "starting_point": starting_point_to_dict(route.starting_point),
        "target_duration": route.target_duration,
        "stops": [
            {
                "stop": stop_to_dict(progress.stop),
                "sequence": progress.sequence,
                "status": progress.status.value,
                "estimated_arrival": _iso(progress.estimated_arrival),
                "arrived_at": _iso(progress.arrived_at),
                "completed_at": _iso(progress.completed_at),
                "skip_reason": progress.skip_reason,
            }
            for progress in route.stops
        ],
        "order_ids": list(route.order_ids),
        "estimated_duration_minutes": route.estimated_duration_minutes,
        "estimated_distance_km": route.estimated_distance_km,
        "estimated_earnings": route.estimated_earnings,
        "actual_earnings": route.actual_earnings,
        "current_stop_index": route.current_stop_index,
        "completed_stops": route.completed_stops,
        "include_breaks": route.include_breaks,
        "algorithm": route.algorithm,
        "source_candidate_id": route.source_candidate_id,
        "created_at": _iso(route.created_at),
        "updated_at": _iso(route.updated_at),
        "actual_start_time": _iso(route.actual_start_time),
        "completed_at": _iso(route.completed_at),
        "abandoned_at": _iso(route.abandoned_at),
        "abandon_reason": route.abandon_reason,
        "actual_duration_minutes": route.actual_duration_minutes,
        "version": route.version,
        "metadata": route.metadata,
    }


def courier_route_from_row(row: dict) -> CourierRoute:
    return CourierRoute(
        route_id=row["id"],
        courier_id=row["courier_id"],
        status=RouteStatus(row["status"]),
        starting_point=starting_point_from_dict(row.get("starting_point")),
        target_duration=int(row.get("target_duration") or 0),
        stops=[
            RouteStopProgress(
                stop=stop_from_dict(item["stop"]),
                sequence=int(item["sequence"]),
                status=StopStatus(item.get("status") or StopStatus.PENDING.value),
                estimated_arrival=_parse(item.get("estimated_arrival")),
                arrived_at=_parse(item.get("arrived_at")),
                completed_at=_parse(item.get("completed_at")),
                skip_reason=item.get("skip_reason"),
            )
            for item in row.get("stops") or []
        ],
        order_ids=list(row.get("order_ids") or []),
        estimated_duration_minutes=float(row.get("estimated_duration_minutes") or 0.0),
        estimated_distance_km=float(row.get("estimated_distance_km") or 0.0),
        estimated_earnings=float(row.get("estimated_earnings") or 0.0),
        actual_earnings=float(row.get("actual_earnings") or 0.0),
        current_stop_index=int(row.get("current_stop_index") or 0),
        completed_stops=int(row.get("completed_stops") or 0),
        include_breaks=bool(row.get("include_breaks", True)),
        algorithm=row.get("algorithm") or "",
        source_candidate_id=row.get("source_candidate_id"),
        created_at=_parse(row.get("created_at")),
        updated_at=_parse(row.get("updated_at")),
        actual_start_time=_parse(row.get("actual_start_time")),
        completed_at=_parse(row.get("completed_at")),
        abandoned_at=_parse(row.get("abandoned_at")),
        abandon_reason=row.get("abandon_reason"),
        actual_duration_minutes=row.get("actual_duration_minutes"),
        version=int(row.get("version") or 0),
        metadata=row.get("metadata") or {},
    )


def order_from_row(row: dict) -> AvailableOrder:
    """Map an ``orders`` row with flattened pickup/delivery columns."""
    return AvailableOrder(
        order_id=str(row["id"]),
        pickup=point_from_dict({"lat": row.get("pickup_lat"), "lng": row.get("pickup_lng")}),
        delivery=point_from_dict({"lat": row.get("delivery_lat"), "lng": row.get("delivery_lng")}),
        pickup_address=row.get("pickup_address") or "",
        pickup_city=row.get("pickup_city") or "",
        delivery_address=row.get("delivery_address") or "",
        delivery_city=row.get("delivery_city") or "",
        store_name=row.get("store_name"),
        pickup_phone=row.get("pickup_phone"),
        recipient_name=row.get("recipient_name"),
        recipient_phone=row.get("recipient_phone"),
        order_value=float(row.get("order_value") or 0.0),
        shipping_price=float(row.get("shipping_price") or 0.0),
        courier_earning=row.get("courier_earning"),
        shipping_size=row.get("shipping_size") or "small",
        delivery_deadline=_parse(row.get("delivery_deadline")),
        picked_up=bool(row.get("picked_up")),
    )
