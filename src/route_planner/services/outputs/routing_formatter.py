"""Serializers for routing outputs."""

from __future__ import annotations

from ...models.domain import StartingPoint
from ...schemas.routing import (
    CandidateRouteModel,
    CourierRouteModel,
    PlannedStopModel,
    RouteSetResponse,
    RouteStopProgressModel,
    StartingPointModel,
    StopModel,
)
from ..cache.models import CachedRouteSet
from ..lifecycle.models import CourierRoute
from ..routing.models import CandidateRoute, Stop


def starting_point_model(start: StartingPoint) -> StartingPointModel:
    return StartingPointModel(lat=start.location.lat, lng=start.location.lng, address=start.address, city=start.city)


def stop_model(stop: Stop) -> StopModel:
    return StopModel(
        stop_id=stop.stop_id,
        stop_type=stop.stop_type.value,
        lat=stop.location.lat,
        lng=stop.location.lng,
        address=stop.address,
        city=stop.city,
        order_id=stop.order_id,
        contact_name=stop.contact_name,
        contact_phone=stop.contact_phone,
        store_name=stop.store_name,
        order_value=stop.order_value,
        courier_earning=stop.courier_earning,
        shipping_size=stop.shipping_size,
        deadline=stop.deadline,
        break_minutes=stop.break_minutes,
    )


def candidate_route_model(route: CandidateRoute) -> CandidateRouteModel:
    return CandidateRouteModel(
        route_id=route.route_id,
        target_duration=route.target_duration,
        duration_label=route.duration_label,
        starting_point=starting_point_model(route.starting_point),
        stops=[
            PlannedStopModel(
                sequence=planned.sequence,
                stop=stop_model(planned.stop),
                estimated_arrival=planned.estimated_arrival,
                travel_minutes_from_previous=planned.travel_minutes_from_previous,
                distance_km_from_previous=planned.distance_km_from_previous,
            )
            for planned in route.stops
        ],
        order_ids=route.order_ids,
        order_count=route.order_count,
        stop_count=route.stop_count,
        estimated_duration_minutes=route.estimated_duration_minutes,
        estimated_distance_km=route.estimated_distance_km,
        estimated_earnings=route.estimated_earnings,
        estimated_start_time=route.estimated_start_time,
        estimated_end_time=route.estimated_end_time,
        algorithm=route.algorithm,
        is_optimal=route.is_optimal,
        compute_time_ms=route.compute_time_ms,
        metadata=route.metadata,
    )


def route_set_response(result: CachedRouteSet) -> RouteSetResponse:
    return RouteSetResponse(
        courier_id=result.courier_id,
        routes=[candidate_route_model(route) for route in result.routes],
        generated_at=result.generated_at,
        expires_at=result.expires_at,
        version=result.version,
        stale=result.stale,
        is_generating=result.is_generating,
        from_cache=result.from_cache,
        available_order_count=result.available_order_count,
    )


def courier_route_model(route: CourierRoute) -> CourierRouteModel:
    return CourierRouteModel(
        route_id=route.route_id,
        courier_id=route.courier_id,
        status=route.status.value,
        starting_point=starting_point_model(route.starting_point),
        target_duration=route.target_duration,
        stops=[
            RouteStopProgressModel(
                sequence=progress.sequence,
                stop=stop_model(progress.stop),
                status=progress.status.value,
                estimated_arrival=progress.estimated_arrival,
                arrived_at=progress.arrived_at,
                completed_at=progress.completed_at,
                skip_reason=progress.skip_reason,
            )
            for progress in route.stops
        ],
        order_ids=list(route.order_ids),
        current_stop_index=route.current_stop_index,
        completed_stops=route.completed_stops,
        skipped_stops=route.skipped_stops,
        total_stops=route.total_stops,
        estimated_duration_minutes=route.estimated_duration_minutes,
        estimated_distance_km=route.estimated_distance_km,
        estimated_earnings=route.estimated_earnings,
        actual_earnings=route.actual_earnings,
        include_breaks=route.include_breaks,
        algorithm=route.algorithm,
        source_candidate_id=route.source_candidate_id,
        created_at=route.created_at,
        updated_at=route.updated_at,
        actual_start_time=route.actual_start_time,
        completed_at=route.completed_at,
        abandoned_at=route.abandoned_at,
        abandon_reason=route.abandon_reason,
        actual_duration_minutes=route.actual_duration_minutes,
    )
