"""Routing endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...errors import ConflictError, NotFoundError, UnavailableError
from ...models.domain import GeoPoint, StartingPoint
from ...schemas.routing import (
    AbandonRouteRequest,
    ClaimRouteRequest,
    CourierRouteModel,
    GenerateRoutesRequest,
    InvalidateRequest,
    InvalidateResponse,
    PostponeResponse,
    RemoveOrderRequest,
    RouteHistoryResponse,
    RouteSetResponse,
    SkipStopRequest,
    StopActionRequest,
)
from ...services.outputs.routing_formatter import courier_route_model, route_set_response
from ..dependencies import RoutePlannerServices, get_services

router = APIRouter(prefix="/routes", tags=["routes"])


def _to_http(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, UnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    # Log the full error for debugging
    logging.exception(f"Error trying to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}",
    )


@router.post("/generate", response_model=RouteSetResponse, status_code=status.HTTP_200_OK)
def generate_routes(
    payload: GenerateRoutesRequest,
    services: RoutePlannerServices = Depends(get_services),
) -> RouteSetResponse:
    """Return the courier's cached candidate routes, regenerating them when stale."""
    try:
        start = StartingPoint(
            location=GeoPoint(payload.starting_point.lat, payload.starting_point.lng),
            address=payload.starting_point.address,
            city=payload.starting_point.city,
        )
        result = services.cache_manager.get_or_generate_routes(
            payload.courier_id,
            payload.vehicle_type,
            start,
            payload.duration_buckets,
            algorithm=payload.algorithm,
            include_breaks=payload.include_breaks,
            wait=payload.wait,
        )
        return route_set_response(result)
    except Exception as exc:
        raise _to_http(exc, "generate routes") from exc


@router.post("/invalidate", response_model=InvalidateResponse, status_code=status.HTTP_200_OK)
def invalidate_routes(
    payload: InvalidateRequest,
    services: RoutePlannerServices = Depends(get_services),
) -> InvalidateResponse:
    """Mark caches stale after an order was created, cancelled or changed elsewhere."""
    try:
        locations = [GeoPoint(point.lat, point.lng) for point in payload.locations or []]
        invalidated = services.cache_manager.invalidate(
            courier_ids=payload.courier_ids,
            order_ids=payload.order_ids,
            locations=locations,
        )
        return InvalidateResponse(invalidated=invalidated)
    except Exception as exc:
        raise _to_http(exc, "invalidate route caches") from exc


@router.post("/claim", response_model=CourierRouteModel, status_code=status.HTTP_201_CREATED)
def claim_route(
    payload: ClaimRouteRequest,
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        route = services.lifecycle.claim_route(payload.courier_id, payload.candidate_route_id)
        return courier_route_model(route)
    except Exception as exc:
        raise _to_http(exc, "claim route") from exc


@router.get("/active", response_model=Optional[CourierRouteModel], status_code=status.HTTP_200_OK)
def get_active_route(
    courier_id: str = Query(..., min_length=1, description="Courier whose open route to return"),
    services: RoutePlannerServices = Depends(get_services),
) -> Optional[CourierRouteModel]:
    try:
        route = services.lifecycle.get_active_route(courier_id)
        return courier_route_model(route) if route else None
    except Exception as exc:
        raise _to_http(exc, "load active route") from exc


@router.get("/history", response_model=RouteHistoryResponse, status_code=status.HTTP_200_OK)
def get_route_history(
    courier_id: str = Query(..., min_length=1),
    limit: int = Query(default=20, ge=1, le=200),
    services: RoutePlannerServices = Depends(get_services),
) -> RouteHistoryResponse:
    try:
        routes = services.lifecycle.route_history(courier_id, limit)
        return RouteHistoryResponse(courier_id=courier_id, routes=[courier_route_model(route) for route in routes])
    except Exception as exc:
        raise _to_http(exc, "load route history") from exc


@router.get("/{route_id}", response_model=CourierRouteModel, status_code=status.HTTP_200_OK)
def get_route(
    route_id: str,
    courier_id: str | None = Query(default=None),
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        return courier_route_model(services.lifecycle.get_route(route_id, courier_id))
    except Exception as exc:
        raise _to_http(exc, "load route") from exc


@router.post("/{route_id}/stops/{stop_id}/arrive", response_model=CourierRouteModel, status_code=status.HTTP_200_OK)
def arrive_at_stop(
    route_id: str,
    stop_id: str,
    payload: Optional[StopActionRequest] = None,
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        courier_id = payload.courier_id if payload else None
        return courier_route_model(services.lifecycle.arrive_at_stop(route_id, stop_id, courier_id))
    except Exception as exc:
        raise _to_http(exc, "record stop arrival") from exc


@router.post("/{route_id}/stops/{stop_id}/complete", response_model=CourierRouteModel, status_code=status.HTTP_200_OK)
def complete_stop(
    route_id: str,
    stop_id: str,
    payload: Optional[StopActionRequest] = None,
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        courier_id = payload.courier_id if payload else None
        return courier_route_model(services.lifecycle.complete_stop(route_id, stop_id, courier_id))
    except Exception as exc:
        raise _to_http(exc, "complete stop") from exc


@router.post("/{route_id}/stops/{stop_id}/skip", response_model=CourierRouteModel, status_code=status.HTTP_200_OK)
def skip_stop(
    route_id: str,
    stop_id: str,
    payload: Optional[SkipStopRequest] = None,
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        reason = payload.reason if payload else None
        courier_id = payload.courier_id if payload else None
        return courier_route_model(services.lifecycle.skip_stop(route_id, stop_id, reason, courier_id))
    except Exception as exc:
        raise _to_http(exc, "skip stop") from exc


@router.post("/{route_id}/abandon", response_model=CourierRouteModel, status_code=status.HTTP_200_OK)
def abandon_route(
    route_id: str,
    payload: Optional[AbandonRouteRequest] = None,
    services: RoutePlannerServices = Depends(get_services),
) -> CourierRouteModel:
    try:
        reason = payload.reason if payload else None
        courier_id = payload.courier_id if payload else None
        return courier_route_model(services.lifecycle.abandon_route(route_id, reason, courier_id))
    except Exception as exc:
        raise _to_http(exc, "abandon route") from exc


@router.post("/{route_id}/cannot-carry", response_model=PostponeResponse, status_code=status.HTTP_200_OK)
def postpone_pickup(
    route_id: str,
    payload: Optional[StopActionRequest] = None,
    services: RoutePlannerServices = Depends(get_services),
) -> PostponeResponse:
    """Move the current pickup after the next delivery so the courier can free space first."""
    try:
        courier_id = payload.courier_id if payload else None
        result = services.lifecycle.postpone_pickup(route_id, courier_id)
        return PostponeResponse(route=courier_route_model(result.route), nothing_in_bag=result.nothing_in_bag)
    except Exception as exc:
        raise _to_http(exc, "postpone pickup") from exc


@router.post(
    "/active/orders/{order_id}/remove",
    response_model=Optional[CourierRouteModel],
    status_code=status.HTTP_200_OK,
)
def remove_order(
    order_id: str,
    payload: RemoveOrderRequest,
    services: RoutePlannerServices = Depends(get_services),
) -> Optional[CourierRouteModel]:
    """Drop one order from the courier's open route; null when it was not on one."""
    try:
        route = services.lifecycle.remove_order(payload.courier_id, order_id)
        return courier_route_model(route) if route else None
    except Exception as exc:
        raise _to_http(exc, "remove order from route") from exc
