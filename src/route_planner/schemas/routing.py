"""Routing request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class GeoPointModel(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class StartingPointModel(GeoPointModel):
    address: str = ""
    city: str = ""


class GenerateRoutesRequest(BaseModel):
    courier_id: str = Field(..., min_length=1)
    vehicle_type: str = Field(..., description="walking, bicycle, motorcycle, car, suv or van")
    starting_point: StartingPointModel
    duration_buckets: Optional[List[int]] = Field(
        default=None,
        description="Target durations in minutes. Defaults to the configured buckets.",
    )
    algorithm: Optional[Literal["heuristic", "optimal"]] = None
    include_breaks: bool = True
    wait: bool = Field(
        default=True,
        description="If False, generation runs in the background and last known routes are returned.",
    )


class InvalidateRequest(BaseModel):
    courier_ids: Optional[List[str]] = None
    order_ids: Optional[List[str]] = None
    locations: Optional[List[GeoPointModel]] = None


class InvalidateResponse(BaseModel):
    invalidated: List[str]


class ClaimRouteRequest(BaseModel):
    courier_id: str = Field(..., min_length=1)
    candidate_route_id: str = Field(..., min_length=1)


class StopActionRequest(BaseModel):
    courier_id: Optional[str] = None


class SkipStopRequest(StopActionRequest):
    reason: Optional[str] = None


class AbandonRouteRequest(StopActionRequest):
    reason: Optional[str] = None


class RemoveOrderRequest(BaseModel):
    courier_id: str = Field(..., min_length=1)


class StopModel(BaseModel):
    stop_id: str
    stop_type: Literal["pickup", "delivery", "break"]
    lat: float
    lng: float
    address: str = ""
    city: str = ""
    order_id: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    store_name: Optional[str] = None
    order_value: Optional[float] = None
    courier_earning: Optional[float] = None
    shipping_size: Optional[str] = None
    deadline: Optional[datetime] = None
    break_minutes: Optional[float] = None


class PlannedStopModel(BaseModel):
    sequence: int
    stop: StopModel
    estimated_arrival: datetime
    travel_minutes_from_previous: float
    distance_km_from_previous: float


class CandidateRouteModel(BaseModel):
    route_id: str
    target_duration: int
    duration_label: str
    starting_point: StartingPointModel
    stops: List[PlannedStopModel]
    order_ids: List[str]
    order_count: int
    stop_count: int
    estimated_duration_minutes: float
    estimated_distance_km: float
    estimated_earnings: float
    estimated_start_time: datetime
    estimated_end_time: datetime
    algorithm: str
    is_optimal: bool
    compute_time_ms: float
    metadata: dict


class RouteSetResponse(BaseModel):
    courier_id: str
    routes: List[CandidateRouteModel]
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int
    stale: bool
    is_generating: bool
    from_cache: bool
    available_order_count: int = 0


class RouteStopProgressModel(BaseModel):
    sequence: int
    stop: StopModel
    status: Literal["pending", "arrived", "completed", "skipped"]
    estimated_arrival: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None


class CourierRouteModel(BaseModel):
    route_id: str
    courier_id: str
    status: Literal["draft", "active", "completed", "abandoned"]
    starting_point: StartingPointModel
    target_duration: int
    stops: List[RouteStopProgressModel]
    order_ids: List[str]
    current_stop_index: int
    completed_stops: int
    skipped_stops: int
    total_stops: int
    estimated_duration_minutes: float
    estimated_distance_km: float
    estimated_earnings: float
    actual_earnings: float
    include_breaks: bool
    algorithm: str
    source_candidate_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    abandon_reason: Optional[str] = None
    actual_duration_minutes: Optional[float] = None


class RouteHistoryResponse(BaseModel):
    courier_id: str
    routes: List[CourierRouteModel]


class PostponeResponse(BaseModel):
    route: CourierRouteModel
    nothing_in_bag: bool = Field(
        default=False,
        description="True when no picked-up item could be delivered first; the route is unchanged.",
    )
