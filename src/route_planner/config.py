"""Application configuration and settings management."""

from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CRP_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Courier Route Planner API"
    api_prefix: str = "/api"
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "driving-hgv", "cycling", "foot"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=1.0, ge=0.0)
    osrm_fallback_to_haversine: bool = Field(
        default=True,
        description="Estimate legs with haversine distance when OSRM is unreachable.",
    )
    average_speed_kmh: float = Field(default=30.0, gt=0.0, description="City travel speed used by haversine estimates.")

    # Route building
    handling_time_minutes: float = Field(default=5.0, ge=0.0, description="Time spent at each pickup or delivery stop.")
    duration_buckets: tuple[int, ...] = Field(
        default=(60, 120, 180, 240, 300, 360, 420, 480),
        description="Target route durations (minutes) generated for every courier.",
    )
    duration_tolerance_minutes: float = Field(default=5.0, ge=0.0)
    return_to_start: bool = Field(default=False, description="Count the leg back to the starting point in route time.")
    max_stops_per_route: int = Field(default=40, ge=1)
    break_duration_minutes: float = Field(default=30.0, gt=0.0)
    break_min_route_minutes: int = Field(default=240, ge=1, description="Shortest bucket that receives a break when breaks are requested.")
    exact_search_threshold: int = Field(
        default=10, ge=0, le=16, description="Largest stop pool solved with the exact subset DP (memory grows as 2^n)."
    )
    search_max_nodes: int = Field(default=200_000, ge=1)
    search_time_limit_seconds: float = Field(default=2.0, gt=0.0)
    beam_width: int = Field(default=6, ge=0, description="Children expanded per search node (0 = unlimited).")
    default_algorithm: Literal["heuristic", "optimal"] = "optimal"
    courier_earnings_percentage: float = Field(default=0.8, ge=0.0, le=1.0)

    # Route cache
    cache_ttl_seconds: int = Field(default=300, ge=1)
    empty_cache_ttl_seconds: int = Field(default=30, ge=1)
    generation_timeout_seconds: int = Field(default=30, ge=1)
    stale_lock_margin_seconds: int = Field(default=10, ge=0)
    max_generation_attempts: int = Field(default=3, ge=1)
    invalidation_radius_km: float = Field(default=15.0, ge=0.0)
    location_change_threshold_km: float = Field(default=0.5, ge=0.0)
    background_workers: int = Field(default=4, ge=1)

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )


    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()

    @field_validator("duration_buckets", mode="before")
    @classmethod
    def _parse_int_tuple_from_env(cls, value: Any) -> tuple[int, ...]:
        """Parse integer tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(int(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(int(item) for item in parsed)
            except (json.JSONDecodeError, TypeError, ValueError):
                pass
            if "," in value:
                return tuple(int(item.strip()) for item in value.split(",") if item.strip())
            if value.strip():
                try:
                    return (int(value.strip()),)
                except ValueError:
                    return tuple()
        return tuple()

    @field_validator("duration_buckets")
    @classmethod
    def _check_buckets(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(bucket <= 0 for bucket in value):
            raise ValueError("Duration buckets must be positive minutes.")
        return tuple(sorted(set(value)))


settings = Settings()
