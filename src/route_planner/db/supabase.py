"""Supabase client for the route planner backend."""

import logging
from functools import lru_cache
from supabase import create_client, Client
from ..config import settings


@lru_cache()
def get_supabase_client() -> Client | None:
    """Get cached Supabase client instance.

    Returns:
        Supabase Client instance if configured, None otherwise. The in-memory
        stores are used when this returns None.
        Note: This does not test the connection - actual queries may fail with network errors.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logging.info("Supabase credentials not configured (CRP_SUPABASE_URL / CRP_SUPABASE_KEY)")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logging.error(f"Failed to create Supabase client: {e}")
        return None


def is_configured() -> bool:
    return bool(settings.supabase_url and settings.supabase_key)


# Tables used by persistence.database:
#
#   route_cache      one row per courier_id (unique); cached_data jsonb, version int,
#                    needs_revalidation, is_generating, generation_started_at,
#                    generation_id, generated_at, expires_at, invalidated_at
#   courier_routes   id (uuid), courier_id, status, stops jsonb, order_ids text[],
#                    version int plus the estimate/actual columns
#   orders           id, status ('ready'|'claimed'|'delivered'), courier_id,
#                    pickup_lat/lng, delivery_lat/lng, shipping_size, shipping_price, ...
