"""
Database client singletons.

This module provides singleton instances for the Supabase (catalog and
interaction log) and Redis (profiles and cache) connections, ensuring one
client per process.
"""

from functools import lru_cache
from typing import Optional

from supabase import Client, create_client

from config.settings import get_settings


class SupabaseClientError(Exception):
    """Raised when Supabase client cannot be created."""
    pass


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """
    Get the singleton Supabase client instance.

    Raises:
        SupabaseClientError: If credentials are missing or the client cannot be created
    """
    settings = get_settings()
    if not settings.supabase_configured:
        raise SupabaseClientError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    try:
        return create_client(settings.supabase_url, settings.supabase_service_key)
    except Exception as e:
        raise SupabaseClientError(f"Failed to create Supabase client: {e}") from e


def get_supabase_client_optional() -> Optional[Client]:
    """
    Get the Supabase client, returning None if it cannot be created.

    Useful for graceful degradation to the in-memory backends.
    """
    try:
        return get_supabase_client()
    except SupabaseClientError:
        return None


def create_redis_client(redis_url: Optional[str] = None):
    """
    Create an asyncio Redis client with string decoding.

    The connection is lazy; callers ping() it when they need to know
    whether Redis is actually reachable.
    """
    import redis.asyncio as redis

    url = redis_url or get_settings().redis_url
    return redis.from_url(url, decode_responses=True)

