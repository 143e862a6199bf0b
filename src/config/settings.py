"""
Centralized settings management using pydantic-settings.

All environment variables and engine tunables are defined here.
Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Nothing is strictly required: without Supabase credentials the engine
    runs on the in-memory catalog and interaction log, and without Redis
    the profile store and cache stay in-process.

    Optional environment variables:
        - HOST / PORT: Server binding (default: 0.0.0.0:8080)
        - JWT_SECRET: HS256 secret used to verify bearer tokens
        - SUPABASE_URL / SUPABASE_SERVICE_KEY: Catalog + interaction storage
        - REDIS_URL / REDIS_ENABLED: Profile store and recommendation cache
        - STORAGE_BACKEND: "memory" or "supabase"
        - CACHE_BACKEND: "memory" or "redis"
        - ENVIRONMENT: Environment name (development, staging, production)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    workers: int = Field(default=4, description="Number of uvicorn workers")

    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        description="Allowed CORS origins"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # ==========================================================================
    # Authentication
    # ==========================================================================
    jwt_secret: str = Field(default="", description="HS256 secret for bearer token verification")
    jwt_audience: str = Field(default="authenticated", description="Expected JWT audience")

    # ==========================================================================
    # Supabase Configuration (catalog + interaction log)
    # ==========================================================================
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service role key")
    products_table: str = Field(default="products", description="Catalog products table")
    categories_table: str = Field(default="categories", description="Catalog categories table")
    interactions_table: str = Field(
        default="recommendation_interactions",
        description="Interaction log table"
    )

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    # ==========================================================================
    # Redis Configuration (profiles + cache)
    # ==========================================================================
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    redis_enabled: bool = Field(
        default=False,
        description="Enable Redis for profile store and recommendation cache"
    )

    # ==========================================================================
    # Backend Selection
    # ==========================================================================
    storage_backend: str = Field(
        default="memory",
        description="Catalog/interaction storage: 'memory' or 'supabase'"
    )
    cache_backend: str = Field(
        default="memory",
        description="Recommendation cache: 'memory' or 'redis'"
    )
    catalog_seed_file: Optional[Path] = Field(
        default=None,
        description="JSON file with {categories: [...], products: [...]} for the in-memory catalog"
    )

    @field_validator("storage_backend", "cache_backend", mode="before")
    @classmethod
    def normalize_backend(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    # ==========================================================================
    # Interaction Log & Profiles
    # ==========================================================================
    retention_days: int = Field(default=90, description="Interaction retention window (days)")
    retention_sweep_interval_seconds: int = Field(
        default=3600,
        description="How often the background sweeper purges expired interactions"
    )
    decay_half_life_days: float = Field(
        default=14.0,
        gt=0,
        description="Age at which an interaction contributes half to affinities"
    )
    profile_fresh_seconds: int = Field(default=900, description="Profile freshness window")
    profile_build_budget_ms: int = Field(default=250, description="Max wait for a profile rebuild")
    category_affinity_top_k: int = Field(default=64, description="Category affinities kept per profile")
    tag_affinity_top_k: int = Field(default=256, description="Tag affinities kept per profile")

    # ==========================================================================
    # Generators & Blending
    # ==========================================================================
    generator_budget_ms: int = Field(default=400, description="Per-generator time budget")
    query_budget_ms: int = Field(default=1200, description="Total query time budget")
    trending_window_days: int = Field(default=7, ge=1, le=30, description="Default trending window")
    new_window_days: int = Field(default=14, ge=1, description="Default new-arrivals window")
    history_seed_count: int = Field(default=20, description="Recent products used as history seeds")
    collaborative_user_cap: int = Field(
        default=200,
        description="Max co-engaged users inspected per seed product"
    )
    collaborative_window_days: int = Field(default=30, description="Collaborative look-back window")
    interest_tag_alpha: float = Field(default=0.5, description="Tag weight in interest scoring")
    max_per_category: int = Field(default=2, ge=1, description="Max consecutive items per category")
    maker_share_cap: float = Field(default=0.15, gt=0, le=1, description="Max share of a page per maker")

    # ==========================================================================
    # Cache
    # ==========================================================================
    cache_default_ttl_seconds: int = Field(default=300, description="Default cache TTL")
    cache_fast_ttl_seconds: int = Field(default=120, description="TTL for trending/new")
    cache_slow_ttl_seconds: int = Field(default=600, description="TTL for similar/category")

    # ==========================================================================
    # Ingress
    # ==========================================================================
    rate_limit_per_minute: int = Field(default=60, description="Max interactions per user per minute")
    impression_dedup_seconds: int = Field(default=30, description="Impression dedup window")


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure only one instance is created.
    Settings are loaded from environment variables and .env file.

    Returns:
        Settings: The application settings instance
    """
    env_file = Path(__file__).parent.parent.parent / ".env"
    if env_file.exists():
        os.environ.setdefault("ENV_FILE", str(env_file))

    return Settings(_env_file=env_file if env_file.exists() else None)


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a settings instance for testing with optional overrides.

    This bypasses the cache to allow different settings in tests.
    """
    test_defaults = {
        "environment": "testing",
        "debug": True,
        "jwt_secret": "test-jwt-secret-with-at-least-32-bytes!",
        "storage_backend": "memory",
        "cache_backend": "memory",
        "redis_enabled": False,
    }
    test_defaults.update(overrides)

    return Settings(_env_file=None, **test_defaults)
