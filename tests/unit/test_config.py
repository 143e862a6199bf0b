"""
Tests for the configuration module.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest


class TestSettings:
    """Tests for Settings class."""

    def test_defaults_without_credentials(self):
        """Nothing is required: without Supabase or Redis the engine runs in memory."""
        from config.settings import Settings

        settings = Settings(_env_file=None)

        assert settings.host == "0.0.0.0"
        assert settings.port == 8080
        assert settings.storage_backend == "memory"
        assert settings.cache_backend == "memory"
        assert settings.redis_enabled is False
        assert settings.supabase_configured is False

    def test_engine_tunable_defaults(self):
        """Budgets, windows and caps default to the documented values."""
        from config.settings import Settings

        settings = Settings(_env_file=None)

        assert settings.retention_days == 90
        assert settings.decay_half_life_days == 14.0
        assert settings.profile_fresh_seconds == 900
        assert settings.profile_build_budget_ms == 250
        assert settings.generator_budget_ms == 400
        assert settings.query_budget_ms == 1200
        assert settings.category_affinity_top_k == 64
        assert settings.tag_affinity_top_k == 256
        assert settings.rate_limit_per_minute == 60
        assert settings.impression_dedup_seconds == 30
        assert settings.collaborative_user_cap == 200
        assert settings.max_per_category == 2
        assert settings.maker_share_cap == 0.15
        assert (settings.cache_default_ttl_seconds,
                settings.cache_fast_ttl_seconds,
                settings.cache_slow_ttl_seconds) == (300, 120, 600)

    def test_is_development_property(self):
        """Test is_development property."""
        from config.settings import Settings

        for env in ["development", "dev", "local"]:
            settings = Settings(_env_file=None, environment=env)
            assert settings.is_development is True

        settings = Settings(_env_file=None, environment="production")
        assert settings.is_development is False

    def test_is_production_property(self):
        """Test is_production property."""
        from config.settings import Settings

        for env in ["production", "prod"]:
            settings = Settings(_env_file=None, environment=env)
            assert settings.is_production is True

        settings = Settings(_env_file=None, environment="development")
        assert settings.is_production is False

    def test_cors_origins_parsing(self):
        """Test that CORS origins can be parsed from comma-separated string."""
        from config.settings import Settings

        settings = Settings(
            _env_file=None,
            cors_origins="http://localhost:3000, http://localhost:5173,",
        )

        assert settings.cors_origins == ["http://localhost:3000", "http://localhost:5173"]

    def test_backend_names_are_normalized(self):
        """Backend selectors are case and whitespace insensitive."""
        from config.settings import Settings

        settings = Settings(_env_file=None, storage_backend=" Supabase ", cache_backend="REDIS")

        assert settings.storage_backend == "supabase"
        assert settings.cache_backend == "redis"

    def test_supabase_configured_needs_both_values(self):
        from config.settings import Settings

        assert Settings(_env_file=None, supabase_url="https://x.supabase.co").supabase_configured is False
        assert Settings(
            _env_file=None,
            supabase_url="https://x.supabase.co",
            supabase_service_key="service-key",
        ).supabase_configured is True

    def test_seed_file_parsed_as_path(self):
        from config.settings import Settings

        settings = Settings(_env_file=None, catalog_seed_file="/tmp/catalog.json")

        assert settings.catalog_seed_file == Path("/tmp/catalog.json")

    def test_invalid_tunables_rejected(self):
        """Out-of-range tunables fail at load time."""
        from pydantic import ValidationError
        from config.settings import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, decay_half_life_days=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, trending_window_days=45)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, maker_share_cap=1.5)

    def test_reads_environment_variables(self):
        """Environment variables override defaults (case-insensitive)."""
        from config.settings import Settings

        with patch.dict(os.environ, {"QUERY_BUDGET_MS": "800", "redis_enabled": "true"}):
            settings = Settings(_env_file=None)

        assert settings.query_budget_ms == 800
        assert settings.redis_enabled is True


class TestGetSettings:
    """Tests for get_settings function."""

    def test_get_settings_returns_singleton(self):
        """Test that get_settings returns the same instance."""
        from config.settings import get_settings

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2

    def test_get_settings_sees_test_secret(self):
        """The suite signs tokens with JWT_SECRET from the environment."""
        from config.settings import get_settings

        assert get_settings().jwt_secret == os.environ["JWT_SECRET"]

    def test_get_settings_for_testing(self):
        """Test settings factory for testing."""
        from config.settings import get_settings, get_settings_for_testing

        test_settings = get_settings_for_testing(query_budget_ms=50)

        assert test_settings.environment == "testing"
        assert test_settings.storage_backend == "memory"
        assert test_settings.query_budget_ms == 50
        assert test_settings is not get_settings()


class TestConstants:
    """Tests for engine constants."""

    def test_blend_policies_sum_to_one(self):
        from config.constants import BLEND_POLICIES

        for name, weights in BLEND_POLICIES.items():
            assert sum(weights.values()) == pytest.approx(1.0), name

    def test_standard_policy_weights(self):
        from config.constants import BLEND_POLICIES

        assert BLEND_POLICIES["standard"] == {
            "interests": 0.5, "trending": 0.2, "new": 0.2, "history": 0.1,
        }
        assert BLEND_POLICIES["personalized"] == {
            "interests": 0.7, "collaborative": 0.2, "trending": 0.1,
        }

    def test_decay_tau_gives_half_at_half_life(self):
        import math
        from config.constants import decay_tau_seconds

        tau = decay_tau_seconds(14.0)

        assert math.exp(-(14 * 86400) / tau) == pytest.approx(0.5)

    def test_base_scores(self):
        from config.constants import DEFAULT_ENGAGEMENT_CONFIG

        scores = DEFAULT_ENGAGEMENT_CONFIG.BASE_SCORES
        assert scores["conversion"] == 10
        assert scores["bookmark"] == 8
        assert scores["upvote"] == 7
        assert scores["dismiss"] == 0
        assert DEFAULT_ENGAGEMENT_CONFIG.OTHER_BASE_SCORE == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
