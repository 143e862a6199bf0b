"""
Configuration module for the recommendation engine.

This module provides centralized configuration management using pydantic-settings.
All environment variables and engine tunables should be accessed through this module.

Usage:
    from config import get_settings

    settings = get_settings()
    budget = settings.query_budget_ms
"""

from config.settings import Settings, get_settings, get_settings_for_testing

__all__ = ["Settings", "get_settings", "get_settings_for_testing"]
