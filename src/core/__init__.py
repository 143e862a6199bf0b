"""
Core module for cross-cutting concerns.

This module provides:
- Structured logging configuration
- Error taxonomy and HTTP error envelope
- Request tracing middleware
- Authentication utilities
"""

from core.logging import configure_logging, get_logger
from core.errors import RecsError, register_exception_handlers
from core.auth import Identity, SupabaseUser, optional_identity, require_auth

__all__ = [
    "configure_logging",
    "get_logger",
    "RecsError",
    "register_exception_handlers",
    "Identity",
    "SupabaseUser",
    "optional_identity",
    "require_auth",
]
