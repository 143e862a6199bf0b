"""
Supabase JWT Authentication Module.

Resolves the caller of a recommendation request. Signed-in users present a
Supabase JWT (HS256, audience ``authenticated``); anonymous visitors are
identified by the opaque ``X-Client-Id`` header their browser keeps.

Usage:
    from core.auth import optional_identity, require_auth, Identity

    @router.get("/feed")
    async def feed(identity: Identity = Depends(optional_identity)):
        user_key = identity.key  # "user-id" or "anon:<client-id>"
"""

from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config.settings import get_settings
from core.errors import Forbidden, Unauthorized
from core.logging import bind_context


# Security scheme for OpenAPI docs
security = HTTPBearer(
    scheme_name="Supabase JWT",
    description="JWT token from Supabase Auth. Get it after login via Supabase client.",
    auto_error=False,
)

ADMIN_ROLE = "admin"
MAX_CLIENT_ID_LENGTH = 128


@dataclass
class SupabaseUser:
    """
    Authenticated user from Supabase JWT.

    Attributes:
        id: User id (from 'sub' claim)
        email: User's email address
        role: Postgres role (usually 'authenticated')
        session_id: Current session UUID
        app_metadata: App-specific metadata; ``role: admin`` grants admin routes
    """
    id: str
    email: Optional[str] = None
    role: str = "authenticated"
    session_id: Optional[str] = None
    app_metadata: Optional[dict] = None

    @property
    def is_admin(self) -> bool:
        if self.role == ADMIN_ROLE:
            return True
        return (self.app_metadata or {}).get("role") == ADMIN_ROLE


@dataclass
class Identity:
    """Who is asking: a verified user, an anonymous client, or nobody."""
    user: Optional[SupabaseUser] = None
    client_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def is_anonymous(self) -> bool:
        return self.user is None

    @property
    def key(self) -> Optional[str]:
        """Storage key for interactions and rate limits."""
        if self.user:
            return self.user.id
        if self.client_id:
            return f"anon:{self.client_id}"
        return None


def verify_jwt(token: str) -> dict:
    """
    Verify and decode a Supabase JWT token.

    Raises:
        Unauthorized: If the token is invalid, expired or malformed, or if no
            secret is configured.
    """
    settings = get_settings()
    if not settings.jwt_secret:
        raise Unauthorized("Authentication is not configured")

    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={
                "verify_exp": True,
                "verify_aud": True,
                "require": ["sub", "exp", "aud"],
            },
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidAudienceError:
        raise Unauthorized("Invalid token audience")
    except jwt.InvalidTokenError as e:
        raise Unauthorized(f"Invalid token: {e}")


def extract_user(payload: dict) -> SupabaseUser:
    return SupabaseUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        role=payload.get("role", "authenticated"),
        session_id=payload.get("session_id"),
        app_metadata=payload.get("app_metadata"),
    )


def _clean_client_id(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw[:MAX_CLIENT_ID_LENGTH]


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[SupabaseUser]:
    """
    FastAPI dependency returning the verified user, or None without a token.

    A token that is present but invalid is still rejected.
    """
    if not credentials or not credentials.credentials:
        return None
    user = extract_user(verify_jwt(credentials.credentials))
    bind_context(user_id=user.id)
    return user


async def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> SupabaseUser:
    """FastAPI dependency that requires a valid bearer token."""
    if not credentials or not credentials.credentials:
        raise Unauthorized("Authorization header required")
    user = extract_user(verify_jwt(credentials.credentials))
    bind_context(user_id=user.id)
    return user


async def require_admin(user: SupabaseUser = Depends(require_auth)) -> SupabaseUser:
    """FastAPI dependency for admin-only routes."""
    if not user.is_admin:
        raise Forbidden("Admin role required")
    return user


async def optional_identity(
    user: Optional[SupabaseUser] = Depends(get_current_user),
    x_client_id: Optional[str] = Header(default=None, alias="X-Client-Id"),
) -> Identity:
    """Identity for routes where authentication is optional."""
    return Identity(user=user, client_id=_clean_client_id(x_client_id))


async def required_identity(
    user: SupabaseUser = Depends(require_auth),
    x_client_id: Optional[str] = Header(default=None, alias="X-Client-Id"),
) -> Identity:
    """Identity for routes that need a signed-in user."""
    return Identity(user=user, client_id=_clean_client_id(x_client_id))


async def identified_identity(identity: Identity = Depends(optional_identity)) -> Identity:
    """Identity for ingestion routes: a signed-in user or an anonymous client id."""
    if identity.key is None:
        raise Unauthorized("Authorization header or X-Client-Id required")
    return identity
