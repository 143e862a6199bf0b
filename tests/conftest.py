"""
Pytest configuration and shared fixtures for the recommendation engine tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Generator, Iterable, Optional

import pytest
from httpx import ASGITransport, AsyncClient

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Bearer tokens in tests are signed with this secret
TEST_JWT_SECRET = "test-jwt-secret-with-at-least-32-bytes!"
os.environ["JWT_SECRET"] = TEST_JWT_SECRET

from config.settings import get_settings
get_settings.cache_clear()


def oid(n: int) -> str:
    """24-hex catalog id for a small integer."""
    return f"{n:024x}"


# Fixed category ids used across the suite
CAT_DEV = oid(0xC1)
CAT_AI = oid(0xC2)
CAT_DESIGN = oid(0xC3)
CAT_DEV_APIS = oid(0xC4)


# ============================================================================
# Fixtures: Clock
# ============================================================================

class ManualClock:
    """Settable UTC clock for the interaction log."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


# ============================================================================
# Fixtures: Test Data Factories
# ============================================================================

@pytest.fixture
def object_id() -> Callable[[int], str]:
    """Factory for 24-hex ids."""
    return oid


@pytest.fixture
def make_product():
    """Factory for catalog products, created ``age_days`` before ``now``."""
    from recs.models import Product

    def factory(
        n: int,
        category_id: Optional[str] = CAT_DEV,
        tags: Iterable[str] = (),
        maker: Optional[int] = None,
        upvotes: int = 0,
        views: int = 0,
        bookmarks: int = 0,
        age_days: float = 1.0,
        status: str = "Published",
        trending_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Product:
        now = now or datetime.now(timezone.utc)
        return Product(
            id=oid(n),
            slug=f"product-{n}",
            name=f"Product {n}",
            status=status,
            category_id=category_id,
            tags=frozenset(tags),
            maker_id=oid(0x1000 + (maker if maker is not None else n)),
            created_at=now - timedelta(days=age_days),
            upvote_count=upvotes,
            view_count=views,
            bookmark_count=bookmarks,
            trending_score=trending_score,
        )

    return factory


@pytest.fixture
def category_ids() -> dict:
    return {"dev": CAT_DEV, "ai": CAT_AI, "design": CAT_DESIGN, "dev_apis": CAT_DEV_APIS}


@pytest.fixture
def categories():
    """Three top-level categories and one subcategory."""
    from recs.models import Category
    return [
        Category(id=CAT_DEV, name="Developer Tools", slug="developer-tools"),
        Category(id=CAT_AI, name="Artificial Intelligence", slug="ai"),
        Category(id=CAT_DESIGN, name="Design Tools", slug="design-tools"),
        Category(id=CAT_DEV_APIS, name="APIs", slug="apis", parent_category=CAT_DEV, level=1),
    ]


@pytest.fixture
def sample_products(make_product):
    """
    Twelve published products spread over the categories, each with its
    own maker, plus one archived product.
    """
    rotation = [CAT_DEV, CAT_AI, CAT_DESIGN, CAT_DEV_APIS]
    tag_sets = [
        {"api", "cli"}, {"llm", "chatbot"}, {"figma", "ui"}, {"api", "rest"},
    ]
    products = [
        make_product(
            n,
            category_id=rotation[(n - 1) % 4],
            tags=tag_sets[(n - 1) % 4],
            upvotes=130 - n * 10,
            views=500 - n * 20,
            age_days=0.5 + n * 0.25,
        )
        for n in range(1, 13)
    ]
    products.append(make_product(99, category_id=CAT_AI, tags={"llm"}, upvotes=999, status="Archived"))
    return products


@pytest.fixture
def catalog(sample_products, categories):
    """In-memory catalog seeded with the sample products."""
    from recs.catalog import InMemoryCatalog
    return InMemoryCatalog(sample_products, categories)


@pytest.fixture
def interaction_log(clock):
    """Empty in-memory interaction log on the manual clock."""
    from recs.interaction_log import InMemoryInteractionBackend, InteractionLog
    return InteractionLog(InMemoryInteractionBackend(), retention_days=90, clock=clock)


# ============================================================================
# Fixtures: Engine
# ============================================================================

@pytest.fixture
def settings():
    """Settings for testing: in-memory backends, test JWT secret."""
    from config.settings import get_settings_for_testing
    return get_settings_for_testing()


@pytest.fixture
def engine(settings, catalog):
    """Fully wired in-memory engine over the sample catalog."""
    from recs.engine import RecommendationEngine
    return RecommendationEngine(settings, catalog=catalog)


# ============================================================================
# Fixtures: FastAPI Test Client
# ============================================================================

@pytest.fixture
def app(engine):
    """FastAPI application serving the test engine."""
    from api.app import create_app
    from recs.engine import set_engine

    set_engine(engine)
    yield create_app()
    set_engine(None)


@pytest.fixture
def test_client(app) -> Generator:
    """Synchronous client; runs the application lifespan."""
    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        yield client


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Markers auto-use
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "supabase: marks tests that require Supabase")


# ============================================================================
# JWT Token Generation
# ============================================================================

def generate_test_jwt(user_id: str = "test-user-001", exp_hours: int = 24,
                      admin: bool = False, audience: str = "authenticated") -> str:
    """
    Generate a test JWT token signed with the test secret.

    Args:
        user_id: The user ID to include in the token
        exp_hours: Hours until token expires (negative for an expired token)
        admin: Grant the admin role through app_metadata
        audience: Token audience

    Returns:
        JWT token string
    """
    import jwt
    import time

    now = int(time.time())
    payload = {
        "sub": user_id,
        "aud": audience,
        "role": "authenticated",
        "email": f"{user_id}@test.com",
        "aal": "aal1",
        "exp": now + (exp_hours * 3600),
        "iat": now,
        "is_anonymous": False,
    }
    if admin:
        payload["app_metadata"] = {"role": "admin"}

    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


@pytest.fixture
def jwt_factory():
    """Fixture exposing the token generator."""
    return generate_test_jwt


@pytest.fixture
def test_jwt_token() -> str:
    """Fixture providing a valid test JWT token."""
    return generate_test_jwt()


@pytest.fixture
def auth_headers(test_jwt_token: str) -> dict:
    """Fixture providing auth headers with Bearer token."""
    return {"Authorization": f"Bearer {test_jwt_token}"}


@pytest.fixture
def admin_headers() -> dict:
    """Auth headers for an admin user."""
    return {"Authorization": f"Bearer {generate_test_jwt('admin-user-001', admin=True)}"}


# ============================================================================
# Skip conditions
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests if no server URL is configured."""
    skip_integration = pytest.mark.skip(reason="Integration tests require running server")
    skip_supabase = pytest.mark.skip(reason="Supabase tests require credentials")

    server_url = os.getenv("TEST_SERVER_URL")
    supabase_url = os.getenv("SUPABASE_URL")

    for item in items:
        if "integration" in item.keywords and not server_url:
            item.add_marker(skip_integration)
        if "supabase" in item.keywords and not supabase_url:
            item.add_marker(skip_supabase)
