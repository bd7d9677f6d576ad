"""
Shared test fixtures for the Kromio backend test suite.
"""

from types import SimpleNamespace

import pytest
import structlog
from fastapi.testclient import TestClient

from kromio.auth import AuthenticatedUser, get_current_user
from kromio.models.plans import PlanCatalog
from kromio.services.plan_service import PlanService
from kromio.services.subscription_store import InMemorySubscriptionStore
from kromio.services.token_gateway import InMemoryTokenGateway
from kromio.services.token_service import TokenService

TEST_USER = AuthenticatedUser(id="user-1", email="user@example.com")


async def _fake_user() -> AuthenticatedUser:
    return TEST_USER


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Settings hermetic: no real Supabase or Stripe in tests."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.delenv("FREE_PLAN_CREDITS", raising=False)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from kromio.config import get_settings

    get_settings.cache_clear()

    from kromio.main import app

    return TestClient(app)


@pytest.fixture
def catalog() -> PlanCatalog:
    """The packaged plan catalog."""
    return PlanCatalog.load()


@pytest.fixture
def services(catalog: PlanCatalog) -> SimpleNamespace:
    """In-memory token and plan services sharing one gateway and store."""
    store = InMemorySubscriptionStore()
    gateway = InMemoryTokenGateway(
        plans={plan.id: plan.summary() for plan in catalog.plans},
        subscriptions=store,
    )
    token_service = TokenService(gateway, catalog=catalog, subscriptions=store, sleep=_no_sleep)
    plan_service = PlanService(token_service, store, catalog)
    return SimpleNamespace(
        gateway=gateway,
        store=store,
        token_service=token_service,
        plan_service=plan_service,
    )


@pytest.fixture
def api_client(client: TestClient, services: SimpleNamespace):
    """TestClient with in-memory services on app.state and TEST_USER signed in."""
    client.app.state.supabase = None
    client.app.state.token_service = services.token_service
    client.app.state.plan_service = services.plan_service
    client.app.state.stripe_service = None
    client.app.dependency_overrides[get_current_user] = _fake_user

    yield client

    client.app.dependency_overrides.clear()
