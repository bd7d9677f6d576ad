"""
Kromio Backend - Main FastAPI Application.

Entry point for the token metering and plan permission API: token
balances and spending, plan catalog and permissions, Stripe-driven
upgrades and administrative allocation jobs.

Run with:
    uvicorn kromio.main:app --reload
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from kromio.api.v1.admin import router as admin_router
from kromio.api.v1.billing import router as billing_router
from kromio.api.v1.plans import router as plans_router
from kromio.api.v1.tokens import router as tokens_router
from kromio.config import get_settings
from kromio.constants import API_TITLE, API_VERSION
from kromio.logging_config import setup_logging
from kromio.middleware import RequestContextMiddleware
from kromio.models.plans import PlanCatalog
from kromio.models.results import HealthStatus
from kromio.services.plan_service import PlanService
from kromio.services.stripe_service import StripeService
from kromio.services.subscription_store import InMemorySubscriptionStore, SupabaseSubscriptionStore
from kromio.services.token_gateway import InMemoryTokenGateway, SupabaseTokenGateway
from kromio.services.token_service import TokenService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Using in-memory token storage")

    _app.state.supabase = supabase_client

    catalog = PlanCatalog.load(settings.plan_catalog_path)
    logger.info("plan_catalog_loaded", plans=catalog.names())

    if supabase_client is not None:
        subscriptions = SupabaseSubscriptionStore(supabase_client)
        gateway = SupabaseTokenGateway(supabase_client)
    else:
        subscriptions = InMemorySubscriptionStore()
        gateway = InMemoryTokenGateway(
            plans={plan.id: plan.summary() for plan in catalog.plans},
            subscriptions=subscriptions,
        )

    token_service = TokenService(
        gateway,
        settings.tokens,
        catalog=catalog,
        free_plan_credits=settings.free_plan_credits,
        subscriptions=subscriptions,
    )
    plan_service = PlanService(token_service, subscriptions, catalog)

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe, catalog)
        logger.info("stripe_configured", test_prices=settings.stripe.use_test_prices)
    else:
        logger.warning("stripe_not_configured", detail="Billing endpoints will return 503")

    _app.state.token_service = token_service
    _app.state.plan_service = plan_service
    _app.state.stripe_service = stripe_service

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Token metering and plan permissions for Kromio: balances, spending, "
        "plan catalog, upgrades and monthly allocation."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(tokens_router, prefix="/api/v1")
app.include_router(plans_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Token metering and plan permission API",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthStatus)
async def health() -> HealthStatus:
    """Backend connectivity check. Reports 'unhealthy' rather than failing."""
    token_service: TokenService | None = getattr(app.state, "token_service", None)
    if token_service is None:
        return HealthStatus(
            success=False,
            status="unhealthy",
            database="unreachable",
            timestamp=datetime.now(UTC),
            error="Token service not initialized",
        )
    return await token_service.health_check()
