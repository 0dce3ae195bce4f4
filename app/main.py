"""
Entitlement API - Main Application
==================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.session import init_db, close_db
from app.dependencies import reset_engine
from app.services.cache import init_redis, close_redis
from app.core.errors import setup_exception_handlers

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction.

    Raw ASGI rather than BaseHTTPMiddleware: ``call_next()`` runs the
    route in a separate task and loses the contextvars New Relic uses
    for child spans.

    Captures: response status, latency, HTTP method, route pattern, the
    caller's user id and the entitlement error code when one was raised.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                state = scope.get("state")
                user_id = getattr(state, "user_id", None) if state else None
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))
                error_code = getattr(state, "error_code", None) if state else None
                if error_code:
                    newrelic.agent.add_custom_attribute("entitlement.error_code", error_code)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of the database engine and the Redis
    status cache.
    """
    logger.info("Starting Entitlement API...")

    if settings.auth_disabled:
        logger.warning("Authentication is DISABLED (DEV_AUTH_DISABLED=true); every caller is a service")

    # Continue startup even if DB fails (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    # The cache is optional; status reads fall through to the database
    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down Entitlement API...")
    reset_engine()
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Entitlement API",
    description="""
## Subscription Entitlement Backend

Validates platform purchase receipts and decides feature access.

### Features
- **Receipts**: App Store, Play Store and web checkout receipt ingestion
- **Webhooks**: Platform relay notifications, idempotent per transaction
- **RPC**: Subscription status, feature access, usage tracking and events

### Errors
Every error uses the `{"success": false, "error": {...}}` envelope.
Errors with `retryable: true` (503) may be retried with backoff.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Malformed receipt or request"},
        401: {"description": "Not authenticated"},
        403: {"description": "Permission denied"},
        409: {"description": "Ownership conflict or invalid transition"},
        422: {"description": "Validation error or invalid signature"},
        500: {"description": "Internal server error"},
        503: {"description": "Verification or storage temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Entitlement API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import receipts, rpc, webhooks
app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(rpc.router, prefix="/api/v1/rpc", tags=["RPC"])
