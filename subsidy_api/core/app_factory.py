from __future__ import annotations

"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) and
owns the admission components: one shared store, the rate limiter and the
idempotency coordinator built on it. Tests pass their own store.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from subsidy_api.adapters.store.base import AbstractKeyValueStore
from subsidy_api.adapters.store.factory import create_store
from subsidy_api.api.routes import applications_router, health_router
from subsidy_api.core.admission import AdmissionGate
from subsidy_api.core.config import Settings, settings
from subsidy_api.core.exception_handlers import setup_exception_handlers
from subsidy_api.core.logging import configure_logging
from subsidy_api.core.middleware import request_id_middleware
from subsidy_api.core.openapi import apply_openapi_customizations
from subsidy_api.services.application_service import ApplicationService
from subsidy_api.services.idempotency_service import IdempotencyCoordinator
from subsidy_api.services.rate_limiter import RateLimiter


def build_admission_gate(store: AbstractKeyValueStore, app_settings: Settings) -> AdmissionGate:
    """Wire the rate limiter and idempotency coordinator around ``store``."""
    rate_limiter = RateLimiter(store, fail_open=app_settings.rate_limit.fail_open)
    coordinator = IdempotencyCoordinator(
        store,
        response_ttl_seconds=app_settings.idempotency.response_ttl_seconds,
        lock_ttl_seconds=app_settings.idempotency.lock_ttl_seconds,
    )
    return AdmissionGate(rate_limiter, coordinator, app_settings=app_settings)


def create_app(
    *,
    store: AbstractKeyValueStore | None = None,
    app_settings: Settings | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Shared key-value store; built from settings when omitted.
        app_settings: Settings override; defaults to the global settings.
        configure_logs: Install the JSON logging configuration.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    kv_store = store or create_store(cfg.store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await kv_store.close()

    app = FastAPI(
        title="Subsidy Application API",
        description=(
            "Backend API for drafting government subsidy applications. Mutating "
            "endpoints are rate limited per IP, user or API key and accept an "
            "Idempotency-Key header that makes retries safe: a repeated request "
            "replays the original response instead of executing twice."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.store = kv_store
    app.state.admission = build_admission_gate(kv_store, cfg)
    app.state.applications = ApplicationService()

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(applications_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, idempotency header)
    apply_openapi_customizations(app)

    return app
