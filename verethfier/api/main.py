"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from verethfier.api.errors import register_error_handlers
from verethfier.api.middleware.metrics import PrometheusMiddleware, setup_metrics_route
from verethfier.api.middleware.rate_limit import RateLimitMiddleware
from verethfier.api.middleware.request import RequestIDMiddleware, RequestSizeLimitMiddleware
from verethfier.api.routes import assignments, health, rules, verify
from verethfier.core.config import Settings, get_settings
from verethfier.core.logging import setup_logging
from verethfier.verification.factory import Services, build_services

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup (unless injected), start background work, tear down."""
    settings: Settings = app.state.settings
    setup_logging(env=settings.app_env, log_level="DEBUG" if settings.debug else "INFO")

    if settings.app_env == "production" and not settings.admin_api_key:
        raise RuntimeError(
            "VERETHFIER_ADMIN_API_KEY must be set explicitly in production. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
        )

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = build_services(settings)
    services: Services = app.state.services
    await services.start_background()

    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)
    try:
        yield
    finally:
        logger.info("Shutting down %s", settings.app_name)
        if owns_services:
            await services.close()
        elif services.scheduler is not None:
            await services.scheduler.stop()
            services.scheduler = None


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Verethfier API",
        description=(
            "Grants and revokes Discord roles based on proven ownership of on-chain assets.\n\n"
            "## Authentication\n"
            "`POST /verify-signature` is authenticated by the EIP-712 signature it carries. "
            "Administrative endpoints require the `X-API-Key` header."
        ),
        version=VERSION,
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/api/docs",
        redoc_url=None if settings.app_env == "production" else "/api/redoc",
        openapi_url=None if settings.app_env == "production" else "/api/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Liveness and readiness probes"},
            {"name": "verification", "description": "Signed wallet proofs and nonces"},
            {"name": "rules", "description": "Verification rule management"},
            {"name": "assignments", "description": "Role assignments and reconciliation"},
        ],
    )
    app.state.settings = settings
    app.state.services = services

    # ── CORS: configurable origins ──────────────────────────────────
    allowed_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["X-API-Key", "Content-Type", "X-Request-ID", "Accept"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    # ── Middleware (outermost last) ──────────────────────────────────
    app.add_middleware(
        RateLimitMiddleware,
        redis_url=settings.redis_url,
        tiers={
            "short": settings.rate_limit_short,
            "medium": settings.rate_limit_medium,
            "long": settings.rate_limit_long,
        },
    )
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Security headers ─────────────────────────────────────────────
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.app_env == "production":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response

    setup_metrics_route(app)

    # ── Access logging ───────────────────────────────────────────────
    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            extra={"method": request.method, "path": request.url.path,
                   "status_code": response.status_code, "duration_ms": round(elapsed, 1)},
        )
        return response

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(verify.legacy_router, tags=["verification"])
    app.include_router(verify.router, prefix="/api/v1/verify", tags=["verification"])
    app.include_router(rules.router, prefix="/api/v1/rules", tags=["rules"])
    app.include_router(assignments.router, prefix="/api/v1/assignments", tags=["assignments"])

    register_error_handlers(app)
    return app


app = create_app()
