"""Health check endpoints — liveness and dependency readiness."""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from verethfier.api.deps import get_services
from verethfier.core.cache import RedisCache
from verethfier.core.database import get_db
from verethfier.verification.factory import Services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Quick liveness probe."""
    return {"status": "healthy", "service": "verethfier"}


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    """Deep readiness check — database, nonce store and scheduler."""
    checks: dict[str, dict] = {}
    overall = True
    start = time.perf_counter()

    # ── Database ─────────────────────────────────────────────────────
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        checks["database"] = {"status": "up"}
    except Exception as e:
        checks["database"] = {"status": "down", "error": str(e)}
        overall = False

    # ── Nonce store ──────────────────────────────────────────────────
    if isinstance(services.cache, RedisCache):
        try:
            pong = await services.cache.ping()
            checks["redis"] = {"status": "up" if pong else "down"}
            overall = overall and pong
        except Exception as e:
            checks["redis"] = {"status": "down", "error": str(e)}
            overall = False
    else:
        checks["nonce_store"] = {"status": "up", "backend": "memory"}

    # ── Scheduler ────────────────────────────────────────────────────
    scheduler = services.scheduler
    checks["scheduler"] = {
        "status": "running" if scheduler and scheduler.running else "disabled",
        "runs": scheduler.runs if scheduler else 0,
        "failures": scheduler.failures if scheduler else 0,
    }

    elapsed = round((time.perf_counter() - start) * 1000, 1)
    return {
        "status": "healthy" if overall else "degraded",
        "service": "verethfier",
        "checks": checks,
        "latency_ms": elapsed,
    }
