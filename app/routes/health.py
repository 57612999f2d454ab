# app/routes/health.py
"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_health_check
from app.models.domain.errors import ConfigurationError
from app.services.billing.price_catalog import PriceCatalog
from app.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "integration-reconciler"}


def _configuration_check() -> dict:
    issues = []
    if not validate_encryption_config():
        issues.append("ENCRYPTION_KEY missing or invalid")
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        issues.append("Google OAuth client not configured")
    if settings.billing_enabled():
        if not settings.STRIPE_WEBHOOK_SECRET:
            issues.append("STRIPE_WEBHOOK_SECRET not set")
        try:
            PriceCatalog().validate()
        except ConfigurationError as e:
            issues.append(str(e))

    return {
        "ok": not issues,
        "issues": issues or None,
        "environment": settings.environment,
        "billing_enabled": settings.billing_enabled(),
    }


@router.get("/readyz")
async def readyz():
    """
    Readiness check: database pool and configuration.
    """
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                }
            )
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    checks["configuration"] = _configuration_check()
    overall_ok = overall_ok and checks["configuration"]["ok"]

    body = {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
