"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "go-leadership-drip"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: database pool and email queue.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = bool(db_health.get("healthy", False))
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"]["pool_stats"] = db_health["pool_stats"]
    if "warnings" in db_health:
        checks["database"]["warnings"] = db_health["warnings"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 2) Email queue
    runtime = getattr(request.app.state, "drip", None)
    if runtime is None:
        checks["email_queue"] = {"ok": False, "error": "Drip runtime not initialized"}
        overall_ok = False
    else:
        queue_health = await runtime.queue.health_check()
        checks["email_queue"] = {
            "ok": queue_health["healthy"],
            "backend": queue_health["backend"],
            "running": queue_health["running"],
        }
        overall_ok = overall_ok and queue_health["healthy"]

    # 3) Configuration (missing keys degrade delivery but do not block readiness)
    config_issues = []
    if not settings.RESEND_API_KEY:
        config_issues.append("RESEND_API_KEY not set")
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set, fallback content only")
    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }

    body = {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
    return JSONResponse(content=body, status_code=200 if overall_ok else 503)
