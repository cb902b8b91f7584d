"""
Health, readiness and metrics endpoints.

/health is a cheap liveness probe. /health/ready checks the database and
Redis and reports circuit breaker and reconciler state; it returns 503 when
the database is unreachable. Redis is optional and never fails readiness.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from sora_studio.container import Services, get_services
from sora_studio.database import ping_db
from sora_studio.services.redis_client import is_redis_healthy
from sora_studio.utils.logger import logger
from sora_studio.utils.metrics import get_snapshot

router = APIRouter()


@router.get("/")
async def root():
    return {"status": "ok"}


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(services: Services = Depends(get_services)):
    checks = {}

    try:
        await ping_db(services.engine)
        checks["database"] = "ok"
    except Exception as exc:
        logger.error("health.database_failed", extra={"error": str(exc)[:200]})
        checks["database"] = "unavailable"

    if services.redis is None:
        checks["redis"] = "disabled"
    else:
        checks["redis"] = "ok" if await is_redis_healthy(services.redis) else "unavailable"

    ready = checks["database"] == "ok"
    body = {
        "status": "ready" if ready else "not_ready",
        "checks": checks,
        "circuits": services.gateway.get_circuit_states(),
        "reconciler": services.reconciler.status(),
    }
    return JSONResponse(status_code=200 if ready else 503, content=body)


@router.get("/metrics")
async def metrics():
    return get_snapshot()
