"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - readiness plus retry worker heartbeat and realtime state
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from bookon_relay.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis only backs heartbeats and alert cooldowns, so a Redis outage degrades but does not fail.
    """
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Deep health check - dependencies, retry worker heartbeat, realtime registry."""
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "retry_worker": await _check_retry_worker(),
        "realtime": _check_realtime(request),
    }

    critical_healthy = checks["database"]["healthy"]
    all_healthy = all(c.get("healthy", False) for c in checks.values())
    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        from bookon_relay.utils.cache import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_retry_worker() -> dict:
    try:
        from bookon_relay.utils.cache import get_redis, make_key
        redis = await get_redis()
        heartbeat = await redis.get(make_key("worker_health", "retry_worker"))
        return {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}
    except Exception as e:
        logger.warning("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


def _check_realtime(request: Request) -> dict:
    manager = getattr(request.app.state, "connection_manager", None)
    delivery = getattr(request.app.state, "delivery_queue", None)
    if manager is None or delivery is None:
        return {"healthy": False, "error": "realtime not initialized"}
    return {
        "healthy": delivery.running,
        "connections": manager.connection_stats()["connections"],
        "queue_depth": delivery.depth,
        "dropped": delivery.dropped,
    }
