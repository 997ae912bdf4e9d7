"""Health check endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from latchkey.api.deps import StoreDep
from latchkey.errors import StorageUnavailableError
from latchkey.tasks.queue import queue

logger = logging.getLogger(__name__)

router = APIRouter()


async def _database_status(store: StoreDep) -> str:
    try:
        await store.ping()
        return "connected"
    except StorageUnavailableError as e:
        logger.error(f"Database health check failed: {e!r}")
        return "disconnected"


async def _redis_status() -> str:
    try:
        redis = queue.redis  # type: ignore[attr-defined]
        if redis is None:
            return "not_initialized"
        await redis.ping()
        return "connected"
    except Exception as e:
        logger.error(f"Redis health check failed: {e!r}")
        return "disconnected"


@router.get("")
async def health_check():
    """Basic health check - just confirms the service is running."""
    return {"status": "ok"}


@router.get("/db")
async def health_check_db(store: StoreDep):
    """Health check with database connectivity."""
    database = await _database_status(store)
    if database != "connected":
        return JSONResponse(
            status_code=503,
            content={"status": "error", "database": database},
        )
    return {"status": "ok", "database": database}


@router.get("/redis")
async def health_check_redis():
    """Health check for Redis connectivity (sweep job queue)."""
    redis = await _redis_status()
    if redis != "connected":
        return JSONResponse(
            status_code=503,
            content={"status": "error", "redis": redis},
        )
    return {"status": "ok", "redis": redis}


@router.get("/ready")
async def readiness_check(store: StoreDep):
    """Readiness check - confirms the identity store is reachable.

    Use this endpoint for load balancer health checks. Only the database
    gates readiness; the queue only runs the periodic sweep, so a Redis
    outage is reported as degraded.
    """
    database = await _database_status(store)
    redis = await _redis_status()

    if database != "connected":
        status = "error"
    elif redis != "connected":
        status = "degraded"
    else:
        status = "ok"

    response = {"status": status, "database": database, "redis": redis}
    if database != "connected":
        return JSONResponse(status_code=503, content=response)
    return response
