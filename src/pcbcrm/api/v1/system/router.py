"""System router providing the health check."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text

from pcbcrm.schemas.base import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(CamelModel):
    status: str
    database: str
    redis: str
    cache_entries: int
    active_jobs: int


@router.get("/health")
async def health_check(request: Request) -> HealthResponse:
    """Report database and Redis connectivity.

    ``status`` is ``healthy`` when both are reachable, else ``degraded``.
    A missing Redis only disables cross-instance cache invalidation.
    """
    db_ok = False
    try:
        session_factory = request.app.state.session_factory
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.warning("Database health check failed", exc_info=True)

    redis_ok = False
    redis = request.app.state.redis
    if redis is not None:
        try:
            await redis.ping()
            redis_ok = True
        except Exception:
            logger.warning("Redis health check failed", exc_info=True)

    return HealthResponse(
        status="healthy" if (db_ok and redis_ok) else "degraded",
        database="connected" if db_ok else "disconnected",
        redis="connected" if redis_ok else "disconnected",
        cache_entries=len(request.app.state.cache),
        active_jobs=request.app.state.job_runner.active,
    )
