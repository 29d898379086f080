"""FastAPI application factory with async lifespan for DB, Redis, cache, and jobs."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pcbcrm.api.v1.router import v1_router
from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.categories import TTLPolicy
from pcbcrm.cache.sweeper import CacheSweepLoop
from pcbcrm.cache.tiered import TieredCache
from pcbcrm.config import Settings, get_settings
from pcbcrm.database import close_db, create_schema, get_session_factory, init_db
from pcbcrm.errors import (
    AlreadyClaimedError,
    ComputeError,
    InvalidCursorError,
    InvalidJobTransitionError,
    InvalidQueryError,
    JobNotFoundError,
)
from pcbcrm.jobs.ledger import JobLedger
from pcbcrm.jobs.recovery import JobRecoveryLoop
from pcbcrm.jobs.runner import JobRunner
from pcbcrm.pagination.cursor import CursorCodec
from pcbcrm.pagination.paginator import QueryPaginator
from pcbcrm.redis import close_redis, init_redis
from pcbcrm.services import statement_extraction
from pcbcrm.services.merchant_intelligence import HttpIntelligenceProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    On startup: database engine and session factory, Redis client, tiered
    cache with its sweep loop and invalidation listener, HTTP client for
    upstream services, job ledger and runner, and the job recovery loop
    (whose first cycle fails jobs orphaned by the previous process).
    On shutdown: the same in reverse order.
    """
    settings: Settings = app.state.settings

    # Startup -- Database & Redis
    engine = await init_db(settings.database_url)
    if settings.database_url.startswith("sqlite"):
        # Local development databases are not managed by Alembic.
        await create_schema(engine)
    app.state.db_engine = engine
    app.state.session_factory = get_session_factory(engine)
    app.state.redis = await init_redis(settings.redis_url)

    # Startup -- Pagination
    app.state.paginator = QueryPaginator(CursorCodec(settings.cursor_secret or None))

    # Startup -- Tiered cache, sweep loop, and cross-instance invalidation
    cache = TieredCache(TTLPolicy.from_settings(settings), max_size=settings.cache_max_size)
    app.state.cache = cache
    invalidator = CacheInvalidator(
        cache,
        redis_url=settings.redis_url if settings.cache_broadcast_enabled else None,
    )
    await invalidator.start()
    app.state.invalidator = invalidator
    sweeper = CacheSweepLoop(cache, interval=settings.cache_cleanup_interval)
    await sweeper.start()
    app.state.cache_sweeper = sweeper

    # Startup -- Upstream HTTP client
    http_client = httpx.AsyncClient()
    app.state.http_client = http_client
    app.state.intelligence_provider = HttpIntelligenceProvider(
        http_client,
        settings.intelligence_service_url,
        timeout=settings.intelligence_timeout,
    )

    # Startup -- Background jobs
    ledger = JobLedger(app.state.session_factory)
    app.state.job_ledger = ledger
    runner = JobRunner(
        ledger,
        max_concurrent=settings.job_max_concurrent,
        timeout=settings.job_timeout,
    )
    runner.register(
        statement_extraction.JOB_TYPE,
        statement_extraction.StatementExtractionHandler(
            http_client,
            settings.extraction_service_url,
            timeout=settings.extraction_timeout,
        ),
    )
    app.state.job_runner = runner
    recovery = JobRecoveryLoop(
        ledger,
        runner=runner,
        interval=settings.job_recovery_interval,
        stale_threshold=settings.job_stale_threshold,
        retention=settings.job_retention,
    )
    await recovery.start()
    app.state.job_recovery = recovery

    yield

    # Shutdown (reverse order: jobs -> http -> cache -> redis -> db)
    await app.state.job_recovery.stop()
    await app.state.job_runner.stop()
    await app.state.http_client.aclose()
    await app.state.cache_sweeper.stop()
    await app.state.invalidator.stop()
    await close_redis(app.state.redis)
    await close_db(engine)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Translate application errors into ``{"error": ...}`` responses."""

    @app.exception_handler(InvalidCursorError)
    async def invalid_cursor(request: Request, exc: InvalidCursorError) -> JSONResponse:
        return _error(400, "invalid cursor")

    @app.exception_handler(InvalidQueryError)
    async def invalid_query(request: Request, exc: InvalidQueryError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return _error(404, "Job not found")

    @app.exception_handler(AlreadyClaimedError)
    async def already_claimed(request: Request, exc: AlreadyClaimedError) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(InvalidJobTransitionError)
    async def invalid_transition(
        request: Request, exc: InvalidJobTransitionError
    ) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(ComputeError)
    async def compute_failed(request: Request, exc: ComputeError) -> JSONResponse:
        logger.warning("Request failed: %s (%r)", exc, exc.__cause__)
        return _error(502, "Data is temporarily unavailable - please retry")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the app factory. Uvicorn calls it with the --factory flag:
        uvicorn pcbcrm.app:create_app --factory
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="PCB Pipeline",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
    )
    app.state.settings = settings

    register_exception_handlers(app)
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app
