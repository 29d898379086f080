"""Shared FastAPI dependencies for sessions, the cache, and job execution.

Every object returned here is built once by the application lifespan
and stored on ``request.app.state``.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.tiered import TieredCache
from pcbcrm.jobs.ledger import JobLedger
from pcbcrm.jobs.runner import JobRunner
from pcbcrm.pagination.paginator import QueryPaginator
from pcbcrm.services.dashboard_service import DashboardService
from pcbcrm.services.deal_service import DealService
from pcbcrm.services.merchant_intelligence import MerchantIntelligenceService


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session from the app-level session factory.

    The session auto-closes when the request ends.
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_cache(request: Request) -> TieredCache:
    return request.app.state.cache


async def get_invalidator(request: Request) -> CacheInvalidator:
    return request.app.state.invalidator


async def get_paginator(request: Request) -> QueryPaginator:
    return request.app.state.paginator


async def get_job_ledger(request: Request) -> JobLedger:
    return request.app.state.job_ledger


async def get_job_runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


async def get_deal_service(
    db: AsyncSession = Depends(get_db),
    paginator: QueryPaginator = Depends(get_paginator),
    invalidator: CacheInvalidator = Depends(get_invalidator),
) -> DealService:
    """Provide a DealService bound to the current DB session."""
    return DealService(db, paginator, invalidator)


async def get_dashboard_service(
    db: AsyncSession = Depends(get_db),
    cache: TieredCache = Depends(get_cache),
    invalidator: CacheInvalidator = Depends(get_invalidator),
) -> DashboardService:
    """Provide a DashboardService bound to the current DB session."""
    return DashboardService(db, cache, invalidator)


async def get_intelligence_service(
    request: Request,
    cache: TieredCache = Depends(get_cache),
    invalidator: CacheInvalidator = Depends(get_invalidator),
) -> MerchantIntelligenceService:
    """Provide a MerchantIntelligenceService using the app's provider.

    The provider wraps the shared ``httpx.AsyncClient`` created in the
    lifespan, so requests reuse its connection pool.
    """
    return MerchantIntelligenceService(
        cache=cache,
        provider=request.app.state.intelligence_provider,
        invalidator=invalidator,
    )
