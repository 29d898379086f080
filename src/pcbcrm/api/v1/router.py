"""V1 API router aggregating all sub-routers."""

from fastapi import APIRouter

from pcbcrm.api.v1.cache.router import router as cache_router
from pcbcrm.api.v1.dashboard.router import router as dashboard_router
from pcbcrm.api.v1.deals.router import router as deals_router
from pcbcrm.api.v1.jobs.router import router as jobs_router
from pcbcrm.api.v1.merchants.router import router as merchants_router
from pcbcrm.api.v1.system.router import router as system_router

v1_router = APIRouter()
v1_router.include_router(system_router, prefix="/system", tags=["system"])
v1_router.include_router(deals_router, prefix="/deals", tags=["deals"])
v1_router.include_router(dashboard_router, prefix="/dashboard", tags=["dashboard"])
v1_router.include_router(merchants_router, prefix="/merchants", tags=["merchants"])
v1_router.include_router(cache_router, prefix="/cache", tags=["cache"])
v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
