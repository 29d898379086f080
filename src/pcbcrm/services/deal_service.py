"""Deal pipeline service: paginated lists, Kanban columns, and creation.

Lists go through :class:`~pcbcrm.pagination.paginator.QueryPaginator`
with the ``DEAL_RESOURCE`` allow-list, so only the columns named there
can be sorted or filtered on.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.errors import InvalidQueryError
from pcbcrm.models.deal import DEAL_STAGES, Deal
from pcbcrm.pagination.paginator import Page, QueryPaginator
from pcbcrm.pagination.params import (
    TEXT_OPERATORS,
    FilterField,
    GroupedPageRequest,
    PageRequest,
    ResourceSpec,
    SortSpec,
)
from pcbcrm.services.dashboard_service import DASHBOARD_SUMMARY_KEY

logger = logging.getLogger(__name__)

DEAL_RESOURCE = ResourceSpec(
    name="deals",
    model=Deal,
    id_column=Deal.id,
    sortable={
        "created_at": Deal.created_at,
        "updated_at": Deal.updated_at,
        "estimated_monthly_volume": Deal.estimated_monthly_volume,
        "business_name": Deal.business_name,
        "deal_probability": Deal.deal_probability,
    },
    filterable={
        "stage": FilterField(Deal.stage, frozenset({"eq", "ne", "in"})),
        "status": FilterField(Deal.status, frozenset({"eq", "ne", "in"})),
        "assigned_to": FilterField(Deal.assigned_to, frozenset({"eq", "in"})),
        "business_name": FilterField(Deal.business_name, TEXT_OPERATORS),
        "temperature": FilterField(Deal.temperature, frozenset({"eq", "in"})),
        "priority": FilterField(Deal.priority, frozenset({"eq", "in"})),
        "created_at": FilterField(Deal.created_at),
        "estimated_monthly_volume": FilterField(Deal.estimated_monthly_volume),
        "deal_probability": FilterField(Deal.deal_probability),
    },
    default_sort=SortSpec(field="created_at", direction="desc"),
)

KANBAN_DEFAULT_SORT = SortSpec(field="updated_at", direction="desc")


class DealService:
    """Service for deal listing and creation.

    Args:
        db: Async SQLAlchemy session for database operations.
        paginator: Shared keyset paginator.
        invalidator: Used to drop cached aggregates that a write makes stale.
    """

    def __init__(
        self,
        db: AsyncSession,
        paginator: QueryPaginator,
        invalidator: CacheInvalidator | None = None,
    ) -> None:
        self.db = db
        self.paginator = paginator
        self.invalidator = invalidator

    async def list_deals(self, request: PageRequest) -> Page[Deal]:
        return await self.paginator.paginate(self.db, DEAL_RESOURCE, request)

    async def list_stage(self, stage: str, request: PageRequest) -> Page[Deal]:
        """One Kanban column ("load more" for a single stage)."""
        _check_stage(stage)
        return await self.paginator.paginate(
            self.db,
            DEAL_RESOURCE,
            request,
            base_query=select(Deal).where(Deal.stage == stage),
        )

    async def kanban(
        self, request: GroupedPageRequest
    ) -> tuple[dict[str, Page[Deal]], dict[str, int]]:
        """Page every pipeline stage independently.

        Returns:
            Tuple of (stage -> page, stage -> total deals in that stage).
        """
        for stage in request.cursors:
            _check_stage(stage)
        pages = await self.paginator.paginate_grouped(
            self.db,
            DEAL_RESOURCE,
            DEAL_STAGES,
            request,
            group_query=lambda stage: select(Deal).where(Deal.stage == stage),
        )
        return pages, await self.stage_counts()

    async def stage_counts(self) -> dict[str, int]:
        result = await self.db.execute(
            select(Deal.stage, func.count()).group_by(Deal.stage)
        )
        counts = {stage: 0 for stage in DEAL_STAGES}
        counts.update({stage: n for stage, n in result.all()})
        return counts

    async def create_deal(self, **fields: Any) -> Deal:
        """Create a deal and drop the cached dashboard summary.

        Returns:
            The created Deal record.

        Raises:
            InvalidQueryError: If ``stage`` is not a pipeline stage.
        """
        _check_stage(fields.get("stage") or "lead")
        deal = Deal(**fields)
        self.db.add(deal)
        await self.db.commit()
        await self.db.refresh(deal)
        logger.info("Created deal %s (%s)", deal.id, deal.business_name)

        if self.invalidator is not None:
            await self.invalidator.invalidate_key(DASHBOARD_SUMMARY_KEY)
        return deal


def _check_stage(stage: str) -> None:
    if stage not in DEAL_STAGES:
        raise InvalidQueryError(
            f"Unknown stage '{stage}'. Allowed: {', '.join(DEAL_STAGES)}"
        )
