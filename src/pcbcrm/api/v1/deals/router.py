"""Deal pipeline endpoints: keyset-paginated list, Kanban columns, create.

List query syntax::

    GET /deals?limit=20&cursor=<opaque>&sort=updated_at:desc
        &filter[stage]=proposal&filter[estimated_monthly_volume][gte]=50000
"""

from __future__ import annotations

import re

from fastapi import APIRouter, Depends, Query, Request

from pcbcrm.api.deps import get_deal_service
from pcbcrm.models.deal import Deal
from pcbcrm.pagination.paginator import Page
from pcbcrm.pagination.params import GroupedPageRequest, PageRequest, SortSpec
from pcbcrm.schemas.deal import CreateDealRequest, DealResponse, KanbanResponse
from pcbcrm.schemas.pagination import PageResponse
from pcbcrm.services.deal_service import DEAL_RESOURCE, KANBAN_DEFAULT_SORT, DealService

router = APIRouter()

_CURSOR_KEY = re.compile(r"^cursor\[(\w+)\]$")


def _deal_page(page: Page[Deal]) -> PageResponse[DealResponse]:
    return PageResponse[DealResponse].from_page(
        page, [DealResponse.model_validate(deal) for deal in page.items]
    )


def _page_request(
    request: Request,
    limit: str | None,
    cursor: str | None,
    sort: str | None,
    include_total: bool = False,
    default_sort: SortSpec = DEAL_RESOURCE.default_sort,
) -> PageRequest:
    """Build a validated page request from the raw query string."""
    return PageRequest(
        limit=limit,
        cursor=cursor,
        sort=SortSpec.parse(sort, default_sort),
        filters=DEAL_RESOURCE.parse_filters(request.query_params.multi_items()),
        include_total=include_total,
    )


@router.get("")
async def list_deals(
    request: Request,
    limit: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    include_total: bool = Query(default=False),
    service: DealService = Depends(get_deal_service),
) -> PageResponse[DealResponse]:
    """List deals, newest first unless ``sort`` says otherwise.

    ``limit`` is clamped to 1..100. Pass ``nextCursor`` from the previous
    response as ``cursor`` to get the following page.
    """
    page_request = _page_request(request, limit, cursor, sort, include_total)
    page = await service.list_deals(page_request)
    return _deal_page(page)


@router.get("/kanban")
async def kanban(
    request: Request,
    limit_per_stage: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    service: DealService = Depends(get_deal_service),
) -> KanbanResponse:
    """Return up to ``limit_per_stage`` deals for every pipeline stage.

    Each column continues independently with ``cursor[<stage>]=<cursor>``.
    """
    cursors = {}
    for key, value in request.query_params.multi_items():
        match = _CURSOR_KEY.match(key)
        if match and value:
            cursors[match.group(1)] = value

    grouped = GroupedPageRequest(
        limit_per_group=limit_per_stage,
        cursors=cursors,
        sort=SortSpec.parse(sort, KANBAN_DEFAULT_SORT),
        filters=DEAL_RESOURCE.parse_filters(request.query_params.multi_items()),
    )
    pages, counts = await service.kanban(grouped)
    return KanbanResponse(
        stages={stage: _deal_page(page) for stage, page in pages.items()},
        stage_counts=counts,
    )


@router.get("/stage/{stage}")
async def list_stage(
    stage: str,
    request: Request,
    limit: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    service: DealService = Depends(get_deal_service),
) -> PageResponse[DealResponse]:
    """Load more deals for a single Kanban column."""
    page_request = _page_request(
        request, limit, cursor, sort, default_sort=KANBAN_DEFAULT_SORT
    )
    page = await service.list_stage(stage, page_request)
    return _deal_page(page)


@router.post("", status_code=201)
async def create_deal(
    body: CreateDealRequest,
    service: DealService = Depends(get_deal_service),
) -> DealResponse:
    """Create a deal; the cached dashboard summary is invalidated."""
    deal = await service.create_deal(**body.model_dump())
    return DealResponse.model_validate(deal)
