"""Response envelopes for keyset-paginated lists."""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pcbcrm.pagination.paginator import Page
from pcbcrm.schemas.base import CamelModel

T = TypeVar("T")


class PageResponse(CamelModel, Generic[T]):
    """One page of items plus the opaque cursor for the next one."""

    items: list[T]
    next_cursor: str | None = None
    has_more: bool
    has_prev: bool = False
    count: int
    total_count: int | None = None

    @classmethod
    def from_page(cls, page: Page[Any], items: list[T]) -> PageResponse[T]:
        return cls(
            items=items,
            next_cursor=page.next_cursor,
            has_more=page.has_more,
            has_prev=page.has_prev,
            count=page.count,
            total_count=page.total_count,
        )
