"""Keyset (cursor) pagination over SQLAlchemy select statements.

Pages are fetched with a ``(sort_column, id) > (last_value, last_id)``
predicate (``<`` for descending order) instead of ``OFFSET``, so
inserts and deletes between requests never shift or duplicate rows.
One extra row is fetched to learn whether another page exists without a
separate COUNT.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pcbcrm.errors import CursorDecodeError, InvalidCursorError
from pcbcrm.pagination.cursor import ASC, Cursor, CursorCodec
from pcbcrm.pagination.params import (
    GroupedPageRequest,
    PageRequest,
    ResourceSpec,
    SortSpec,
    fits_column,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results.

    ``next_cursor`` is set exactly when ``has_more`` is true.
    """

    items: list[T]
    next_cursor: str | None
    has_more: bool
    has_prev: bool = False
    total_count: int | None = None

    def __post_init__(self) -> None:
        if self.has_more != (self.next_cursor is not None):
            raise ValueError("next_cursor must be set if and only if has_more")

    @property
    def count(self) -> int:
        return len(self.items)

    @classmethod
    def empty(cls, has_prev: bool = False) -> Page[T]:
        return cls(items=[], next_cursor=None, has_more=False, has_prev=has_prev)


class QueryPaginator:
    """Runs keyset-paginated queries for allow-listed resources.

    Args:
        codec: Cursor codec used for both inbound and outbound cursors.
    """

    def __init__(self, codec: CursorCodec) -> None:
        self.codec = codec

    async def paginate(
        self,
        db: AsyncSession,
        resource: ResourceSpec,
        request: PageRequest,
        base_query: Select[Any] | None = None,
    ) -> Page[Any]:
        """Fetch one page of ``resource`` rows.

        Args:
            db: Async session; the page is read with a single statement.
            resource: Allow-list describing sortable/filterable columns.
            request: Validated page request.
            base_query: Optional pre-scoped select (e.g. by owner). Defaults
                to ``select(resource.model)``.

        Returns:
            The page, with a continuation cursor built from its last row.

        Raises:
            InvalidCursorError: If the inbound cursor is malformed, was
                issued for another sort direction, or its types do not
                match the sort column.
            InvalidQueryError: If the sort field or a filter is outside
                the allow-list.
        """
        sort_column = resource.sort_column(request.sort.field)
        query = base_query if base_query is not None else select(resource.model)
        for condition in request.filters:
            query = query.where(resource.filter_clause(condition))
        filtered = query

        if request.cursor:
            cursor = self._decode(resource, request.sort, request.cursor)
            query = query.where(
                self._keyset_predicate(resource, sort_column, cursor)
            )

        if request.sort.direction == ASC:
            ordering = (sort_column.asc(), resource.id_column.asc())
        else:
            ordering = (sort_column.desc(), resource.id_column.desc())
        query = query.order_by(*ordering).limit(request.limit + 1)

        result = await db.execute(query)
        rows = list(result.scalars().all())

        has_more = len(rows) > request.limit
        items = rows[: request.limit]
        next_cursor = None
        if has_more:
            last = items[-1]
            next_cursor = self.codec.encode(
                getattr(last, sort_column.key),
                getattr(last, resource.id_column.key),
                request.sort.direction,
            )

        total_count = None
        if request.include_total:
            total_count = await db.scalar(
                select(func.count()).select_from(filtered.order_by(None).subquery())
            )

        return Page(
            items=items,
            next_cursor=next_cursor,
            has_more=has_more,
            has_prev=request.cursor is not None,
            total_count=total_count,
        )

    async def paginate_grouped(
        self,
        db: AsyncSession,
        resource: ResourceSpec,
        groups: Sequence[str],
        request: GroupedPageRequest,
        group_query: Callable[[str], Select[Any]],
    ) -> dict[str, Page[Any]]:
        """Paginate each bucket independently with its own cursor.

        Every bucket gets up to ``limit_per_group`` rows so a large bucket
        cannot starve the others (Kanban columns). Buckets are read one
        after another because a session runs one statement at a time.

        Args:
            db: Async session.
            resource: Allow-list for the underlying resource.
            groups: Bucket names, in response order.
            request: Per-bucket limit, cursors, shared filters and sort.
            group_query: Returns the base select scoped to one bucket.

        Returns:
            Mapping of bucket name to its page.
        """
        pages: dict[str, Page[Any]] = {}
        for group in groups:
            pages[group] = await self.paginate(
                db,
                resource,
                PageRequest(
                    limit=request.limit_per_group,
                    cursor=request.cursors.get(group),
                    filters=request.filters,
                    sort=request.sort,
                ),
                base_query=group_query(group),
            )
        return pages

    def _decode(self, resource: ResourceSpec, sort: SortSpec, token: str) -> Cursor:
        try:
            cursor = self.codec.decode(token, resource.sort_type(sort.field))
        except CursorDecodeError as exc:
            logger.debug("Rejected %s cursor: %s", resource.name, exc)
            raise InvalidCursorError("invalid cursor") from exc

        if cursor.direction != sort.direction:
            raise InvalidCursorError("invalid cursor")
        # Out-of-range numbers must never reach the driver.
        if not fits_column(resource.sort_column(sort.field), cursor.sort_value):
            raise InvalidCursorError("invalid cursor")
        if resource.uuid_ids:
            if not isinstance(cursor.tie_break_id, str):
                raise InvalidCursorError("invalid cursor")
            try:
                uuid.UUID(cursor.tie_break_id)
            except ValueError as exc:
                raise InvalidCursorError("invalid cursor") from exc
        elif not isinstance(
            cursor.tie_break_id, resource.id_column.type.python_type
        ) or not fits_column(resource.id_column, cursor.tie_break_id):
            raise InvalidCursorError("invalid cursor")
        return cursor

    @staticmethod
    def _keyset_predicate(
        resource: ResourceSpec,
        sort_column: Any,
        cursor: Cursor,
    ) -> ColumnElement[bool]:
        """``sort > v OR (sort = v AND id > last_id)``, mirrored for desc."""
        id_column = resource.id_column
        if cursor.direction == ASC:
            return or_(
                sort_column > cursor.sort_value,
                and_(sort_column == cursor.sort_value, id_column > cursor.tie_break_id),
            )
        return or_(
            sort_column < cursor.sort_value,
            and_(sort_column == cursor.sort_value, id_column < cursor.tie_break_id),
        )
