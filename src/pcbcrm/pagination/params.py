"""Page requests and allow-listed sort/filter parameters.

Every paginated resource declares a :class:`ResourceSpec` naming the
columns clients may sort and filter on. Query-string parameters are
parsed into closed ``{field, operator, value}`` triples, validated
against that allow-list, coerced to the column's Python type, and only
then turned into SQLAlchemy expressions with bound parameters.
Client-supplied field names never reach SQL text.

Query-string syntax::

    sort=<field>:<asc|desc>
    filter[<field>]=<value>            # operator "eq"
    filter[<field>][<op>]=<value>      # op in OPERATORS
    filter[<field>][in]=a,b,c
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from operator import eq, ge, gt, le, lt, ne
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import BigInteger, ColumnElement, SmallInteger, Uuid
from sqlalchemy.orm import InstrumentedAttribute

from pcbcrm.errors import InvalidQueryError

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DEFAULT_GROUP_LIMIT = 10
MAX_GROUP_LIMIT = 50

OPERATORS: frozenset[str] = frozenset(
    {"eq", "ne", "lt", "lte", "gt", "gte", "in", "contains"}
)
RANGE_OPERATORS: frozenset[str] = frozenset({"eq", "ne", "lt", "lte", "gt", "gte", "in"})
TEXT_OPERATORS: frozenset[str] = frozenset({"eq", "ne", "in", "contains"})

_COMPARATORS = {"eq": eq, "ne": ne, "lt": lt, "lte": le, "gt": gt, "gte": ge}

_FILTER_KEY = re.compile(r"^filter\[(\w+)\](?:\[(\w+)\])?$")


def clamp_limit(value: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Clamp a client-supplied page size into ``1..maximum``.

    Missing or unparsable values fall back to ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(limit, maximum))


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SortSpec(BaseModel):
    """Requested sort column and direction."""

    field: str
    direction: Literal["asc", "desc"] = "desc"

    @classmethod
    def parse(cls, raw: str | None, default: SortSpec) -> SortSpec:
        """Parse ``field[:direction]``; ``None`` or empty yields ``default``."""
        if not raw:
            return default
        name, _, direction = raw.partition(":")
        direction = direction.lower() or default.direction
        if direction not in ("asc", "desc"):
            raise InvalidQueryError(f"Invalid sort direction: {direction}")
        return cls(field=name, direction=direction)


class FilterCondition(BaseModel):
    """A single validated ``field operator value`` filter."""

    field: str
    operator: str = "eq"
    value: Any


class PageRequest(BaseModel):
    """A request for one page of a sorted, filtered result set.

    ``limit`` is clamped to ``1..MAX_LIMIT`` whatever the client sends.
    """

    limit: int = DEFAULT_LIMIT
    cursor: str | None = None
    filters: list[FilterCondition] = Field(default_factory=list)
    sort: SortSpec
    include_total: bool = False

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        return clamp_limit(value)

    @field_validator("cursor", mode="before")
    @classmethod
    def _blank_cursor(cls, value: Any) -> Any:
        return value or None


class GroupedPageRequest(BaseModel):
    """Per-bucket pagination request (one cursor per bucket)."""

    limit_per_group: int = DEFAULT_GROUP_LIMIT
    cursors: dict[str, str] = Field(default_factory=dict)
    filters: list[FilterCondition] = Field(default_factory=list)
    sort: SortSpec

    @field_validator("limit_per_group", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        return clamp_limit(value, DEFAULT_GROUP_LIMIT, MAX_GROUP_LIMIT)


# ---------------------------------------------------------------------------
# Resource allow-lists
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FilterField:
    """A filterable column and the operators it accepts."""

    column: InstrumentedAttribute
    operators: frozenset[str] = RANGE_OPERATORS

    @property
    def python_type(self) -> type:
        return self.column.type.python_type


@dataclass(frozen=True)
class ResourceSpec:
    """Sort/filter allow-list for one paginated resource.

    Args:
        name: Resource name used in error messages.
        model: The mapped ORM class being paginated.
        id_column: Unique tie-break column (primary key).
        sortable: Public sort field name -> column.
        filterable: Public filter field name -> :class:`FilterField`.
        default_sort: Sort used when the client sends none.
    """

    name: str
    model: type
    id_column: InstrumentedAttribute
    sortable: Mapping[str, InstrumentedAttribute]
    filterable: Mapping[str, FilterField] = field(default_factory=dict)
    default_sort: SortSpec = field(
        default_factory=lambda: SortSpec(field="created_at", direction="desc")
    )

    def sort_column(self, name: str) -> InstrumentedAttribute:
        try:
            return self.sortable[name]
        except KeyError:
            raise InvalidQueryError(
                f"Cannot sort {self.name} by '{name}'. "
                f"Allowed: {', '.join(sorted(self.sortable))}"
            ) from None

    def sort_type(self, name: str) -> type:
        return self.sort_column(name).type.python_type

    @property
    def uuid_ids(self) -> bool:
        return isinstance(self.id_column.type, Uuid)

    def parse_filters(self, params: Iterable[tuple[str, str]]) -> list[FilterCondition]:
        """Build validated filter conditions from query-string pairs.

        Pairs whose key does not start with ``filter`` are ignored so the
        caller can pass the full query string.

        Raises:
            InvalidQueryError: For malformed keys, fields or operators
                outside the allow-list, and values that do not coerce.
        """
        conditions: list[FilterCondition] = []
        for key, raw in params:
            if not key.startswith("filter"):
                continue
            match = _FILTER_KEY.match(key)
            if match is None:
                raise InvalidQueryError(f"Malformed filter parameter: {key}")
            name, operator = match.group(1), match.group(2) or "eq"
            conditions.append(self.validate_filter(name, operator, raw))
        return conditions

    def validate_filter(self, name: str, operator: str, raw: Any) -> FilterCondition:
        spec = self.filterable.get(name)
        if spec is None:
            raise InvalidQueryError(f"Cannot filter {self.name} by '{name}'")
        if operator not in OPERATORS or operator not in spec.operators:
            raise InvalidQueryError(
                f"Operator '{operator}' is not allowed on '{name}'"
            )
        if operator == "in":
            items = raw.split(",") if isinstance(raw, str) else list(raw)
            value: Any = [_coerce(name, spec.python_type, item) for item in items]
        else:
            value = _coerce(name, spec.python_type, raw)
        for item in value if operator == "in" else [value]:
            if not fits_column(spec.column, item):
                raise InvalidQueryError(f"Value out of range for '{name}'")
        return FilterCondition(field=name, operator=operator, value=value)

    def filter_clause(self, condition: FilterCondition) -> ColumnElement[bool]:
        """Translate a validated condition into a SQLAlchemy expression."""
        spec = self.filterable.get(condition.field)
        if spec is None or condition.operator not in spec.operators:
            raise InvalidQueryError(
                f"Filter '{condition.field}' [{condition.operator}] is not allowed"
            )
        column, value = spec.column, condition.value
        if condition.operator == "in":
            return column.in_(value)
        if condition.operator == "contains":
            return column.ilike(f"%{_escape_like(str(value))}%", escape="\\")
        return _COMPARATORS[condition.operator](column, value)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _coerce(name: str, python_type: type, raw: Any) -> Any:
    """Coerce a raw query-string value into the column's Python type."""
    if isinstance(raw, python_type) and not (
        python_type is int and isinstance(raw, bool)
    ):
        return raw
    text = str(raw).strip()
    try:
        if python_type is bool:
            lowered = text.lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no"):
                return False
            raise ValueError(text)
        if python_type is datetime:
            return datetime.fromisoformat(text)
        if python_type is date:
            return date.fromisoformat(text)
        if python_type in (int, float, str):
            return python_type(text)
    except ValueError:
        raise InvalidQueryError(
            f"Invalid value for '{name}': expected {python_type.__name__}"
        ) from None
    raise InvalidQueryError(f"Field '{name}' cannot be filtered from a query string")


def integer_bounds(column: Any) -> tuple[int, int]:
    """Smallest and largest value the column's integer type can store."""
    if isinstance(column.type, SmallInteger):
        bits = 16
    elif isinstance(column.type, BigInteger):
        bits = 64
    else:
        bits = 32
    return -(2 ** (bits - 1)), 2 ** (bits - 1) - 1


def fits_column(column: Any, value: Any) -> bool:
    """False for numbers the column cannot bind (out of range or non-finite)."""
    if isinstance(value, bool):
        return True
    if isinstance(value, int):
        low, high = integer_bounds(column)
        return low <= value <= high
    if isinstance(value, float):
        return math.isfinite(value)
    return True
