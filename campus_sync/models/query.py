"""List Query — the filter/order/limit a store fetches with."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class FilterOp(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    IS = "is"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    ILIKE = "ilike"                         # Case-insensitive, '%' wildcards


class Filter(BaseModel):
    """A single column predicate."""

    field: str
    op: FilterOp = FilterOp.EQ
    value: Any = None

    def matches(self, row: dict) -> bool:
        if self.field not in row:
            return False
        actual = row[self.field]
        expected = self.value

        if self.op == FilterOp.IS:
            return actual is expected or actual == expected
        if self.op == FilterOp.IN:
            return _norm(actual) in {_norm(v) for v in (expected or [])}
        if self.op == FilterOp.ILIKE:
            return _ilike(actual, expected)
        if actual is None:
            return False

        actual, expected = _comparable(actual, expected)
        try:
            if self.op == FilterOp.EQ:
                return actual == expected
            if self.op == FilterOp.NEQ:
                return actual != expected
            if self.op == FilterOp.GT:
                return actual > expected
            if self.op == FilterOp.GTE:
                return actual >= expected
            if self.op == FilterOp.LT:
                return actual < expected
            if self.op == FilterOp.LTE:
                return actual <= expected
        except TypeError:
            return False
        return False


class ListQuery(BaseModel):
    """
    What a store fetches: one table, an AND of filters, an optional OR of
    AND-groups, an order and a page window.

    ``any_of`` exists for views such as a direct-message thread, where a row
    matches if it was sent in either direction between two participants.
    """

    table: str
    filters: List[Filter] = []
    any_of: List[List[Filter]] = []
    columns: str = "*"
    order_by: str = "created_at"
    descending: bool = False
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    def matches(self, row: dict) -> bool:
        """Evaluate the query's filters against a row locally."""
        if not all(f.matches(row) for f in self.filters):
            return False
        if self.any_of:
            return any(all(f.matches(row) for f in group) for group in self.any_of)
        return True

    def page(self, offset: int) -> "ListQuery":
        """The same query starting at a different offset."""
        return self.model_copy(update={"offset": offset})

    def where(self, field: str, value: Any, op: FilterOp = FilterOp.EQ) -> "ListQuery":
        """A copy with one more AND filter."""
        return self.model_copy(
            update={"filters": self.filters + [Filter(field=field, op=op, value=value)]}
        )


def _norm(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _comparable(actual: Any, expected: Any):
    """Line up types the way the backend would compare a column to a literal."""
    if isinstance(actual, datetime) and isinstance(expected, str):
        return actual.isoformat(), expected
    if isinstance(expected, datetime) and isinstance(actual, str):
        return actual, expected.isoformat()
    if isinstance(actual, str) and isinstance(expected, (int, float)) and not isinstance(expected, bool):
        return actual, str(expected)
    if isinstance(expected, str) and isinstance(actual, (int, float)) and not isinstance(actual, bool):
        return str(actual), expected
    return actual, expected


def _ilike(actual: Any, pattern: Any) -> bool:
    if actual is None or pattern is None:
        return False
    text = str(actual).lower()
    parts = str(pattern).lower().split("%")
    if len(parts) == 1:
        return text == parts[0]
    if not text.startswith(parts[0]):
        return False
    pos = len(parts[0])
    for middle in parts[1:-1]:
        found = text.find(middle, pos)
        if found < 0:
            return False
        pos = found + len(middle)
    return text.endswith(parts[-1]) and len(text) - len(parts[-1]) >= pos
