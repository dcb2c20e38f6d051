"""
SQL fragments — structured query values + read-only guard.

Builders assemble ``SelectQuery`` values and only serialize to text in
``render()``. Every parameter travels as a ``$name`` placeholder; values
never get spliced into the SQL string.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import sqlglot
from sqlglot import exp

from sales_metrics import BreakdownType
from sales_metrics.errors import UnsafeQueryError

logger = logging.getLogger(__name__)

_WRITE_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|TRUNCATE|CREATE|GRANT|REVOKE|MERGE|COPY)\b",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


class QueryStrategy(str, Enum):
    GENERIC = "generic"
    TIME_SERIES = "time_series"
    SPECIAL = "special"


@dataclass(frozen=True)
class Join:
    table: str
    on: str
    kind: str = "LEFT"

    def render(self) -> str:
        return f"{self.kind} JOIN {self.table} ON {self.on}"


@dataclass(frozen=True)
class UnionAll:
    queries: tuple["SelectQuery", ...]

    def render(self) -> str:
        return " UNION ALL ".join(q.render() for q in self.queries)


@dataclass(frozen=True)
class CTE:
    name: str
    query: Union["SelectQuery", UnionAll]

    def render(self) -> str:
        return f"{self.name} AS ({self.query.render()})"


@dataclass(frozen=True)
class SelectQuery:
    select: tuple[str, ...]
    from_: str
    joins: tuple[Join, ...] = ()
    where: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    having: tuple[str, ...] = ()
    order_by: tuple[str, ...] = ()
    ctes: tuple[CTE, ...] = ()

    def render(self) -> str:
        parts: list[str] = []
        if self.ctes:
            parts.append("WITH " + ", ".join(c.render() for c in self.ctes))
        parts.append("SELECT " + ", ".join(self.select))
        parts.append("FROM " + self.from_)
        parts.extend(j.render() for j in self.joins)
        if self.where:
            parts.append("WHERE " + " AND ".join(self.where))
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(self.group_by))
        if self.having:
            parts.append("HAVING " + " AND ".join(self.having))
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(self.order_by))
        return " ".join(parts)


@dataclass(frozen=True)
class BuiltQuery:
    sql: str
    params: dict[str, Any] = field(default_factory=dict)
    strategy: QueryStrategy = QueryStrategy.GENERIC
    breakdown: BreakdownType = BreakdownType.TOTAL

    def missing_params(self) -> set[str]:
        return set(_PLACEHOLDER.findall(self.sql)) - set(self.params)


def placeholders(sql: str) -> set[str]:
    return set(_PLACEHOLDER.findall(sql))


def validate_readonly_sql(sql: str) -> str:
    """Reject anything that isn't a single read-only SELECT.

    Returns the stripped SQL on success, raises UnsafeQueryError otherwise.
    Placeholders are swapped for NULL only for parsing; the returned text
    keeps them.
    """
    if not sql or not sql.strip():
        raise UnsafeQueryError("Empty SQL query.")

    sql = sql.strip().rstrip(";")

    match = _WRITE_KEYWORDS.search(sql)
    if match:
        raise UnsafeQueryError(f"Write operations are not allowed: {match.group(1)}")

    try:
        parsed = sqlglot.parse_one(_PLACEHOLDER.sub("NULL", sql), dialect="postgres")
    except sqlglot.errors.ParseError as e:
        raise UnsafeQueryError(f"SQL syntax error: {e}") from e

    if not isinstance(parsed, (exp.Select, exp.Union)):
        logger.warning("Rejected non-SELECT statement: %s", type(parsed).__name__)
        raise UnsafeQueryError("Only SELECT queries are allowed.")

    return sql


def qualify(column: str, alias: Optional[str]) -> str:
    return f"{alias}.{column}" if alias else column
