"""
Filter Applier
==============
Turns caller filters into parameterized WHERE conditions.

    date range   → <date field> >= $start_date / <= $end_date   (inclusive)
    account      → account_id = $account_id
    rep ids      → one id: = $rep_user_id,  many: IN ($rep_user_ids_0, ...)
    setter ids   → same shape with setter_user_id

Ids that don't look like UUIDs are dropped (logged, never an error). When
nothing valid remains the dimension is left unfiltered, so a request with
only garbage ids behaves exactly like one with no ids.

Account-wide denominators (total spend, total appointments, total leads) are
built with ``include_user_filters=False``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Union

from sales_metrics import MetricFilters
from sales_metrics.registry import TABLES, DateKind, TableSpec
from sales_metrics.sql_fragments import qualify

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

ACCOUNT_TIMEZONE_SQL = (
    "COALESCE((SELECT business_timezone FROM accounts WHERE id = $account_id), 'UTC')"
)


@dataclass(frozen=True)
class FilterCondition:
    field: str
    operator: str          # "=", ">=", "<=", "IN"
    value: Any
    param_name: str
    cast: Optional[str] = None

    def param_names(self) -> list[str]:
        if self.operator == "IN":
            return [f"{self.param_name}_{i}" for i in range(len(self.value))]
        return [self.param_name]

    def render(self) -> str:
        suffix = f"::{self.cast}" if self.cast else ""
        if self.operator == "IN":
            refs = ", ".join(f"${name}{suffix}" for name in self.param_names())
            return f"{self.field} IN ({refs})"
        return f"{self.field} {self.operator} ${self.param_name}{suffix}"


@dataclass
class AppliedFilters:
    conditions: list[FilterCondition] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)

    def add(self, condition: FilterCondition) -> None:
        self.conditions.append(condition)
        if condition.operator == "IN":
            for name, value in zip(condition.param_names(), condition.value):
                self.params[name] = value
        else:
            self.params[condition.param_name] = condition.value

    def sql_conditions(self) -> list[str]:
        return [c.render() for c in self.conditions]


# ── Parsing / validation ─────────────────────────────────────────────────

def parse_filter_date(value: Any) -> Optional[date]:
    """ISO date or datetime → date (the date as written, offset ignored). None when unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    try:
        return date.fromisoformat(s)
    except ValueError:
        pass
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt.date()


def is_valid_identifier(token: Any) -> bool:
    return isinstance(token, str) and bool(_UUID_RE.match(token.strip()))


def validate_filters(filters: MetricFilters) -> list[str]:
    """Every reason the filters are unusable; empty list means valid."""
    errors: list[str] = []
    date_range = filters.date_range
    start_raw = date_range.start if date_range else None
    end_raw = date_range.end if date_range else None

    if not start_raw:
        errors.append("Start date is required")
    if not end_raw:
        errors.append("End date is required")
    if not filters.account_id:
        errors.append("Account ID is required")

    if start_raw and end_raw:
        start = parse_filter_date(start_raw)
        end = parse_filter_date(end_raw)
        if start is None or end is None:
            errors.append("Invalid date format")
        elif start > end:
            errors.append("Start date must be before end date")
    return errors


def filter_dates(filters: MetricFilters) -> tuple[date, date]:
    """Parsed (start, end) of already-validated filters."""
    return (
        parse_filter_date(filters.date_range.start),
        parse_filter_date(filters.date_range.end),
    )


def valid_ids(ids: Iterable[str], dimension: str) -> list[str]:
    kept: list[str] = []
    for token in ids or ():
        if is_valid_identifier(token):
            kept.append(token.strip())
        else:
            logger.warning("Dropping invalid %s id: %r", dimension, token)
    return kept


# ── Application ──────────────────────────────────────────────────────────

def date_field_sql(table: TableSpec, alias: Optional[str] = None) -> str:
    """Expression yielding the account-local calendar day of a row."""
    column = qualify(table.date_column, alias)
    if table.date_kind == DateKind.TIMESTAMP:
        return f"({column} AT TIME ZONE {ACCOUNT_TIMEZONE_SQL})::date"
    return column


def _resolve_table(table: Union[str, TableSpec]) -> TableSpec:
    return table if isinstance(table, TableSpec) else TABLES[table]


def _user_condition(
    column: str,
    ids: list[str],
    single_param: str,
    multi_param: str,
) -> FilterCondition:
    if len(ids) == 1:
        return FilterCondition(column, "=", ids[0], single_param)
    return FilterCondition(column, "IN", list(ids), multi_param)


def apply_standard_filters(
    filters: MetricFilters,
    table: Union[str, TableSpec],
    alias: Optional[str] = None,
    include_user_filters: bool = True,
) -> AppliedFilters:
    """Standard conditions for ``table``. Filters must already be validated."""
    spec = _resolve_table(table)
    start, end = filter_dates(filters)
    applied = AppliedFilters()

    day = date_field_sql(spec, alias)
    applied.add(FilterCondition(day, ">=", start.isoformat(), "start_date", cast="date"))
    applied.add(FilterCondition(day, "<=", end.isoformat(), "end_date", cast="date"))
    applied.add(FilterCondition(qualify("account_id", alias), "=", filters.account_id, "account_id"))

    if include_user_filters:
        apply_user_filters(filters, spec, alias, into=applied)
    return applied


def apply_user_filters(
    filters: MetricFilters,
    table: Union[str, TableSpec],
    alias: Optional[str] = None,
    into: Optional[AppliedFilters] = None,
) -> AppliedFilters:
    """Rep / setter conditions only, for joins that carry their own date bounds."""
    spec = _resolve_table(table)
    applied = into if into is not None else AppliedFilters()

    rep_ids = valid_ids(filters.rep_ids, "rep")
    if rep_ids:
        if spec.rep_column:
            applied.add(_user_condition(
                qualify(spec.rep_column, alias), rep_ids, "rep_user_id", "rep_user_ids",
            ))
        else:
            logger.debug("%s has no rep column; rep filter skipped", spec.name)

    setter_ids = valid_ids(filters.setter_ids, "setter")
    if setter_ids:
        if spec.setter_column:
            applied.add(_user_condition(
                qualify(spec.setter_column, alias), setter_ids, "setter_user_id", "setter_user_ids",
            ))
        else:
            logger.debug("%s has no setter column; setter filter skipped", spec.name)

    return applied


def build_where_clause(applied: AppliedFilters, additional: Iterable[str] = ()) -> str:
    conditions = applied.sql_conditions() + [c for c in additional if c]
    if not conditions:
        return ""
    return "WHERE " + " AND ".join(conditions)


def flatten_params(applied: AppliedFilters) -> dict[str, Any]:
    return dict(applied.params)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO timestamp → aware datetime (naive values are taken as UTC)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
