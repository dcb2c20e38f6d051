"""
Time-series builder
===================
Charts get one row per bucket, gap-free, even when the store has nothing for
a bucket:

    buckets CTE  generate_series($series_start, $series_end, interval)
    agg CTE      metric value grouped by bucket
    SELECT       buckets LEFT JOIN agg  →  COALESCE(value, 0)  (ratios stay NULL)

Two join strategies:
  * tables with precomputed local bucket columns (local_date / local_week /
    local_month) group and join on that column directly;
  * tables without them (contacts, ad spend) derive the bucket with
    date_trunc() over the row's account-local timestamp.

Granularity from the span (end - start, in days):
    28..31  → month (calendar month, checked first)
    < 14    → day
    < 60    → week
    else    → month
Weeks start on Monday, months on the 1st. Labels are ISO dates of the bucket start.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from enum import Enum
from typing import Optional

from sales_metrics import BreakdownType, MetricFilters
from sales_metrics.filters import apply_standard_filters, date_field_sql, filter_dates
from sales_metrics.query_builder import attribution_predicates
from sales_metrics.registry import MetricDefinition
from sales_metrics.sql_fragments import CTE, BuiltQuery, Join, QueryStrategy, SelectQuery

logger = logging.getLogger(__name__)


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def interval(self) -> str:
        return f"interval '1 {self.value}'"

    @property
    def local_column(self) -> str:
        return {"day": "local_date", "week": "local_week", "month": "local_month"}[self.value]


def select_granularity(start: date, end: date) -> Granularity:
    span = (end - start).days
    if 28 <= span <= 31:
        return Granularity.MONTH
    if span < 14:
        return Granularity.DAY
    if span < 60:
        return Granularity.WEEK
    return Granularity.MONTH


def bucket_start(d: date, granularity: Granularity) -> date:
    if granularity == Granularity.WEEK:
        return d - timedelta(days=d.weekday())
    if granularity == Granularity.MONTH:
        return d.replace(day=1)
    return d


def next_bucket(d: date, granularity: Granularity) -> date:
    if granularity == Granularity.DAY:
        return d + timedelta(days=1)
    if granularity == Granularity.WEEK:
        return d + timedelta(days=7)
    if d.month == 12:
        return d.replace(year=d.year + 1, month=1, day=1)
    return d.replace(month=d.month + 1, day=1)


def bucket_series(start: date, end: date, granularity: Granularity) -> list[date]:
    """Every bucket start from the one containing ``start`` to the one containing ``end``."""
    series: list[date] = []
    current = bucket_start(start, granularity)
    last = bucket_start(end, granularity)
    while current <= last:
        series.append(current)
        current = next_bucket(current, granularity)
    return series


def bucket_windows(start: date, end: date, granularity: Granularity) -> list[tuple[date, date, date]]:
    """(bucket start, clipped window start, clipped window end) per bucket."""
    windows = []
    for bucket in bucket_series(start, end, granularity):
        window_end = next_bucket(bucket, granularity) - timedelta(days=1)
        windows.append((bucket, max(bucket, start), min(window_end, end)))
    return windows


def _bucket_expression(metric: MetricDefinition, granularity: Granularity) -> str:
    spec = metric.table_spec
    if spec.has_local_buckets:
        return granularity.local_column
    return f"date_trunc('{granularity.value}', {date_field_sql(spec)})::date"


def build_time_series_query(
    metric: MetricDefinition,
    filters: MetricFilters,
    granularity: Optional[Granularity] = None,
) -> tuple[BuiltQuery, list[date]]:
    start, end = filter_dates(filters)
    granularity = granularity or select_granularity(start, end)
    series = bucket_series(start, end, granularity)

    applied = apply_standard_filters(filters, metric.table_spec)
    bucket_expr = _bucket_expression(metric, granularity)

    buckets = SelectQuery(
        select=(
            f"generate_series($series_start::date, $series_end::date, {granularity.interval})::date AS bucket",
        ),
        from_="(SELECT 1) AS seed",
    )
    agg = SelectQuery(
        select=(f"{bucket_expr} AS bucket", f"{metric.value_expression} AS value"),
        from_=metric.table,
        where=tuple(applied.sql_conditions()) + metric.where_clauses + attribution_predicates(metric),
        group_by=(bucket_expr,),
    )
    value = "agg.value" if metric.null_when_empty else "COALESCE(agg.value, 0)"
    query = SelectQuery(
        select=("to_char(b.bucket, 'YYYY-MM-DD') AS date", f"{value} AS value"),
        from_="buckets b",
        joins=(Join("agg", "agg.bucket = b.bucket"),),
        order_by=("b.bucket",),
        ctes=(CTE("buckets", buckets), CTE("agg", agg)),
    )

    params = dict(applied.params)
    params["series_start"] = series[0].isoformat()
    params["series_end"] = series[-1].isoformat()

    logger.debug(
        "time series metric=%s granularity=%s buckets=%d path=%s",
        metric.key, granularity.value, len(series),
        "local_column" if metric.table_spec.has_local_buckets else "truncate",
    )
    built = BuiltQuery(
        sql=query.render(),
        params=params,
        strategy=QueryStrategy.TIME_SERIES,
        breakdown=BreakdownType.TIME,
    )
    return built, series
