"""Generic SELECT assembly for catalog metrics."""

from __future__ import annotations

from typing import Optional

from sales_metrics import BreakdownType, MetricFilters
from sales_metrics.attribution import owner_column_for
from sales_metrics.filters import apply_standard_filters
from sales_metrics.registry import MetricDefinition, TableSpec
from sales_metrics.sql_fragments import BuiltQuery, QueryStrategy, SelectQuery

KEY_ALIASES = {
    "sales_rep_user_id": "rep_id",
    "setter_user_id": "setter_id",
}


def attribution_predicates(metric: MetricDefinition, alias: Optional[str] = None) -> tuple[str, ...]:
    """Attributed variants only count rows that have an owner."""
    owner = owner_column_for(metric.attribution_context)
    if owner is None:
        return ()
    return (f"{alias}.{owner} IS NOT NULL" if alias else f"{owner} IS NOT NULL",)


def breakdown_keys(spec: TableSpec, breakdown: BreakdownType) -> list[tuple[str, str]]:
    """(column, output alias) pairs for a breakdown on ``spec``."""
    return [(col, KEY_ALIASES[col]) for col in spec.column_for(breakdown)]


def compose_select(metric: MetricDefinition, breakdown: BreakdownType) -> SelectQuery:
    """SELECT / GROUP BY / HAVING / ORDER BY for ``breakdown``.

    The declared breakdown uses the definition verbatim; any other breakdown
    is rebuilt around the definition's value expression.
    """
    if breakdown == metric.breakdown_type:
        return SelectQuery(
            select=metric.select_expressions,
            from_=metric.table,
            group_by=metric.group_by,
            having=metric.having,
            order_by=metric.order_by,
        )

    keys = breakdown_keys(metric.table_spec, breakdown)
    select = tuple(f"{col} AS {alias}" for col, alias in keys)
    select += (f"{metric.value_expression} AS value",)
    return SelectQuery(
        select=select,
        from_=metric.table,
        group_by=tuple(col for col, _ in keys),
        order_by=("value DESC",) if keys else (),
    )


def build_generic_query(
    metric: MetricDefinition,
    filters: MetricFilters,
    breakdown: Optional[BreakdownType] = None,
) -> BuiltQuery:
    breakdown = breakdown or metric.breakdown_type
    applied = apply_standard_filters(filters, metric.table_spec)
    base = compose_select(metric, breakdown)

    where = tuple(applied.sql_conditions()) + metric.where_clauses + attribution_predicates(metric)
    query = SelectQuery(
        select=base.select,
        from_=base.from_,
        where=where,
        group_by=base.group_by,
        having=base.having,
        order_by=base.order_by,
    )
    return BuiltQuery(
        sql=query.render(),
        params=dict(applied.params),
        strategy=QueryStrategy.GENERIC,
        breakdown=breakdown,
    )
