"""
Metrics Engine
==============
execute(request) → MetricResponse

  1. validate filters + resolve the metric (unknown name == validation error)
  2. pick the strategy once: special formula / time series / generic
  3. build SQL, run it through the executor, shape rows for the effective breakdown
  4. fill rep / setter display names

Validation problems raise MetricValidationError. Anything that goes wrong
after that is logged and answered with the empty result for the effective
breakdown, so callers always get a well-formed response.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from sales_metrics import (
    BreakdownType,
    DateRange,
    MetricFilters,
    MetricRequest,
    MetricRequestOptions,
    MetricResponse,
)
from sales_metrics.concurrency import MAX_CONCURRENCY, run_bounded
from sales_metrics.errors import MetricValidationError
from sales_metrics.executor import (
    QueryExecutor,
    coerce_number,
    empty_result,
    result_row_count,
    shape_result,
)
from sales_metrics.filters import filter_dates, validate_filters
from sales_metrics.query_builder import build_generic_query
from sales_metrics.registry import MetricDefinition, SpecialFormula, get_metric
from sales_metrics.special_formulas import build_formula_plan, run_plan
from sales_metrics.sql_fragments import QueryStrategy
from sales_metrics.time_series import (
    bucket_windows,
    build_time_series_query,
    select_granularity,
)
from sales_metrics.user_names import NameResolver, apply_names, result_user_ids
from sales_metrics.work_timeframes import WorkTimeframeDeriver

logger = logging.getLogger(__name__)


def is_time_viz(viz_type: Optional[str]) -> bool:
    return bool(viz_type) and viz_type.lower() != "kpi"


def select_strategy(
    metric: MetricDefinition,
    options: Optional[MetricRequestOptions] = None,
) -> tuple[QueryStrategy, BreakdownType]:
    """Strategy + effective breakdown for one request."""
    options = options or MetricRequestOptions()
    dynamic = options.dynamic_breakdown
    wants_time = is_time_viz(options.viz_type) or dynamic == BreakdownType.TIME

    if metric.is_special_metric:
        if wants_time:
            return QueryStrategy.SPECIAL, BreakdownType.TIME
        if dynamic == BreakdownType.TOTAL:
            return QueryStrategy.SPECIAL, BreakdownType.TOTAL
        if metric.special_formula == SpecialFormula.WORK_TIMEFRAME and dynamic == BreakdownType.SETTER:
            return QueryStrategy.SPECIAL, BreakdownType.SETTER
        return QueryStrategy.SPECIAL, metric.breakdown_type

    if wants_time:
        return QueryStrategy.TIME_SERIES, BreakdownType.TIME

    breakdown = metric.breakdown_type
    if dynamic and dynamic != breakdown:
        if metric.table_spec.supports(dynamic):
            breakdown = dynamic
        else:
            logger.warning(
                "metric=%s cannot break down by %s; keeping %s",
                metric.key, dynamic.value, breakdown.value,
            )
    return QueryStrategy.GENERIC, breakdown


class MetricsEngine:
    def __init__(
        self,
        executor: QueryExecutor,
        name_resolver: Optional[NameResolver] = None,
        max_concurrency: int = MAX_CONCURRENCY,
    ):
        self.executor = executor
        self.name_resolver = name_resolver
        self.max_concurrency = max_concurrency
        self.work_timeframes = WorkTimeframeDeriver(executor)

    async def execute(
        self,
        request: MetricRequest,
        options: Optional[MetricRequestOptions] = None,
    ) -> MetricResponse:
        started = time.monotonic()
        options = options or request.options or MetricRequestOptions()

        errors = validate_filters(request.filters)
        metric = get_metric(request.metric_name)
        if metric is None:
            errors.append(f"Metric '{request.metric_name}' not found")
        if errors:
            raise MetricValidationError(errors)

        strategy, breakdown = select_strategy(metric, options)
        try:
            result = await self._run(metric, request.filters, options, strategy, breakdown)
        except Exception as e:
            logger.error(
                "metric=%s breakdown=%s strategy=%s failed: %s",
                metric.key, breakdown.value, strategy.value, e,
            )
            result = empty_result(breakdown)

        await self._fill_names(result)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "metric=%s breakdown=%s strategy=%s rows=%d elapsed_ms=%d",
            metric.key, breakdown.value, strategy.value, result_row_count(result), elapsed_ms,
        )
        return MetricResponse(
            metric_name=request.metric_name,
            filters=request.filters,
            result=result,
            effective_breakdown=breakdown,
            strategy=strategy.value,
            executed_at=datetime.now(timezone.utc).isoformat(),
            execution_time_ms=elapsed_ms,
        )

    async def _fill_names(self, result) -> None:
        user_ids = result_user_ids(result)
        if not user_ids:
            return
        names: dict[str, str] = {}
        if self.name_resolver is not None:
            names = await self.name_resolver.resolve(user_ids)
        apply_names(result, names)

    async def _run(
        self,
        metric: MetricDefinition,
        filters: MetricFilters,
        options: MetricRequestOptions,
        strategy: QueryStrategy,
        breakdown: BreakdownType,
    ):
        if strategy == QueryStrategy.GENERIC:
            built = build_generic_query(metric, filters, breakdown)
            rows = await self.executor(built.sql, built.params)
            return shape_result(breakdown, rows)

        if strategy == QueryStrategy.TIME_SERIES:
            built, series = build_time_series_query(metric, filters)
            rows = await self.executor(built.sql, built.params)
            return shape_result(BreakdownType.TIME, rows, series, metric.null_when_empty)

        if metric.special_formula == SpecialFormula.WORK_TIMEFRAME:
            return await self._run_work_timeframe(metric, filters, breakdown)

        settings = options.widget_settings or {}
        if breakdown == BreakdownType.TIME:
            return await self._run_special_series(metric, filters, settings)

        plan = build_formula_plan(metric, filters, settings, breakdown)
        rows = await run_plan(plan, self.executor)
        return shape_result(breakdown, rows, null_when_empty=metric.null_when_empty)

    async def _run_special_series(
        self,
        metric: MetricDefinition,
        filters: MetricFilters,
        settings: dict[str, Any],
    ):
        """One formula evaluation per bucket, clipped to the requested range."""
        start, end = filter_dates(filters)
        windows = bucket_windows(start, end, select_granularity(start, end))

        async def _bucket(window):
            bucket, window_start, window_end = window
            scoped = filters.model_copy(update={"date_range": DateRange(
                start=window_start.isoformat(), end=window_end.isoformat(),
            )})
            plan = build_formula_plan(metric, scoped, settings, BreakdownType.TOTAL)
            rows = await run_plan(plan, self.executor)
            value = coerce_number(rows[0].get("value")) if rows else None
            return {"date": bucket.isoformat(), "value": value}

        rows = await run_bounded(windows, _bucket, self.max_concurrency)
        series = [bucket for bucket, _, _ in windows]
        return shape_result(BreakdownType.TIME, rows, series, metric.null_when_empty)

    async def _run_work_timeframe(
        self,
        metric: MetricDefinition,
        filters: MetricFilters,
        breakdown: BreakdownType,
    ):
        summary = await self.work_timeframes.derive(filters)

        if breakdown == BreakdownType.TIME:
            start, end = filter_dates(filters)
            windows = bucket_windows(start, end, select_granularity(start, end))
            rows = [
                {"date": bucket.isoformat(), "value": summary.between(ws, we).value(metric.key)}
                for bucket, ws, we in windows
            ]
            return shape_result(BreakdownType.TIME, rows, [b for b, _, _ in windows])

        if breakdown == BreakdownType.SETTER:
            rows = [
                {"setter_id": user_id, "value": totals.value(metric.key)}
                for user_id, totals in summary.per_user().items()
            ]
            return shape_result(BreakdownType.SETTER, rows)

        return shape_result(BreakdownType.TOTAL, [{"value": summary.totals.value(metric.key)}])
