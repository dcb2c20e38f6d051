"""
Account metrics — business totals without user attribution.

Thin layer over MetricsEngine: forces the total breakdown (or a time series
for charts), drops rep/setter filters, and attaches display strings.
"""

from __future__ import annotations

from typing import Any, Optional

from sales_metrics import (
    AccountMetricsResponse,
    AccountMetricValue,
    BreakdownType,
    DateRange,
    MetricFilters,
    MetricRequest,
    MetricRequestOptions,
    TimeResult,
)
from sales_metrics.engine import MetricsEngine
from sales_metrics.errors import MetricValidationError
from sales_metrics.formatting import format_value
from sales_metrics.registry import get_metric


class AccountMetricsEngine:
    def __init__(self, engine: MetricsEngine):
        self.engine = engine

    def _request(self, metric_name, account_id, date_range, options) -> MetricRequest:
        return MetricRequest(
            metric_name=metric_name,
            filters=MetricFilters(date_range=date_range, account_id=account_id),
            options=options,
        )

    async def calculate(
        self,
        account_id: str,
        metric_name: str,
        date_range: DateRange,
        settings: Optional[dict[str, Any]] = None,
    ) -> AccountMetricsResponse:
        metric = get_metric(metric_name)
        if metric is None:
            raise MetricValidationError([f"Metric '{metric_name}' not found"])

        options = MetricRequestOptions(
            viz_type="kpi",
            dynamic_breakdown=BreakdownType.TOTAL,
            widget_settings=settings or {},
        )
        response = await self.engine.execute(
            self._request(metric_name, account_id, date_range, options)
        )

        value = response.result.data.value if response.result.type == "total" else 0
        time_format = (settings or {}).get("timeFormat")
        return AccountMetricsResponse(
            metric_name=metric_name,
            result=AccountMetricValue(
                value=value,
                display_value=format_value(value, metric.unit, time_format),
                unit=metric.unit,
            ),
            executed_at=response.executed_at,
        )

    async def time_series(
        self,
        account_id: str,
        metric_name: str,
        date_range: DateRange,
        settings: Optional[dict[str, Any]] = None,
    ) -> TimeResult:
        options = MetricRequestOptions(viz_type="line", widget_settings=settings or {})
        response = await self.engine.execute(
            self._request(metric_name, account_id, date_range, options)
        )
        return response.result
