"""Display strings for metric values (data-view tables, KPI cards)."""

from __future__ import annotations

from typing import Optional

from sales_metrics import MetricUnit

EMPTY_DISPLAY = "—"


def _format_duration(seconds: float, time_format: Optional[str]) -> Optional[str]:
    if time_format == "minutes":
        return f"{seconds / 60:.1f}m"
    if time_format == "hours":
        return f"{seconds / 3600:.2f}h"
    if time_format == "human_readable":
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        if hours > 0:
            return f"{hours}h {minutes}m {secs}s"
        if minutes > 0:
            return f"{minutes}m {secs}s"
        return f"{secs}s"
    return None


def format_value(
    value: Optional[float],
    unit: MetricUnit | str,
    time_format: Optional[str] = None,
) -> str:
    if value is None:
        return EMPTY_DISPLAY
    unit = MetricUnit(unit)

    if unit == MetricUnit.SECONDS:
        custom = _format_duration(value, time_format)
        if custom is not None:
            return custom
        if value < 60:
            return f"{value:.0f}s"
        if value < 3600:
            return f"{value / 60:.1f}m"
        return f"{value / 3600:.1f}h"

    if unit == MetricUnit.CURRENCY:
        return f"${value:,.0f}"
    if unit == MetricUnit.PERCENT:
        return f"{value * 100:.1f}%"
    if unit == MetricUnit.DAYS:
        return f"{value:.1f}d"
    if unit == MetricUnit.HOURS:
        return f"{value:.2f}h"

    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"
