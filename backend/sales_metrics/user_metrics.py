"""
Per-user aggregation for the data view
======================================
One engine call per (user, metric[, period]) pair, fanned out through the
bounded worker pool.

Which rows count as "the user's" depends on the metric and the user's
account role:

    attributed variant (_assigned/_booked/_dialer)  → its owner column
    total_appointments                              → sales_rep_user_id
    appointments   sales_rep → rep, setter → setter,
                   admin/moderator → rep and setter computed separately, then combined
    discoveries    sales_rep → rep, setter → setter, admin/moderator → both ids
    dials          setter/admin/moderator → setter_user_id
    work metrics   setter_user_id (via the work-timeframe deriver)
    cost per booked call (any breakdown) → account-wide, reported as 0
    contacts / ad spend / anything else → not attributable, reported as 0

Admin/moderator combine rule: count and currency add, percent takes the
max, everything else averages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sales_metrics import (
    AttributionContext,
    BreakdownType,
    DateRange,
    MetricFilters,
    MetricRequest,
    MetricRequestOptions,
    MetricUnit,
    UserMetricRow,
    UserMetricValue,
    UserPeriodRow,
)
from sales_metrics.concurrency import MAX_CONCURRENCY, run_bounded
from sales_metrics.engine import MetricsEngine
from sales_metrics.errors import MetricValidationError
from sales_metrics.filters import filter_dates, validate_filters, valid_ids
from sales_metrics.formatting import format_value
from sales_metrics.registry import MetricDefinition, SpecialFormula, get_metric
from sales_metrics.time_series import Granularity, bucket_windows

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "moderator"})

# Formulas computed over the whole account; no user owns their inputs.
ACCOUNT_WIDE_FORMULAS = frozenset({SpecialFormula.COST_PER_BOOKED_CALL})

PERIOD_GRANULARITY = {
    "daily": Granularity.DAY,
    "weekly": Granularity.WEEK,
    "monthly": Granularity.MONTH,
}


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str
    account_role: Optional[str] = None


@dataclass(frozen=True)
class FilterSide:
    """One engine call's worth of user filters."""
    label: str                      # "rep" | "setter" | "both"
    rep_ids: tuple[str, ...] = ()
    setter_ids: tuple[str, ...] = ()


def user_filter_sides(
    metric: MetricDefinition,
    account_role: Optional[str],
    user_id: str,
) -> list[FilterSide]:
    """Filter sides for one user. Empty list means the metric isn't attributable."""
    rep = FilterSide("rep", rep_ids=(user_id,))
    setter = FilterSide("setter", setter_ids=(user_id,))
    role = (account_role or "").lower()

    if metric.special_formula in ACCOUNT_WIDE_FORMULAS:
        return []

    if metric.attribution_context == AttributionContext.ASSIGNED:
        return [rep]
    if metric.attribution_context in (AttributionContext.BOOKED, AttributionContext.DIALER):
        return [setter]

    if metric.table == "work_timeframes":
        return [setter]

    if metric.table == "appointments":
        if metric.key == "total_appointments":
            return [rep]
        if role == "sales_rep":
            return [rep]
        if role == "setter":
            return [setter]
        if role in ADMIN_ROLES:
            return [rep, setter]
        return []

    if metric.table == "discoveries":
        if role == "sales_rep":
            return [rep]
        if role == "setter":
            return [setter]
        if role in ADMIN_ROLES:
            return [FilterSide("both", rep_ids=(user_id,), setter_ids=(user_id,))]
        return []

    if metric.table == "dials":
        if role == "setter" or role in ADMIN_ROLES:
            return [setter]
        return []

    return []


def combine_sides(unit: MetricUnit, values: list[float]) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    if unit in (MetricUnit.COUNT, MetricUnit.CURRENCY):
        return sum(values)
    if unit == MetricUnit.PERCENT:
        return max(values)
    return sum(values) / len(values)


class UserMetricsEngine:
    def __init__(self, engine: MetricsEngine, max_concurrency: int = MAX_CONCURRENCY):
        self.engine = engine
        self.max_concurrency = max_concurrency

    # ── Lookups ──────────────────────────────────────────────────────────

    async def load_profiles(self, account_id: str, user_ids: list[str]) -> list[UserProfile]:
        ids = valid_ids(user_ids, "user")
        if not ids:
            return []
        params: dict[str, Any] = {"account_id": account_id}
        refs = []
        for i, user_id in enumerate(ids):
            params[f"user_id_{i}"] = user_id
            refs.append(f"$user_id_{i}")
        try:
            rows = await self.engine.executor(
                "SELECT p.id AS user_id, p.full_name AS name, aa.role AS account_role "
                "FROM profiles p JOIN account_access aa ON aa.user_id = p.id "
                f"WHERE aa.account_id = $account_id AND p.id IN ({', '.join(refs)})",
                params,
            )
        except Exception as e:
            logger.error("profile lookup failed for account %s: %s", account_id, e)
            return []
        by_id = {
            str(r["user_id"]): UserProfile(
                user_id=str(r["user_id"]),
                name=r.get("name") or str(r["user_id"]),
                account_role=r.get("account_role"),
            )
            for r in rows if r.get("user_id")
        }
        return [by_id[u] for u in ids if u in by_id]

    def _validate(self, account_id: str, metric_names: list[str], date_range: DateRange) -> None:
        errors = validate_filters(MetricFilters(date_range=date_range, account_id=account_id))
        errors += [f"Metric '{n}' not found" for n in metric_names if get_metric(n) is None]
        if errors:
            raise MetricValidationError(errors)

    # ── Evaluation ───────────────────────────────────────────────────────

    async def _side_value(
        self,
        metric_name: str,
        account_id: str,
        date_range: DateRange,
        side: FilterSide,
        settings: dict[str, Any],
    ) -> float:
        request = MetricRequest(
            metric_name=metric_name,
            filters=MetricFilters(
                date_range=date_range,
                account_id=account_id,
                rep_ids=list(side.rep_ids),
                setter_ids=list(side.setter_ids),
            ),
            options=MetricRequestOptions(
                viz_type="kpi",
                dynamic_breakdown=BreakdownType.TOTAL,
                widget_settings=settings,
            ),
        )
        response = await self.engine.execute(request)
        if response.result.type != "total":
            return 0.0
        return response.result.data.value or 0.0

    async def user_value(
        self,
        profile: UserProfile,
        metric_name: str,
        account_id: str,
        date_range: DateRange,
        settings: Optional[dict[str, Any]] = None,
    ) -> UserMetricValue:
        metric = get_metric(metric_name)
        settings = settings or {}
        sides = user_filter_sides(metric, profile.account_role, profile.user_id)
        if not sides:
            return UserMetricValue(
                value=0,
                display_value=format_value(0, metric.unit, settings.get("timeFormat")),
                role="none",
            )

        values = await asyncio.gather(*(
            self._side_value(metric_name, account_id, date_range, side, settings)
            for side in sides
        ))
        value = combine_sides(metric.unit, list(values))
        return UserMetricValue(
            value=value,
            display_value=format_value(value, metric.unit, settings.get("timeFormat")),
            role="both" if len(sides) > 1 else sides[0].label,
            breakdown={s.label: v for s, v in zip(sides, values)} if len(sides) > 1 else None,
        )

    async def calculate_for_users(
        self,
        account_id: str,
        user_ids: list[str],
        metric_names: list[str],
        date_range: DateRange,
        settings: Optional[dict[str, Any]] = None,
    ) -> list[UserMetricRow]:
        self._validate(account_id, metric_names, date_range)
        profiles = await self.load_profiles(account_id, user_ids)
        tasks = [(p, m) for p in profiles for m in metric_names]

        async def _work(task):
            profile, metric_name = task
            return await self.user_value(profile, metric_name, account_id, date_range, settings)

        values = await run_bounded(tasks, _work, self.max_concurrency)

        rows = {p.user_id: UserMetricRow(user_id=p.user_id, name=p.name, account_role=p.account_role)
                for p in profiles}
        for (profile, metric_name), value in zip(tasks, values):
            rows[profile.user_id].metrics[metric_name] = value
        logger.info(
            "user metrics: account=%s users=%d metrics=%d calls=%d",
            account_id, len(profiles), len(metric_names), len(tasks),
        )
        return list(rows.values())

    async def calculate_user_period_matrix(
        self,
        account_id: str,
        user_ids: list[str],
        metric_names: list[str],
        date_range: DateRange,
        period_type: str = "weekly",
        settings: Optional[dict[str, Any]] = None,
    ) -> list[UserPeriodRow]:
        granularity = PERIOD_GRANULARITY.get(period_type)
        if granularity is None:
            raise MetricValidationError([f"Unknown period type '{period_type}'"])
        self._validate(account_id, metric_names, date_range)

        start, end = filter_dates(MetricFilters(date_range=date_range, account_id=account_id))
        windows = bucket_windows(start, end, granularity)
        profiles = await self.load_profiles(account_id, user_ids)

        # period None == whole range total
        periods = [(w[0].isoformat(), DateRange(start=w[1].isoformat(), end=w[2].isoformat()))
                   for w in windows] + [(None, date_range)]
        tasks = [(p, m, label, rng) for p in profiles for m in metric_names for label, rng in periods]

        async def _work(task):
            profile, metric_name, _, rng = task
            result = await self.user_value(profile, metric_name, account_id, rng, settings)
            return result.value

        values = await run_bounded(tasks, _work, self.max_concurrency)

        matrix: dict[tuple[str, str], UserPeriodRow] = {}
        for (profile, metric_name, label, _), value in zip(tasks, values):
            key = (profile.user_id, metric_name)
            row = matrix.get(key)
            if row is None:
                row = matrix[key] = UserPeriodRow(
                    user_id=profile.user_id, name=profile.name, metric_name=metric_name,
                )
            if label is None:
                row.total = value
            else:
                row.periods[label] = value
        return list(matrix.values())
