"""
Work-Timeframe Deriver
======================
Hours worked aren't stored anywhere, so they are derived from raw dials:

  1. callers = requested setter ids, else every account user with a caller role
  2. pull their dials in range (setter_user_id, date_called, booked)
  3. convert date_called to the account's local day (accounts.business_timezone)
  4. per (caller, local day): hours = max(last dial - first dial, 0.1h)
  5. sum hours / dials / bookings → dials_per_hour, bookings_per_hour

The 0.1h floor keeps single-dial days from dividing by zero. Zero total
hours yields zero rates.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sales_metrics import MetricFilters
from sales_metrics.business_hours import load_zone
from sales_metrics.executor import QueryExecutor, coerce_bool
from sales_metrics.filters import apply_standard_filters, parse_timestamp, valid_ids
from sales_metrics.sql_fragments import SelectQuery

logger = logging.getLogger(__name__)

CALLER_ROLES = ("setter",)
MIN_HOURS_PER_DAY = 0.1


@dataclass
class WorkDay:
    user_id: str
    day: date
    first_dial: datetime
    last_dial: datetime
    dials: int = 0
    bookings: int = 0

    @property
    def hours(self) -> float:
        elapsed = (self.last_dial - self.first_dial).total_seconds() / 3600
        return max(elapsed, MIN_HOURS_PER_DAY)


@dataclass
class WorkTotals:
    hours_worked: float = 0.0
    dials: int = 0
    bookings: int = 0

    @property
    def dials_per_hour(self) -> float:
        return round(self.dials / self.hours_worked, 2) if self.hours_worked else 0.0

    @property
    def bookings_per_hour(self) -> float:
        return round(self.bookings / self.hours_worked, 2) if self.hours_worked else 0.0

    def value(self, metric_key: str) -> float:
        if metric_key == "dials_per_hour":
            return self.dials_per_hour
        if metric_key == "bookings_per_hour":
            return self.bookings_per_hour
        return round(self.hours_worked, 2)


def totals_from_days(days: list[WorkDay]) -> WorkTotals:
    totals = WorkTotals()
    for day in days:
        totals.hours_worked += day.hours
        totals.dials += day.dials
        totals.bookings += day.bookings
    return totals


@dataclass
class WorkTimeframeSummary:
    days: list[WorkDay] = field(default_factory=list)

    @property
    def totals(self) -> WorkTotals:
        return totals_from_days(self.days)

    def per_user(self) -> dict[str, WorkTotals]:
        grouped: dict[str, list[WorkDay]] = defaultdict(list)
        for day in self.days:
            grouped[day.user_id].append(day)
        return {user_id: totals_from_days(days) for user_id, days in grouped.items()}

    def between(self, start: date, end: date) -> WorkTotals:
        return totals_from_days([d for d in self.days if start <= d.day <= end])


def group_work_days(rows: list[dict], tz_name: Optional[str]) -> list[WorkDay]:
    """Group raw dial rows into (user, local day) work days."""
    zone = load_zone(tz_name)
    grouped: dict[tuple[str, date], WorkDay] = {}
    for row in rows:
        user_id = row.get("setter_user_id")
        called = parse_timestamp(row.get("date_called"))
        if not user_id or called is None:
            continue
        local_day = called.astimezone(zone).date()
        key = (str(user_id), local_day)
        work_day = grouped.get(key)
        if work_day is None:
            work_day = grouped[key] = WorkDay(str(user_id), local_day, called, called)
        work_day.first_dial = min(work_day.first_dial, called)
        work_day.last_dial = max(work_day.last_dial, called)
        work_day.dials += 1
        if coerce_bool(row.get("booked")):
            work_day.bookings += 1
    return sorted(grouped.values(), key=lambda d: (d.user_id, d.day))


class WorkTimeframeDeriver:
    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def _timezone(self, account_id: str) -> str:
        rows = await self.executor(
            "SELECT business_timezone FROM accounts WHERE id = $account_id",
            {"account_id": account_id},
        )
        return (rows[0].get("business_timezone") if rows else None) or "UTC"

    async def _callers(self, filters: MetricFilters) -> list[str]:
        requested = valid_ids(filters.setter_ids, "setter")
        if requested:
            return requested
        role_params = {f"role_{i}": role for i, role in enumerate(CALLER_ROLES)}
        refs = ", ".join(f"${name}" for name in role_params)
        rows = await self.executor(
            f"SELECT user_id FROM account_access WHERE account_id = $account_id AND role IN ({refs})",
            {"account_id": filters.account_id, **role_params},
        )
        return sorted({str(r["user_id"]) for r in rows if r.get("user_id")})

    async def derive(self, filters: MetricFilters) -> WorkTimeframeSummary:
        callers = await self._callers(filters)
        if not callers:
            logger.info("work timeframes: no callers for account %s", filters.account_id)
            return WorkTimeframeSummary()

        tz_name = await self._timezone(filters.account_id)
        scoped = filters.model_copy(update={"rep_ids": [], "setter_ids": callers})
        applied = apply_standard_filters(scoped, "dials")
        query = SelectQuery(
            select=("setter_user_id", "date_called", "booked"),
            from_="dials",
            where=tuple(applied.sql_conditions()) + ("date_called IS NOT NULL",),
            order_by=("date_called",),
        )
        rows = await self.executor(query.render(), applied.params)
        days = group_work_days(rows, tz_name)
        logger.info(
            "work timeframes: account=%s callers=%d dials=%d work_days=%d tz=%s",
            filters.account_id, len(callers), len(rows), len(days), tz_name,
        )
        return WorkTimeframeSummary(days=days)
