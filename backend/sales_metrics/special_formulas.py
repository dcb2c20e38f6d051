"""
Special cross-table formulas
============================
Each formula is a ``FormulaPlan``: a few named read-only queries plus a pure
``combine`` step. ``run_plan`` waits for every sub-query before combining.

    roi                    cash / spend
    rep_roi                rep_cash / ((spend / total_appts) * rep_appts)
    cost_per_booked_call   spend / total_appts (every entity row gets the account figure)
    speed_to_lead          lead created → first dial, average or median seconds
    lead_to_appointment    leads with an appointment / leads, cohort by lead creation
    data_completion_rate   filled / assigned past records (appointments ∪ discoveries)
    overdue_*              unfilled records scheduled more than 24h ago
    cash_per_dial          cash on dial-booked appointments / dials
    booking_lead_time      days from booking to the scheduled time

Denominators that describe the whole account (spend, total appointments,
total leads) are always built without rep/setter filters; only the
attributed side is narrowed.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sales_metrics import BreakdownType, MetricFilters
from sales_metrics.business_hours import (
    BusinessWindow,
    parse_business_hours,
    shift_to_business_hours,
    window_for_phone,
)
from sales_metrics.executor import QueryExecutor, coerce_number
from sales_metrics.filters import (
    apply_standard_filters,
    apply_user_filters,
    parse_timestamp,
    valid_ids,
)
from sales_metrics.query_builder import breakdown_keys
from sales_metrics.registry import TABLES, MetricDefinition, SpecialFormula
from sales_metrics.sql_fragments import (
    CTE,
    BuiltQuery,
    Join,
    QueryStrategy,
    SelectQuery,
    UnionAll,
)

logger = logging.getLogger(__name__)

Rows = list[dict]


@dataclass
class FormulaPlan:
    formula: SpecialFormula
    breakdown: BreakdownType
    queries: dict[str, BuiltQuery] = field(default_factory=dict)
    combine: Callable[[dict[str, Rows]], Rows] = lambda results: []


async def run_plan(plan: FormulaPlan, executor: QueryExecutor) -> Rows:
    names = list(plan.queries)
    logger.debug("formula=%s breakdown=%s queries=%s", plan.formula.value, plan.breakdown.value, names)
    outputs = await asyncio.gather(
        *(executor(plan.queries[n].sql, plan.queries[n].params) for n in names)
    )
    return plan.combine(dict(zip(names, outputs)))


# ── Helpers ──────────────────────────────────────────────────────────────

def _built(query: SelectQuery, params: dict[str, Any], breakdown: BreakdownType) -> BuiltQuery:
    return BuiltQuery(
        sql=query.render(),
        params=dict(params),
        strategy=QueryStrategy.SPECIAL,
        breakdown=breakdown,
    )


def _scalar(rows: Rows, key: str = "value") -> float:
    if not rows:
        return 0.0
    return coerce_number(rows[0].get(key)) or 0.0


def _safe_div(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def _aggregate(values: list[float], method: str) -> Optional[float]:
    if not values:
        return None
    if method == "median":
        return float(statistics.median(values))
    return float(statistics.fmean(values))


def _sum_query(table: str, expression: str, filters: MetricFilters,
               include_user_filters: bool, extra_where: tuple[str, ...] = ()):
    applied = apply_standard_filters(filters, table, include_user_filters=include_user_filters)
    query = SelectQuery(
        select=(f"{expression} AS value",),
        from_=table,
        where=tuple(applied.sql_conditions()) + extra_where,
    )
    return query, applied.params


def _spend_query(filters: MetricFilters, breakdown: BreakdownType) -> BuiltQuery:
    query, params = _sum_query(
        "meta_ad_performance", "COALESCE(SUM(spend), 0)", filters, include_user_filters=False,
    )
    return _built(query, params, breakdown)


def _total_appointments_query(filters: MetricFilters, breakdown: BreakdownType) -> BuiltQuery:
    query, params = _sum_query("appointments", "COUNT(*)", filters, include_user_filters=False)
    return _built(query, params, breakdown)


# ── ROI ──────────────────────────────────────────────────────────────────

def _roi_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    cash, params = _sum_query(
        "appointments", "COALESCE(SUM(cash_collected), 0)", filters, include_user_filters=True,
    )

    def combine(results: dict[str, Rows]) -> Rows:
        return [{"value": _safe_div(_scalar(results["cash"]), _scalar(results["spend"]))}]

    return FormulaPlan(
        formula=SpecialFormula.ROI,
        breakdown=BreakdownType.TOTAL,
        queries={
            "cash": _built(cash, params, BreakdownType.TOTAL),
            "spend": _spend_query(filters, BreakdownType.TOTAL),
        },
        combine=combine,
    )


def rep_roi_value(rep_cash: float, rep_appointments: float,
                  total_spend: float, total_appointments: float, display: str) -> float:
    """ROI of one rep against the ad spend allocated by appointment share.

    Zero allocated cost (no spend, no account appointments or no rep
    appointments) yields 0 in either display mode.
    """
    cost_per_appointment = _safe_div(total_spend, total_appointments)
    allocated_cost = cost_per_appointment * rep_appointments
    if not allocated_cost:
        return 0.0
    multiplier = rep_cash / allocated_cost
    return multiplier if display == "multiplier" else multiplier - 1


def _rep_roi_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    display = "multiplier" if metric.key == "rep_roi_multiplier" else (
        settings.get("roiDisplay") or "percent"
    )
    applied = apply_standard_filters(filters, "appointments")
    rep_stats = SelectQuery(
        select=(
            "sales_rep_user_id AS rep_id",
            "COUNT(*) AS appointments",
            "COALESCE(SUM(cash_collected), 0) AS cash",
        ),
        from_="appointments",
        where=tuple(applied.sql_conditions()) + ("sales_rep_user_id IS NOT NULL",),
        group_by=("sales_rep_user_id",),
    )
    requested = valid_ids(filters.rep_ids, "rep")

    def combine(results: dict[str, Rows]) -> Rows:
        spend = _scalar(results["spend"])
        total = _scalar(results["total_appointments"])
        stats = {
            str(r["rep_id"]): (coerce_number(r.get("cash")) or 0.0,
                               coerce_number(r.get("appointments")) or 0.0)
            for r in results["rep_stats"] if r.get("rep_id")
        }
        for rep_id in requested:
            stats.setdefault(rep_id, (0.0, 0.0))

        if breakdown != BreakdownType.REP:
            cash = sum(c for c, _ in stats.values())
            appts = sum(a for _, a in stats.values())
            return [{"value": rep_roi_value(cash, appts, spend, total, display)}]

        rows = [
            {"rep_id": rep_id, "value": rep_roi_value(cash, appts, spend, total, display)}
            for rep_id, (cash, appts) in stats.items()
        ]
        return sorted(rows, key=lambda r: r["value"], reverse=True)

    return FormulaPlan(
        formula=SpecialFormula.REP_ROI,
        breakdown=breakdown,
        queries={
            "rep_stats": _built(rep_stats, applied.params, breakdown),
            "total_appointments": _total_appointments_query(filters, breakdown),
            "spend": _spend_query(filters, breakdown),
        },
        combine=combine,
    )


# ── Cost per booked call ─────────────────────────────────────────────────

def _cost_per_booked_call_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    queries = {
        "total_appointments": _total_appointments_query(filters, breakdown),
        "spend": _spend_query(filters, breakdown),
    }
    keys = breakdown_keys(TABLES["appointments"], breakdown)
    if keys:
        applied = apply_standard_filters(filters, "appointments")
        entities = SelectQuery(
            select=tuple(f"{col} AS {alias}" for col, alias in keys) + ("COUNT(*) AS appointments",),
            from_="appointments",
            where=tuple(applied.sql_conditions()) + tuple(f"{col} IS NOT NULL" for col, _ in keys),
            group_by=tuple(col for col, _ in keys),
            order_by=("appointments DESC",),
        )
        queries["entities"] = _built(entities, applied.params, breakdown)

    def combine(results: dict[str, Rows]) -> Rows:
        cost = _safe_div(_scalar(results["spend"]), _scalar(results["total_appointments"]))
        if not keys:
            return [{"value": cost}]
        rows = []
        for entity in results["entities"]:
            row = {alias: entity.get(alias) for _, alias in keys}
            row["appointments"] = coerce_number(entity.get("appointments")) or 0
            row["value"] = cost
            rows.append(row)
        return rows

    return FormulaPlan(
        formula=SpecialFormula.COST_PER_BOOKED_CALL,
        breakdown=breakdown,
        queries=queries,
        combine=combine,
    )


# ── Speed to lead ────────────────────────────────────────────────────────

def _account_settings_query(breakdown: BreakdownType, account_id: str) -> BuiltQuery:
    query = SelectQuery(
        select=("business_timezone", "business_hours"),
        from_="accounts",
        where=("id = $account_id",),
    )
    return _built(query, {"account_id": account_id}, breakdown)


def _speed_to_lead_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    method = settings.get("speedToLeadCalculation") or settings.get("calculation") or "average"
    business_hours = bool(settings.get("speedToLeadBusinessHours") or settings.get("businessHours"))

    leads = apply_standard_filters(filters, "contacts", alias="c")
    dialers = apply_user_filters(filters, "dials", alias="d")
    join_on = " AND ".join(
        ("d.contact_id = c.id", "d.account_id = c.account_id", "d.date_called >= c.ghl_created_at")
        + tuple(dialers.sql_conditions())
    )
    pairs = SelectQuery(
        select=(
            "c.id AS contact_id",
            "c.phone AS phone",
            "c.ghl_created_at AS lead_created_at",
            "MIN(d.date_called) AS first_dial_at",
        ),
        from_="contacts c",
        joins=(Join("dials d", join_on, kind="INNER"),),
        where=tuple(leads.sql_conditions()),
        group_by=("c.id", "c.phone", "c.ghl_created_at"),
    )
    params = {**leads.params, **dialers.params}

    def combine(results: dict[str, Rows]) -> Rows:
        account = results["account"][0] if results["account"] else {}
        default = BusinessWindow(tz=account.get("business_timezone") or "UTC")
        windows = parse_business_hours(account.get("business_hours"))

        seconds: list[float] = []
        for row in results["pairs"]:
            created = parse_timestamp(row.get("lead_created_at"))
            first_dial = parse_timestamp(row.get("first_dial_at"))
            if created is None or first_dial is None:
                continue
            if business_hours:
                created = shift_to_business_hours(
                    created, window_for_phone(row.get("phone"), windows, default),
                )
            seconds.append(max((first_dial - created).total_seconds(), 0.0))
        return [{"value": _aggregate(seconds, method)}]

    return FormulaPlan(
        formula=SpecialFormula.SPEED_TO_LEAD,
        breakdown=BreakdownType.TOTAL,
        queries={
            "pairs": _built(pairs, params, BreakdownType.TOTAL),
            "account": _account_settings_query(BreakdownType.TOTAL, filters.account_id),
        },
        combine=combine,
    )


# ── Lead to appointment ──────────────────────────────────────────────────

def _lead_to_appointment_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    leads = apply_standard_filters(filters, "contacts", alias="c")
    owners = apply_user_filters(filters, "appointments", alias="a")
    # User filters live in the join so every lead stays in the denominator.
    join_on = " AND ".join(
        ("a.contact_id = c.id", "a.account_id = c.account_id") + tuple(owners.sql_conditions())
    )
    query = SelectQuery(
        select=(
            "COALESCE(COUNT(DISTINCT a.contact_id)::numeric / NULLIF(COUNT(DISTINCT c.id), 0), 0) AS value",
        ),
        from_="contacts c",
        joins=(Join("appointments a", join_on),),
        where=tuple(leads.sql_conditions()),
    )

    def combine(results: dict[str, Rows]) -> Rows:
        return [{"value": _scalar(results["conversion"])}]

    return FormulaPlan(
        formula=SpecialFormula.LEAD_TO_APPOINTMENT,
        breakdown=BreakdownType.TOTAL,
        queries={"conversion": _built(query, {**leads.params, **owners.params}, BreakdownType.TOTAL)},
        combine=combine,
    )


# ── Data completion / overdue ────────────────────────────────────────────

def _assigned_records(filters: MetricFilters, columns: tuple[str, ...],
                      extra_where: tuple[str, ...] = ()) -> tuple[CTE, dict[str, Any]]:
    parts = []
    params: dict[str, Any] = {}
    for table in ("appointments", "discoveries"):
        applied = apply_standard_filters(filters, table)
        parts.append(SelectQuery(
            select=columns,
            from_=table,
            where=tuple(applied.sql_conditions()) + ("sales_rep_user_id IS NOT NULL",) + extra_where,
        ))
        params.update(applied.params)
    return CTE("records", UnionAll(tuple(parts))), params


def _data_completion_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    records, params = _assigned_records(
        filters, ("data_filled",), extra_where=("date_booked_for < now()",),
    )
    query = SelectQuery(
        select=(
            "COALESCE(COUNT(*) FILTER (WHERE data_filled IS TRUE)::numeric / NULLIF(COUNT(*), 0), 0) AS value",
        ),
        from_="records",
        ctes=(records,),
    )
    return FormulaPlan(
        formula=SpecialFormula.DATA_COMPLETION_RATE,
        breakdown=BreakdownType.TOTAL,
        queries={"completion": _built(query, params, BreakdownType.TOTAL)},
        combine=lambda results: [{"value": _scalar(results["completion"])}],
    )


_OVERDUE = "date_booked_for < now() - interval '24 hours'"


def _overdue_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    records, params = _assigned_records(filters, ("date_booked_for", "data_filled"))
    if metric.special_formula == SpecialFormula.OVERDUE_PERCENTAGE:
        value = (
            f"COALESCE(COUNT(*) FILTER (WHERE {_OVERDUE})::numeric / NULLIF(COUNT(*), 0), 0)"
        )
    else:
        value = f"COUNT(*) FILTER (WHERE {_OVERDUE})"
    query = SelectQuery(
        select=(f"{value} AS value",),
        from_="records",
        where=("data_filled IS NOT TRUE",),
        ctes=(records,),
    )
    return FormulaPlan(
        formula=metric.special_formula,
        breakdown=BreakdownType.TOTAL,
        queries={"overdue": _built(query, params, BreakdownType.TOTAL)},
        combine=lambda results: [{"value": _scalar(results["overdue"])}],
    )


# ── Cash per dial ────────────────────────────────────────────────────────

def _cash_per_dial_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    dial_filters = apply_standard_filters(filters, "dials", alias="d")
    dials = SelectQuery(
        select=("COUNT(*) AS value",),
        from_="dials d",
        where=tuple(dial_filters.sql_conditions()),
    )
    booked_from_dials = SelectQuery(
        select=("d.booked_appointment_id",),
        from_="dials d",
        where=tuple(dial_filters.sql_conditions()) + ("d.booked_appointment_id IS NOT NULL",),
    )
    cash = SelectQuery(
        select=("COALESCE(SUM(a.cash_collected), 0) AS value",),
        from_="appointments a",
        where=(
            "a.account_id = $account_id",
            f"a.id IN ({booked_from_dials.render()})",
        ),
    )

    def combine(results: dict[str, Rows]) -> Rows:
        return [{"value": _safe_div(_scalar(results["cash"]), _scalar(results["dials"]))}]

    return FormulaPlan(
        formula=SpecialFormula.CASH_PER_DIAL,
        breakdown=BreakdownType.TOTAL,
        queries={
            "dials": _built(dials, dial_filters.params, BreakdownType.TOTAL),
            "cash": _built(cash, dial_filters.params, BreakdownType.TOTAL),
        },
        combine=combine,
    )


# ── Booking lead time ────────────────────────────────────────────────────

def _booking_lead_time_plan(metric, filters, settings, breakdown) -> FormulaPlan:
    method = settings.get("bookingLeadTimeCalculation") or settings.get("calculation") or "average"
    applied = apply_standard_filters(filters, "appointments")
    query = SelectQuery(
        select=("EXTRACT(EPOCH FROM (date_booked_for - date_booked)) / 86400.0 AS days",),
        from_="appointments",
        where=tuple(applied.sql_conditions()) + (
            "date_booked IS NOT NULL",
            "date_booked_for >= date_booked",
        ),
    )

    def combine(results: dict[str, Rows]) -> Rows:
        days = [d for d in (coerce_number(r.get("days")) for r in results["lead_times"]) if d is not None]
        return [{"value": _aggregate(days, method)}]

    return FormulaPlan(
        formula=SpecialFormula.BOOKING_LEAD_TIME,
        breakdown=BreakdownType.TOTAL,
        queries={"lead_times": _built(query, applied.params, BreakdownType.TOTAL)},
        combine=combine,
    )


_PLANNERS = {
    SpecialFormula.ROI: _roi_plan,
    SpecialFormula.REP_ROI: _rep_roi_plan,
    SpecialFormula.COST_PER_BOOKED_CALL: _cost_per_booked_call_plan,
    SpecialFormula.SPEED_TO_LEAD: _speed_to_lead_plan,
    SpecialFormula.LEAD_TO_APPOINTMENT: _lead_to_appointment_plan,
    SpecialFormula.DATA_COMPLETION_RATE: _data_completion_plan,
    SpecialFormula.OVERDUE_ITEMS: _overdue_plan,
    SpecialFormula.OVERDUE_PERCENTAGE: _overdue_plan,
    SpecialFormula.CASH_PER_DIAL: _cash_per_dial_plan,
    SpecialFormula.BOOKING_LEAD_TIME: _booking_lead_time_plan,
}


def build_formula_plan(
    metric: MetricDefinition,
    filters: MetricFilters,
    settings: Optional[dict[str, Any]] = None,
    breakdown: Optional[BreakdownType] = None,
) -> FormulaPlan:
    planner = _PLANNERS.get(metric.special_formula)
    if planner is None:
        raise ValueError(f"No SQL plan for formula '{metric.special_formula}'")
    return planner(metric, filters, settings or {}, breakdown or metric.breakdown_type)
