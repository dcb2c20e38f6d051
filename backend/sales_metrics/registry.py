"""
Metric Definition Registry
==========================
Static catalog of every metric the dashboard can request.

Base definitions are declared once below, expanded into attribution families
(see ``attribution.py``) and frozen into ``METRICS_REGISTRY``, an immutable
name → ``MetricDefinition`` mapping. ``validate_registry()`` runs at import so
a broken catalog fails the process on start instead of at query time.

Percent metrics are fractions (0.25 == 25%). Ratio metrics set
``null_when_empty`` so empty chart buckets render as gaps, not zeros.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from sales_metrics import AttributionContext, BreakdownType, MetricUnit
from sales_metrics.attribution import (
    create_metric_families,
    get_applicable_attributions,
    get_base_metric_name,
)
from sales_metrics.errors import RegistryError


# ── Tables ───────────────────────────────────────────────────────────────

class DateKind(str, Enum):
    LOCAL = "local"            # precomputed account-local date column
    TIMESTAMP = "timestamp"    # raw timestamptz, converted to the account's day
    DATE = "date"              # plain calendar date


@dataclass(frozen=True)
class TableSpec:
    name: str
    date_column: str
    date_kind: DateKind
    timestamp_column: str
    has_local_buckets: bool = False
    rep_column: Optional[str] = None
    setter_column: Optional[str] = None
    virtual: bool = False

    def column_for(self, breakdown: BreakdownType) -> tuple[str, ...]:
        """Key columns a breakdown needs, or () when the table can't supply them."""
        if breakdown == BreakdownType.REP:
            return (self.rep_column,) if self.rep_column else ()
        if breakdown == BreakdownType.SETTER:
            return (self.setter_column,) if self.setter_column else ()
        if breakdown == BreakdownType.LINK:
            if self.rep_column and self.setter_column:
                return (self.setter_column, self.rep_column)
            return ()
        return ()

    def supports(self, breakdown: BreakdownType) -> bool:
        if breakdown in (BreakdownType.TOTAL, BreakdownType.TIME):
            return True
        return bool(self.column_for(breakdown))


TABLES: Mapping[str, TableSpec] = MappingProxyType({
    "appointments": TableSpec(
        name="appointments",
        date_column="local_date",
        date_kind=DateKind.LOCAL,
        timestamp_column="date_booked_for",
        has_local_buckets=True,
        rep_column="sales_rep_user_id",
        setter_column="setter_user_id",
    ),
    "discoveries": TableSpec(
        name="discoveries",
        date_column="local_date",
        date_kind=DateKind.LOCAL,
        timestamp_column="date_booked_for",
        has_local_buckets=True,
        rep_column="sales_rep_user_id",
        setter_column="setter_user_id",
    ),
    "dials": TableSpec(
        name="dials",
        date_column="local_date",
        date_kind=DateKind.LOCAL,
        timestamp_column="date_called",
        has_local_buckets=True,
        setter_column="setter_user_id",
    ),
    "contacts": TableSpec(
        name="contacts",
        date_column="ghl_created_at",
        date_kind=DateKind.TIMESTAMP,
        timestamp_column="ghl_created_at",
    ),
    "meta_ad_performance": TableSpec(
        name="meta_ad_performance",
        date_column="date_start",
        date_kind=DateKind.DATE,
        timestamp_column="date_start",
    ),
    # Derived in Python from dial timestamps; never queried directly.
    "work_timeframes": TableSpec(
        name="work_timeframes",
        date_column="date_called",
        date_kind=DateKind.TIMESTAMP,
        timestamp_column="date_called",
        setter_column="setter_user_id",
        virtual=True,
    ),
})


# ── Definitions ──────────────────────────────────────────────────────────

class SpecialFormula(str, Enum):
    ROI = "roi"
    REP_ROI = "rep_roi"
    COST_PER_BOOKED_CALL = "cost_per_booked_call"
    SPEED_TO_LEAD = "speed_to_lead"
    LEAD_TO_APPOINTMENT = "lead_to_appointment"
    DATA_COMPLETION_RATE = "data_completion_rate"
    OVERDUE_ITEMS = "overdue_items"
    OVERDUE_PERCENTAGE = "overdue_percentage"
    CASH_PER_DIAL = "cash_per_dial"
    BOOKING_LEAD_TIME = "booking_lead_time"
    WORK_TIMEFRAME = "work_timeframe"


_VALUE_ALIAS = re.compile(r"^(?P<expr>.+?)\s+AS\s+value$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class MetricDefinition:
    key: str
    name: str
    description: str
    breakdown_type: BreakdownType
    unit: MetricUnit
    table: str
    select_expressions: tuple[str, ...] = ()
    where_clauses: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    having: tuple[str, ...] = ()
    order_by: tuple[str, ...] = ()
    special_formula: Optional[SpecialFormula] = None
    attribution_context: Optional[AttributionContext] = None
    options: Mapping[str, Any] = field(default_factory=dict)
    null_when_empty: bool = False

    def __post_init__(self):
        # Each definition owns a read-only copy; variants never share one.
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    @property
    def is_special_metric(self) -> bool:
        return self.special_formula is not None

    @property
    def table_spec(self) -> TableSpec:
        return TABLES[self.table]

    @property
    def value_expression(self) -> Optional[str]:
        """The aggregation aliased ``value``, without its alias."""
        for expr in self.select_expressions:
            m = _VALUE_ALIAS.match(expr.strip())
            if m:
                return m.group("expr")
        return None


def _ratio(numerator: str, denominator: str) -> str:
    return f"COALESCE(({numerator})::numeric / NULLIF({denominator}, 0), 0)"


_SHOW = "COUNT(*) FILTER (WHERE LOWER(call_outcome) = 'show')"
_WON = "COUNT(*) FILTER (WHERE show_outcome = 'won')"
_CASH = "COALESCE(SUM(cash_collected), 0)"
_REVENUE = "COALESCE(SUM(total_sales_value), 0)"

_TIME_FORMAT = {"timeFormat": ("seconds", "minutes", "hours", "human_readable")}
_CALCULATION = {"calculation": ("average", "median")}


def _total(key, name, description, unit, table, value, *, where=(), ratio=False, options=None):
    return MetricDefinition(
        key=key,
        name=name,
        description=description,
        breakdown_type=BreakdownType.TOTAL,
        unit=unit,
        table=table,
        select_expressions=(f"{value} AS value",),
        where_clauses=tuple(where),
        null_when_empty=ratio,
        options=dict(options or {}),
    )


def _by_rep(key, name, description, unit, value, *, where=(), ratio=False):
    return MetricDefinition(
        key=key,
        name=name,
        description=description,
        breakdown_type=BreakdownType.REP,
        unit=unit,
        table="appointments",
        select_expressions=("sales_rep_user_id AS rep_id", f"{value} AS value"),
        where_clauses=tuple(where),
        group_by=("sales_rep_user_id",),
        having=("COUNT(*) > 0",),
        order_by=("value DESC",),
        null_when_empty=ratio,
    )


def _special(key, name, description, unit, table, formula, *,
             breakdown=BreakdownType.TOTAL, options=None, ratio=False):
    return MetricDefinition(
        key=key,
        name=name,
        description=description,
        breakdown_type=breakdown,
        unit=unit,
        table=table,
        special_formula=formula,
        options=dict(options or {}),
        null_when_empty=ratio,
    )


_C, _USD, _PCT = MetricUnit.COUNT, MetricUnit.CURRENCY, MetricUnit.PERCENT

BASE_METRICS: dict[str, MetricDefinition] = {m.key: m for m in (
    # Appointments
    _total("total_appointments", "Total Appointments",
           "Total count of all appointments", _C, "appointments", "COUNT(*)"),
    _total("show_ups", "Show Ups",
           "Appointments where the lead showed up", _C, "appointments", _SHOW),
    _total("sales_made", "Sales Made",
           "Appointments that closed as won", _C, "appointments", _WON),
    _total("show_up_rate", "Show Up Rate",
           "Share of appointments that showed", _PCT, "appointments",
           _ratio(_SHOW, "COUNT(*)"), ratio=True),
    _total("appointment_to_sale_rate", "Appointment to Sale Rate",
           "Share of appointments that closed", _PCT, "appointments",
           _ratio(_WON, "COUNT(*)"), ratio=True),
    _total("pitch_to_sale_rate", "Pitch to Sale Rate",
           "Share of shown appointments that closed", _PCT, "appointments",
           _ratio(_WON, _SHOW), ratio=True),
    _total("booking_to_close", "Booking to Close",
           "Share of setter-booked appointments that closed", _PCT, "appointments",
           _ratio(_WON, "COUNT(*)"), where=("setter_user_id IS NOT NULL",), ratio=True),
    _total("cash_collected", "Cash Collected",
           "Sum of cash collected on appointments", _USD, "appointments", _CASH),
    _total("cash_per_sale", "Cash per Sale",
           "Cash collected divided by sales made", _USD, "appointments",
           _ratio(_CASH, _WON), ratio=True),
    _total("cash_per_appointment", "Cash per Appointment",
           "Cash collected divided by appointments", _USD, "appointments",
           _ratio(_CASH, "COUNT(*)"), ratio=True),
    _total("average_contract_value_per_sale", "Average Contract Value",
           "Total sales value divided by sales made", _USD, "appointments",
           _ratio(_REVENUE, _WON), ratio=True),
    _total("total_revenue_generated", "Total Revenue Generated",
           "Sum of contract value on appointments", _USD, "appointments", _REVENUE),
    _total("pif_rate", "PIF Rate",
           "Share of sales paid in full", _PCT, "appointments",
           _ratio("COUNT(*) FILTER (WHERE show_outcome = 'won' AND pif IS TRUE)", _WON),
           ratio=True),
    _total("cash_collection_rate", "Cash Collection Rate",
           "Cash collected as a share of contract value", _PCT, "appointments",
           _ratio(_CASH, _REVENUE), ratio=True),
    _total("lead_quality", "Lead Quality",
           "Average lead quality score on appointments", _C, "appointments",
           "COALESCE(AVG(lead_quality), 0)", where=("lead_quality IS NOT NULL",), ratio=True),

    # Appointment breakdowns
    MetricDefinition(
        key="total_appointments_reps",
        name="Total Appointments (Reps)",
        description="Count of all appointments grouped by sales rep",
        breakdown_type=BreakdownType.REP,
        unit=_C,
        table="appointments",
        select_expressions=("sales_rep_user_id AS rep_id", "COUNT(*) AS value"),
        group_by=("sales_rep_user_id",),
        order_by=("value DESC",),
    ),
    MetricDefinition(
        key="total_appointments_setters",
        name="Total Appointments (Setters)",
        description="Count of all appointments grouped by setter",
        breakdown_type=BreakdownType.SETTER,
        unit=_C,
        table="appointments",
        select_expressions=("setter_user_id AS setter_id", "COUNT(*) AS value"),
        group_by=("setter_user_id",),
        order_by=("value DESC",),
    ),
    MetricDefinition(
        key="appointments_link",
        name="Appointments (Setter → Rep Link)",
        description="Appointments showing the link between setters and reps",
        breakdown_type=BreakdownType.LINK,
        unit=_C,
        table="appointments",
        select_expressions=(
            "setter_user_id AS setter_id",
            "sales_rep_user_id AS rep_id",
            "COUNT(*) AS value",
        ),
        group_by=("setter_user_id", "sales_rep_user_id"),
        order_by=("value DESC",),
    ),
    _by_rep("show_rate_reps", "Show Rate (Reps)",
            "Share of appointments that showed, grouped by rep", _PCT,
            _ratio(_SHOW, "COUNT(*)"), ratio=True),
    _by_rep("close_rate_reps", "Close Rate (Reps)",
            "Share of shows that closed, grouped by rep", _PCT,
            _ratio(_WON, "COUNT(*)"), where=("LOWER(call_outcome) = 'show'",), ratio=True),
    _by_rep("total_revenue_reps", "Total Revenue (Reps)",
            "Sum of cash collected grouped by rep", _USD, _CASH),

    # Discoveries
    _total("total_discoveries", "Total Discoveries",
           "Total count of discovery calls", _C, "discoveries", "COUNT(*)"),
    _total("show_ups_discoveries", "Discovery Show Ups",
           "Discovery calls where the lead showed up", _C, "discoveries", _SHOW),
    _total("discovery_lead_quality", "Discovery Lead Quality",
           "Average lead quality score on discovery calls", _C, "discoveries",
           "COALESCE(AVG(lead_quality), 0)", where=("lead_quality IS NOT NULL",), ratio=True),

    # Dials
    _total("total_dials", "Total Dials",
           "Total outbound dials", _C, "dials", "COUNT(*)"),
    _total("answers", "Answers",
           "Dials that were answered", _C, "dials",
           "COUNT(*) FILTER (WHERE answered IS TRUE)"),
    _total("meaningful_conversations", "Meaningful Conversations",
           "Dials flagged as meaningful conversations", _C, "dials",
           "COUNT(*) FILTER (WHERE meaningful_conversation IS TRUE)"),
    _total("booked_calls", "Booked Calls",
           "Dials that produced a booking", _C, "dials",
           "COUNT(*) FILTER (WHERE booked IS TRUE)"),
    _total("meaningful_conversation_avg_call_length", "Avg Meaningful Call Length",
           "Average duration of meaningful conversations", MetricUnit.SECONDS, "dials",
           "COALESCE(AVG(duration), 0)",
           where=("meaningful_conversation IS TRUE",), ratio=True, options=_TIME_FORMAT),
    _total("average_call_duration", "Average Call Duration",
           "Average duration of answered dials", MetricUnit.SECONDS, "dials",
           "COALESCE(AVG(duration), 0)",
           where=("answered IS TRUE", "duration > 0"), ratio=True, options=_TIME_FORMAT),
    _total("answer_per_dial", "Answer per Dial",
           "Share of dials that were answered", _PCT, "dials",
           _ratio("COUNT(*) FILTER (WHERE answered IS TRUE)", "COUNT(*)"), ratio=True),
    _total("dials_per_booking", "Dials per Booking",
           "Dials needed for each booking", _C, "dials",
           _ratio("COUNT(*)", "COUNT(*) FILTER (WHERE booked IS TRUE)"), ratio=True),
    _total("answer_to_conversation_ratio", "Answer to Conversation",
           "Share of answered dials that became meaningful conversations", _PCT, "dials",
           _ratio("COUNT(*) FILTER (WHERE meaningful_conversation IS TRUE)",
                  "COUNT(*) FILTER (WHERE answered IS TRUE)"), ratio=True),
    _total("meaningful_conversation_to_booking_ratio", "Conversation to Booking",
           "Share of meaningful conversations that booked", _PCT, "dials",
           _ratio("COUNT(*) FILTER (WHERE booked IS TRUE)",
                  "COUNT(*) FILTER (WHERE meaningful_conversation IS TRUE)"), ratio=True),

    # Leads and ads
    _total("total_leads", "Total Leads",
           "Distinct contacts created in the range", _C, "contacts", "COUNT(DISTINCT id)"),
    _total("ad_spend", "Ad Spend",
           "Meta ad spend in the range", _USD, "meta_ad_performance",
           "COALESCE(SUM(spend), 0)"),
)}

SPECIAL_METRICS: dict[str, MetricDefinition] = {m.key: m for m in (
    _special("roi", "ROI", "Cash collected divided by ad spend",
             _PCT, "appointments", SpecialFormula.ROI),
    _special("rep_roi", "Rep ROI",
             "Cash collected against the ad spend allocated by appointment share",
             _PCT, "appointments", SpecialFormula.REP_ROI, breakdown=BreakdownType.REP,
             options={"roiDisplay": ("percent", "multiplier")}),
    _special("rep_roi_multiplier", "Rep ROI (Multiplier)",
             "Rep cash as a multiple of allocated ad spend",
             _C, "appointments", SpecialFormula.REP_ROI, breakdown=BreakdownType.REP,
             options={"roiDisplay": ("multiplier",)}),
    _special("cost_per_booked_call", "Cost per Booked Call",
             "Ad spend divided by appointments", _USD, "appointments",
             SpecialFormula.COST_PER_BOOKED_CALL),
    _special("cost_per_booked_call_reps", "Cost per Booked Call (Reps)",
             "Account cost per booked call, by rep", _USD, "appointments",
             SpecialFormula.COST_PER_BOOKED_CALL, breakdown=BreakdownType.REP),
    _special("cost_per_booked_call_setters", "Cost per Booked Call (Setters)",
             "Account cost per booked call, by setter", _USD, "appointments",
             SpecialFormula.COST_PER_BOOKED_CALL, breakdown=BreakdownType.SETTER),
    _special("cost_per_booked_call_link", "Cost per Booked Call (Setter → Rep)",
             "Account cost per booked call, by setter and rep pair", _USD, "appointments",
             SpecialFormula.COST_PER_BOOKED_CALL, breakdown=BreakdownType.LINK),
    _special("speed_to_lead", "Speed to Lead",
             "Time from lead creation to the first dial", MetricUnit.SECONDS, "contacts",
             SpecialFormula.SPEED_TO_LEAD,
             options={**_CALCULATION, **_TIME_FORMAT, "businessHours": (False, True)},
             ratio=True),
    _special("lead_to_appointment", "Lead to Appointment",
             "Share of new leads that booked an appointment", _PCT, "contacts",
             SpecialFormula.LEAD_TO_APPOINTMENT, ratio=True),
    _special("data_completion_rate", "Data Completion Rate",
             "Share of past appointments and discoveries with outcome data filled",
             _PCT, "appointments", SpecialFormula.DATA_COMPLETION_RATE, ratio=True),
    _special("overdue_items", "Overdue Items",
             "Unfilled appointments and discoveries more than 24 hours past",
             _C, "appointments", SpecialFormula.OVERDUE_ITEMS),
    _special("overdue_percentage", "Overdue Percentage",
             "Share of unfilled items that are overdue",
             _PCT, "appointments", SpecialFormula.OVERDUE_PERCENTAGE, ratio=True),
    _special("cash_per_dial", "Cash per Dial",
             "Cash collected on dial-booked appointments per dial",
             _USD, "dials", SpecialFormula.CASH_PER_DIAL, ratio=True),
    _special("booking_lead_time", "Booking Lead Time",
             "Days between booking and the scheduled appointment",
             MetricUnit.DAYS, "appointments", SpecialFormula.BOOKING_LEAD_TIME,
             options=_CALCULATION, ratio=True),
    _special("bookings_per_hour", "Bookings per Hour",
             "Bookings divided by hours worked", _C, "work_timeframes",
             SpecialFormula.WORK_TIMEFRAME),
    _special("dials_per_hour", "Dials per Hour",
             "Dials divided by hours worked", _C, "work_timeframes",
             SpecialFormula.WORK_TIMEFRAME),
    _special("hours_worked", "Hours Worked",
             "Hours between first and last dial, per caller per day",
             MetricUnit.HOURS, "work_timeframes", SpecialFormula.WORK_TIMEFRAME),
)}


# ── Validation ───────────────────────────────────────────────────────────

def validate_registry(registry: Mapping[str, MetricDefinition]) -> None:
    """Raise RegistryError listing every inconsistency in ``registry``."""
    problems: list[str] = []
    for key, metric in registry.items():
        if key != metric.key:
            problems.append(f"{key}: registered under a different key ({metric.key})")
        spec = TABLES.get(metric.table)
        if spec is None:
            problems.append(f"{key}: unknown table '{metric.table}'")
            continue
        if metric.attribution_context is not None:
            if metric.attribution_context not in get_applicable_attributions(metric.table):
                problems.append(
                    f"{key}: attribution '{metric.attribution_context.value}' "
                    f"does not apply to {metric.table}"
                )
            if get_base_metric_name(key) not in registry:
                problems.append(f"{key}: base metric missing from registry")
        if not spec.supports(metric.breakdown_type):
            problems.append(
                f"{key}: {metric.table} has no columns for breakdown "
                f"'{metric.breakdown_type.value}'"
            )
        if metric.is_special_metric:
            continue
        if spec.virtual:
            problems.append(f"{key}: only special metrics may read {metric.table}")
        aliased = [e for e in metric.select_expressions if _VALUE_ALIAS.match(e.strip())]
        if len(aliased) != 1:
            problems.append(f"{key}: expected exactly one 'AS value' expression")
    if problems:
        raise RegistryError("; ".join(problems))


def _build_registry() -> Mapping[str, MetricDefinition]:
    catalog = create_metric_families(BASE_METRICS)
    overlap = set(catalog) & set(SPECIAL_METRICS)
    if overlap:
        raise RegistryError(f"duplicate metric names: {', '.join(sorted(overlap))}")
    catalog.update(SPECIAL_METRICS)
    validate_registry(catalog)
    return MappingProxyType(catalog)


METRICS_REGISTRY: Mapping[str, MetricDefinition] = _build_registry()


# ── Lookups ──────────────────────────────────────────────────────────────

def get_metric(name: str) -> Optional[MetricDefinition]:
    return METRICS_REGISTRY.get(name)


def get_all_metric_names() -> list[str]:
    return sorted(METRICS_REGISTRY)


def get_metrics_by_breakdown_type(breakdown: BreakdownType | str) -> list[MetricDefinition]:
    breakdown = BreakdownType(breakdown)
    return [m for m in METRICS_REGISTRY.values() if m.breakdown_type == breakdown]


def get_metric_options(name: str) -> dict[str, Any]:
    metric = get_metric(name)
    if metric is None:
        return {}
    return {axis: list(values) for axis, values in metric.options.items()}
