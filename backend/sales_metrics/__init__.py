"""
Sales Metrics — shared pydantic models for the metrics engine.

Module roster:
  registry          — immutable metric catalog (base metrics + attribution families)
  attribution       — assigned / booked / dialer variant generator
  filters           — validated, parameterized WHERE conditions
  query_builder     — generic SELECT assembly
  time_series       — bucket granularity + zero-filled series queries
  special_formulas  — cross-table formulas (ROI, cost per call, speed to lead, ...)
  work_timeframes   — hours-worked derivation from raw dial timestamps
  engine            — strategy dispatch, execution, result shaping
  user_metrics      — per-user / per-period fan-out for the data view
  account_metrics   — single-value account figures with display strings

Wire format is camelCase (``repId``, ``dateRange``); Python attributes stay
snake_case.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BreakdownType(str, Enum):
    TOTAL = "total"
    REP = "rep"
    SETTER = "setter"
    LINK = "link"
    TIME = "time"


class MetricUnit(str, Enum):
    COUNT = "count"
    CURRENCY = "currency"
    PERCENT = "percent"      # stored as a fraction, 0.25 == 25%
    SECONDS = "seconds"
    DAYS = "days"
    HOURS = "hours"


class AttributionContext(str, Enum):
    ASSIGNED = "assigned"
    BOOKED = "booked"
    DIALER = "dialer"


# ── Request ──────────────────────────────────────────────────────────────

class DateRange(_CamelModel):
    """Inclusive ISO dates. Datetime strings are accepted and cut to the date."""
    start: Optional[str] = None
    end: Optional[str] = None


class MetricFilters(_CamelModel):
    date_range: Optional[DateRange] = None
    account_id: Optional[str] = None
    rep_ids: list[str] = Field(default_factory=list)
    setter_ids: list[str] = Field(default_factory=list)


class MetricRequestOptions(_CamelModel):
    viz_type: Optional[str] = None              # "kpi" | "line" | "bar" | "area" | "table"
    dynamic_breakdown: Optional[BreakdownType] = None
    widget_settings: dict[str, Any] = Field(default_factory=dict)


class MetricRequest(_CamelModel):
    metric_name: str
    filters: MetricFilters
    options: Optional[MetricRequestOptions] = None


# ── Result ───────────────────────────────────────────────────────────────

class TotalValue(_CamelModel):
    value: float = 0


class RepRow(_CamelModel):
    rep_id: str
    rep_name: Optional[str] = None
    value: float = 0


class SetterRow(_CamelModel):
    setter_id: str
    setter_name: Optional[str] = None
    value: float = 0


class LinkRow(_CamelModel):
    setter_id: str
    setter_name: Optional[str] = None
    rep_id: str
    rep_name: Optional[str] = None
    value: float = 0


class TimeRow(_CamelModel):
    date: str
    value: Optional[float] = 0   # None for ratio metrics in an empty bucket


class TotalResult(_CamelModel):
    type: Literal["total"] = "total"
    data: TotalValue = Field(default_factory=TotalValue)


class RepResult(_CamelModel):
    type: Literal["rep"] = "rep"
    data: list[RepRow] = Field(default_factory=list)


class SetterResult(_CamelModel):
    type: Literal["setter"] = "setter"
    data: list[SetterRow] = Field(default_factory=list)


class LinkResult(_CamelModel):
    type: Literal["link"] = "link"
    data: list[LinkRow] = Field(default_factory=list)


class TimeResult(_CamelModel):
    type: Literal["time"] = "time"
    data: list[TimeRow] = Field(default_factory=list)


MetricResult = Annotated[
    Union[TotalResult, RepResult, SetterResult, LinkResult, TimeResult],
    Field(discriminator="type"),
]


class MetricResponse(_CamelModel):
    metric_name: str
    filters: MetricFilters
    result: MetricResult
    effective_breakdown: BreakdownType
    strategy: str
    executed_at: str
    execution_time_ms: int


# ── Data view ────────────────────────────────────────────────────────────

class UserMetricValue(_CamelModel):
    value: float = 0
    display_value: str = "0"
    role: str = "none"                 # "rep" | "setter" | "both" | "none"
    breakdown: Optional[dict[str, float]] = None


class UserMetricRow(_CamelModel):
    user_id: str
    name: str
    account_role: Optional[str] = None
    metrics: dict[str, UserMetricValue] = Field(default_factory=dict)


class UserPeriodRow(_CamelModel):
    user_id: str
    name: str
    metric_name: str
    periods: dict[str, float] = Field(default_factory=dict)
    total: float = 0


class AccountMetricValue(_CamelModel):
    value: float = 0
    display_value: str = "0"
    unit: MetricUnit = MetricUnit.COUNT


class AccountMetricsResponse(_CamelModel):
    metric_name: str
    result: AccountMetricValue
    executed_at: str
