"""Sales Metrics API - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from database import get_supabase
from sales_metrics import (
    AccountMetricsResponse,
    DateRange,
    MetricRequest,
    MetricResponse,
    TimeResult,
    UserMetricRow,
    UserPeriodRow,
)
from sales_metrics.account_metrics import AccountMetricsEngine
from sales_metrics.engine import MetricsEngine
from sales_metrics.errors import MetricValidationError
from sales_metrics.executor import SupabaseQueryExecutor
from sales_metrics.registry import METRICS_REGISTRY, get_metric, get_metric_options
from sales_metrics.user_metrics import UserMetricsEngine
from sales_metrics.user_names import ProfileNameResolver

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Sales Metrics Engine")
api_router = APIRouter(prefix="/api")


# ============ Pydantic Models ============

class _CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserMetricsRequest(_CamelBody):
    account_id: str
    user_ids: List[str]
    metric_names: List[str]
    date_range: DateRange
    options: Dict[str, Any] = Field(default_factory=dict)


class UserPeriodMetricsRequest(UserMetricsRequest):
    period_type: str = "weekly"


class AccountMetricsRequest(_CamelBody):
    account_id: str
    metric_name: str
    date_range: DateRange
    options: Dict[str, Any] = Field(default_factory=dict)


class UserMetricsResponse(_CamelBody):
    users: List[UserMetricRow]
    executed_at: str


class UserPeriodMetricsResponse(_CamelBody):
    period_type: str
    rows: List[UserPeriodRow]
    executed_at: str


# ============ Dependencies ============

_metrics_engine: Optional[MetricsEngine] = None


def get_metrics_engine() -> MetricsEngine:
    """Shared engine wired to Supabase (overridden in tests)."""
    global _metrics_engine
    if _metrics_engine is None:
        supabase = get_supabase()
        _metrics_engine = MetricsEngine(
            SupabaseQueryExecutor(supabase),
            name_resolver=ProfileNameResolver(supabase),
        )
    return _metrics_engine


def _bad_request(e: MetricValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "Invalid metric request", "errors": e.errors})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============ Metrics Routes ============

@api_router.get("/metrics")
async def list_metrics():
    metrics = [
        {
            "name": key,
            "displayName": m.name,
            "description": m.description,
            "breakdownType": m.breakdown_type.value,
            "unit": m.unit.value,
            "isSpecialMetric": m.is_special_metric,
            "attributionContext": m.attribution_context.value if m.attribution_context else None,
        }
        for key, m in sorted(METRICS_REGISTRY.items())
    ]
    return {"metrics": metrics, "count": len(metrics)}


@api_router.get("/metrics/options")
async def metric_options(metric_name: str = Query(..., alias="metricName")):
    if get_metric(metric_name) is None:
        raise HTTPException(status_code=404, detail=f"Metric '{metric_name}' not found")
    return {"metricName": metric_name, "options": get_metric_options(metric_name)}


@api_router.post("/metrics", response_model=MetricResponse)
async def execute_metric(
    request: MetricRequest,
    engine: MetricsEngine = Depends(get_metrics_engine),
):
    try:
        return await engine.execute(request)
    except MetricValidationError as e:
        raise _bad_request(e)


# ============ Data View Routes ============

@api_router.post("/data-view/user-metrics", response_model=UserMetricsResponse)
async def user_metrics(
    request: UserMetricsRequest,
    engine: MetricsEngine = Depends(get_metrics_engine),
):
    try:
        users = await UserMetricsEngine(engine).calculate_for_users(
            request.account_id,
            request.user_ids,
            request.metric_names,
            request.date_range,
            request.options,
        )
    except MetricValidationError as e:
        raise _bad_request(e)
    return UserMetricsResponse(users=users, executed_at=_now())


@api_router.post("/data-view/user-period-metrics", response_model=UserPeriodMetricsResponse)
async def user_period_metrics(
    request: UserPeriodMetricsRequest,
    engine: MetricsEngine = Depends(get_metrics_engine),
):
    try:
        rows = await UserMetricsEngine(engine).calculate_user_period_matrix(
            request.account_id,
            request.user_ids,
            request.metric_names,
            request.date_range,
            request.period_type,
            request.options,
        )
    except MetricValidationError as e:
        raise _bad_request(e)
    return UserPeriodMetricsResponse(period_type=request.period_type, rows=rows, executed_at=_now())


@api_router.post("/data-view/account-metrics", response_model=AccountMetricsResponse)
async def account_metrics(
    request: AccountMetricsRequest,
    engine: MetricsEngine = Depends(get_metrics_engine),
):
    try:
        return await AccountMetricsEngine(engine).calculate(
            request.account_id, request.metric_name, request.date_range, request.options,
        )
    except MetricValidationError as e:
        raise _bad_request(e)


@api_router.post("/data-view/account-metrics-time-series", response_model=TimeResult)
async def account_metrics_time_series(
    request: AccountMetricsRequest,
    engine: MetricsEngine = Depends(get_metrics_engine),
):
    try:
        return await AccountMetricsEngine(engine).time_series(
            request.account_id, request.metric_name, request.date_range, request.options,
        )
    except MetricValidationError as e:
        raise _bad_request(e)


@api_router.get("/")
async def root():
    return {"message": "Sales Metrics Engine API", "metrics": len(METRICS_REGISTRY)}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)
