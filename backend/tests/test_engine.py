"""
Metrics engine tests — strategy dispatch, validation, failure fallbacks, name fill.
The SQL store is replaced by async fakes; no database needed.
"""

import pytest

from sales_metrics import (
    BreakdownType,
    DateRange,
    MetricFilters,
    MetricRequest,
    MetricRequestOptions,
)
from sales_metrics.engine import MetricsEngine, is_time_viz, select_strategy
from sales_metrics.errors import MetricValidationError, QueryExecutionError
from sales_metrics.registry import get_metric
from sales_metrics.sql_fragments import QueryStrategy

ACCOUNT = "11111111-1111-1111-1111-111111111111"
REP_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
REP_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
SETTER = "cccccccc-cccc-cccc-cccc-cccccccccccc"


# ── Helpers ──────────────────────────────────────────────────────────────

class FakeExecutor:
    def __init__(self, rows=None, error=None, responder=None):
        self.rows = rows or []
        self.error = error
        self.responder = responder
        self.calls = []

    async def __call__(self, sql, params):
        self.calls.append((sql, params))
        if self.error:
            raise self.error
        if self.responder:
            return self.responder(sql, params)
        return self.rows


class FakeNames:
    def __init__(self, names):
        self.names = names
        self.requested = None

    async def resolve(self, user_ids):
        self.requested = set(user_ids)
        return {u: n for u, n in self.names.items() if u in self.requested}


def _request(metric_name, start="2024-01-01", end="2024-01-31", options=None, **filters):
    return MetricRequest(
        metric_name=metric_name,
        filters=MetricFilters(
            date_range=DateRange(start=start, end=end),
            account_id=ACCOUNT,
            **filters,
        ),
        options=options,
    )


# ── Strategy selection ───────────────────────────────────────────────────

class TestSelectStrategy:
    def test_kpi_is_not_time(self):
        assert not is_time_viz("kpi")
        assert not is_time_viz(None)
        assert is_time_viz("line")

    def test_generic_default(self):
        strategy, breakdown = select_strategy(get_metric("total_appointments"))
        assert strategy == QueryStrategy.GENERIC
        assert breakdown == BreakdownType.TOTAL

    def test_chart_uses_time_series(self):
        strategy, breakdown = select_strategy(
            get_metric("total_appointments"), MetricRequestOptions(viz_type="bar"),
        )
        assert strategy == QueryStrategy.TIME_SERIES
        assert breakdown == BreakdownType.TIME

    def test_dynamic_breakdown_supported(self):
        _, breakdown = select_strategy(
            get_metric("show_ups"), MetricRequestOptions(dynamic_breakdown=BreakdownType.REP),
        )
        assert breakdown == BreakdownType.REP

    def test_dynamic_breakdown_unsupported_keeps_declared(self):
        _, breakdown = select_strategy(
            get_metric("total_dials"), MetricRequestOptions(dynamic_breakdown=BreakdownType.REP),
        )
        assert breakdown == BreakdownType.TOTAL

    def test_special_keeps_declared_breakdown(self):
        strategy, breakdown = select_strategy(get_metric("rep_roi"), MetricRequestOptions(viz_type="kpi"))
        assert strategy == QueryStrategy.SPECIAL
        assert breakdown == BreakdownType.REP

    def test_special_forced_total(self):
        _, breakdown = select_strategy(
            get_metric("rep_roi"), MetricRequestOptions(dynamic_breakdown=BreakdownType.TOTAL),
        )
        assert breakdown == BreakdownType.TOTAL

    def test_special_chart(self):
        strategy, breakdown = select_strategy(get_metric("roi"), MetricRequestOptions(viz_type="line"))
        assert strategy == QueryStrategy.SPECIAL
        assert breakdown == BreakdownType.TIME


# ── Execution ────────────────────────────────────────────────────────────

class TestExecute:
    @pytest.mark.asyncio
    async def test_total(self):
        engine = MetricsEngine(FakeExecutor(rows=[{"value": "42"}]))
        response = await engine.execute(_request("total_appointments"))
        assert response.result.type == "total"
        assert response.result.data.value == 42.0
        assert response.strategy == "generic"
        assert response.effective_breakdown == BreakdownType.TOTAL

    @pytest.mark.asyncio
    async def test_validation_errors_raised(self):
        engine = MetricsEngine(FakeExecutor())
        request = MetricRequest(
            metric_name="total_appointments",
            filters=MetricFilters(date_range=DateRange(start="2024-02-01", end="2024-01-01")),
        )
        with pytest.raises(MetricValidationError) as exc:
            await engine.execute(request)
        assert "Account ID is required" in exc.value.errors
        assert "Start date must be before end date" in exc.value.errors

    @pytest.mark.asyncio
    async def test_unknown_metric(self):
        executor = FakeExecutor()
        with pytest.raises(MetricValidationError) as exc:
            await MetricsEngine(executor).execute(_request("made_up_metric"))
        assert exc.value.errors == ["Metric 'made_up_metric' not found"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_executor_failure_gives_empty_total(self):
        engine = MetricsEngine(FakeExecutor(error=QueryExecutionError("boom")))
        response = await engine.execute(_request("total_appointments"))
        assert response.result.type == "total"
        assert response.result.data.value == 0

    @pytest.mark.asyncio
    async def test_executor_failure_gives_empty_series(self):
        engine = MetricsEngine(FakeExecutor(error=RuntimeError("down")))
        response = await engine.execute(
            _request("total_appointments", options=MetricRequestOptions(viz_type="line")),
        )
        assert response.result.type == "time"
        assert response.result.data == []

    @pytest.mark.asyncio
    async def test_seven_day_series_is_zero_filled(self):
        engine = MetricsEngine(FakeExecutor(rows=[
            {"date": "2024-01-03", "value": 5},
            {"date": "2024-01-06T00:00:00", "value": "2"},
        ]))
        response = await engine.execute(_request(
            "total_appointments", "2024-01-01", "2024-01-07",
            options=MetricRequestOptions(viz_type="line"),
        ))
        data = response.result.data
        assert [row.date for row in data] == [f"2024-01-0{d}" for d in range(1, 8)]
        assert [row.value for row in data] == [0, 0, 5, 0, 0, 2, 0]

    @pytest.mark.asyncio
    async def test_ratio_series_keeps_gaps(self):
        engine = MetricsEngine(FakeExecutor(rows=[{"date": "2024-01-02", "value": 0.5}]))
        response = await engine.execute(_request(
            "show_up_rate", "2024-01-01", "2024-01-03",
            options=MetricRequestOptions(viz_type="line"),
        ))
        assert [row.value for row in response.result.data] == [None, 0.5, None]

    @pytest.mark.asyncio
    async def test_request_options_used(self):
        engine = MetricsEngine(FakeExecutor(rows=[{"rep_id": REP_A, "value": 3}]))
        response = await engine.execute(_request(
            "show_ups", options=MetricRequestOptions(dynamic_breakdown=BreakdownType.REP),
        ))
        assert response.result.type == "rep"
        assert response.result.data[0].rep_id == REP_A

    @pytest.mark.asyncio
    async def test_invalid_rep_ids_run_unfiltered(self):
        unfiltered, malformed = FakeExecutor(rows=[{"value": 5}]), FakeExecutor(rows=[{"value": 5}])
        await MetricsEngine(unfiltered).execute(_request("total_appointments"))
        response = await MetricsEngine(malformed).execute(
            _request("total_appointments", rep_ids=["bad", "'; DROP TABLE appointments; --"]),
        )
        assert malformed.calls == unfiltered.calls
        assert response.result.data.value == 5


class TestNames:
    @pytest.mark.asyncio
    async def test_names_filled(self):
        names = FakeNames({REP_A: "Alice"})
        engine = MetricsEngine(
            FakeExecutor(rows=[{"rep_id": REP_A, "value": 3}, {"rep_id": REP_B, "value": 1}]),
            name_resolver=names,
        )
        response = await engine.execute(_request("total_appointments_reps"))
        rows = response.result.data
        assert rows[0].rep_name == "Alice"
        assert rows[1].rep_name == REP_B
        assert names.requested == {REP_A, REP_B}

    @pytest.mark.asyncio
    async def test_rows_without_ids_dropped(self):
        engine = MetricsEngine(FakeExecutor(rows=[
            {"setter_id": None, "value": 9},
            {"setter_id": SETTER, "value": 1},
        ]))
        response = await engine.execute(_request("total_appointments_setters"))
        assert [row.setter_id for row in response.result.data] == [SETTER]
        assert response.result.data[0].setter_name == SETTER

    @pytest.mark.asyncio
    async def test_total_skips_lookup(self):
        names = FakeNames({})
        engine = MetricsEngine(FakeExecutor(rows=[{"value": 1}]), name_resolver=names)
        await engine.execute(_request("total_appointments"))
        assert names.requested is None


class TestSpecialExecution:
    @pytest.mark.asyncio
    async def test_roi(self):
        def responder(sql, params):
            if "meta_ad_performance" in sql:
                return [{"value": 400}]
            return [{"value": 1000}]

        engine = MetricsEngine(FakeExecutor(responder=responder))
        response = await engine.execute(_request("roi"))
        assert response.strategy == "special"
        assert response.result.data.value == 2.5

    @pytest.mark.asyncio
    async def test_cost_per_booked_call_reps(self):
        def responder(sql, params):
            if "meta_ad_performance" in sql:
                return [{"value": 1000}]
            if "GROUP BY" in sql:
                return [{"rep_id": REP_A, "appointments": 6}, {"rep_id": REP_B, "appointments": 4}]
            return [{"value": 10}]

        engine = MetricsEngine(FakeExecutor(responder=responder))
        response = await engine.execute(_request("cost_per_booked_call_reps"))
        assert response.result.type == "rep"
        assert [row.value for row in response.result.data] == [100.0, 100.0]

    @pytest.mark.asyncio
    async def test_special_series_runs_per_bucket(self):
        executor = FakeExecutor(responder=lambda sql, params: [{"value": 10}])
        engine = MetricsEngine(executor, max_concurrency=2)
        response = await engine.execute(_request(
            "roi", "2024-01-01", "2024-01-03", options=MetricRequestOptions(viz_type="line"),
        ))
        assert [row.value for row in response.result.data] == [1.0, 1.0, 1.0]
        # two queries (cash, spend) per daily bucket
        assert len(executor.calls) == 6
        assert {p["start_date"] for _, p in executor.calls} == {"2024-01-01", "2024-01-02", "2024-01-03"}

    @pytest.mark.asyncio
    async def test_dials_per_hour_by_setter(self):
        def responder(sql, params):
            if "FROM accounts" in sql:
                return [{"business_timezone": "UTC"}]
            return [
                {"setter_user_id": SETTER, "date_called": "2024-01-02T09:00:00Z", "booked": False},
                {"setter_user_id": SETTER, "date_called": "2024-01-02T11:00:00Z", "booked": True},
            ]

        engine = MetricsEngine(FakeExecutor(responder=responder))
        response = await engine.execute(_request(
            "dials_per_hour", setter_ids=[SETTER],
            options=MetricRequestOptions(dynamic_breakdown=BreakdownType.SETTER),
        ))
        assert response.result.type == "setter"
        assert response.result.data[0].setter_id == SETTER
        assert response.result.data[0].value == 1.0

    @pytest.mark.asyncio
    async def test_hours_worked_total(self):
        def responder(sql, params):
            if "FROM accounts" in sql:
                return [{"business_timezone": "UTC"}]
            return [{"setter_user_id": SETTER, "date_called": "2024-01-02T09:00:00Z", "booked": False}]

        engine = MetricsEngine(FakeExecutor(responder=responder))
        response = await engine.execute(_request("hours_worked", setter_ids=[SETTER]))
        assert response.result.data.value == 0.1
