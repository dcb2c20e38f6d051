"""
Time-series builder tests — granularity selection, bucket series, both SQL paths.
"""

from datetime import date

import pytest

from sales_metrics import DateRange, MetricFilters
from sales_metrics.registry import get_metric
from sales_metrics.time_series import (
    Granularity,
    bucket_series,
    bucket_start,
    bucket_windows,
    build_time_series_query,
    select_granularity,
)

ACCOUNT = "11111111-1111-1111-1111-111111111111"


def _filters(start: str, end: str) -> MetricFilters:
    return MetricFilters(date_range=DateRange(start=start, end=end), account_id=ACCOUNT)


class TestGranularity:
    @pytest.mark.parametrize("days,expected", [
        (0, Granularity.DAY),
        (10, Granularity.DAY),
        (13, Granularity.DAY),
        (14, Granularity.WEEK),
        (20, Granularity.WEEK),
        (28, Granularity.MONTH),
        (30, Granularity.MONTH),
        (31, Granularity.MONTH),
        (45, Granularity.WEEK),
        (90, Granularity.MONTH),
    ])
    def test_span_rules(self, days, expected):
        start = date(2024, 1, 1)
        end = date.fromordinal(start.toordinal() + days)
        assert select_granularity(start, end) == expected

    def test_interval_literal(self):
        assert Granularity.WEEK.interval == "interval '1 week'"

    def test_local_columns(self):
        assert Granularity.DAY.local_column == "local_date"
        assert Granularity.WEEK.local_column == "local_week"
        assert Granularity.MONTH.local_column == "local_month"


class TestBuckets:
    def test_week_starts_monday(self):
        # 2024-01-10 is a Wednesday
        assert bucket_start(date(2024, 1, 10), Granularity.WEEK) == date(2024, 1, 8)

    def test_month_starts_first(self):
        assert bucket_start(date(2024, 2, 29), Granularity.MONTH) == date(2024, 2, 1)

    def test_seven_day_daily_series(self):
        series = bucket_series(date(2024, 1, 1), date(2024, 1, 7), Granularity.DAY)
        assert len(series) == 7
        assert series[0] == date(2024, 1, 1)
        assert series[-1] == date(2024, 1, 7)

    def test_weekly_series_is_gap_free(self):
        series = bucket_series(date(2024, 1, 3), date(2024, 1, 25), Granularity.WEEK)
        assert series == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]

    def test_monthly_series_crosses_year(self):
        series = bucket_series(date(2023, 11, 15), date(2024, 2, 10), Granularity.MONTH)
        assert series == [date(2023, 11, 1), date(2023, 12, 1), date(2024, 1, 1), date(2024, 2, 1)]

    def test_windows_are_clipped(self):
        windows = bucket_windows(date(2024, 1, 3), date(2024, 1, 10), Granularity.WEEK)
        assert windows == [
            (date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 7)),
            (date(2024, 1, 8), date(2024, 1, 8), date(2024, 1, 10)),
        ]


class TestTimeSeriesQuery:
    def test_local_column_path(self):
        built, series = build_time_series_query(
            get_metric("total_appointments"), _filters("2024-01-01", "2024-01-07"),
        )
        assert len(series) == 7
        assert "WITH buckets AS (" in built.sql
        assert "generate_series($series_start::date, $series_end::date, interval '1 day')" in built.sql
        assert "local_date AS bucket" in built.sql
        assert "COALESCE(agg.value, 0) AS value" in built.sql
        assert "LEFT JOIN agg ON agg.bucket = b.bucket" in built.sql
        assert built.sql.endswith("ORDER BY b.bucket")
        assert built.params["series_start"] == "2024-01-01"
        assert built.params["series_end"] == "2024-01-07"
        assert built.missing_params() == set()

    def test_truncate_path_for_contacts(self):
        built, series = build_time_series_query(
            get_metric("total_leads"), _filters("2024-01-01", "2024-03-31"),
        )
        assert "date_trunc('month', " in built.sql
        assert series[0] == date(2024, 1, 1)
        assert len(series) == 3

    def test_ratio_metric_keeps_nulls(self):
        built, _ = build_time_series_query(
            get_metric("show_up_rate"), _filters("2024-01-01", "2024-01-07"),
        )
        assert "agg.value AS value" in built.sql
        assert "COALESCE(agg.value, 0)" not in built.sql

    def test_series_start_aligned_to_bucket(self):
        built, series = build_time_series_query(
            get_metric("total_dials"), _filters("2024-01-03", "2024-01-20"),
        )
        assert series[0] == date(2024, 1, 1)
        assert built.params["series_start"] == "2024-01-01"
        assert built.params["start_date"] == "2024-01-03"
        assert "local_week AS bucket" in built.sql

    def test_explicit_granularity(self):
        _, series = build_time_series_query(
            get_metric("total_dials"), _filters("2024-01-01", "2024-01-31"), Granularity.DAY,
        )
        assert len(series) == 31
