"""
Filter applier tests — validation messages, id sanitizing, parameter shapes.
"""

from datetime import date, datetime, timezone

from sales_metrics import DateRange, MetricFilters
from sales_metrics.filters import (
    apply_standard_filters,
    apply_user_filters,
    build_where_clause,
    date_field_sql,
    is_valid_identifier,
    parse_filter_date,
    parse_timestamp,
    validate_filters,
)
from sales_metrics.registry import TABLES

ACCOUNT = "11111111-1111-1111-1111-111111111111"
REP_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
REP_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
SETTER = "cccccccc-cccc-cccc-cccc-cccccccccccc"


def _filters(**overrides) -> MetricFilters:
    base = dict(
        date_range=DateRange(start="2024-01-01", end="2024-01-31"),
        account_id=ACCOUNT,
    )
    base.update(overrides)
    return MetricFilters(**base)


class TestValidateFilters:
    def test_valid(self):
        assert validate_filters(_filters()) == []

    def test_missing_everything(self):
        errors = validate_filters(MetricFilters())
        assert errors == [
            "Start date is required",
            "End date is required",
            "Account ID is required",
        ]

    def test_invalid_date(self):
        errors = validate_filters(_filters(date_range=DateRange(start="yesterday", end="2024-01-31")))
        assert errors == ["Invalid date format"]

    def test_start_after_end(self):
        errors = validate_filters(_filters(date_range=DateRange(start="2024-02-01", end="2024-01-01")))
        assert errors == ["Start date must be before end date"]

    def test_same_day_is_valid(self):
        assert validate_filters(_filters(date_range=DateRange(start="2024-01-05", end="2024-01-05"))) == []

    def test_datetime_strings_accepted(self):
        rng = DateRange(start="2024-01-01T00:00:00Z", end="2024-01-31T23:59:59.000Z")
        assert validate_filters(_filters(date_range=rng)) == []


class TestParsing:
    def test_parse_plain_date(self):
        assert parse_filter_date("2024-03-05") == date(2024, 3, 5)

    def test_parse_datetime(self):
        assert parse_filter_date("2024-03-05T10:00:00Z") == date(2024, 3, 5)

    def test_parse_datetime_keeps_written_date(self):
        # late evening with a negative offset is still the 31st, not Feb 1st
        assert parse_filter_date("2024-01-31T20:00:00-08:00") == date(2024, 1, 31)
        assert parse_filter_date("2024-02-01T01:00:00+09:00") == date(2024, 2, 1)

    def test_parse_garbage(self):
        assert parse_filter_date("not a date") is None
        assert parse_filter_date("") is None

    def test_identifier(self):
        assert is_valid_identifier(REP_A)
        assert is_valid_identifier(REP_A.upper())
        assert not is_valid_identifier("rep-1")
        assert not is_valid_identifier(None)

    def test_parse_timestamp_naive_is_utc(self):
        ts = parse_timestamp("2024-01-01T09:30:00")
        assert ts == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)

    def test_parse_timestamp_z(self):
        ts = parse_timestamp("2024-01-01T09:30:00Z")
        assert ts.utcoffset().total_seconds() == 0

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp("nope") is None
        assert parse_timestamp(None) is None


class TestStandardFilters:
    def test_date_and_account_always_present(self):
        applied = apply_standard_filters(_filters(), "appointments")
        conditions = applied.sql_conditions()
        assert conditions == [
            "local_date >= $start_date::date",
            "local_date <= $end_date::date",
            "account_id = $account_id",
        ]
        assert applied.params == {
            "start_date": "2024-01-01",
            "end_date": "2024-01-31",
            "account_id": ACCOUNT,
        }

    def test_single_rep_uses_equality(self):
        applied = apply_standard_filters(_filters(rep_ids=[REP_A]), "appointments")
        assert "sales_rep_user_id = $rep_user_id" in applied.sql_conditions()
        assert applied.params["rep_user_id"] == REP_A

    def test_many_reps_use_in(self):
        applied = apply_standard_filters(_filters(rep_ids=[REP_A, REP_B]), "appointments")
        assert "sales_rep_user_id IN ($rep_user_ids_0, $rep_user_ids_1)" in applied.sql_conditions()
        assert applied.params["rep_user_ids_0"] == REP_A
        assert applied.params["rep_user_ids_1"] == REP_B
        assert "rep_user_id" not in applied.params

    def test_setter_filter(self):
        applied = apply_standard_filters(_filters(setter_ids=[SETTER]), "dials")
        assert "setter_user_id = $setter_user_id" in applied.sql_conditions()

    def test_invalid_ids_equal_no_ids(self):
        with_garbage = apply_standard_filters(_filters(rep_ids=["x", "", "1234"]), "appointments")
        without = apply_standard_filters(_filters(), "appointments")
        assert with_garbage.sql_conditions() == without.sql_conditions()
        assert with_garbage.params == without.params

    def test_invalid_ids_dropped_from_mix(self):
        applied = apply_standard_filters(_filters(rep_ids=["bad", REP_A]), "appointments")
        assert "sales_rep_user_id = $rep_user_id" in applied.sql_conditions()

    def test_rep_filter_skipped_on_dials(self):
        applied = apply_standard_filters(_filters(rep_ids=[REP_A]), "dials")
        assert not any("sales_rep_user_id" in c for c in applied.sql_conditions())

    def test_without_user_filters(self):
        applied = apply_standard_filters(
            _filters(rep_ids=[REP_A], setter_ids=[SETTER]), "appointments",
            include_user_filters=False,
        )
        assert len(applied.conditions) == 3

    def test_alias(self):
        applied = apply_standard_filters(_filters(), "appointments", alias="a")
        assert applied.sql_conditions()[0] == "a.local_date >= $start_date::date"
        assert applied.sql_conditions()[2] == "a.account_id = $account_id"

    def test_timestamp_table_converts_to_account_day(self):
        sql = date_field_sql(TABLES["contacts"])
        assert sql.startswith("(ghl_created_at AT TIME ZONE")
        assert "business_timezone" in sql
        assert sql.endswith("::date")

    def test_user_filters_only(self):
        applied = apply_user_filters(_filters(setter_ids=[SETTER]), "dials", alias="d")
        assert applied.sql_conditions() == ["d.setter_user_id = $setter_user_id"]

    def test_where_clause(self):
        applied = apply_standard_filters(_filters(), "appointments")
        where = build_where_clause(applied, ["booked IS TRUE", ""])
        assert where.startswith("WHERE local_date >= $start_date::date AND ")
        assert where.endswith("AND booked IS TRUE")
