"""
Query builder tests — generic SELECT assembly, breakdown rewrites, read-only guard.
"""

import pytest

from sales_metrics import BreakdownType, DateRange, MetricFilters
from sales_metrics.errors import UnsafeQueryError
from sales_metrics.query_builder import build_generic_query, compose_select
from sales_metrics.registry import get_metric
from sales_metrics.sql_fragments import (
    CTE,
    Join,
    SelectQuery,
    UnionAll,
    placeholders,
    validate_readonly_sql,
)

ACCOUNT = "11111111-1111-1111-1111-111111111111"
REP = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"


def _filters(**overrides) -> MetricFilters:
    base = dict(date_range=DateRange(start="2024-01-01", end="2024-01-31"), account_id=ACCOUNT)
    base.update(overrides)
    return MetricFilters(**base)


class TestSelectQuery:
    def test_render_order(self):
        query = SelectQuery(
            select=("a", "COUNT(*) AS value"),
            from_="t",
            joins=(Join("u", "u.id = t.id"),),
            where=("x = 1", "y = 2"),
            group_by=("a",),
            having=("COUNT(*) > 0",),
            order_by=("value DESC",),
        )
        assert query.render() == (
            "SELECT a, COUNT(*) AS value FROM t LEFT JOIN u ON u.id = t.id "
            "WHERE x = 1 AND y = 2 GROUP BY a HAVING COUNT(*) > 0 ORDER BY value DESC"
        )

    def test_ctes_and_union(self):
        union = UnionAll((SelectQuery(("1 AS n",), "a"), SelectQuery(("2 AS n",), "b")))
        query = SelectQuery(("SUM(n) AS value",), "r", ctes=(CTE("r", union),))
        assert query.render() == (
            "WITH r AS (SELECT 1 AS n FROM a UNION ALL SELECT 2 AS n FROM b) "
            "SELECT SUM(n) AS value FROM r"
        )


class TestGenericQuery:
    def test_total_metric(self):
        built = build_generic_query(get_metric("total_appointments"), _filters())
        assert built.sql.startswith("SELECT COUNT(*) AS value FROM appointments WHERE ")
        assert "account_id = $account_id" in built.sql
        assert built.missing_params() == set()
        assert built.breakdown == BreakdownType.TOTAL

    def test_values_never_inlined(self):
        built = build_generic_query(get_metric("total_appointments"), _filters(rep_ids=[REP]))
        assert ACCOUNT not in built.sql
        assert REP not in built.sql
        assert "2024-01-01" not in built.sql
        assert placeholders(built.sql) <= set(built.params)

    def test_metric_where_clauses_kept(self):
        built = build_generic_query(get_metric("booking_to_close"), _filters())
        assert "setter_user_id IS NOT NULL" in built.sql

    def test_attributed_variant_requires_owner(self):
        built = build_generic_query(get_metric("show_ups_booked"), _filters())
        assert "setter_user_id IS NOT NULL" in built.sql
        assigned = build_generic_query(get_metric("show_ups_assigned"), _filters())
        assert "sales_rep_user_id IS NOT NULL" in assigned.sql

    def test_declared_breakdown_used_verbatim(self):
        built = build_generic_query(get_metric("total_appointments_reps"), _filters())
        assert built.sql.startswith("SELECT sales_rep_user_id AS rep_id, COUNT(*) AS value FROM appointments")
        assert "GROUP BY sales_rep_user_id" in built.sql
        assert built.sql.endswith("ORDER BY value DESC")

    def test_dynamic_setter_breakdown(self):
        built = build_generic_query(get_metric("show_ups"), _filters(), BreakdownType.SETTER)
        assert "setter_user_id AS setter_id" in built.sql
        assert "GROUP BY setter_user_id" in built.sql
        assert built.breakdown == BreakdownType.SETTER

    def test_dynamic_link_breakdown(self):
        select = compose_select(get_metric("total_appointments"), BreakdownType.LINK)
        assert select.select == (
            "setter_user_id AS setter_id",
            "sales_rep_user_id AS rep_id",
            "COUNT(*) AS value",
        )
        assert select.group_by == ("setter_user_id", "sales_rep_user_id")

    def test_total_rewrite_of_rep_metric(self):
        select = compose_select(get_metric("total_appointments_reps"), BreakdownType.TOTAL)
        assert select.select == ("COUNT(*) AS value",)
        assert select.group_by == ()

    def test_contacts_use_account_local_day(self):
        built = build_generic_query(get_metric("total_leads"), _filters())
        assert "AT TIME ZONE" in built.sql
        assert "COUNT(DISTINCT id) AS value FROM contacts" in built.sql


class TestReadonlyGuard:
    def test_generated_sql_passes(self):
        built = build_generic_query(get_metric("total_appointments"), _filters(rep_ids=[REP]))
        assert validate_readonly_sql(built.sql + ";") == built.sql

    def test_rejects_write(self):
        with pytest.raises(UnsafeQueryError, match="DELETE"):
            validate_readonly_sql("DELETE FROM appointments")

    def test_rejects_write_inside_select(self):
        with pytest.raises(UnsafeQueryError):
            validate_readonly_sql("SELECT 1; DROP TABLE appointments")

    def test_rejects_empty(self):
        with pytest.raises(UnsafeQueryError, match="Empty"):
            validate_readonly_sql("   ")

    def test_rejects_non_select(self):
        with pytest.raises(UnsafeQueryError):
            validate_readonly_sql("SHOW search_path")
