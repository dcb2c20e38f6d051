"""
Execution + result shaping.

The engine only ever talks to one primitive: ``await executor(sql, params)``
returning a list of plain dict rows. ``SupabaseQueryExecutor`` is the
production implementation (``execute_metrics_query_array`` RPC); tests pass
any async callable with the same signature.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Protocol

from sales_metrics import (
    BreakdownType,
    LinkResult,
    LinkRow,
    RepResult,
    RepRow,
    SetterResult,
    SetterRow,
    TimeResult,
    TimeRow,
    TotalResult,
    TotalValue,
)
from sales_metrics.errors import QueryExecutionError
from sales_metrics.sql_fragments import validate_readonly_sql

logger = logging.getLogger(__name__)

METRICS_QUERY_RPC = os.environ.get("METRICS_QUERY_RPC", "execute_metrics_query_array")

_TRUTHY = frozenset({"true", "t", "1", "yes", "y"})


class QueryExecutor(Protocol):
    async def __call__(self, sql: str, params: dict[str, Any]) -> list[dict]: ...


class SupabaseQueryExecutor:
    """Runs read-only SQL through the parameterized metrics RPC."""

    def __init__(self, supabase, rpc_name: str = METRICS_QUERY_RPC):
        self.supabase = supabase
        self.rpc_name = rpc_name

    async def __call__(self, sql: str, params: dict[str, Any]) -> list[dict]:
        sql = validate_readonly_sql(sql)
        try:
            result = await asyncio.to_thread(
                lambda: self.supabase.rpc(self.rpc_name, {
                    "query_sql": sql,
                    "query_params": params,
                }).execute()
            )
        except Exception as e:
            raise QueryExecutionError(f"{self.rpc_name} failed: {e}") from e

        rows = result.data if result.data else []

        # RPC returns JSONB as a string sometimes
        if isinstance(rows, str):
            try:
                rows = json.loads(rows)
            except ValueError as e:
                raise QueryExecutionError(f"{self.rpc_name} returned malformed JSON") from e
        if isinstance(rows, dict):
            rows = [rows]
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise QueryExecutionError(
                f"{self.rpc_name} returned {type(rows).__name__}, expected a list of rows"
            )
        logger.debug("%s returned %d rows", self.rpc_name, len(rows))
        return rows


# ── Shaping ──────────────────────────────────────────────────────────────

def coerce_number(value: Any) -> Optional[float]:
    """Best-effort numeric coercion for untyped RPC rows. None when not a number."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_bool(value: Any) -> bool:
    """Flags come back as bools, 0/1 or "true"/"false" depending on the RPC."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(coerce_number(value))


def _id(row: dict, key: str) -> Optional[str]:
    value = row.get(key)
    if value is None or value == "":
        return None
    return str(value)


def empty_result(breakdown: BreakdownType):
    return {
        BreakdownType.TOTAL: TotalResult,
        BreakdownType.REP: RepResult,
        BreakdownType.SETTER: SetterResult,
        BreakdownType.LINK: LinkResult,
        BreakdownType.TIME: TimeResult,
    }[breakdown]()


def shape_result(
    breakdown: BreakdownType,
    rows: list[dict],
    series: Optional[list[date]] = None,
    null_when_empty: bool = False,
):
    """Map raw rows onto the result model for ``breakdown``.

    Rows missing their key ids are dropped. For time results with a
    ``series``, output follows the series exactly; buckets absent from the
    rows become 0 (or None for ratio metrics).
    """
    rows = rows or []

    if breakdown == BreakdownType.TOTAL:
        value = coerce_number(rows[0].get("value")) if rows else None
        return TotalResult(data=TotalValue(value=value or 0))

    if breakdown == BreakdownType.REP:
        return RepResult(data=[
            RepRow(rep_id=rep_id, rep_name=row.get("rep_name"),
                   value=coerce_number(row.get("value")) or 0)
            for row in rows if (rep_id := _id(row, "rep_id"))
        ])

    if breakdown == BreakdownType.SETTER:
        return SetterResult(data=[
            SetterRow(setter_id=setter_id, setter_name=row.get("setter_name"),
                      value=coerce_number(row.get("value")) or 0)
            for row in rows if (setter_id := _id(row, "setter_id"))
        ])

    if breakdown == BreakdownType.LINK:
        data = []
        for row in rows:
            setter_id, rep_id = _id(row, "setter_id"), _id(row, "rep_id")
            if not setter_id or not rep_id:
                continue
            data.append(LinkRow(
                setter_id=setter_id, setter_name=row.get("setter_name"),
                rep_id=rep_id, rep_name=row.get("rep_name"),
                value=coerce_number(row.get("value")) or 0,
            ))
        return LinkResult(data=data)

    missing = None if null_when_empty else 0
    by_label: dict[str, Optional[float]] = {}
    for row in rows:
        label = row.get("date")
        if not label:
            continue
        value = coerce_number(row.get("value"))
        by_label[str(label)[:10]] = missing if value is None else value

    if series is None:
        return TimeResult(data=[TimeRow(date=k, value=v) for k, v in sorted(by_label.items())])
    return TimeResult(data=[
        TimeRow(date=d.isoformat(), value=by_label.get(d.isoformat(), missing))
        for d in series
    ])


def result_row_count(result) -> int:
    return 1 if result.type == "total" else len(result.data)
