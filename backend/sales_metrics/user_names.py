"""Display-name lookup for rep / setter / link results."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

from sales_metrics import LinkResult, RepResult, SetterResult

logger = logging.getLogger(__name__)


class NameResolver(Protocol):
    async def resolve(self, user_ids: Iterable[str]) -> dict[str, str]: ...


class ProfileNameResolver:
    """Reads ``profiles.full_name``. A lookup failure degrades to an empty map."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def resolve(self, user_ids: Iterable[str]) -> dict[str, str]:
        ids = sorted({str(u) for u in user_ids if u})
        if not ids:
            return {}
        try:
            result = await asyncio.to_thread(
                lambda: self.supabase.table("profiles").select(
                    "id,full_name"
                ).in_("id", ids).execute()
            )
        except Exception as e:
            logger.warning("profile name lookup failed for %d ids: %s", len(ids), e)
            return {}

        name_map: dict[str, str] = {}
        for row in (result.data or []):
            uid = str(row.get("id", "")).strip()
            name = (row.get("full_name") or "").strip()
            if uid and name:
                name_map[uid] = name
        return name_map


def resolve_name(user_id: str, name_map: dict[str, str]) -> str:
    """Display name for ``user_id``, or the raw id when unknown."""
    return name_map.get(user_id) or user_id


def result_user_ids(result) -> set[str]:
    if isinstance(result, RepResult):
        return {r.rep_id for r in result.data}
    if isinstance(result, SetterResult):
        return {r.setter_id for r in result.data}
    if isinstance(result, LinkResult):
        return {r.rep_id for r in result.data} | {r.setter_id for r in result.data}
    return set()


def apply_names(result, name_map: dict[str, str]):
    """Fill missing rep/setter names in place and return the result."""
    if isinstance(result, RepResult):
        for row in result.data:
            row.rep_name = row.rep_name or resolve_name(row.rep_id, name_map)
    elif isinstance(result, SetterResult):
        for row in result.data:
            row.setter_name = row.setter_name or resolve_name(row.setter_id, name_map)
    elif isinstance(result, LinkResult):
        for row in result.data:
            row.rep_name = row.rep_name or resolve_name(row.rep_id, name_map)
            row.setter_name = row.setter_name or resolve_name(row.setter_id, name_map)
    return result
