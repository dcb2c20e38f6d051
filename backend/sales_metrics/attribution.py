"""
Attribution variant generator
=============================
A metric over appointments can be credited to the sales rep who ran the call
or to the setter who booked it; a dial metric is credited to whoever dialed.
Each base metric therefore expands into a *family*:

    total_appointments            (legacy, role-dependent in the data view)
    total_appointments_assigned   (owner column: sales_rep_user_id)
    total_appointments_booked     (owner column: setter_user_id)

Pure functions only; the registry calls them once at import time.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping, Optional

from sales_metrics import AttributionContext

if TYPE_CHECKING:
    from sales_metrics.registry import MetricDefinition


@dataclass(frozen=True)
class AttributionSpec:
    context: AttributionContext
    label: str
    description: str
    owner_column: str
    suffix: str


ATTRIBUTION_CONTEXTS: dict[AttributionContext, AttributionSpec] = {
    AttributionContext.ASSIGNED: AttributionSpec(
        context=AttributionContext.ASSIGNED,
        label="Assigned",
        description="Attributed to the assigned sales rep (sales_rep_user_id)",
        owner_column="sales_rep_user_id",
        suffix="_assigned",
    ),
    AttributionContext.BOOKED: AttributionSpec(
        context=AttributionContext.BOOKED,
        label="Booked",
        description="Attributed to the person who booked it (setter_user_id)",
        owner_column="setter_user_id",
        suffix="_booked",
    ),
    AttributionContext.DIALER: AttributionSpec(
        context=AttributionContext.DIALER,
        label="Dialer",
        description="Attributed to the person who made the dial (setter_user_id)",
        owner_column="setter_user_id",
        suffix="_dialer",
    ),
}

_TABLE_ATTRIBUTIONS: dict[str, tuple[AttributionContext, ...]] = {
    "appointments": (AttributionContext.ASSIGNED, AttributionContext.BOOKED),
    "discoveries": (AttributionContext.ASSIGNED, AttributionContext.BOOKED),
    "dials": (AttributionContext.DIALER,),
}


def get_applicable_attributions(table: str) -> list[AttributionContext]:
    """Contexts that make sense for ``table``. Empty for account-only tables."""
    return list(_TABLE_ATTRIBUTIONS.get(table, ()))


def owner_column_for(context: Optional[AttributionContext]) -> Optional[str]:
    if context is None:
        return None
    return ATTRIBUTION_CONTEXTS[context].owner_column


def generate_attribution_variants(
    base_key: str,
    definition: "MetricDefinition",
) -> dict[str, "MetricDefinition"]:
    """Expand one base definition into its attributed clones plus the legacy form.

    The legacy entry keeps ``attribution_context=None`` and the base name so
    existing dashboards referencing the unsuffixed key keep working.
    """
    contexts = get_applicable_attributions(definition.table)
    options = dict(definition.options)
    if contexts:
        options["attribution"] = tuple(c.value for c in contexts)

    variants: dict[str, "MetricDefinition"] = {}
    for context in contexts:
        spec = ATTRIBUTION_CONTEXTS[context]
        key = f"{base_key}{spec.suffix}"
        variants[key] = dataclasses.replace(
            definition,
            key=key,
            name=f"{definition.name} ({spec.label})",
            description=f"{definition.description} - {spec.description}",
            attribution_context=context,
            options=options,
        )

    variants[base_key] = dataclasses.replace(
        definition, key=base_key, attribution_context=None, options=options,
    )
    return variants


def create_metric_families(
    base_catalog: Mapping[str, "MetricDefinition"],
) -> dict[str, "MetricDefinition"]:
    families: dict[str, "MetricDefinition"] = {}
    for base_key, definition in base_catalog.items():
        families.update(generate_attribution_variants(base_key, definition))
    return families


def get_attribution_from_metric_name(metric_name: str) -> Optional[AttributionContext]:
    for context, spec in ATTRIBUTION_CONTEXTS.items():
        if metric_name.endswith(spec.suffix):
            return context
    return None


def get_base_metric_name(metric_name: str) -> str:
    """Strip exactly one trailing attribution suffix, if present."""
    for spec in ATTRIBUTION_CONTEXTS.values():
        if metric_name.endswith(spec.suffix):
            return metric_name[: -len(spec.suffix)]
    return metric_name
