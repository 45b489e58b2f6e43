"""Structural differences between two CloudFormation templates."""

from dataclasses import dataclass, field
from typing import Any

from stackshift.models import PropertyDifference, ResourceDifference


@dataclass
class TemplateDiff:
    """Changed resources and outputs between a deployed and a desired template."""

    resources: dict[str, ResourceDifference] = field(default_factory=dict)
    outputs: dict[str, PropertyDifference] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.resources and not self.outputs


def _diff_maps(old: dict[str, Any], new: dict[str, Any]) -> dict[str, PropertyDifference]:
    diffs = {}
    for key in {**old, **new}:
        old_value = old.get(key)
        new_value = new.get(key)
        if old_value != new_value:
            diffs[key] = PropertyDifference(old_value, new_value)
    return diffs


def diff_resource(
    logical_id: str,
    old_value: dict[str, Any] | None,
    new_value: dict[str, Any] | None,
) -> ResourceDifference:
    """Compare one resource's old and new definition."""
    old_props = (old_value or {}).get("Properties") or {}
    new_props = (new_value or {}).get("Properties") or {}
    old_other = {k: v for k, v in (old_value or {}).items() if k not in ("Type", "Properties")}
    new_other = {k: v for k, v in (new_value or {}).items() if k not in ("Type", "Properties")}

    return ResourceDifference(
        logical_id=logical_id,
        old_value=old_value,
        new_value=new_value,
        property_diffs=_diff_maps(old_props, new_props),
        other_diffs=_diff_maps(old_other, new_other),
    )


def full_diff(current_template: dict[str, Any], new_template: dict[str, Any]) -> TemplateDiff:
    """Diff the Resources and Outputs sections of two templates.

    Only entries that differ are included; unchanged resources and outputs are
    left out entirely.
    """
    old_resources = current_template.get("Resources") or {}
    new_resources = new_template.get("Resources") or {}

    resources = {}
    for logical_id in {**old_resources, **new_resources}:
        old_value = old_resources.get(logical_id)
        new_value = new_resources.get(logical_id)
        if old_value == new_value:
            continue
        resources[logical_id] = diff_resource(logical_id, old_value, new_value)

    outputs = _diff_maps(current_template.get("Outputs") or {}, new_template.get("Outputs") or {})

    return TemplateDiff(resources=resources, outputs=outputs)
