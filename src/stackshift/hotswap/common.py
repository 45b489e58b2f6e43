"""Helpers shared by the hotswap detectors."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stackshift.models import NonHotswappableChange, ResourceDifference

UNSUPPORTED_RESOURCE_REASON = "This resource type is not supported for hotswap deployments"


@dataclass(frozen=True)
class EcsHotswapProperties:
    """Deployment configuration used when hotswap redeploys an ECS service."""

    minimum_healthy_percent: int | None = None
    maximum_healthy_percent: int | None = None

    def __post_init__(self):
        if self.minimum_healthy_percent is not None and self.minimum_healthy_percent < 0:
            raise ValueError("hotswap-ecs-minimum-healthy-percent can't be a negative number")
        if self.maximum_healthy_percent is not None and self.maximum_healthy_percent < 0:
            raise ValueError("hotswap-ecs-maximum-healthy-percent can't be a negative number")

    def is_empty(self) -> bool:
        return self.minimum_healthy_percent is None and self.maximum_healthy_percent is None


@dataclass(frozen=True)
class HotswapPropertyOverrides:
    """User overrides for properties hotswap would otherwise pick itself."""

    ecs_hotswap_properties: EcsHotswapProperties = field(default_factory=EcsHotswapProperties)


@dataclass(frozen=True)
class ClassifiedProperties:
    """The changed properties of one resource, split by the detector's allow-list."""

    change: ResourceDifference
    hotswappable_props: dict[str, Any]
    non_hotswappable_props: list[str]

    @property
    def names_of_hotswappable_props(self) -> list[str]:
        return list(self.hotswappable_props)

    def report_non_hotswappable_property_changes(self, ret: list) -> bool:
        """Add a non-hotswappable change to ``ret`` if any property is outside the allow-list.

        Returns True when the resource was rejected.
        """
        if not self.non_hotswappable_props:
            return False
        if self.non_hotswappable_props == ["Tags"]:
            reason = "Tags are not hotswappable"
        else:
            reason = (
                f"resource properties '{','.join(self.non_hotswappable_props)}' "
                "are not hotswappable on this resource type"
            )
        report_non_hotswappable_change(ret, self.change, self.non_hotswappable_props, reason)
        return True


def classify_changes(change: ResourceDifference, hotswappable_prop_names: list[str]) -> ClassifiedProperties:
    """Split a resource's changed properties into allowed and rejected ones."""
    hotswappable_props = {}
    non_hotswappable_props = []
    for name, diff in change.property_diffs.items():
        if name in hotswappable_prop_names:
            hotswappable_props[name] = diff
        else:
            non_hotswappable_props.append(name)
    return ClassifiedProperties(change, hotswappable_props, non_hotswappable_props)


def report_non_hotswappable_change(
    ret: list,
    change: ResourceDifference,
    non_hotswappable_props: list[str] | None,
    reason: str,
    hotswap_only_visible: bool = True,
) -> None:
    ret.append(
        NonHotswappableChange(
            resource_type=change.new_resource_type or change.old_resource_type or "",
            logical_id=change.logical_id,
            reason=reason,
            rejected_changes=list(
                non_hotswappable_props if non_hotswappable_props is not None else change.property_diffs
            ),
            hotswap_only_visible=hotswap_only_visible,
        )
    )


def report_non_hotswappable_resource(change: ResourceDifference, reason: str) -> list[NonHotswappableChange]:
    ret: list[NonHotswappableChange] = []
    report_non_hotswappable_change(ret, change, None, reason)
    return ret


def lower_case_first_character(value: str) -> str:
    return value[:1].lower() + value[1:] if value else value


def transform_object_keys(
    value: Any,
    transform: Callable[[str], str],
    keep_case: dict[str, Any] | None = None,
) -> Any:
    """Recursively rename the keys of a structure, e.g. CloudFormation to SDK casing.

    ``keep_case`` mirrors the structure and marks (with True) the maps whose keys
    are user data and must not be renamed.
    """
    if isinstance(value, list):
        return [transform_object_keys(v, transform, keep_case) for v in value]
    if not isinstance(value, dict):
        return value

    result = {}
    for key, child in value.items():
        child_rules = (keep_case or {}).get(key)
        if child_rules is True:
            result[transform(key)] = child
        else:
            result[transform(key)] = transform_object_keys(
                child, transform, child_rules if isinstance(child_rules, dict) else None
            )
    return result


def stringify_values(value: Any) -> Any:
    """Turn every scalar into a string, the way CloudFormation passes custom resource properties."""
    if isinstance(value, list):
        return [stringify_values(v) for v in value]
    if isinstance(value, dict):
        return {k: stringify_values(v) for k, v in value.items()}
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return value
    return str(value)
