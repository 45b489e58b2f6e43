"""Hotswap detector for CodeBuild projects."""

import asyncio
from typing import Any

from stackshift.aws.session import AwsSession
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.common import (
    HotswapPropertyOverrides,
    classify_changes,
    lower_case_first_character,
    transform_object_keys,
)
from stackshift.models import ClassifiedChange, HotswappableChange, ResourceDifference


def _source_key_to_sdk_key(key: str) -> str:
    # BuildSpec is spelled "buildspec" in the SDK
    if key.lower() == "buildspec":
        return key.lower()
    return lower_case_first_character(key)


async def is_hotswappable_codebuild_project_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    if change.new_resource_type != "AWS::CodeBuild::Project":
        return []

    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, ["Source", "Environment", "SourceVersion"])
    if classified.report_non_hotswappable_property_changes(ret):
        return ret
    if not classified.hotswappable_props:
        return ret

    project_name = await evaluator.establish_physical_name(logical_id, (change.new_properties or {}).get("Name"))

    async def apply(session: AwsSession) -> None:
        if not project_name:
            return
        request: dict[str, Any] = {"name": project_name}
        for name, diff in classified.hotswappable_props.items():
            value = await evaluator.evaluate(diff.new_value)
            if name == "Source":
                request["source"] = transform_object_keys(value, _source_key_to_sdk_key)
            elif name == "Environment":
                request["environment"] = transform_object_keys(value, lower_case_first_character)
            elif name == "SourceVersion":
                request["sourceVersion"] = value
        await asyncio.to_thread(session.codebuild().update_project, **request)

    ret.append(
        HotswappableChange(
            resource_type=change.new_resource_type,
            props_changed=classified.names_of_hotswappable_props,
            service="codebuild",
            resource_names=[f"CodeBuild Project '{project_name}'"],
            apply=apply,
        )
    )
    return ret
