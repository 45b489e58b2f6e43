"""Classification of template changes into hotswappable and non-hotswappable ones."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

from stackshift.diff import TemplateDiff, full_diff
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.appsync import is_hotswappable_appsync_change
from stackshift.hotswap.codebuild_projects import is_hotswappable_codebuild_project_change
from stackshift.hotswap.common import (
    UNSUPPORTED_RESOURCE_REASON,
    HotswapPropertyOverrides,
    report_non_hotswappable_change,
    report_non_hotswappable_resource,
)
from stackshift.hotswap.ecs_services import is_hotswappable_ecs_service_change
from stackshift.hotswap.lambda_functions import is_hotswappable_lambda_function_change
from stackshift.hotswap.s3_bucket_deployments import (
    is_hotswappable_s3_bucket_deployment_change,
    skip_change_for_s3_deploy_custom_resource_policy,
)
from stackshift.hotswap.stepfunctions import is_hotswappable_state_machine_change
from stackshift.models import (
    ClassifiedChange,
    ClassifiedChanges,
    HotswappableChange,
    NonHotswappableChange,
    ResourceDifference,
)
from stackshift.nested import NESTED_STACK_TYPE, NestedStackTemplates

logger = logging.getLogger(__name__)

Detector = Callable[
    [str, ResourceDifference, TemplateEvaluator, HotswapPropertyOverrides],
    Awaitable[list[ClassifiedChange]],
]


async def _iam_policy_detector(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides,
) -> list[ClassifiedChange]:
    # The bucket deployment handler's policy changes along with the assets it copies
    if await skip_change_for_s3_deploy_custom_resource_policy(logical_id, change, evaluator):
        return []
    return report_non_hotswappable_resource(change, UNSUPPORTED_RESOURCE_REASON)


async def _metadata_detector(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides,
) -> list[ClassifiedChange]:
    return []


RESOURCE_DETECTORS: dict[str, Detector] = {
    # Lambda
    "AWS::Lambda::Function": is_hotswappable_lambda_function_change,
    "AWS::Lambda::Version": is_hotswappable_lambda_function_change,
    "AWS::Lambda::Alias": is_hotswappable_lambda_function_change,
    # AppSync
    "AWS::AppSync::Resolver": is_hotswappable_appsync_change,
    "AWS::AppSync::FunctionConfiguration": is_hotswappable_appsync_change,
    "AWS::AppSync::GraphQLSchema": is_hotswappable_appsync_change,
    "AWS::AppSync::ApiKey": is_hotswappable_appsync_change,
    "AWS::ECS::TaskDefinition": is_hotswappable_ecs_service_change,
    "AWS::CodeBuild::Project": is_hotswappable_codebuild_project_change,
    "AWS::StepFunctions::StateMachine": is_hotswappable_state_machine_change,
    "Custom::CDKBucketDeployment": is_hotswappable_s3_bucket_deployment_change,
    "AWS::IAM::Policy": _iam_policy_detector,
    "AWS::CDK::Metadata": _metadata_detector,
}


async def classify_resource_changes(
    stack_changes: TemplateDiff,
    evaluator: TemplateEvaluator,
    nested_stacks: dict[str, NestedStackTemplates],
    overrides: HotswapPropertyOverrides | None = None,
) -> ClassifiedChanges:
    """Classify every changed resource and output of a diff.

    Metadata-only resources are in neither list of the result.
    """
    overrides = overrides or HotswapPropertyOverrides()
    hotswappable: list[HotswappableChange] = []
    non_hotswappable: list[NonHotswappableChange] = []

    for logical_id in stack_changes.outputs:
        non_hotswappable.append(
            NonHotswappableChange(
                resource_type="Stack Output",
                logical_id=logical_id,
                reason="output was changed",
            )
        )

    detections = []
    for logical_id, change in collapse_renames(stack_changes.resources).items():
        if change.old_resource_type == NESTED_STACK_TYPE and change.new_resource_type == NESTED_STACK_TYPE:
            nested = await find_nested_hotswappable_changes(logical_id, change, nested_stacks, evaluator, overrides)
            hotswappable.extend(nested.hotswappable)
            non_hotswappable.extend(nested.non_hotswappable)
            continue

        rejection = reject_non_candidate(logical_id, change)
        if rejection is not None:
            non_hotswappable.append(rejection)
            continue

        detector = RESOURCE_DETECTORS.get(change.new_resource_type or "")
        if detector is None:
            report_non_hotswappable_change(non_hotswappable, change, None, UNSUPPORTED_RESOURCE_REASON)
            continue
        detections.append(detector(logical_id, change, evaluator, overrides))

    for results in await asyncio.gather(*detections):
        for result in results:
            if isinstance(result, HotswappableChange):
                hotswappable.append(result)
            else:
                non_hotswappable.append(result)

    return ClassifiedChanges(hotswappable=hotswappable, non_hotswappable=non_hotswappable)


def collapse_renames(changes: dict[str, ResourceDifference]) -> dict[str, ResourceDifference]:
    """Merge removal/addition pairs that only rename a logical ID into one difference.

    The pair becomes a single difference keyed by the new logical ID, carrying the
    removed resource's old value, so it is classified like an in-place change.
    """
    removals = {k: v for k, v in changes.items() if v.is_removal}
    non_removals = {k: v for k, v in changes.items() if not v.is_removal}

    for logical_id, change in list(non_removals.items()):
        if not change.is_addition:
            continue
        match = next(
            (
                (removed_id, removed)
                for removed_id, removed in removals.items()
                if changes_are_for_same_resource(removed, change)
            ),
            None,
        )
        if match is not None:
            removed_id, removed = match
            non_removals[logical_id] = make_rename_difference(logical_id, removed, change)
            del removals[removed_id]

    return {**removals, **non_removals}


def changes_are_for_same_resource(removal: ResourceDifference, addition: ResourceDifference) -> bool:
    return removal.old_resource_type == addition.new_resource_type and json.dumps(
        removal.old_properties, sort_keys=True
    ) == json.dumps(addition.new_properties, sort_keys=True)


def make_rename_difference(
    logical_id: str, removal: ResourceDifference, addition: ResourceDifference
) -> ResourceDifference:
    return ResourceDifference(
        logical_id=logical_id,
        old_value=removal.old_value,
        new_value=addition.new_value,
        property_diffs=addition.property_diffs,
        other_diffs=addition.other_diffs,
    )


def reject_non_candidate(logical_id: str, change: ResourceDifference) -> NonHotswappableChange | None:
    """Judge additions, removals and type changes, which no detector can hotswap."""
    if change.old_value is None:
        return NonHotswappableChange(
            resource_type=change.new_resource_type or "",
            logical_id=logical_id,
            reason=f"resource '{logical_id}' was created by this deployment",
        )
    if change.new_value is None:
        return NonHotswappableChange(
            resource_type=change.old_resource_type or "",
            logical_id=logical_id,
            reason=f"resource '{logical_id}' was destroyed by this deployment",
        )
    if change.old_resource_type != change.new_resource_type:
        return NonHotswappableChange(
            resource_type=change.new_resource_type or "",
            logical_id=logical_id,
            reason=(
                f"resource '{logical_id}' had its type changed from "
                f"'{change.old_resource_type}' to '{change.new_resource_type}'"
            ),
        )
    return None


async def find_nested_hotswappable_changes(
    logical_id: str,
    change: ResourceDifference,
    nested_stacks: dict[str, NestedStackTemplates],
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides,
) -> ClassifiedChanges:
    """Classify the changes inside a nested stack with the same detectors."""
    nested_stack = nested_stacks.get(logical_id)
    if nested_stack is None:
        # Only nested stacks whose template ships with the artifact can be compared
        return ClassifiedChanges(
            hotswappable=[],
            non_hotswappable=report_non_hotswappable_resource(change, UNSUPPORTED_RESOURCE_REASON),
        )
    if not nested_stack.physical_name:
        return ClassifiedChanges(
            hotswappable=[],
            non_hotswappable=[
                NonHotswappableChange(
                    resource_type=NESTED_STACK_TYPE,
                    logical_id=logical_id,
                    reason=(
                        f"physical name for AWS::CloudFormation::Stack '{logical_id}' could not be found "
                        "in CloudFormation, so this is a newly created nested stack and cannot be hotswapped"
                    ),
                )
            ],
        )

    nested_evaluator = await evaluator.create_nested(
        nested_stack.physical_name,
        nested_stack.generated_template,
        (change.new_properties or {}).get("Parameters"),
    )
    nested_diff = full_diff(nested_stack.deployed_template, nested_stack.generated_template)
    logger.debug("Classifying %d changed resources of nested stack %s", len(nested_diff.resources), logical_id)
    return await classify_resource_changes(
        nested_diff, nested_evaluator, nested_stack.nested_stack_templates, overrides
    )
