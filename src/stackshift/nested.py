"""Loading the deployed and generated templates of nested stacks."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stackshift.artifact import StackArtifact
from stackshift.aws.client import CloudFormationClient
from stackshift.errors import NestedStackError
from stackshift.serialize import deserialize_structure

logger = logging.getLogger(__name__)

NESTED_STACK_TYPE = "AWS::CloudFormation::Stack"
ASSET_PATH_METADATA = "aws:asset:path"


@dataclass
class NestedStackTemplates:
    """Deployed and generated templates of a nested stack, recursively."""

    physical_name: str | None
    deployed_template: dict[str, Any]
    generated_template: dict[str, Any]
    nested_stack_templates: dict[str, "NestedStackTemplates"] = field(default_factory=dict)


@dataclass
class RootTemplateWithNestedStacks:
    deployed_root_template: dict[str, Any]
    nested_stacks: dict[str, NestedStackTemplates]


def is_managed_nested_stack(resource: dict[str, Any]) -> bool:
    """Whether a resource is a nested stack whose template ships with the artifact."""
    return resource.get("Type") == NESTED_STACK_TYPE and bool(
        (resource.get("Metadata") or {}).get(ASSET_PATH_METADATA)
    )


def stack_name_from_arn(stack_arn: str) -> str:
    # arn:aws:cloudformation:<region>:<account>:stack/<name>/<uuid>
    return stack_arn.split("/")[1]


async def load_current_template_with_nested_stacks(
    root: StackArtifact,
    cfn: CloudFormationClient,
    deployed_template: dict[str, Any],
) -> RootTemplateWithNestedStacks:
    """Collect the templates of every nested stack below the root stack."""
    nested_stacks = await _load_nested_stacks(
        root,
        cfn,
        generated_template=root.template,
        deployed_stack_name=root.stack_name,
    )
    return RootTemplateWithNestedStacks(deployed_template, nested_stacks)


async def _load_nested_stacks(
    root: StackArtifact,
    cfn: CloudFormationClient,
    generated_template: dict[str, Any],
    deployed_stack_name: str | None,
) -> dict[str, NestedStackTemplates]:
    nested_stacks: dict[str, NestedStackTemplates] = {}
    physical_ids: dict[str, str] | None = None

    for logical_id, resource in (generated_template.get("Resources") or {}).items():
        if not is_managed_nested_stack(resource):
            continue

        asset_path = root.directory / resource["Metadata"][ASSET_PATH_METADATA]
        if not Path(asset_path).is_file():
            raise NestedStackError(
                f"Template for nested stack '{logical_id}' not found at {asset_path}"
            )
        generated_nested_template = deserialize_structure(Path(asset_path).read_text())

        if physical_ids is None:
            physical_ids = {}
            if deployed_stack_name:
                for summary in await cfn.list_stack_resources(deployed_stack_name):
                    if summary.get("PhysicalResourceId"):
                        physical_ids[summary["LogicalResourceId"]] = summary["PhysicalResourceId"]

        nested_stack_arn = physical_ids.get(logical_id)
        nested_stack_name = stack_name_from_arn(nested_stack_arn) if nested_stack_arn else None
        deployed_nested_template: dict[str, Any] = {}
        if nested_stack_name:
            deployed_nested_template = await cfn.get_template(nested_stack_name)
        logger.debug("Loaded templates of nested stack %s (%s)", logical_id, nested_stack_name or "not deployed")

        nested_stacks[logical_id] = NestedStackTemplates(
            physical_name=nested_stack_name,
            deployed_template=deployed_nested_template,
            generated_template=generated_nested_template,
            nested_stack_templates=await _load_nested_stacks(
                root, cfn, generated_nested_template, nested_stack_name
            ),
        )

    return nested_stacks
