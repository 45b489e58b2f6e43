"""Hotswap deployments: short-circuit CloudFormation where the changes allow it."""

import logging
from typing import Any

from stackshift.artifact import StackArtifact
from stackshift.aws.session import AwsSession
from stackshift.diff import full_diff
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.classifier import classify_resource_changes
from stackshift.hotswap.common import HotswapPropertyOverrides
from stackshift.hotswap.executor import apply_all_hotswappable_changes
from stackshift.models import HotswapMode, NonHotswappableChange, SuccessfulDeployStackResult
from stackshift.nested import load_current_template_with_nested_stacks
from stackshift.stack import StackSnapshot

logger = logging.getLogger(__name__)


async def try_hotswap_deployment(
    session: AwsSession,
    parameters: dict[str, Any],
    stack: StackSnapshot,
    artifact: StackArtifact,
    mode: HotswapMode,
    overrides: HotswapPropertyOverrides | None = None,
) -> SuccessfulDeployStackResult | None:
    """Deploy by calling service APIs directly instead of through CloudFormation.

    Returns None when the changes cannot be hotswapped and a full deployment
    is needed (only in FALL_BACK mode). Nothing is applied in that case.
    """
    account = await session.current_account()
    cfn = session.cloudformation()
    current = await load_current_template_with_nested_stacks(artifact, cfn, await stack.template())

    evaluator = TemplateEvaluator(
        cfn,
        artifact.stack_name,
        artifact.template,
        parameters,
        account=account.account_id,
        region=session.region or "",
        partition=account.partition,
    )

    stack_changes = full_diff(current.deployed_root_template, artifact.template)
    classified = await classify_resource_changes(stack_changes, evaluator, current.nested_stacks, overrides)

    log_non_hotswappable_changes(classified.non_hotswappable, mode)

    if mode == HotswapMode.FALL_BACK and classified.non_hotswappable:
        return None

    await apply_all_hotswappable_changes(session, classified.hotswappable)

    return SuccessfulDeployStackResult(
        no_op=not classified.hotswappable,
        outputs=stack.outputs,
        stack_arn=stack.stack_id if stack.exists else "",
    )


def log_non_hotswappable_changes(changes: list[NonHotswappableChange], mode: HotswapMode) -> None:
    # In hotswap-only mode some changes are applied anyway and are not worth reporting
    if mode == HotswapMode.HOTSWAP_ONLY:
        changes = [c for c in changes if c.hotswap_only_visible]
    if not changes:
        return

    if mode == HotswapMode.HOTSWAP_ONLY:
        logger.warning(
            "The following non-hotswappable changes were found. "
            "To reconcile these using CloudFormation, specify --hotswap-fallback"
        )
    else:
        logger.warning("The following non-hotswappable changes were found:")

    for change in changes:
        if change.rejected_changes:
            logger.warning(
                "    logicalID: %s, type: %s, rejected changes: %s, reason: %s",
                change.logical_id,
                change.resource_type,
                ",".join(change.rejected_changes),
                change.reason,
            )
        else:
            logger.warning(
                "    logicalID: %s, type: %s, reason: %s", change.logical_id, change.resource_type, change.reason
            )
