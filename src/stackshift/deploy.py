"""Deploying a stack: skip, hotswap, or a full CloudFormation deployment."""

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rich.console import Console

from stackshift.artifact import StackArtifact
from stackshift.aws.session import AwsSession
from stackshift.errors import CfnEvaluationError, ConfigurationError, DeploymentError, NoUpdatesToPerformError
from stackshift.hotswap.common import HotswapPropertyOverrides
from stackshift.hotswap.deployments import try_hotswap_deployment
from stackshift.models import (
    ChangeSetDeployment,
    ChangeSetDescription,
    DeploymentMethod,
    DeployStackResult,
    DirectDeployment,
    HotswapMode,
    NeedRollbackFirstDeployStackResult,
    ParameterChanges,
    ReplacementRequiresNoRollbackStackResult,
    RollbackReason,
    StackActivityProgress,
    SuccessfulDeployStackResult,
)
from stackshift.monitor.activity import StackActivityMonitor
from stackshift.parameters import ParameterValues, TemplateParameters
from stackshift.serialize import to_canonical_json
from stackshift.stack import (
    DEFAULT_POLL_INTERVAL,
    StackSnapshot,
    wait_for_change_set,
    wait_for_stack_delete,
    wait_for_stack_deploy,
)

logger = logging.getLogger(__name__)

CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]

FORCE_NO_CHANGES_WARNING = (
    "You used the --force flag, but CloudFormation reported that the deployment would not make any changes.\n"
    "According to CloudFormation, all resources are already up-to-date with the state in your template.\n"
    "\n"
    "You cannot use the --force flag to get rid of changes you made in the console. Try using\n"
    "CloudFormation drift detection instead: "
    "https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/using-cfn-stack-drift.html"
)


@dataclass
class DeployStackOptions:
    """Everything a single stack deployment needs."""

    stack: StackArtifact
    session: AwsSession
    # Name to deploy under, if different from the artifact's stack name
    deploy_name: str | None = None
    parameters: dict[str, str | None] = field(default_factory=dict)
    use_previous_parameters: bool = True
    notification_arns: list[str] | None = None
    tags: list[dict[str, str]] | None = None
    role_arn: str | None = None
    deployment_method: DeploymentMethod = field(default_factory=ChangeSetDeployment)
    force: bool = False
    quiet: bool = False
    ci: bool = False
    progress: StackActivityProgress = StackActivityProgress.BAR
    rollback: bool = True
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    hotswap_property_overrides: HotswapPropertyOverrides | None = None
    resources_to_import: list[dict[str, Any]] | None = None
    extra_user_agent: str | None = None
    publish_assets: Callable[[StackArtifact], Awaitable[None]] | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    console: Console | None = None

    @property
    def stack_name(self) -> str:
        return self.deploy_name or self.stack.stack_name


async def deploy_stack(options: DeployStackOptions) -> DeployStackResult:
    """Bring the stack in line with the artifact, doing as little as possible."""
    options.session.append_custom_user_agent(options.extra_user_agent)
    cfn = options.session.cloudformation()
    stack_name = options.stack_name

    stack = await StackSnapshot.lookup(cfn, stack_name)
    if stack.status.is_creation_failure:
        logger.debug(
            "Found existing stack %s that had previously failed creation. Deleting it before attempting to re-create it.",
            stack_name,
        )
        await cfn.delete_stack(stack_name)
        deleted = await wait_for_stack_delete(cfn, stack_name, options.poll_interval)
        if deleted is not None and deleted.status.name != "DELETE_COMPLETE":
            raise DeploymentError(
                f"Failed deleting stack {stack_name} that had previously failed creation "
                f"(current state: {deleted.status})"
            )
        # We just deleted it, no need to ask CloudFormation
        stack = StackSnapshot.does_not_exist(cfn, stack_name)

    template_params = TemplateParameters.from_template(options.stack.template)
    if options.use_previous_parameters:
        stack_params = template_params.update_existing(options.parameters, stack.parameters)
    else:
        stack_params = template_params.supply_all(options.parameters)

    if await can_skip_deploy(options, stack, stack_params.has_changes(stack.parameters)):
        logger.debug("%s: skipping deployment (use --force to override)", stack_name)
        if options.hotswap != HotswapMode.FULL_DEPLOYMENT:
            logger.info("hotswap deployment skipped - no changes were detected (use --force to override)")
        return SuccessfulDeployStackResult(no_op=True, outputs=stack.outputs, stack_arn=stack.stack_id)
    logger.debug("%s: deploying...", stack_name)

    if options.publish_assets is not None:
        await options.publish_assets(options.stack)

    if options.hotswap != HotswapMode.FULL_DEPLOYMENT:
        try:
            result = await try_hotswap_deployment(
                options.session,
                stack_params.values,
                stack,
                options.stack,
                options.hotswap,
                options.hotswap_property_overrides,
            )
            if result is not None:
                return result
            logger.info(
                "Could not perform a hotswap deployment, as the stack %s contains non-Asset changes",
                options.stack.name,
            )
        except CfnEvaluationError as err:
            logger.info(
                "Could not perform a hotswap deployment, because the CloudFormation template could not be resolved: %s",
                err,
            )

        if options.hotswap == HotswapMode.FALL_BACK:
            logger.info("Falling back to doing a full deployment")
            options.session.append_custom_user_agent("cdk-hotswap/fallback")
        else:
            return SuccessfulDeployStackResult(
                no_op=True,
                outputs=stack.outputs,
                stack_arn=stack.stack_id if stack.exists else "",
            )

    deployment = FullCloudFormationDeployment(options, stack, stack_params)
    return await deployment.perform_deployment()


class FullCloudFormationDeployment:
    """A deployment through CloudFormation, by change set or by direct update."""

    def __init__(self, options: DeployStackOptions, stack: StackSnapshot, stack_params: ParameterValues):
        self.options = options
        self.stack = stack
        self.stack_params = stack_params
        self.artifact = options.stack
        self.cfn = options.session.cloudformation()
        self.stack_name = options.stack_name
        # A stack left in REVIEW_IN_PROGRESS never got created
        self.update = stack.exists and not stack.status.is_review_in_progress
        self.verb = "update" if self.update else "create"
        self.uuid = str(uuid.uuid4())

    async def perform_deployment(self) -> DeployStackResult:
        method = self.options.deployment_method
        if isinstance(method, DirectDeployment) and self.options.resources_to_import:
            raise ConfigurationError("Importing resources requires a changeset deployment")
        if isinstance(method, DirectDeployment):
            return await self.direct_deployment()
        return await self.change_set_deployment(method)

    async def change_set_deployment(self, method: ChangeSetDeployment) -> DeployStackResult:
        change_set = await self.create_change_set(method.change_set_name, method.execute)
        await self.update_termination_protection()

        if change_set.has_no_changes:
            logger.debug("No changes are to be performed on %s.", self.stack_name)
            if method.execute:
                logger.debug("Deleting empty change set %s", change_set.change_set_id)
                await self.cfn.delete_change_set(self.stack_name, method.change_set_name)
            if self.options.force:
                logger.warning(FORCE_NO_CHANGES_WARNING)
            return SuccessfulDeployStackResult(no_op=True, outputs=self.stack.outputs, stack_arn=change_set.stack_id)

        if not method.execute:
            logger.info(
                "Changeset %s created and waiting in review for manual execution (--no-execute)",
                change_set.change_set_id,
            )
            return SuccessfulDeployStackResult(no_op=False, outputs=self.stack.outputs, stack_arn=change_set.stack_id)

        replacement = change_set.has_replacement
        paused = self.stack.status.is_rollbackable
        rollback = self.options.rollback
        if paused and replacement:
            return NeedRollbackFirstDeployStackResult(RollbackReason.REPLACEMENT)
        if paused and not rollback:
            return NeedRollbackFirstDeployStackResult(RollbackReason.NOT_NO_ROLLBACK)
        if not rollback and replacement:
            return ReplacementRequiresNoRollbackStackResult()

        return await self.execute_change_set(change_set)

    async def create_change_set(self, change_set_name: str, will_execute: bool) -> ChangeSetDescription:
        await self.cleanup_old_change_set(change_set_name)

        logger.debug(
            "Attempting to create ChangeSet with name %s to %s stack %s", change_set_name, self.verb, self.stack_name
        )
        logger.info("%s: creating CloudFormation changeset...", self.stack_name)
        if self.options.resources_to_import:
            change_set_type = "IMPORT"
        else:
            change_set_type = "UPDATE" if self.update else "CREATE"

        change_set_id = await self.cfn.create_change_set(
            ChangeSetName=change_set_name,
            ChangeSetType=change_set_type,
            ResourcesToImport=self.options.resources_to_import,
            Description=f"CDK Changeset for execution {self.uuid}",
            ClientToken=f"create{self.uuid}",
            **self.common_prepare_options(),
        )
        logger.debug("Initiated creation of changeset: %s; waiting for it to finish creating...", change_set_id)
        # All pages are needed to know the number of changes for the progress bar
        return await wait_for_change_set(
            self.cfn, self.stack_name, change_set_name, fetch_all=will_execute, interval=self.options.poll_interval
        )

    async def execute_change_set(self, change_set: ChangeSetDescription) -> SuccessfulDeployStackResult:
        logger.debug("Initiating execution of changeset %s on stack %s", change_set.change_set_id, self.stack_name)
        await self.cfn.execute_change_set(
            StackName=self.stack_name,
            ChangeSetName=change_set.change_set_name,
            ClientRequestToken=f"exec{self.uuid}",
            **self.common_execute_options(),
        )
        logger.debug(
            "Execution of changeset %s on stack %s has started; waiting for the update to complete...",
            change_set.change_set_id,
            self.stack_name,
        )
        # Updates emit one extra event for the stack itself
        expected_changes = len(change_set.changes) + (1 if self.update else 0)
        return await self.monitor_deployment(change_set.creation_time, expected_changes)

    async def cleanup_old_change_set(self, change_set_name: str) -> None:
        # Change set names must be unique; the delete succeeds whenever the stack exists
        if self.stack.exists:
            logger.debug("Removing existing change set with name %s if it exists", change_set_name)
            await self.cfn.delete_change_set(self.stack_name, change_set_name)

    async def update_termination_protection(self) -> None:
        termination_protection = self.artifact.termination_protection
        if self.stack.termination_protection != termination_protection:
            logger.debug(
                "Updating termination protection from %s to %s for stack %s",
                self.stack.termination_protection,
                termination_protection,
                self.stack_name,
            )
            await self.cfn.update_termination_protection(self.stack_name, termination_protection)

    async def direct_deployment(self) -> SuccessfulDeployStackResult:
        logger.info("%s: %s stack...", self.stack_name, "updating" if self.update else "creating")
        start_time = datetime.now(UTC)

        if self.update:
            await self.update_termination_protection()
            try:
                await self.cfn.update_stack(
                    ClientRequestToken=f"update{self.uuid}",
                    **self.common_prepare_options(),
                    **self.common_execute_options(),
                )
            except NoUpdatesToPerformError:
                logger.debug("No updates are to be performed for stack %s", self.stack_name)
                return SuccessfulDeployStackResult(
                    no_op=True, outputs=self.stack.outputs, stack_arn=self.stack.stack_id
                )
            return await self.monitor_deployment(start_time, None)

        # Termination protection can be set as part of the creation
        await self.cfn.create_stack(
            ClientRequestToken=f"create{self.uuid}",
            EnableTerminationProtection=True if self.artifact.termination_protection else None,
            **self.common_prepare_options(),
            **self.common_execute_options(),
        )
        return await self.monitor_deployment(start_time, None)

    async def monitor_deployment(
        self, start_time: datetime | None, expected_changes: int | None
    ) -> SuccessfulDeployStackResult:
        monitor = None
        if not self.options.quiet:
            monitor = StackActivityMonitor.with_default_printer(
                self.cfn,
                self.stack_name,
                self.artifact,
                resources_total=expected_changes,
                progress=self.options.progress,
                ci=self.options.ci,
                verbose=logger.isEnabledFor(logging.DEBUG),
                change_set_creation_time=start_time,
                console=self.options.console,
            ).start()

        try:
            final_state = await wait_for_stack_deploy(self.cfn, self.stack_name, self.options.poll_interval)
            if final_state is None:
                raise DeploymentError("Stack deploy failed (the stack disappeared while we were deploying it)")
        except Exception as err:
            if monitor is not None:
                # Failure reasons often arrive after the final stack status
                await monitor.stop()
            raise DeploymentError(suffix_with_errors(str(err), monitor.errors if monitor else None)) from err
        finally:
            if monitor is not None:
                await monitor.stop()

        logger.debug("Stack %s has completed updating", self.stack_name)
        return SuccessfulDeployStackResult(no_op=False, outputs=final_state.outputs, stack_arn=final_state.stack_id)

    def common_prepare_options(self) -> dict[str, Any]:
        """Arguments shared by CreateStack, UpdateStack and CreateChangeSet."""
        return {
            "StackName": self.stack_name,
            "Capabilities": CAPABILITIES,
            "NotificationARNs": self.options.notification_arns,
            "Parameters": self.stack_params.api_parameters,
            "RoleARN": self.options.role_arn,
            "TemplateBody": json.dumps(self.artifact.template),
            "Tags": self.options.tags,
        }

    def common_execute_options(self) -> dict[str, Any]:
        """Extra arguments shared by UpdateStack and ExecuteChangeSet.

        Keys are only present when used; not every region knows every option.
        """
        options: dict[str, Any] = {}
        if not self.options.rollback:
            options["DisableRollback"] = True
        return options


async def destroy_stack(
    session: AwsSession,
    stack_name: str,
    artifact: StackArtifact | None = None,
    role_arn: str | None = None,
    quiet: bool = False,
    ci: bool = False,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    console: Console | None = None,
) -> None:
    """Delete a stack and wait until it is gone. Does nothing if it does not exist."""
    cfn = session.cloudformation()
    stack = await StackSnapshot.lookup(cfn, stack_name)
    if not stack.exists:
        return

    monitor = None
    if not quiet:
        monitor = StackActivityMonitor.with_default_printer(cfn, stack_name, artifact, ci=ci, console=console).start()

    try:
        await cfn.delete_stack(stack_name, role_arn)
        destroyed = await wait_for_stack_delete(cfn, stack_name, poll_interval)
        if destroyed is not None and destroyed.status.name != "DELETE_COMPLETE":
            raise DeploymentError(f"Failed to destroy {stack_name}: {destroyed.status}")
    except Exception as err:
        if monitor is not None:
            await monitor.stop()
        raise DeploymentError(suffix_with_errors(str(err), monitor.errors if monitor else None)) from err
    finally:
        if monitor is not None:
            await monitor.stop()


async def can_skip_deploy(
    options: DeployStackOptions,
    stack: StackSnapshot,
    parameter_changes: ParameterChanges,
) -> bool:
    """Whether the deployed stack already matches what would be deployed.

    Decided from the inputs rather than a change set: change sets of stacks
    with nested stacks always report the nested stacks as changed.
    """
    name = options.stack_name
    logger.debug("%s: checking if we can skip deploy", name)

    if options.force:
        logger.debug("%s: forced deployment", name)
        return False

    method = options.deployment_method
    if isinstance(method, ChangeSetDeployment) and not method.execute:
        logger.debug("%s: --no-execute, always creating change set", name)
        return False

    if not stack.exists:
        logger.debug("%s: no existing stack", name)
        return False

    if to_canonical_json(options.stack.template) != to_canonical_json(await stack.template()):
        logger.debug("%s: template has changed", name)
        return False

    if not compare_tags(stack.tags, options.tags or []):
        logger.debug("%s: tags have changed", name)
        return False

    if sorted(stack.notification_arns) != sorted(options.notification_arns or []):
        logger.debug("%s: notification arns have changed", name)
        return False

    if options.stack.termination_protection != stack.termination_protection:
        logger.debug("%s: termination protection has been updated", name)
        return False

    if parameter_changes:
        if parameter_changes == ParameterChanges.SSM:
            logger.debug("%s: some parameters come from SSM so we have to assume they may have changed", name)
        else:
            logger.debug("%s: parameters have changed", name)
        return False

    if stack.status.is_failure:
        logger.debug("%s: stack is in a failure state", name)
        return False

    return True


def compare_tags(a: list[dict[str, str]], b: list[dict[str, str]]) -> bool:
    """Whether two tag lists hold the same key/value pairs, in any order."""
    if len(a) != len(b):
        return False
    b_values = {tag["Key"]: tag.get("Value") for tag in b}
    return all(tag["Key"] in b_values and b_values[tag["Key"]] == tag.get("Value") for tag in a)


def suffix_with_errors(msg: str, errors: list[str] | None = None) -> str:
    return f"{msg}: {', '.join(errors)}" if errors else msg
