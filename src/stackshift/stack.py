"""Snapshots of deployed stacks and waiting for them to stabilize."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from stackshift.aws.client import CloudFormationClient
from stackshift.errors import DeploymentError, StackNotFoundError
from stackshift.models import ChangeSetDescription

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

T = TypeVar("T")

CREATION_FAILURE_STATUSES = frozenset({"ROLLBACK_COMPLETE", "ROLLBACK_FAILED", "CREATE_FAILED"})
DEPLOY_SUCCESS_STATUSES = frozenset(
    {
        "CREATE_COMPLETE",
        "UPDATE_COMPLETE",
        "IMPORT_COMPLETE",
        "REVIEW_IN_PROGRESS",
    }
)
ROLLBACKABLE_STATUSES = frozenset(
    {
        "CREATE_FAILED",
        "UPDATE_FAILED",
        "UPDATE_ROLLBACK_FAILED",
        "IMPORT_ROLLBACK_FAILED",
    }
)


@dataclass(frozen=True)
class StackStatus:
    """A stack status with the predicates the deployment logic branches on."""

    name: str
    reason: str | None = None

    @classmethod
    def from_stack_description(cls, description: dict[str, Any]) -> "StackStatus":
        return cls(description.get("StackStatus", ""), description.get("StackStatusReason"))

    @property
    def is_not_found(self) -> bool:
        return self.name == "NOT_FOUND"

    @property
    def is_creation_failure(self) -> bool:
        return self.name in CREATION_FAILURE_STATUSES

    @property
    def is_deleted(self) -> bool:
        return self.name.startswith("DELETE_")

    @property
    def is_failure(self) -> bool:
        return self.name.endswith("FAILED")

    @property
    def is_in_progress(self) -> bool:
        return self.name.endswith("_IN_PROGRESS") and not self.is_review_in_progress

    @property
    def is_review_in_progress(self) -> bool:
        return self.name == "REVIEW_IN_PROGRESS"

    @property
    def is_deploy_success(self) -> bool:
        return self.is_not_found or self.name in DEPLOY_SUCCESS_STATUSES

    @property
    def is_rollbackable(self) -> bool:
        """Whether the stack is paused in a failed state from which it can be rolled back."""
        return self.name in ROLLBACKABLE_STATUSES

    def __str__(self) -> str:
        return f"{self.name} ({self.reason})" if self.reason else self.name


class StackSnapshot:
    """A stack as it existed in CloudFormation when it was looked up.

    Bundles the information needed during a deployment so it does not have to
    be fetched repeatedly. A snapshot is never updated; look the stack up again
    to observe a newer state.
    """

    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        stack: dict[str, Any] | None = None,
        retrieve_processed_template: bool = False,
    ):
        self._cfn = cfn
        self.stack_name = stack_name
        self._stack = stack
        self._retrieve_processed_template = retrieve_processed_template
        self._template: dict[str, Any] | None = None

    @classmethod
    async def lookup(
        cls,
        cfn: CloudFormationClient,
        stack_name: str,
        retrieve_processed_template: bool = False,
    ) -> "StackSnapshot":
        description = await cfn.describe_stack(stack_name)
        return cls(cfn, stack_name, description, retrieve_processed_template)

    @classmethod
    def does_not_exist(cls, cfn: CloudFormationClient, stack_name: str) -> "StackSnapshot":
        """A snapshot of a stack known not to exist, without calling CloudFormation."""
        return cls(cfn, stack_name)

    @property
    def exists(self) -> bool:
        return self._stack is not None

    @property
    def stack_id(self) -> str:
        if self._stack is None:
            raise StackNotFoundError(f"No stack named '{self.stack_name}'")
        return self._stack["StackId"]

    @property
    def status(self) -> StackStatus:
        """The stack's status; NOT_FOUND if it does not exist."""
        if self._stack is None:
            return StackStatus("NOT_FOUND", "Stack not found during lookup")
        return StackStatus.from_stack_description(self._stack)

    @property
    def outputs(self) -> dict[str, str]:
        if self._stack is None:
            return {}
        return {o["OutputKey"]: o.get("OutputValue", "") for o in self._stack.get("Outputs") or []}

    @property
    def tags(self) -> list[dict[str, str]]:
        if self._stack is None:
            return []
        return list(self._stack.get("Tags") or [])

    @property
    def notification_arns(self) -> list[str]:
        if self._stack is None:
            return []
        return list(self._stack.get("NotificationARNs") or [])

    @property
    def parameters(self) -> dict[str, str]:
        """Current parameter values, preferring the resolved value (e.g. from SSM)."""
        if self._stack is None:
            return {}
        return {
            p["ParameterKey"]: p.get("ResolvedValue", p.get("ParameterValue"))
            for p in self._stack.get("Parameters") or []
        }

    @property
    def termination_protection(self) -> bool:
        if self._stack is None:
            return False
        return bool(self._stack.get("EnableTerminationProtection"))

    async def template(self) -> dict[str, Any]:
        """The deployed template, fetched once. Empty if the stack does not exist."""
        if not self.exists:
            return {}
        if self._template is None:
            self._template = await self._cfn.get_template(
                self.stack_name, processed=self._retrieve_processed_template
            )
        return self._template


class _NothingToWaitFor(Exception):
    """Raised by a value provider when there is nothing left to wait for."""


async def wait_for(
    value_provider: Callable[[], Awaitable[T | None]],
    interval: float = DEFAULT_POLL_INTERVAL,
) -> T | None:
    """Call ``value_provider`` until it returns something other than None.

    The provider signals "stop waiting, there is nothing" by raising
    ``_NothingToWaitFor``.
    """
    while True:
        try:
            result = await value_provider()
        except _NothingToWaitFor:
            return None
        if result is not None:
            return result
        await asyncio.sleep(interval)


async def wait_for_change_set(
    cfn: CloudFormationClient,
    stack_name: str,
    change_set_name: str,
    fetch_all: bool,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> ChangeSetDescription:
    """Wait for a change set to be ready for execution, or to report it has no changes."""
    logger.debug("Waiting for changeset %s on stack %s to finish creating...", change_set_name, stack_name)

    async def check() -> ChangeSetDescription | None:
        description = await cfn.describe_change_set(stack_name, change_set_name, fetch_all=fetch_all)
        if description.status in ("CREATE_PENDING", "CREATE_IN_PROGRESS"):
            logger.debug("Changeset %s on stack %s is still creating", change_set_name, stack_name)
            return None
        if description.status == "CREATE_COMPLETE" or description.has_no_changes:
            return description
        raise DeploymentError(
            f"Failed to create ChangeSet {change_set_name} on {stack_name}: "
            f"{description.status or 'NO_STATUS'}, {description.status_reason or 'no reason provided'}"
        )

    result = await wait_for(check, interval)
    if result is None:
        raise DeploymentError("Change set took too long to be created; aborting")
    return result


async def stabilize_stack(
    cfn: CloudFormationClient,
    stack_name: str,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> StackSnapshot | None:
    """Wait for a stack to have no operation in progress. None if it does not exist."""
    logger.debug("Waiting for stack %s to finish creating or updating...", stack_name)

    async def check() -> StackSnapshot | None:
        stack = await StackSnapshot.lookup(cfn, stack_name)
        if not stack.exists:
            logger.debug("Stack %s does not exist", stack_name)
            raise _NothingToWaitFor()
        status = stack.status
        if status.is_in_progress:
            logger.debug(
                "Stack %s has an ongoing operation in progress and is not stable (%s)", stack_name, status
            )
            return None
        if status.is_review_in_progress:
            # An interrupted creation leaves a pending change set behind that will never
            # execute by itself; treat the stack as stable instead of waiting forever.
            logger.debug("Stack %s is in REVIEW_IN_PROGRESS state. Considering this is a stable status", stack_name)
        return stack

    return await wait_for(check, interval)


async def wait_for_stack_delete(
    cfn: CloudFormationClient,
    stack_name: str,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> StackSnapshot | None:
    """Wait for a stack deletion. Returns None once the stack is gone."""
    stack = await stabilize_stack(cfn, stack_name, interval)
    if stack is None:
        return None
    status = stack.status
    if status.is_failure:
        raise DeploymentError(
            f"The stack named {stack_name} is in a failed state. "
            f"You may need to delete it from the AWS console : {status}"
        )
    if status.is_deleted:
        return None
    return stack


async def wait_for_stack_deploy(
    cfn: CloudFormationClient,
    stack_name: str,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> StackSnapshot | None:
    """Wait for a create/update to finish; fail on any non-success terminal state."""
    stack = await stabilize_stack(cfn, stack_name, interval)
    if stack is None:
        return None
    status = stack.status
    if status.is_creation_failure:
        raise DeploymentError(
            f"The stack named {stack_name} failed creation, it may need to be manually "
            f"deleted from the AWS console: {status}"
        )
    if not status.is_deploy_success:
        raise DeploymentError(f"The stack named {stack_name} failed to deploy: {status}")
    return stack
