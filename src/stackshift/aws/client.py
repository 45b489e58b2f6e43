"""Thin async boto3 wrapper for the CloudFormation API calls used during deployment."""

import asyncio
import logging
from typing import Any

import boto3
from botocore.exceptions import ClientError

from stackshift.errors import NoUpdatesToPerformError
from stackshift.models import ChangeSetDescription
from stackshift.serialize import deserialize_structure

logger = logging.getLogger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed."


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _error_message(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Message", "")


class CloudFormationClient:
    """Wraps boto3 CloudFormation calls; provider errors are decoded here, once.

    Every call runs in a worker thread so the event loop stays free for the
    activity monitor while a request is in flight.
    """

    def __init__(self, client: Any = None, region: str | None = None):
        self._client = client or boto3.client(
            "cloudformation", **({"region_name": region} if region else {})
        )

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        return await asyncio.to_thread(getattr(self._client, operation), **kwargs)

    async def describe_stack(self, stack_name: str) -> dict[str, Any] | None:
        """Describe a stack. Returns None if the stack does not exist."""
        try:
            response = await self._call("describe_stacks", StackName=stack_name)
        except ClientError as err:
            if (
                _error_code(err) == "ValidationError"
                and _error_message(err) == f"Stack with id {stack_name} does not exist"
            ):
                return None
            raise
        stacks = response.get("Stacks") or []
        return stacks[0] if stacks else None

    async def get_template(self, stack_name: str, processed: bool = False) -> dict[str, Any]:
        """Fetch and parse the deployed template of a stack."""
        response = await self._call(
            "get_template",
            StackName=stack_name,
            TemplateStage="Processed" if processed else "Original",
        )
        return deserialize_structure(response.get("TemplateBody"))

    async def create_stack(self, **kwargs: Any) -> str:
        response = await self._call("create_stack", **_without_none(kwargs))
        return response["StackId"]

    async def update_stack(self, **kwargs: Any) -> str:
        """Start a stack update. Raises NoUpdatesToPerformError if nothing changed."""
        try:
            response = await self._call("update_stack", **_without_none(kwargs))
        except ClientError as err:
            if _error_code(err) == "ValidationError" and _error_message(err) == NO_UPDATES_MESSAGE:
                raise NoUpdatesToPerformError(NO_UPDATES_MESSAGE) from err
            raise
        return response["StackId"]

    async def delete_stack(self, stack_name: str, role_arn: str | None = None) -> None:
        await self._call("delete_stack", **_without_none({"StackName": stack_name, "RoleARN": role_arn}))

    async def create_change_set(self, **kwargs: Any) -> str:
        response = await self._call("create_change_set", **_without_none(kwargs))
        return response["Id"]

    async def describe_change_set(
        self,
        stack_name: str,
        change_set_name: str,
        fetch_all: bool = False,
    ) -> ChangeSetDescription:
        """Describe a change set in whatever state it is.

        With ``fetch_all`` every page of changes is fetched, so the number of
        changes is accurate.
        """
        response = await self._call(
            "describe_change_set", StackName=stack_name, ChangeSetName=change_set_name
        )
        changes = list(response.get("Changes") or [])
        next_token = response.get("NextToken")

        while fetch_all and next_token:
            page = await self._call(
                "describe_change_set",
                StackName=stack_name,
                ChangeSetName=response.get("ChangeSetId") or change_set_name,
                NextToken=next_token,
            )
            changes.extend(page.get("Changes") or [])
            next_token = page.get("NextToken")

        return ChangeSetDescription(
            change_set_id=response.get("ChangeSetId", ""),
            change_set_name=response.get("ChangeSetName", change_set_name),
            stack_id=response.get("StackId", ""),
            status=response.get("Status", ""),
            status_reason=response.get("StatusReason"),
            changes=changes,
            creation_time=response.get("CreationTime"),
        )

    async def execute_change_set(self, **kwargs: Any) -> None:
        await self._call("execute_change_set", **_without_none(kwargs))

    async def delete_change_set(self, stack_name: str, change_set_name: str) -> None:
        """Delete a change set. Succeeds as long as the stack exists."""
        await self._call("delete_change_set", StackName=stack_name, ChangeSetName=change_set_name)

    async def update_termination_protection(self, stack_name: str, enabled: bool) -> None:
        await self._call(
            "update_termination_protection",
            StackName=stack_name,
            EnableTerminationProtection=enabled,
        )

    async def describe_stack_events(
        self, stack_name: str, next_token: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of stack events, newest first. No events if the stack does not exist."""
        kwargs: dict[str, Any] = {"StackName": stack_name}
        if next_token:
            kwargs["NextToken"] = next_token
        try:
            response = await self._call("describe_stack_events", **kwargs)
        except ClientError as err:
            if (
                _error_code(err) == "ValidationError"
                and _error_message(err) == f"Stack [{stack_name}] does not exist"
            ):
                return [], None
            raise
        return list(response.get("StackEvents") or []), response.get("NextToken")

    async def list_stack_resources(self, stack_name: str) -> list[dict[str, Any]]:
        """List every resource summary of a stack."""
        results = []
        next_token = None

        while True:
            kwargs: dict[str, Any] = {"StackName": stack_name}
            if next_token:
                kwargs["NextToken"] = next_token

            resp = await self._call("list_stack_resources", **kwargs)
            results.extend(resp.get("StackResourceSummaries") or [])

            next_token = resp.get("NextToken")
            if not next_token:
                break

        return results

    async def list_exports(self) -> dict[str, str]:
        """Return all exports of the region as name -> value."""
        exports: dict[str, str] = {}
        next_token = None

        while True:
            kwargs: dict[str, Any] = {}
            if next_token:
                kwargs["NextToken"] = next_token

            resp = await self._call("list_exports", **kwargs)
            for export in resp.get("Exports") or []:
                exports[export["Name"]] = export["Value"]

            next_token = resp.get("NextToken")
            if not next_token:
                break

        return exports


def _without_none(kwargs: dict[str, Any]) -> dict[str, Any]:
    """Drop keys with a None value; boto3 rejects explicit None parameters."""
    return {k: v for k, v in kwargs.items() if v is not None}
