"""Polling a stack's event history, including the events of nested stacks."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stackshift.aws.client import CloudFormationClient

logger = logging.getLogger(__name__)

NESTED_STACK_TYPE = "AWS::CloudFormation::Stack"

STACK_BEGIN_OPERATION_STATES = frozenset(
    {
        "CREATE_IN_PROGRESS",
        "UPDATE_IN_PROGRESS",
        "DELETE_IN_PROGRESS",
        "UPDATE_ROLLBACK_IN_PROGRESS",
        "ROLLBACK_IN_PROGRESS",
    }
)


def is_stack_terminal_state(status: str | None) -> bool:
    return not (status or "IN_PROGRESS").endswith("_IN_PROGRESS")


@dataclass(frozen=True)
class ResourceEvent:
    """A stack event, with the logical IDs of the nested stacks it came through."""

    event: dict[str, Any]
    parent_stack_logical_ids: tuple[str, ...] = ()
    is_stack_event: bool = False


@dataclass
class StackEventPoller:
    """Reads the events of a stack that are new since the last poll.

    Events older than ``start_time`` are never returned, and every event is
    returned at most once. Nested stacks that start an operation get their own
    poller, whose events are merged into the result.
    """

    cfn: CloudFormationClient
    stack_name: str
    start_time: datetime | None = None
    parent_stack_logical_ids: tuple[str, ...] = ()
    events: list[ResourceEvent] = field(default_factory=list)
    complete: bool = False
    _event_ids: set[str] = field(default_factory=set, repr=False)
    _nested_pollers: dict[str, "StackEventPoller"] = field(default_factory=dict, repr=False)

    async def poll(self) -> list[ResourceEvent]:
        """Return the new events of this stack and its nested stacks, oldest first."""
        new_events = await self._poll_own_events()

        for logical_id, poller in list(self._nested_pollers.items()):
            new_events.extend(await poller.poll())
            if poller.complete:
                del self._nested_pollers[logical_id]

        new_events.sort(key=lambda e: e.event["Timestamp"])
        self.events.extend(new_events)
        return new_events

    async def _poll_own_events(self) -> list[ResourceEvent]:
        new_events: list[ResourceEvent] = []
        next_token = None

        while True:
            page, next_token = await self.cfn.describe_stack_events(self.stack_name, next_token)

            for event in page:
                # Pages are newest first; anything past these points was seen before
                if self.start_time is not None and event["Timestamp"] < self.start_time:
                    return new_events
                if event["EventId"] in self._event_ids:
                    return new_events
                self._event_ids.add(event["EventId"])

                is_stack_event = bool(event.get("StackId")) and event.get("PhysicalResourceId") == event.get("StackId")
                new_events.append(ResourceEvent(event, self.parent_stack_logical_ids, is_stack_event))

                if not is_stack_event and event.get("ResourceType") == NESTED_STACK_TYPE:
                    self._track_nested_stack(event)

                if is_stack_event and is_stack_terminal_state(event.get("ResourceStatus")):
                    self.complete = True

            if not next_token:
                return new_events

    def _track_nested_stack(self, event: dict[str, Any]) -> None:
        logical_id = event.get("LogicalResourceId")
        physical_id = event.get("PhysicalResourceId")
        status = event.get("ResourceStatus")
        # The first CREATE_IN_PROGRESS of a nested stack has no physical ID yet
        if not logical_id or not physical_id:
            return

        poller = self._nested_pollers.get(logical_id)
        if poller is None:
            if status in STACK_BEGIN_OPERATION_STATES:
                logger.debug("Following events of nested stack %s (%s)", logical_id, physical_id)
                self._nested_pollers[logical_id] = StackEventPoller(
                    self.cfn,
                    physical_id,
                    start_time=event["Timestamp"],
                    parent_stack_logical_ids=(*self.parent_stack_logical_ids, logical_id),
                )
        elif is_stack_terminal_state(status):
            # Picks up what the nested stack reported before finishing, then stops
            poller.complete = True
