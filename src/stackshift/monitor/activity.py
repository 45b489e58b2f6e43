"""Monitoring a stack deployment through its event stream."""

import asyncio
import logging
import sys
from datetime import UTC, datetime
from enum import Enum

from rich.console import Console

from stackshift.artifact import LOGICAL_ID_METADATA, StackArtifact
from stackshift.aws.client import CloudFormationClient
from stackshift.models import MetadataEntry, ResourceMetadata, StackActivity, StackActivityProgress
from stackshift.monitor.poller import ResourceEvent, StackEventPoller
from stackshift.monitor.printers import (
    ActivityPrinterBase,
    CurrentActivityPrinter,
    HistoryActivityPrinter,
    has_error_message,
)

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    IDLE = "idle"
    TICKING = "ticking"
    DRAINING = "draining"
    STOPPED = "stopped"


def max_resource_type_length(template: dict) -> int:
    resources = (template or {}).get("Resources") or {}
    return max((len(r.get("Type") or "") for r in resources.values()), default=0)


class StackActivityMonitor:
    """Polls stack events in the background and feeds them to a printer.

    Error reasons of failed resources are collected in ``errors`` so a failed
    deployment can report why it failed.
    """

    @classmethod
    def with_default_printer(
        cls,
        cfn: CloudFormationClient,
        stack_name: str,
        artifact: StackArtifact | None,
        resources_total: int | None = None,
        progress: StackActivityProgress = StackActivityProgress.BAR,
        ci: bool = False,
        verbose: bool = False,
        change_set_creation_time: datetime | None = None,
        console: Console | None = None,
    ) -> "StackActivityMonitor":
        """Pick the live view for an interactive terminal, the event history otherwise."""
        console = console or Console(file=sys.stdout if ci else sys.stderr)
        printer_args = {
            "resources_total": resources_total,
            "resource_type_column_width": max_resource_type_length(artifact.template if artifact else {}),
            "console": console,
        }
        # Some CI systems report a TTY, so CI is checked separately
        fancy_output_available = console.is_terminal and not ci
        if fancy_output_available and not verbose and progress == StackActivityProgress.BAR:
            printer: ActivityPrinterBase = CurrentActivityPrinter(**printer_args)
        else:
            printer = HistoryActivityPrinter(**printer_args)
        return cls(cfn, stack_name, printer, artifact, change_set_creation_time)

    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        printer: ActivityPrinterBase,
        artifact: StackArtifact | None = None,
        change_set_creation_time: datetime | None = None,
    ):
        self.stack_name = stack_name
        self.printer = printer
        self.artifact = artifact
        self.errors: list[str] = []
        self.state = MonitorState.IDLE
        self.poller = StackEventPoller(
            cfn,
            stack_name,
            start_time=change_set_creation_time or datetime.now(UTC),
        )
        self._task: asyncio.Task | None = None
        self._read: asyncio.Task | None = None

    def start(self) -> "StackActivityMonitor":
        self.state = MonitorState.TICKING
        self.printer.start()
        self._task = asyncio.create_task(self._run())
        return self

    async def stop(self) -> None:
        """Stop polling, read the events that are still outstanding, then stop the printer.

        The final read catches failure reasons that arrived after the stack
        already reported its final status.
        """
        if self.state in (MonitorState.IDLE, MonitorState.STOPPED):
            self.state = MonitorState.STOPPED
            return
        self.state = MonitorState.DRAINING

        # Let a read in flight finish, our state is not safe for two at once
        if self._read is not None:
            await asyncio.wait([self._read])
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        await self.read_new_events()
        self.printer.stop()
        self.state = MonitorState.STOPPED

    async def _run(self) -> None:
        while self.state == MonitorState.TICKING:
            await asyncio.sleep(self.printer.update_sleep)
            await self.tick()

    async def tick(self) -> None:
        if self.state != MonitorState.TICKING:
            return
        try:
            self._read = asyncio.ensure_future(self.read_new_events())
            await asyncio.shield(self._read)
            self._read = None
            # stop() may have been called during the read
            if self.state != MonitorState.TICKING:
                return
            self.printer.print()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._read = None
            logger.exception("Error occurred while monitoring stack %s", self.stack_name)

    async def read_new_events(self) -> None:
        for resource_event in await self.poller.poll():
            activity = self._to_activity(resource_event)
            self.check_for_errors(activity)
            self.printer.add_activity(activity)

    def _to_activity(self, resource_event: ResourceEvent) -> StackActivity:
        return StackActivity.from_event(
            resource_event.event,
            is_stack_event=resource_event.is_stack_event,
            metadata=self.find_metadata_for(
                resource_event.event.get("LogicalResourceId"), resource_event.parent_stack_logical_ids
            ),
        )

    def find_metadata_for(
        self, logical_id: str | None, parent_stack_logical_ids: tuple[str, ...] = ()
    ) -> ResourceMetadata | None:
        """Construct metadata of a logical ID; resources of nested stacks get the nested stack's path."""
        if self.artifact is None or not logical_id:
            return None
        if not parent_stack_logical_ids:
            return self.artifact.find_metadata_for(logical_id)

        parent = self.artifact.find_metadata_for(parent_stack_logical_ids[0])
        if parent is None:
            return None
        path = "/".join([parent.construct_path, *parent_stack_logical_ids[1:], logical_id])
        return ResourceMetadata(entry=MetadataEntry(type=LOGICAL_ID_METADATA, data=logical_id), construct_path=path)

    def check_for_errors(self, activity: StackActivity) -> None:
        if not has_error_message(activity.resource_status or ""):
            return
        reason = activity.resource_status_reason or ""
        # Cancellations are not interesting, and the stack's own message only says it failed
        if "cancelled" in reason or activity.stack_name == activity.logical_resource_id:
            return
        if reason not in self.errors:
            self.errors.append(reason)
