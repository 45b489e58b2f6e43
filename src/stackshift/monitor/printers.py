"""Terminal rendering of stack activity."""

import math
import time

from rich.console import Console, Group
from rich.live import Live
from rich.text import Text

from stackshift.models import StackActivity

TIMESTAMP_WIDTH = 12
STATUS_WIDTH = 20

FULL_BLOCK = "█"
PARTIAL_BLOCK = ["", "▏", "▎", "▍", "▌", "▋", "▊", "▉"]
MAX_PROGRESSBAR_WIDTH = 60
MIN_PROGRESSBAR_WIDTH = 10
# leading spaces, brackets, progress number decoration and two numbers up to 999
PROGRESSBAR_EXTRA_SPACE = 2 + 2 + 4 + 6


def has_error_message(status: str) -> bool:
    return status.endswith("_FAILED") or status in ("ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_IN_PROGRESS")


def style_from_status_result(status: str | None) -> str:
    if not status:
        return ""
    if "FAILED" in status:
        return "red"
    if "ROLLBACK" in status:
        return "yellow"
    if "COMPLETE" in status:
        return "green"
    return ""


def style_from_status_activity(status: str | None) -> str:
    if not status:
        return ""
    if status.endswith("_FAILED"):
        return "red"
    if status.startswith(("CREATE_", "UPDATE_", "IMPORT_")):
        return "green"
    # stacks may also be UPDATE_ROLLBACK_IN_PROGRESS
    if "ROLLBACK_" in status:
        return "yellow"
    if status.startswith("DELETE_"):
        return "yellow"
    return ""


def shorten(max_width: int, text: str) -> str:
    if len(text) <= max_width:
        return text
    half = (max_width - 3) // 2
    return text[:half] + "..." + text[-half:]


def _time_of(activity: StackActivity) -> str:
    return activity.timestamp.astimezone().strftime("%X")


class ActivityPrinterBase:
    """Keeps track of resource progress and failures from the activity stream."""

    # seconds between polls for new activity
    update_sleep: float = 5.0

    def __init__(
        self,
        resources_total: int | None = None,
        resource_type_column_width: int = 0,
        console: Console | None = None,
    ):
        # +1 for the stack's own COMPLETE event at the end
        self.resources_total = resources_total + 1 if resources_total else None
        self.resource_digits = math.ceil(math.log10(self.resources_total)) if self.resources_total else 0
        self.resource_type_column_width = resource_type_column_width
        self.console = console or Console(stderr=True)

        self.resources_in_progress: dict[str, StackActivity] = {}
        # Seeing a second completion for a logical ID means it is being rolled back
        self.resources_prev_complete_state: dict[str, str] = {}
        self.resources_done = 0
        self.rolling_back = False
        self.failures: list[StackActivity] = []
        self.hook_failures: dict[str, dict[str, str]] = {}

    def failure_reason(self, activity: StackActivity) -> str:
        reason = activity.resource_status_reason or ""
        for hook_type, hook_reason in self.hook_failures.get(activity.logical_resource_id or "", {}).items():
            if hook_type in reason:
                return f"{reason} : {hook_reason}"
        return reason

    def add_activity(self, activity: StackActivity) -> None:
        status = activity.resource_status
        logical_id = activity.logical_resource_id
        if not status or not logical_id:
            return

        if status in ("ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_IN_PROGRESS"):
            # Only the stack itself reports these, once a rollback started
            self.rolling_back = True

        if status.endswith("_IN_PROGRESS"):
            self.resources_in_progress[logical_id] = activity

        if has_error_message(status) and "cancelled" not in (activity.resource_status_reason or ""):
            self.failures.append(activity)

        if status.endswith("_COMPLETE") or status.endswith("_FAILED"):
            self.resources_in_progress.pop(logical_id, None)

        if status.endswith("_COMPLETE_CLEANUP_IN_PROGRESS"):
            self.resources_done += 1

        if status.endswith("_COMPLETE"):
            if logical_id not in self.resources_prev_complete_state:
                self.resources_done += 1
            else:
                self.resources_done = max(self.resources_done - 1, 0)
            self.resources_prev_complete_state[logical_id] = status

        hook_status = activity.hook_status
        if hook_status and hook_status.endswith("_COMPLETE_FAILED") and activity.hook_type:
            self.hook_failures.setdefault(logical_id, {})[activity.hook_type] = activity.hook_status_reason or ""

    def print(self) -> None:
        pass

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class HistoryActivityPrinter(ActivityPrinterBase):
    """Prints every stack event as a line.

    When nothing happened for a while, the resources still in progress are
    listed, to show what is holding up the deployment.
    """

    in_progress_delay: float = 30.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_print_time = time.monotonic()
        self.printable: list[StackActivity] = []

    def add_activity(self, activity: StackActivity) -> None:
        super().add_activity(activity)
        self.printable.append(activity)
        self.print()

    def print(self) -> None:
        for activity in self.printable:
            self.print_one(activity)
        self.printable.clear()
        self.print_in_progress()

    def stop(self) -> None:
        if not self.failures:
            return
        self.console.print("\nFailed resources:")
        for failure in self.failures:
            # The root stack's failure repeats what the resources said
            if failure.is_stack_event:
                continue
            self.print_one(failure, progress=False)

    def print_one(self, activity: StackActivity, progress: bool = True) -> None:
        status = activity.resource_status or ""
        style = style_from_status_result(status)
        reason = activity.resource_status_reason or ""
        reason_style = "cyan"
        stack_trace = ""
        metadata = activity.metadata

        if "FAILED" in status:
            if progress and reason:
                reason = self.failure_reason(activity)
            if metadata and metadata.entry.trace:
                stack_trace = "\n\t" + "\n\t\\_ ".join(metadata.entry.trace)
            reason_style = "red"

        resource_name = metadata.construct_path if metadata else (activity.logical_resource_id or "")
        logical_id = f"({activity.logical_resource_id}) " if resource_name != activity.logical_resource_id else ""

        line = Text.assemble(
            f"{activity.stack_name} | ",
            f"{self.progress()} | " if progress else "",
            f"{_time_of(activity)} | ",
            (status[:STATUS_WIDTH].ljust(STATUS_WIDTH), style),
            " | ",
            (activity.resource_type or "").ljust(self.resource_type_column_width),
            " | ",
            (resource_name, f"bold {style}".strip()),
            " ",
            logical_id,
            (reason, f"bold {reason_style}"),
            (stack_trace, reason_style),
        )
        self.console.print(line)
        self.last_print_time = time.monotonic()

    def progress(self) -> str:
        """The progress as ``34/42``, or just the count if the total is unknown."""
        if self.resources_total is None:
            return str(self.resources_done).rjust(3)
        return (
            f"{str(self.resources_done).rjust(self.resource_digits)}/"
            f"{str(self.resources_total).rjust(self.resource_digits)}"
        )

    def print_in_progress(self) -> None:
        if time.monotonic() < self.last_print_time + self.in_progress_delay:
            return
        if self.resources_in_progress:
            self.console.print(
                Text.assemble(
                    f"{self.progress()} Currently in progress: ",
                    (", ".join(self.resources_in_progress), "bold"),
                )
            )
        # Not again until something else gets printed
        self.last_print_time = math.inf


class CurrentActivityPrinter(ActivityPrinterBase):
    """Redraws a block showing the resources currently being deployed.

    A progress bar sits on top. Failures stay visible and are recapitulated
    with their construct trace when monitoring ends; cancelled resources are
    left out.
    """

    update_sleep: float = 2.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.live = Live(console=self.console, auto_refresh=False, transient=True)

    def start(self) -> None:
        self.live.start()

    def print(self) -> None:
        lines: list[Text] = []

        width = self.console.width or 80
        progress_width = max(min(width - PROGRESSBAR_EXTRA_SPACE - 1, MAX_PROGRESSBAR_WIDTH), MIN_PROGRESSBAR_WIDTH)
        bar = self.progress_bar(progress_width)
        if bar:
            lines.extend([Text("  ") + bar, Text("")])

        # Failures are interesting while the stack is still rolling back
        to_print = sorted([*self.failures, *self.resources_in_progress.values()], key=lambda a: a.timestamp)
        for activity in to_print:
            style = style_from_status_activity(activity.resource_status)
            resource_name = (
                activity.metadata.construct_path if activity.metadata else (activity.logical_resource_id or "")
            )
            line = Text.assemble(
                _time_of(activity).rjust(TIMESTAMP_WIDTH),
                " | ",
                ((activity.resource_status or "")[:STATUS_WIDTH].ljust(STATUS_WIDTH), style),
                " | ",
                shorten(40, resource_name),
            )
            if has_error_message(activity.resource_status or ""):
                line.append("\n" + " " * (TIMESTAMP_WIDTH + STATUS_WIDTH + 6))
                line.append(self.failure_reason(activity), "red")
            lines.append(line)

        self.live.update(Group(*lines), refresh=True)

    def stop(self) -> None:
        self.live.stop()

        for failure in self.failures:
            # The root stack's failure repeats what the resources said
            if failure.is_stack_event:
                continue
            resource_name = (
                failure.metadata.construct_path if failure.metadata else (failure.logical_resource_id or "")
            )
            self.console.print(
                Text(
                    " | ".join(
                        [
                            _time_of(failure).rjust(TIMESTAMP_WIDTH),
                            (failure.resource_status or "")[:STATUS_WIDTH].ljust(STATUS_WIDTH),
                            (failure.resource_type or "").ljust(self.resource_type_column_width),
                            f"{shorten(40, resource_name)} {self.failure_reason(failure)}",
                        ]
                    ),
                    style="red",
                )
            )
            trace = failure.metadata.entry.trace if failure.metadata else None
            if trace:
                self.console.print(Text("\t" + "\n\t\\_ ".join(trace), style="red"))

    def progress_bar(self, width: int) -> Text | None:
        if not self.resources_total:
            return None
        fraction = min(self.resources_done / self.resources_total, 1)
        inner_width = max(1, width - 2)
        chars = inner_width * fraction
        full = math.floor(chars)
        partial = PARTIAL_BLOCK[math.floor((chars - full) * len(PARTIAL_BLOCK))]
        filler = "·" * (inner_width - full - (1 if partial else 0))
        style = "yellow" if self.rolling_back else "green"
        return Text.assemble(
            "[",
            (FULL_BLOCK * full + partial, style),
            filler,
            f"] ({self.resources_done}/{self.resources_total})",
        )
