"""Core data models for stack deployment and hotswapping."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stackshift.aws.session import AwsSession


class HotswapMode(StrEnum):
    """How a deployment may short-circuit CloudFormation."""

    # Fall back to a full deployment if any change cannot be hotswapped
    FALL_BACK = "fall-back"
    # Only hotswap, never start a CloudFormation deployment
    HOTSWAP_ONLY = "hotswap-only"
    FULL_DEPLOYMENT = "full-deployment"


class ParameterChanges(Enum):
    """Outcome of comparing resolved parameters against the deployed ones."""

    NO = "no"
    YES = "yes"
    SSM = "ssm"

    def __bool__(self) -> bool:
        return self is not ParameterChanges.NO


class RollbackReason(StrEnum):
    """Why a stack in a paused failure state must be rolled back first."""

    REPLACEMENT = "replacement"
    NOT_NO_ROLLBACK = "not-norollback"


class StackActivityProgress(StrEnum):
    """Supported display modes for stack deployment activity."""

    BAR = "bar"
    EVENTS = "events"


@dataclass(frozen=True)
class DirectDeployment:
    """Deploy with CreateStack/UpdateStack, without a change set."""


@dataclass(frozen=True)
class ChangeSetDeployment:
    """Deploy through a change set, optionally leaving it for review."""

    change_set_name: str = "cdk-deploy-change-set"
    execute: bool = True


DeploymentMethod = DirectDeployment | ChangeSetDeployment


@dataclass(frozen=True)
class SuccessfulDeployStackResult:
    """The stack was deployed (or did not need to be)."""

    no_op: bool
    outputs: dict[str, str]
    stack_arn: str


@dataclass(frozen=True)
class NeedRollbackFirstDeployStackResult:
    """The stack is paused in a failed state and has to be rolled back first."""

    reason: RollbackReason


@dataclass(frozen=True)
class ReplacementRequiresNoRollbackStackResult:
    """The change set replaces resources, which is not allowed with rollback disabled."""


DeployStackResult = (
    SuccessfulDeployStackResult
    | NeedRollbackFirstDeployStackResult
    | ReplacementRequiresNoRollbackStackResult
)


@dataclass(frozen=True)
class PropertyDifference:
    """Old and new value of a single resource property."""

    old_value: Any
    new_value: Any

    @property
    def is_addition(self) -> bool:
        return self.old_value is None and self.new_value is not None

    @property
    def is_removal(self) -> bool:
        return self.old_value is not None and self.new_value is None


@dataclass
class ResourceDifference:
    """Before/after state of one logical resource in a template diff."""

    logical_id: str
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    property_diffs: dict[str, PropertyDifference] = field(default_factory=dict)
    other_diffs: dict[str, PropertyDifference] = field(default_factory=dict)

    @property
    def is_addition(self) -> bool:
        return self.old_value is None and self.new_value is not None

    @property
    def is_removal(self) -> bool:
        return self.old_value is not None and self.new_value is None

    @property
    def old_resource_type(self) -> str | None:
        return self.old_value.get("Type") if self.old_value else None

    @property
    def new_resource_type(self) -> str | None:
        return self.new_value.get("Type") if self.new_value else None

    @property
    def old_properties(self) -> dict[str, Any] | None:
        return self.old_value.get("Properties") if self.old_value else None

    @property
    def new_properties(self) -> dict[str, Any] | None:
        return self.new_value.get("Properties") if self.new_value else None


@dataclass(frozen=True)
class HotswappableChange:
    """A change that can be applied directly to the live resource."""

    resource_type: str
    props_changed: list[str]
    service: str
    resource_names: list[str]
    apply: Callable[["AwsSession"], Awaitable[None]]
    hotswappable: bool = field(default=True, init=False)


@dataclass(frozen=True)
class NonHotswappableChange:
    """A change that needs a full CloudFormation deployment."""

    resource_type: str
    logical_id: str
    reason: str
    rejected_changes: list[str] = field(default_factory=list)
    hotswap_only_visible: bool = True
    hotswappable: bool = field(default=False, init=False)


ClassifiedChange = HotswappableChange | NonHotswappableChange


@dataclass(frozen=True)
class ClassifiedChanges:
    """All changes of a template diff, split by hotswappability."""

    hotswappable: list[HotswappableChange]
    non_hotswappable: list[NonHotswappableChange]


@dataclass(frozen=True)
class MetadataEntry:
    """One construct metadata entry from the assembly manifest."""

    type: str
    data: Any
    trace: list[str] | None = None


@dataclass(frozen=True)
class ResourceMetadata:
    """Construct metadata found for a logical ID."""

    entry: MetadataEntry
    construct_path: str


@dataclass(frozen=True)
class StackActivity:
    """A stack event, enriched with construct metadata where available."""

    event_id: str
    stack_name: str
    timestamp: datetime
    logical_resource_id: str | None = None
    physical_resource_id: str | None = None
    resource_type: str | None = None
    resource_status: str | None = None
    resource_status_reason: str | None = None
    hook_status: str | None = None
    hook_type: str | None = None
    hook_status_reason: str | None = None
    is_stack_event: bool = False
    metadata: ResourceMetadata | None = None

    @classmethod
    def from_event(
        cls,
        event: dict[str, Any],
        *,
        is_stack_event: bool = False,
        metadata: ResourceMetadata | None = None,
    ) -> "StackActivity":
        """Build an activity from a DescribeStackEvents entry."""
        return cls(
            event_id=event["EventId"],
            stack_name=event.get("StackName", ""),
            timestamp=event["Timestamp"],
            logical_resource_id=event.get("LogicalResourceId"),
            physical_resource_id=event.get("PhysicalResourceId"),
            resource_type=event.get("ResourceType"),
            resource_status=event.get("ResourceStatus"),
            resource_status_reason=event.get("ResourceStatusReason"),
            hook_status=event.get("HookStatus"),
            hook_type=event.get("HookType"),
            hook_status_reason=event.get("HookStatusReason"),
            is_stack_event=is_stack_event,
            metadata=metadata,
        )


@dataclass(frozen=True)
class ChangeSetDescription:
    """A described change set, with all fetched pages of changes merged."""

    change_set_id: str
    change_set_name: str
    stack_id: str
    status: str
    status_reason: str | None
    changes: list[dict[str, Any]]
    creation_time: datetime | None = None

    @property
    def has_no_changes(self) -> bool:
        """Whether CloudFormation reported that the change set changes nothing.

        Determined from the status, not from ``changes``: a change set that only
        touches Outputs has an empty change list but must still be executed.
        """
        return self.status == "FAILED" and any(
            (self.status_reason or "").startswith(prefix) for prefix in NO_CHANGE_REASON_PREFIXES
        )

    @property
    def has_replacement(self) -> bool:
        """Whether executing the change set replaces any resource."""
        return any(
            (change.get("ResourceChange") or {}).get("PolicyAction") in REPLACEMENT_POLICY_ACTIONS
            for change in self.changes
        )


NO_CHANGE_REASON_PREFIXES = (
    # Regular template
    "The submitted information didn't contain changes.",
    # Template with a Transform
    "No updates are to be performed.",
)

REPLACEMENT_POLICY_ACTIONS = frozenset({"ReplaceAndDelete", "ReplaceAndRetain", "ReplaceAndSnapshot"})
