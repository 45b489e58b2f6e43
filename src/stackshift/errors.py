"""Exceptions raised by stackshift."""


class StackshiftError(Exception):
    """Base exception for stackshift operations."""


class ConfigurationError(StackshiftError):
    """The requested deployment is not valid as configured."""


class MissingParametersError(ConfigurationError):
    """Template parameters without a supplied, previous or default value."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"The following CloudFormation Parameters are missing a value: {', '.join(missing)}"
        )


class StackNotFoundError(StackshiftError):
    """A stack that does not exist was asked for an attribute that requires it."""


class DeploymentError(StackshiftError):
    """A stack operation ended in a failed state."""


class NoUpdatesToPerformError(StackshiftError):
    """CloudFormation rejected an UpdateStack call because nothing changed."""


class CfnEvaluationError(StackshiftError):
    """A CloudFormation template expression could not be evaluated client-side."""


class NestedStackError(StackshiftError):
    """The template of a nested stack could not be located."""


class HotswapApplyError(StackshiftError):
    """A hotswapped resource did not reach the expected state."""

    def __init__(self, state: str, reason: str | None = None, name: str = "TimeoutError"):
        self.state = state
        self.reason = reason
        self.name = name
        parts = [f"Resource is not in the expected state due to waiter status: {state}"]
        if reason:
            parts.append(f"{reason}.")
        super().__init__(". ".join(parts))
