"""Resolution of CloudFormation template parameters for a deployment."""

from typing import Any

from stackshift.errors import MissingParametersError
from stackshift.models import ParameterChanges

# Marker in an SSM parameter's description that opts it out of "always redeploy"
SSM_PARAM_NO_INVALIDATE = "[cdk:skip]"

SSM_PARAMETER_TYPE_PREFIX = "AWS::SSM::Parameter::"


class TemplateParameters:
    """The set of formal parameters declared in a template."""

    def __init__(self, params: dict[str, dict[str, Any]]):
        self.params = params

    @classmethod
    def from_template(cls, template: dict[str, Any]) -> "TemplateParameters":
        return cls(template.get("Parameters") or {})

    def supply_all(self, updates: dict[str, str | None]) -> "ParameterValues":
        """Calculate parameters for a new stack from the desired values.

        Raises MissingParametersError for parameters without a value or default.
        """
        return ParameterValues(self.params, updates)

    def update_existing(
        self,
        updates: dict[str, str | None],
        previous_values: dict[str, str],
    ) -> "ParameterValues":
        """Calculate parameters for an existing stack.

        Parameters already set on the stack keep their value (``UsePreviousValue``)
        unless an update is supplied.
        """
        return ParameterValues(self.params, updates, previous_values)


class ParameterValues:
    """The parameter values that will be passed to a stack."""

    def __init__(
        self,
        formal_params: dict[str, dict[str, Any]],
        updates: dict[str, str | None],
        previous_values: dict[str, str] | None = None,
    ):
        self.formal_params = formal_params
        self.values: dict[str, str] = {}
        self.api_parameters: list[dict[str, Any]] = []
        previous_values = previous_values or {}

        missing_required = []
        for key, formal_param in formal_params.items():
            updated_value = updates.get(key)
            if updated_value is not None:
                self.values[key] = updated_value
                self.api_parameters.append({"ParameterKey": key, "ParameterValue": updated_value})
                continue

            if key in previous_values:
                self.values[key] = previous_values[key]
                self.api_parameters.append({"ParameterKey": key, "UsePreviousValue": True})
                continue

            if formal_param.get("Default") is not None:
                self.values[key] = formal_param["Default"]
                continue

            missing_required.append(key)

        if missing_required:
            raise MissingParametersError(missing_required)

        # Forward values for parameters the template does not declare, so the
        # typo is reported by CloudFormation.
        for key, value in updates.items():
            if key not in formal_params and value:
                self.values[key] = value
                self.api_parameters.append({"ParameterKey": key, "ParameterValue": value})

    def has_changes(self, current_values: dict[str, str]) -> ParameterChanges:
        """Whether these values would change the parameters of the deployed stack."""
        # SSM parameter values are resolved by CloudFormation, we cannot know if they changed
        if any(
            str(p.get("Type", "")).startswith(SSM_PARAMETER_TYPE_PREFIX)
            and SSM_PARAM_NO_INVALIDATE not in (p.get("Description") or "")
            for p in self.formal_params.values()
        ):
            return ParameterChanges.SSM

        if any(key not in self.values or value != self.values[key] for key, value in current_values.items()):
            return ParameterChanges.YES

        if any(key not in current_values for key in self.values):
            return ParameterChanges.YES

        return ParameterChanges.NO
