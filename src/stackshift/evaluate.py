"""Client-side evaluation of CloudFormation template expressions.

Used by the hotswap detectors to turn the properties of the desired template
into concrete values for service API calls: intrinsic functions are resolved
against the deployed stack's resources, the template's parameters and the
target environment.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any

from stackshift.aws.client import CloudFormationClient
from stackshift.errors import CfnEvaluationError

logger = logging.getLogger(__name__)

SUB_VARIABLE = re.compile(r"\$\{([^!}][^}]*)\}")


@dataclass(frozen=True)
class ResourceDefinition:
    """A resource of a template, as found by find_references_to."""

    logical_id: str
    type: str
    properties: dict[str, Any]


@dataclass(frozen=True)
class _ArnFormat:
    service: str
    resource: str
    # how the physical name maps into the ARN's resource part
    region: bool = True
    account: bool = True


# Fn::GetAtt <logicalId>.Arn for resources whose physical ID is a plain name
ARN_FORMATS: dict[str, _ArnFormat] = {
    "AWS::Lambda::Function": _ArnFormat("lambda", "function:{}"),
    "AWS::IAM::Role": _ArnFormat("iam", "role/{}", region=False),
    "AWS::IAM::User": _ArnFormat("iam", "user/{}", region=False),
    "AWS::S3::Bucket": _ArnFormat("s3", "{}", region=False, account=False),
    "AWS::DynamoDB::Table": _ArnFormat("dynamodb", "table/{}"),
    "AWS::Kinesis::Stream": _ArnFormat("kinesis", "stream/{}"),
    "AWS::Logs::LogGroup": _ArnFormat("logs", "log-group:{}:*"),
    "AWS::ECS::Cluster": _ArnFormat("ecs", "cluster/{}"),
    "AWS::CodeBuild::Project": _ArnFormat("codebuild", "project/{}"),
    "AWS::Events::Rule": _ArnFormat("events", "rule/{}"),
}

# Resources whose physical ID already is their ARN
PHYSICAL_ID_IS_ARN = frozenset(
    {
        "AWS::SNS::Topic",
        "AWS::StepFunctions::StateMachine",
        "AWS::AppSync::GraphQLApi",
        "AWS::AppSync::FunctionConfiguration",
        "AWS::AppSync::Resolver",
        "AWS::ECS::TaskDefinition",
        "AWS::ECS::Service",
        "AWS::Lambda::Version",
        "AWS::Lambda::Alias",
    }
)


class TemplateEvaluator:
    """Evaluates expressions of one (possibly nested) stack's template."""

    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any] | None = None,
        account: str = "",
        region: str = "",
        partition: str = "aws",
        url_suffix: str = "amazonaws.com",
    ):
        self._cfn = cfn
        self.stack_name = stack_name
        self.template = template
        self.account = account
        self.region = region
        self.partition = partition
        self.url_suffix = url_suffix
        self._resources: dict[str, Any] = template.get("Resources") or {}
        self._stack_resources: dict[str, dict[str, Any]] | None = None
        self._exports: dict[str, str] | None = None

        self._parameters: dict[str, Any] = {}
        for name, declaration in (template.get("Parameters") or {}).items():
            if "Default" in declaration:
                self._parameters[name] = declaration["Default"]
        self._parameters.update(parameters or {})

    async def create_nested(
        self,
        stack_name: str,
        template: dict[str, Any],
        nested_stack_parameters: dict[str, Any] | None,
    ) -> "TemplateEvaluator":
        """An evaluator for a nested stack; its parameters are evaluated in this scope."""
        evaluated_params = await self.evaluate(nested_stack_parameters or {})
        return TemplateEvaluator(
            self._cfn,
            stack_name,
            template,
            evaluated_params,
            account=self.account,
            region=self.region,
            partition=self.partition,
            url_suffix=self.url_suffix,
        )

    async def _deployed_resources(self) -> dict[str, dict[str, Any]]:
        if self._stack_resources is None:
            summaries = await self._cfn.list_stack_resources(self.stack_name)
            self._stack_resources = {s["LogicalResourceId"]: s for s in summaries}
        return self._stack_resources

    async def find_physical_name_for(self, logical_id: str) -> str | None:
        """The physical ID of a deployed resource, or None if it was never deployed."""
        summary = (await self._deployed_resources()).get(logical_id)
        return summary.get("PhysicalResourceId") if summary else None

    async def establish_physical_name(
        self, logical_id: str, physical_name_in_template: Any = None
    ) -> str | None:
        """Determine a resource's physical name from the template, else from the deployed stack."""
        if physical_name_in_template is not None:
            try:
                return await self.evaluate(physical_name_in_template)
            except CfnEvaluationError as e:
                # The physical name may reference something that only exists after
                # deployment; fall back to what CloudFormation knows.
                logger.debug("Could not evaluate physical name of %s from the template: %s", logical_id, e)
        return await self.find_physical_name_for(logical_id)

    def find_references_to(self, logical_id: str) -> list[ResourceDefinition]:
        """All resources of the template that Ref or GetAtt the given logical ID."""
        return [
            ResourceDefinition(other_id, resource.get("Type", ""), resource.get("Properties") or {})
            for other_id, resource in self._resources.items()
            if other_id != logical_id and _references(resource.get("Properties"), logical_id)
        ]

    async def evaluate(self, expression: Any) -> Any:
        """Evaluate a template expression into a concrete value."""
        if isinstance(expression, list):
            values = [await self.evaluate(e) for e in expression]
            # AWS::NoValue disappears from lists
            return [v for v in values if v is not None]

        if not isinstance(expression, dict):
            return expression

        if len(expression) == 1:
            key, argument = next(iter(expression.items()))
            if key == "Ref":
                return await self._ref(argument)
            if key.startswith("Fn::"):
                return await self._intrinsic(key, argument)

        result = {}
        for key, value in expression.items():
            evaluated = await self.evaluate(value)
            if evaluated is not None:
                result[key] = evaluated
        return result

    async def _intrinsic(self, name: str, argument: Any) -> Any:
        if name == "Fn::GetAtt":
            if isinstance(argument, str):
                argument = argument.split(".", 1)
            logical_id, attribute = await self.evaluate(_pair(name, argument))
            return await self._get_att(logical_id, attribute)
        if name == "Fn::Join":
            delimiter, values = [await self.evaluate(a) for a in _pair(name, argument)]
            if not isinstance(delimiter, str) or not isinstance(values, list):
                raise CfnEvaluationError(f"{name} expects a delimiter and a list of values, got {argument!r}")
            return delimiter.join(str(v) for v in values)
        if name == "Fn::Split":
            delimiter, source = [await self.evaluate(a) for a in _pair(name, argument)]
            if not isinstance(delimiter, str) or not delimiter or not isinstance(source, str):
                raise CfnEvaluationError(f"{name} expects a delimiter and a string, got {argument!r}")
            return source.split(delimiter)
        if name == "Fn::Select":
            index, values = [await self.evaluate(a) for a in _pair(name, argument)]
            try:
                return values[int(index)]
            except (TypeError, ValueError, IndexError, KeyError):
                raise CfnEvaluationError(f"{name} cannot select index {index!r} from {values!r}") from None
        if name == "Fn::Sub":
            return await self._sub(argument)
        if name == "Fn::ImportValue":
            export_name = await self.evaluate(argument)
            if self._exports is None:
                self._exports = await self._cfn.list_exports()
            if export_name not in self._exports:
                raise CfnEvaluationError(f"Export '{export_name}' could not be found for evaluation")
            return self._exports[export_name]
        if name == "Fn::Base64":
            return base64.b64encode(str(await self.evaluate(argument)).encode()).decode()
        raise CfnEvaluationError(f"CloudFormation function {name} is not supported")

    async def _ref(self, name: str) -> Any:
        pseudo = {
            "AWS::AccountId": self.account,
            "AWS::Region": self.region,
            "AWS::Partition": self.partition,
            "AWS::URLSuffix": self.url_suffix,
            "AWS::StackName": self.stack_name,
        }
        if name == "AWS::NoValue":
            return None
        if name in pseudo:
            return pseudo[name]
        if name in self._parameters:
            return self._parameters[name]
        if name in self._resources:
            physical_name = await self.find_physical_name_for(name)
            if physical_name is not None:
                return physical_name
        raise CfnEvaluationError(f"Parameter or resource '{name}' could not be found for evaluation")

    async def _get_att(self, logical_id: str, attribute: str) -> Any:
        resource = self._resources.get(logical_id)
        physical_name = await self.find_physical_name_for(logical_id)
        if resource is None or physical_name is None:
            raise CfnEvaluationError(
                f"Attribute '{attribute}' of resource '{logical_id}' could not be found for evaluation"
            )
        resource_type = resource.get("Type", "")

        if attribute == "Arn":
            if resource_type in PHYSICAL_ID_IS_ARN or physical_name.startswith("arn:"):
                return physical_name
            arn_format = ARN_FORMATS.get(resource_type)
            if arn_format is not None:
                return ":".join(
                    [
                        "arn",
                        self.partition,
                        arn_format.service,
                        self.region if arn_format.region else "",
                        self.account if arn_format.account else "",
                        arn_format.resource.format(physical_name),
                    ]
                )
        if attribute in ("Name", "Id", "ApiId") and resource_type == "AWS::AppSync::GraphQLApi":
            return physical_name.split("/")[-1]
        if attribute == "Name" and resource_type in PHYSICAL_ID_IS_ARN:
            return physical_name.split(":")[-1].split("/")[-1]
        if resource_type == "AWS::CloudFormation::Stack" and attribute.startswith("Outputs."):
            nested = await self._cfn.describe_stack(physical_name)
            output_key = attribute[len("Outputs."):]
            for output in (nested or {}).get("Outputs") or []:
                if output["OutputKey"] == output_key:
                    return output.get("OutputValue")
        if resource_type == "AWS::S3::Bucket":
            if attribute == "DomainName":
                return f"{physical_name}.s3.{self.url_suffix}"
            if attribute == "RegionalDomainName":
                return f"{physical_name}.s3.{self.region}.{self.url_suffix}"

        raise CfnEvaluationError(
            f"Attribute '{attribute}' of resource '{logical_id}' of type '{resource_type}' "
            "cannot be evaluated client-side"
        )

    async def _sub(self, argument: Any) -> str:
        if isinstance(argument, list):
            template, variables = _pair("Fn::Sub", argument)
            variables = await self.evaluate(variables)
        else:
            template, variables = argument, {}
        if not isinstance(template, str) or not isinstance(variables, dict):
            raise CfnEvaluationError(f"Fn::Sub expects a string and a map of variables, got {argument!r}")

        result = template
        for match in SUB_VARIABLE.finditer(template):
            name = match.group(1)
            if name in variables:
                value = variables[name]
            elif "." in name:
                logical_id, attribute = name.split(".", 1)
                value = await self._get_att(logical_id, attribute)
            else:
                value = await self._ref(name)
            result = result.replace(match.group(0), str(value))
        # ${!Literal} escapes
        return result.replace("${!", "${")


def _references(value: Any, logical_id: str) -> bool:
    if isinstance(value, dict):
        if value.get("Ref") == logical_id:
            return True
        get_att = value.get("Fn::GetAtt")
        if isinstance(get_att, list) and get_att and get_att[0] == logical_id:
            return True
        if isinstance(get_att, str) and get_att.split(".", 1)[0] == logical_id:
            return True
        sub = value.get("Fn::Sub")
        if sub is not None:
            text = sub[0] if isinstance(sub, list) else sub
            if isinstance(text, str) and any(
                m.group(1).split(".", 1)[0] == logical_id for m in SUB_VARIABLE.finditer(text)
            ):
                return True
        return any(_references(v, logical_id) for v in value.values())
    if isinstance(value, list):
        return any(_references(v, logical_id) for v in value)
    return False


def _pair(name: str, argument: Any) -> list[Any]:
    if not isinstance(argument, list) or len(argument) != 2:
        raise CfnEvaluationError(f"{name} expects a list of two arguments, got {argument!r}")
    return argument
