"""Hotswap detector for Lambda functions, versions and aliases."""

import asyncio
import io
import zipfile
from dataclasses import dataclass
from typing import Any

from stackshift.aws.session import AwsSession
from stackshift.errors import CfnEvaluationError
from stackshift.evaluate import ResourceDefinition, TemplateEvaluator
from stackshift.hotswap.common import HotswapPropertyOverrides, classify_changes
from stackshift.models import ClassifiedChange, HotswappableChange, PropertyDifference, ResourceDifference

# Fixed timestamp so the same inline code always zips to the same bytes
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass
class LambdaFunctionCode:
    s3_bucket: str | None = None
    s3_key: str | None = None
    s3_object_version: str | None = None
    image_uri: str | None = None
    function_code_zip: bytes | None = None


@dataclass
class LambdaFunctionChange:
    code: LambdaFunctionCode | None = None
    description: str | None = None
    environment: dict[str, Any] | None = None

    @property
    def has_configuration(self) -> bool:
        return self.description is not None or self.environment is not None


async def is_hotswappable_lambda_function_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    resource_type = change.new_resource_type

    # Versions are immutable; the function's own change publishes a new one
    if resource_type == "AWS::Lambda::Version":
        return [
            HotswappableChange(
                resource_type="AWS::Lambda::Version",
                props_changed=[],
                service="lambda",
                resource_names=[],
                apply=_noop,
            )
        ]

    if resource_type == "AWS::Lambda::Alias":
        return _classify_alias_changes(change)

    if resource_type != "AWS::Lambda::Function":
        return []

    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, ["Code", "Environment", "Description"])
    if classified.report_non_hotswappable_property_changes(ret):
        return ret
    if not classified.hotswappable_props:
        return ret

    props = change.new_properties or {}
    function_name = await evaluator.establish_physical_name(logical_id, props.get("FunctionName"))
    version_refs, alias_names = await versions_and_aliases(logical_id, evaluator)

    resource_names = [f"Lambda Function '{function_name}'"]
    if version_refs:
        resource_names.append(f"Lambda Version for Function '{function_name}'")
    resource_names.extend(f"Lambda Alias '{alias}' for Function '{function_name}'" for alias in alias_names)

    async def apply(session: AwsSession) -> None:
        function_change = await evaluate_lambda_function_props(
            classified.hotswappable_props, props.get("Runtime"), evaluator
        )
        if function_change is None or not function_name:
            return
        lambda_client = session.lambda_()

        if function_change.code is not None:
            code = function_change.code
            response = await asyncio.to_thread(
                lambda_client.update_function_code,
                **_without_none(
                    {
                        "FunctionName": function_name,
                        "S3Bucket": code.s3_bucket,
                        "S3Key": code.s3_key,
                        "S3ObjectVersion": code.s3_object_version,
                        "ImageUri": code.image_uri,
                        "ZipFile": code.function_code_zip,
                    }
                ),
            )
            await wait_for_function_update(lambda_client, response, function_name)

        if function_change.has_configuration:
            request: dict[str, Any] = {"FunctionName": function_name}
            if function_change.description is not None:
                request["Description"] = function_change.description
            if function_change.environment is not None:
                request["Environment"] = function_change.environment
            response = await asyncio.to_thread(lambda_client.update_function_configuration, **request)
            await wait_for_function_update(lambda_client, response, function_name)

        # A new version is only worth publishing when the function changed
        if version_refs:
            published = await asyncio.to_thread(lambda_client.publish_version, FunctionName=function_name)
            await asyncio.gather(
                *(
                    asyncio.to_thread(
                        lambda_client.update_alias,
                        FunctionName=function_name,
                        Name=alias,
                        FunctionVersion=published["Version"],
                    )
                    for alias in alias_names
                )
            )

    ret.append(
        HotswappableChange(
            resource_type=resource_type,
            props_changed=classified.names_of_hotswappable_props,
            service="lambda",
            resource_names=resource_names,
            apply=apply,
        )
    )
    return ret


def _classify_alias_changes(change: ResourceDifference) -> list[ClassifiedChange]:
    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, ["FunctionVersion"])
    if classified.report_non_hotswappable_property_changes(ret):
        return ret
    if classified.hotswappable_props:
        # The alias is repointed by the change of the function it belongs to
        ret.append(
            HotswappableChange(
                resource_type=change.new_resource_type or "AWS::Lambda::Alias",
                props_changed=[],
                service="lambda",
                resource_names=[],
                apply=_noop,
            )
        )
    return ret


async def _noop(session: AwsSession) -> None:
    return None


async def evaluate_lambda_function_props(
    hotswappable_props: dict[str, PropertyDifference],
    runtime: Any,
    evaluator: TemplateEvaluator,
) -> LambdaFunctionChange | None:
    """Evaluate the new values of a function's changed properties.

    Only the new values are used: the diff always includes every part of
    ``Code``, even if only the key changed.
    """
    result = LambdaFunctionChange()

    for name, diff in hotswappable_props.items():
        if name == "Code":
            code = LambdaFunctionCode()
            new_code = diff.new_value or {}
            if "S3Bucket" in new_code:
                code.s3_bucket = await evaluator.evaluate(new_code["S3Bucket"])
            if "S3Key" in new_code:
                code.s3_key = await evaluator.evaluate(new_code["S3Key"])
            if "S3ObjectVersion" in new_code:
                code.s3_object_version = await evaluator.evaluate(new_code["S3ObjectVersion"])
            if "ImageUri" in new_code:
                code.image_uri = await evaluator.evaluate(new_code["ImageUri"])
            if "ZipFile" in new_code:
                function_code = await evaluator.evaluate(new_code["ZipFile"])
                function_runtime = await evaluator.evaluate(runtime)
                if not function_runtime:
                    return None
                extension = code_file_extension(function_runtime)
                code.function_code_zip = zip_string(f"index.{extension}", function_code)
            result.code = code
        elif name == "Description":
            result.description = await evaluator.evaluate(diff.new_value)
        elif name == "Environment":
            result.environment = await evaluator.evaluate(diff.new_value)

    if result.code is None and not result.has_configuration:
        return None
    return result


def zip_string(file_name: str, content: str) -> bytes:
    """Package inline function code as a deterministic zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        info = zipfile.ZipInfo(file_name, date_time=ZIP_DATE_TIME)
        info.compress_type = zipfile.ZIP_DEFLATED
        archive.writestr(info, content)
    return buffer.getvalue()


def code_file_extension(runtime: str) -> str:
    """File extension for inline code; only Node.js and Python support inline code."""
    if runtime.startswith("node"):
        return "js"
    if runtime.startswith("python"):
        return "py"
    raise CfnEvaluationError(
        f"runtime {runtime} is unsupported, only node.js and python runtimes are currently supported."
    )


async def wait_for_function_update(lambda_client: Any, configuration: dict[str, Any], function_name: str) -> None:
    """Wait until the function accepts another update.

    Functions in a VPC and container image functions take much longer to
    update, so they are polled less often.
    """
    slow = bool((configuration.get("VpcConfig") or {}).get("VpcId")) or configuration.get("PackageType") == "Image"
    waiter = lambda_client.get_waiter("function_updated")
    await asyncio.to_thread(
        waiter.wait,
        FunctionName=function_name,
        WaiterConfig={"Delay": 5 if slow else 1},
    )


async def versions_and_aliases(
    logical_id: str, evaluator: TemplateEvaluator
) -> tuple[list[ResourceDefinition], list[str]]:
    """Versions referencing a function, and the names of aliases referencing those versions."""
    versions = [r for r in evaluator.find_references_to(logical_id) if r.type == "AWS::Lambda::Version"]
    aliases = [
        ref
        for version in versions
        for ref in evaluator.find_references_to(version.logical_id)
        if ref.type == "AWS::Lambda::Alias"
    ]
    alias_names = [await evaluator.evaluate(alias.properties.get("Name")) for alias in aliases]
    return versions, alias_names


def _without_none(kwargs: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}
