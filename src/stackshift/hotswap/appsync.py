"""Hotswap detector for AppSync resolvers, functions, schemas and API keys."""

import asyncio
import logging
from typing import Any

from botocore.exceptions import ClientError

from stackshift.aws.session import AwsSession
from stackshift.errors import DeploymentError
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.common import (
    HotswapPropertyOverrides,
    classify_changes,
    lower_case_first_character,
    transform_object_keys,
)
from stackshift.models import ClassifiedChange, HotswappableChange, ResourceDifference

logger = logging.getLogger(__name__)

RESOLVER = "AWS::AppSync::Resolver"
FUNCTION_CONFIGURATION = "AWS::AppSync::FunctionConfiguration"
GRAPHQL_SCHEMA = "AWS::AppSync::GraphQLSchema"
API_KEY = "AWS::AppSync::ApiKey"

HOTSWAPPABLE_PROPS = [
    "RequestMappingTemplate",
    "RequestMappingTemplateS3Location",
    "ResponseMappingTemplate",
    "ResponseMappingTemplateS3Location",
    "Code",
    "CodeS3Location",
    "Definition",
    "DefinitionS3Location",
    "Expires",
]

# SDK field that receives the content of each S3 location
S3_LOCATION_FIELDS = {
    "requestMappingTemplateS3Location": "requestMappingTemplate",
    "responseMappingTemplateS3Location": "responseMappingTemplate",
    "definitionS3Location": "definition",
    "codeS3Location": "code",
}

SCHEMA_POLL_INTERVAL = 1.0
CONCURRENT_MODIFICATION_RETRIES = 5


async def is_hotswappable_appsync_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    resource_type = change.new_resource_type
    if resource_type not in (RESOLVER, FUNCTION_CONFIGURATION, GRAPHQL_SCHEMA, API_KEY):
        return []

    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, HOTSWAPPABLE_PROPS)
    if classified.report_non_hotswappable_property_changes(ret):
        return ret
    if not classified.hotswappable_props:
        return ret

    new_props = change.new_properties or {}
    is_function = resource_type == FUNCTION_CONFIGURATION
    arn = await evaluator.establish_physical_name(logical_id, new_props.get("Name") if is_function else None)
    if resource_type == RESOLVER:
        # arn:aws:appsync:<region>:<account>:apis/<apiId>/types/<type>/resolvers/<field>
        arn_parts = arn.split("/") if arn else None
        physical_name = f"{arn_parts[3]}.{arn_parts[5]}" if arn_parts and len(arn_parts) > 5 else None
    else:
        physical_name = arn

    async def apply(session: AwsSession) -> None:
        if not physical_name:
            return

        sdk_properties = {
            **(change.old_properties or {}),
            "Definition": new_props.get("Definition"),
            "DefinitionS3Location": new_props.get("DefinitionS3Location"),
            "RequestMappingTemplate": new_props.get("RequestMappingTemplate"),
            "RequestMappingTemplateS3Location": new_props.get("RequestMappingTemplateS3Location"),
            "ResponseMappingTemplate": new_props.get("ResponseMappingTemplate"),
            "ResponseMappingTemplateS3Location": new_props.get("ResponseMappingTemplateS3Location"),
            "Code": new_props.get("Code"),
            "CodeS3Location": new_props.get("CodeS3Location"),
            "Expires": new_props.get("Expires"),
        }
        evaluated = await evaluator.evaluate({k: v for k, v in sdk_properties.items() if v is not None})
        request = transform_object_keys(evaluated, lower_case_first_character)

        # The SDK takes inline content, not S3 locations
        for location_field, content_field in S3_LOCATION_FIELDS.items():
            if request.get(location_field):
                request[content_field] = await fetch_file_from_s3(request.pop(location_field), session)

        appsync = session.appsync()
        if resource_type == RESOLVER:
            await asyncio.to_thread(appsync.update_resolver, **request)
        elif is_function:
            await _update_function(appsync, request, physical_name)
        elif resource_type == GRAPHQL_SCHEMA:
            await _update_schema(appsync, request)
        else:
            await _update_api_key(appsync, request, physical_name)

    ret.append(
        HotswappableChange(
            resource_type=resource_type,
            props_changed=classified.names_of_hotswappable_props,
            service="appsync",
            resource_names=[f"{resource_type} '{physical_name}'"],
            apply=apply,
        )
    )
    return ret


async def _update_function(appsync: Any, request: dict[str, Any], function_name: str) -> None:
    # Function version only applies to VTL templates, runtime only to JS code
    if request.get("code"):
        request.pop("functionVersion", None)
    else:
        request.pop("runtime", None)

    functions = await _list_functions(appsync, request["apiId"])
    function_id = next((fn.get("functionId") for fn in functions if fn.get("name") == function_name), None)

    # Concurrent updates of functions (or with the schema) of one API are rejected
    for attempt in range(CONCURRENT_MODIFICATION_RETRIES + 1):
        try:
            await asyncio.to_thread(appsync.update_function, **request, functionId=function_id)
            return
        except ClientError as err:
            code = err.response.get("Error", {}).get("Code", "")
            if code != "ConcurrentModificationException" or attempt == CONCURRENT_MODIFICATION_RETRIES:
                raise
            logger.debug("Concurrent modification of AppSync function %s, retrying", function_name)
            await asyncio.sleep(1)


async def _list_functions(appsync: Any, api_id: str) -> list[dict[str, Any]]:
    functions = []
    next_token = None

    while True:
        kwargs: dict[str, Any] = {"apiId": api_id}
        if next_token:
            kwargs["nextToken"] = next_token

        resp = await asyncio.to_thread(appsync.list_functions, **kwargs)
        functions.extend(resp.get("functions") or [])

        next_token = resp.get("nextToken")
        if not next_token:
            break

    return functions


async def _update_schema(appsync: Any, request: dict[str, Any]) -> None:
    response = await asyncio.to_thread(
        appsync.start_schema_creation, apiId=request["apiId"], definition=request.get("definition", "")
    )
    while response.get("status") in ("PROCESSING", "DELETING"):
        await asyncio.sleep(SCHEMA_POLL_INTERVAL)
        response = await asyncio.to_thread(appsync.get_schema_creation_status, apiId=request["apiId"])
    if response.get("status") == "FAILED":
        raise DeploymentError(response.get("details") or "Schema creation failed")


async def _update_api_key(appsync: Any, request: dict[str, Any], physical_name: str) -> None:
    key_id = request.get("apiKeyId") or request.get("id")
    if not key_id:
        # ApiKeyId is optional in the template; the key ARN ends in apis/<apiId>/apikeys/<id>
        arn_parts = physical_name.split("/")
        if len(arn_parts) == 4:
            key_id = arn_parts[3]
    update = {"apiId": request["apiId"], "id": key_id}
    for optional in ("description", "expires"):
        if request.get(optional) is not None:
            update[optional] = request[optional]
    await asyncio.to_thread(appsync.update_api_key, **update)


async def fetch_file_from_s3(s3_url: str, session: AwsSession) -> str:
    """Read the object behind an ``s3://bucket/key`` URL as text."""
    parts = s3_url.split("/")
    bucket = parts[2]
    key = "/".join(parts[3:])
    response = await asyncio.to_thread(session.s3().get_object, Bucket=bucket, Key=key)
    return response["Body"].read().decode()
