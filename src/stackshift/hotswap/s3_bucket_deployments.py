"""Hotswap detector for bucket deployment custom resources."""

import asyncio
import json
from typing import Any

from stackshift.aws.session import AwsSession
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.common import HotswapPropertyOverrides, stringify_values
from stackshift.models import ClassifiedChange, HotswappableChange, ResourceDifference

BUCKET_DEPLOYMENT_TYPE = "Custom::CDKBucketDeployment"

# The handler only acts on ResourceProperties, but CloudFormation always sends these
REQUIRED_BY_CFN = "required-to-be-present-by-cfn"


async def is_hotswappable_s3_bucket_deployment_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    if change.new_resource_type != BUCKET_DEPLOYMENT_TYPE:
        return []

    new_props = change.new_properties or {}
    # The ARN of the handler function; Invoke accepts it in place of a name
    function_name = await evaluator.evaluate(new_props.get("ServiceToken"))
    if not function_name:
        return []

    properties = await evaluator.evaluate({k: v for k, v in new_props.items() if k != "ServiceToken"})

    async def apply(session: AwsSession) -> None:
        payload = {
            "RequestType": "Update",
            "ResponseURL": REQUIRED_BY_CFN,
            "PhysicalResourceId": REQUIRED_BY_CFN,
            "StackId": REQUIRED_BY_CFN,
            "RequestId": REQUIRED_BY_CFN,
            "LogicalResourceId": REQUIRED_BY_CFN,
            "ResourceProperties": stringify_values(properties),
        }
        await asyncio.to_thread(
            session.lambda_().invoke,
            FunctionName=function_name,
            Payload=json.dumps(payload).encode(),
        )

    return [
        HotswappableChange(
            resource_type=BUCKET_DEPLOYMENT_TYPE,
            props_changed=["*"],
            service="custom-s3-deployment",
            resource_names=[f"Contents of S3 Bucket '{properties.get('DestinationBucketName')}'"],
            apply=apply,
        )
    ]


def _ref_target(expression: Any) -> str | None:
    if isinstance(expression, dict) and isinstance(expression.get("Ref"), str):
        return expression["Ref"]
    return None


async def skip_change_for_s3_deploy_custom_resource_policy(
    policy_logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
) -> bool:
    """Whether a policy change only affects the role of a bucket deployment handler.

    Such policies reference the assets directly, so they change with every
    asset and can be ignored when the bucket deployment itself is hotswapped.
    """
    if change.new_resource_type != "AWS::IAM::Policy":
        return False
    roles = (change.new_properties or {}).get("Roles")
    if not roles:
        return False

    for role in roles:
        role_logical_id = _ref_target(role)
        if not role_logical_id:
            return False

        for role_ref in evaluator.find_references_to(role_logical_id):
            if role_ref.type == "AWS::Lambda::Function":
                for lambda_ref in evaluator.find_references_to(role_ref.logical_id):
                    if lambda_ref.type != BUCKET_DEPLOYMENT_TYPE:
                        return False
            elif role_ref.type == "AWS::IAM::Policy":
                if role_ref.logical_id != policy_logical_id:
                    return False
            else:
                return False

    return True
