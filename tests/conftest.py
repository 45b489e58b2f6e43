"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import boto3
import pytest
from moto import mock_aws

from stackshift.artifact import StackArtifact
from stackshift.aws.client import CloudFormationClient
from stackshift.aws.session import Account, AwsSession
from stackshift.models import ChangeSetDescription

STACK_NAME = "my-stack"
STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/my-stack/abc-123"
ACCOUNT = Account(account_id="123456789012", partition="aws")

# 2020-08-19T11:40:30.504Z
T0 = datetime.fromtimestamp(1597837230504 / 1000, UTC)


def at(offset_ms: int) -> datetime:
    return T0 + timedelta(milliseconds=offset_ms)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def cfn_client(aws_credentials):
    """Create a moto-mocked CloudFormation boto3 client."""
    with mock_aws():
        yield boto3.client("cloudformation", region_name="us-east-1")


@pytest.fixture
def cfn():
    """A CloudFormationClient whose API calls are AsyncMocks."""
    return make_cfn()


@pytest.fixture
def session(cfn):
    return make_session(cfn)


def make_cfn() -> AsyncMock:
    cfn = AsyncMock(spec=CloudFormationClient)
    cfn.describe_stack.return_value = None
    cfn.describe_stack_events.return_value = ([], None)
    cfn.list_stack_resources.return_value = []
    cfn.list_exports.return_value = {}
    return cfn


def make_session(cfn: AsyncMock) -> MagicMock:
    session = MagicMock(spec=AwsSession)
    session.cloudformation.return_value = cfn
    session.current_account = AsyncMock(return_value=ACCOUNT)
    session.region = "us-east-1"
    return session


def stack_description(
    status: str = "UPDATE_COMPLETE",
    name: str = STACK_NAME,
    parameters: dict[str, str] | None = None,
    outputs: dict[str, str] | None = None,
    tags: list[dict[str, str]] | None = None,
    notification_arns: list[str] | None = None,
    termination_protection: bool = False,
) -> dict:
    """A DescribeStacks entry."""
    return {
        "StackName": name,
        "StackId": STACK_ID,
        "StackStatus": status,
        "Parameters": [{"ParameterKey": k, "ParameterValue": v} for k, v in (parameters or {}).items()],
        "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in (outputs or {}).items()],
        "Tags": tags or [],
        "NotificationARNs": notification_arns or [],
        "EnableTerminationProtection": termination_protection,
    }


def change_set_description(
    status: str = "CREATE_COMPLETE",
    status_reason: str | None = None,
    changes: list[dict] | None = None,
) -> ChangeSetDescription:
    return ChangeSetDescription(
        change_set_id="arn:aws:cloudformation:us-east-1:123456789012:changeSet/cdk-deploy-change-set/1",
        change_set_name="cdk-deploy-change-set",
        stack_id=STACK_ID,
        status=status,
        status_reason=status_reason,
        changes=changes or [],
        creation_time=T0,
    )


def resource_change(action: str = "Modify", policy_action: str | None = None) -> dict:
    change = {"Type": "Resource", "ResourceChange": {"Action": action, "LogicalResourceId": "Queue"}}
    if policy_action:
        change["ResourceChange"]["PolicyAction"] = policy_action
    return change


def stack_event(
    event_id: str,
    timestamp: datetime,
    logical_id: str = STACK_NAME,
    status: str = "UPDATE_IN_PROGRESS",
    resource_type: str = "AWS::CloudFormation::Stack",
    physical_id: str | None = STACK_ID,
    reason: str | None = None,
    stack_id: str = STACK_ID,
    stack_name: str = STACK_NAME,
) -> dict:
    """A DescribeStackEvents entry."""
    event = {
        "EventId": event_id,
        "StackId": stack_id,
        "StackName": stack_name,
        "LogicalResourceId": logical_id,
        "ResourceType": resource_type,
        "Timestamp": timestamp,
        "ResourceStatus": status,
    }
    if physical_id is not None:
        event["PhysicalResourceId"] = physical_id
    if reason is not None:
        event["ResourceStatusReason"] = reason
    return event


def make_artifact(template: dict, **kwargs) -> StackArtifact:
    return StackArtifact(stack_name=STACK_NAME, template=template, **kwargs)


SIMPLE_TEMPLATE = """{
    "AWSTemplateFormatVersion": "2010-09-09",
    "Resources": {
        "MyQueue": {
            "Type": "AWS::SQS::Queue",
            "Properties": {
                "QueueName": "my-test-queue"
            }
        }
    }
}"""

PARAMETERIZED_TEMPLATE = """{
    "AWSTemplateFormatVersion": "2010-09-09",
    "Parameters": {
        "QueueName": {"Type": "String", "Default": "default-queue"}
    },
    "Resources": {
        "MyQueue": {
            "Type": "AWS::SQS::Queue",
            "Properties": {
                "QueueName": {"Ref": "QueueName"}
            }
        }
    },
    "Outputs": {
        "QueueUrl": {"Value": {"Ref": "MyQueue"}}
    }
}"""

LAMBDA_TEMPLATE = {
    "Resources": {
        "Func": {
            "Type": "AWS::Lambda::Function",
            "Properties": {
                "FunctionName": "my-function",
                "Code": {"S3Bucket": "assets-bucket", "S3Key": "old.zip"},
                "Runtime": "python3.12",
                "Handler": "index.handler",
            },
        }
    }
}
