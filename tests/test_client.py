"""Tests for CloudFormationClient."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from stackshift.aws.client import CloudFormationClient
from stackshift.errors import NoUpdatesToPerformError
from tests.conftest import PARAMETERIZED_TEMPLATE, SIMPLE_TEMPLATE


def _client_error(code, message, operation="DescribeStacks"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.mark.asyncio
async def test_describe_stack_returns_description(cfn_client):
    cfn_client.create_stack(StackName="stack-a", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    stack = await client.describe_stack("stack-a")

    assert stack["StackName"] == "stack-a"
    assert stack["StackStatus"] == "CREATE_COMPLETE"


@pytest.mark.asyncio
async def test_describe_stack_missing_returns_none(cfn_client):
    client = CloudFormationClient(region="us-east-1")

    assert await client.describe_stack("nonexistent") is None


@pytest.mark.asyncio
async def test_get_template_parses_body(cfn_client):
    cfn_client.create_stack(StackName="stack-a", TemplateBody=PARAMETERIZED_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    template = await client.get_template("stack-a")

    assert template["Resources"]["MyQueue"]["Type"] == "AWS::SQS::Queue"
    assert template["Parameters"]["QueueName"]["Default"] == "default-queue"


@pytest.mark.asyncio
async def test_list_stack_resources(cfn_client):
    cfn_client.create_stack(StackName="stack-a", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    resources = await client.list_stack_resources("stack-a")

    assert [r["LogicalResourceId"] for r in resources] == ["MyQueue"]


@pytest.mark.asyncio
async def test_describe_stack_events_newest_first(cfn_client):
    cfn_client.create_stack(StackName="stack-a", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    events, _ = await client.describe_stack_events("stack-a")

    assert events
    assert events[0]["Timestamp"] >= events[-1]["Timestamp"]


@pytest.mark.asyncio
async def test_describe_stack_events_missing_stack():
    mock_boto = MagicMock()
    mock_boto.describe_stack_events.side_effect = _client_error(
        "ValidationError", "Stack [gone] does not exist", "DescribeStackEvents"
    )

    client = CloudFormationClient(client=mock_boto)

    assert await client.describe_stack_events("gone") == ([], None)


@pytest.mark.asyncio
async def test_describe_stack_reraises_other_errors():
    mock_boto = MagicMock()
    mock_boto.describe_stacks.side_effect = _client_error("AccessDenied", "nope")

    client = CloudFormationClient(client=mock_boto)

    with pytest.raises(ClientError):
        await client.describe_stack("stack-a")


@pytest.mark.asyncio
async def test_update_stack_no_updates():
    mock_boto = MagicMock()
    mock_boto.update_stack.side_effect = _client_error(
        "ValidationError", "No updates are to be performed.", "UpdateStack"
    )

    client = CloudFormationClient(client=mock_boto)

    with pytest.raises(NoUpdatesToPerformError):
        await client.update_stack(StackName="stack-a", TemplateBody="{}")


@pytest.mark.asyncio
async def test_create_stack_drops_none_arguments():
    mock_boto = MagicMock()
    mock_boto.create_stack.return_value = {"StackId": "arn:stack"}

    client = CloudFormationClient(client=mock_boto)
    stack_id = await client.create_stack(StackName="stack-a", RoleARN=None, TemplateBody="{}")

    assert stack_id == "arn:stack"
    mock_boto.create_stack.assert_called_once_with(StackName="stack-a", TemplateBody="{}")


@pytest.mark.asyncio
async def test_describe_change_set_fetches_all_pages():
    mock_boto = MagicMock()
    mock_boto.describe_change_set.side_effect = [
        {
            "ChangeSetId": "cs-arn",
            "ChangeSetName": "cs",
            "StackId": "stack-arn",
            "Status": "CREATE_COMPLETE",
            "Changes": [{"Type": "Resource"}],
            "NextToken": "page-2",
        },
        {"Changes": [{"Type": "Resource"}, {"Type": "Resource"}]},
    ]

    client = CloudFormationClient(client=mock_boto)
    description = await client.describe_change_set("stack-a", "cs", fetch_all=True)

    assert len(description.changes) == 3
    assert mock_boto.describe_change_set.call_args.kwargs["NextToken"] == "page-2"
    assert mock_boto.describe_change_set.call_args.kwargs["ChangeSetName"] == "cs-arn"


@pytest.mark.asyncio
async def test_describe_change_set_first_page_only():
    mock_boto = MagicMock()
    mock_boto.describe_change_set.return_value = {
        "ChangeSetId": "cs-arn",
        "Status": "CREATE_COMPLETE",
        "Changes": [{"Type": "Resource"}],
        "NextToken": "page-2",
    }

    client = CloudFormationClient(client=mock_boto)
    description = await client.describe_change_set("stack-a", "cs")

    assert len(description.changes) == 1
    assert mock_boto.describe_change_set.call_count == 1


@pytest.mark.asyncio
async def test_list_exports_paginates():
    mock_boto = MagicMock()
    mock_boto.list_exports.side_effect = [
        {"Exports": [{"Name": "a", "Value": "1"}], "NextToken": "t"},
        {"Exports": [{"Name": "b", "Value": "2"}]},
    ]

    client = CloudFormationClient(client=mock_boto)

    assert await client.list_exports() == {"a": "1", "b": "2"}
