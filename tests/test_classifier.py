"""Tests for classifying template changes."""

import pytest

from stackshift.diff import full_diff
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.classifier import classify_resource_changes, collapse_renames
from stackshift.hotswap.common import UNSUPPORTED_RESOURCE_REASON
from stackshift.nested import NestedStackTemplates
from tests.conftest import STACK_NAME


def _evaluator(cfn, template, deployed=None):
    cfn.list_stack_resources.return_value = deployed or []
    return TemplateEvaluator(cfn, STACK_NAME, template, account="123456789012", region="us-east-1")


async def _classify(cfn, old, new, deployed=None, nested_stacks=None):
    evaluator = _evaluator(cfn, new, deployed)
    return await classify_resource_changes(full_diff(old, new), evaluator, nested_stacks or {})


def _function(**props):
    return {
        "Type": "AWS::Lambda::Function",
        "Properties": {"FunctionName": "my-function", "Runtime": "python3.12", **props},
    }


@pytest.mark.asyncio
async def test_changed_output_is_not_hotswappable(cfn):
    result = await _classify(cfn, {"Outputs": {"Url": {"Value": "a"}}}, {"Outputs": {"Url": {"Value": "b"}}})

    assert result.hotswappable == []
    assert len(result.non_hotswappable) == 1
    assert result.non_hotswappable[0].resource_type == "Stack Output"
    assert result.non_hotswappable[0].reason == "output was changed"


@pytest.mark.asyncio
async def test_lambda_code_change_is_hotswappable(cfn):
    old = {"Resources": {"Func": _function(Code={"S3Bucket": "b", "S3Key": "old.zip"})}}
    new = {"Resources": {"Func": _function(Code={"S3Bucket": "b", "S3Key": "new.zip"})}}

    result = await _classify(cfn, old, new)

    assert result.non_hotswappable == []
    assert len(result.hotswappable) == 1
    change = result.hotswappable[0]
    assert change.props_changed == ["Code"]
    assert change.service == "lambda"
    assert change.resource_names == ["Lambda Function 'my-function'"]


@pytest.mark.asyncio
async def test_lambda_tags_change_is_rejected(cfn):
    old = {"Resources": {"Func": _function(Tags=[{"Key": "a", "Value": "1"}])}}
    new = {"Resources": {"Func": _function(Tags=[{"Key": "a", "Value": "2"}])}}

    result = await _classify(cfn, old, new)

    assert result.hotswappable == []
    assert result.non_hotswappable[0].reason == "Tags are not hotswappable"
    assert result.non_hotswappable[0].rejected_changes == ["Tags"]


@pytest.mark.asyncio
async def test_lambda_mixed_change_is_rejected_as_a_whole(cfn):
    old = {"Resources": {"Func": _function(Code={"S3Key": "old.zip"}, MemorySize=128)}}
    new = {"Resources": {"Func": _function(Code={"S3Key": "new.zip"}, MemorySize=256)}}

    result = await _classify(cfn, old, new)

    assert result.hotswappable == []
    assert len(result.non_hotswappable) == 1
    assert result.non_hotswappable[0].rejected_changes == ["MemorySize"]
    assert "'MemorySize'" in result.non_hotswappable[0].reason


@pytest.mark.asyncio
async def test_addition_removal_and_type_change(cfn):
    old = {
        "Resources": {
            "Gone": {"Type": "AWS::SQS::Queue", "Properties": {"QueueName": "gone"}},
            "Morph": {"Type": "AWS::SQS::Queue"},
        }
    }
    new = {
        "Resources": {
            "Added": {"Type": "AWS::SNS::Topic", "Properties": {"TopicName": "added"}},
            "Morph": {"Type": "AWS::SNS::Topic"},
        }
    }

    result = await _classify(cfn, old, new)

    reasons = {c.logical_id: c.reason for c in result.non_hotswappable}
    assert reasons["Gone"] == "resource 'Gone' was destroyed by this deployment"
    assert reasons["Added"] == "resource 'Added' was created by this deployment"
    assert "had its type changed" in reasons["Morph"]


@pytest.mark.asyncio
async def test_unsupported_resource_type(cfn):
    old = {"Resources": {"Queue": {"Type": "AWS::SQS::Queue", "Properties": {"DelaySeconds": 0}}}}
    new = {"Resources": {"Queue": {"Type": "AWS::SQS::Queue", "Properties": {"DelaySeconds": 5}}}}

    result = await _classify(cfn, old, new)

    assert result.non_hotswappable[0].reason == UNSUPPORTED_RESOURCE_REASON
    assert result.non_hotswappable[0].rejected_changes == ["DelaySeconds"]


@pytest.mark.asyncio
async def test_metadata_changes_are_ignored(cfn):
    old = {"Resources": {"CDKMetadata": {"Type": "AWS::CDK::Metadata", "Properties": {"Analytics": "a"}}}}
    new = {"Resources": {"CDKMetadata": {"Type": "AWS::CDK::Metadata", "Properties": {"Analytics": "b"}}}}

    result = await _classify(cfn, old, new)

    assert result.hotswappable == []
    assert result.non_hotswappable == []


@pytest.mark.asyncio
async def test_every_change_is_classified(cfn):
    old = {
        "Resources": {
            "Func": _function(Code={"S3Key": "old.zip"}),
            "Queue": {"Type": "AWS::SQS::Queue", "Properties": {"DelaySeconds": 0}},
        },
        "Outputs": {"Out": {"Value": "1"}},
    }
    new = {
        "Resources": {
            "Func": _function(Code={"S3Key": "new.zip"}),
            "Queue": {"Type": "AWS::SQS::Queue", "Properties": {"DelaySeconds": 1}},
            "Topic": {"Type": "AWS::SNS::Topic"},
        },
        "Outputs": {"Out": {"Value": "2"}},
    }

    result = await _classify(cfn, old, new)

    assert len(result.hotswappable) + len(result.non_hotswappable) == 4


@pytest.mark.asyncio
async def test_rename_is_classified_as_in_place_change(cfn):
    code = {"S3Bucket": "b", "S3Key": "same.zip"}
    old = {"Resources": {"OldFunc": _function(Code=code)}}
    new = {"Resources": {"NewFunc": _function(Code=code)}}

    result = await _classify(cfn, old, new)

    # One change for the new logical ID, judged by the Lambda detector
    assert result.hotswappable == []
    assert [c.logical_id for c in result.non_hotswappable] == ["NewFunc"]
    assert "created" not in result.non_hotswappable[0].reason
    assert "destroyed" not in result.non_hotswappable[0].reason


def test_collapse_renames_is_idempotent():
    code = {"S3Key": "same.zip"}
    diff = full_diff(
        {"Resources": {"OldFunc": _function(Code=code), "Gone": {"Type": "AWS::SQS::Queue"}}},
        {"Resources": {"NewFunc": _function(Code=code), "Added": {"Type": "AWS::SNS::Topic"}}},
    )

    once = collapse_renames(diff.resources)
    twice = collapse_renames(once)

    assert set(once) == {"NewFunc", "Gone", "Added"}
    assert once["NewFunc"].old_value == diff.resources["OldFunc"].old_value
    assert once["NewFunc"].new_value == diff.resources["NewFunc"].new_value
    assert set(twice) == set(once)


@pytest.mark.asyncio
async def test_state_machine_definition_change(cfn):
    arn = "arn:aws:states:us-east-1:123456789012:stateMachine:my-machine"
    old = {"Resources": {"Machine": {"Type": "AWS::StepFunctions::StateMachine", "Properties": {"DefinitionString": "{}"}}}}
    new = {
        "Resources": {
            "Machine": {"Type": "AWS::StepFunctions::StateMachine", "Properties": {"DefinitionString": '{"a":1}'}}
        }
    }

    result = await _classify(cfn, old, new, deployed=[{"LogicalResourceId": "Machine", "PhysicalResourceId": arn}])

    assert len(result.hotswappable) == 1
    assert result.hotswappable[0].service == "stepfunctions-service"
    assert result.hotswappable[0].resource_names == ["AWS::StepFunctions::StateMachine 'my-machine'"]


@pytest.mark.asyncio
async def test_ecs_task_definition_without_services(cfn):
    old = {"Resources": {"Task": {"Type": "AWS::ECS::TaskDefinition", "Properties": {"ContainerDefinitions": [{"Image": "a"}]}}}}
    new = {"Resources": {"Task": {"Type": "AWS::ECS::TaskDefinition", "Properties": {"ContainerDefinitions": [{"Image": "b"}]}}}}

    result = await _classify(cfn, old, new)

    assert len(result.hotswappable) == 1
    assert len(result.non_hotswappable) == 1
    assert result.non_hotswappable[0].hotswap_only_visible is False


@pytest.mark.asyncio
async def test_new_nested_stack_is_not_hotswappable(cfn):
    nested = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "a"}}
    changed = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "b"}}
    nested_stacks = {"Nested": NestedStackTemplates(None, {}, {"Resources": {}})}

    result = await _classify(
        cfn, {"Resources": {"Nested": nested}}, {"Resources": {"Nested": changed}}, nested_stacks=nested_stacks
    )

    assert len(result.non_hotswappable) == 1
    assert "newly created nested stack" in result.non_hotswappable[0].reason


@pytest.mark.asyncio
async def test_nested_stack_changes_are_classified(cfn):
    nested = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "a"}}
    changed = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "b"}}
    nested_stacks = {
        "Nested": NestedStackTemplates(
            "nested-abc",
            {"Resources": {"Func": _function(Code={"S3Key": "old.zip"})}},
            {"Resources": {"Func": _function(Code={"S3Key": "new.zip"})}},
        )
    }

    result = await _classify(
        cfn, {"Resources": {"Nested": nested}}, {"Resources": {"Nested": changed}}, nested_stacks=nested_stacks
    )

    assert result.non_hotswappable == []
    assert [c.resource_type for c in result.hotswappable] == ["AWS::Lambda::Function"]


@pytest.mark.asyncio
async def test_nested_stack_without_template_is_unsupported(cfn):
    nested = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "a"}}
    changed = {"Type": "AWS::CloudFormation::Stack", "Properties": {"TemplateURL": "b"}}

    result = await _classify(cfn, {"Resources": {"Nested": nested}}, {"Resources": {"Nested": changed}})

    assert result.non_hotswappable[0].reason == UNSUPPORTED_RESOURCE_REASON


@pytest.mark.asyncio
async def test_lambda_environment_change(cfn):
    old = {"Resources": {"Foo": _function(Environment={"Variables": {"A": "1"}})}}
    new = {"Resources": {"Foo": _function(Environment={"Variables": {"A": "2"}})}}

    result = await _classify(cfn, old, new)

    assert result.non_hotswappable == []
    assert result.hotswappable[0].props_changed == ["Environment"]
    assert result.hotswappable[0].service == "lambda"


@pytest.mark.asyncio
async def test_resource_type_without_detector(cfn):
    old = {"Resources": {"Bar": {"Type": "AWS::EC2::Instance", "Properties": {"InstanceType": "t3.micro"}}}}
    new = {"Resources": {"Bar": {"Type": "AWS::EC2::Instance", "Properties": {"InstanceType": "t3.large"}}}}

    result = await _classify(cfn, old, new)

    assert result.hotswappable == []
    assert "not supported for hotswap" in result.non_hotswappable[0].reason


@pytest.mark.asyncio
async def test_lambda_change_outside_properties_is_not_a_change(cfn):
    old = {"Resources": {"Func": {**_function(), "Metadata": {"aws:asset:path": "asset.old"}}}}
    new = {"Resources": {"Func": {**_function(), "Metadata": {"aws:asset:path": "asset.new"}}}}

    result = await _classify(cfn, old, new)

    assert result.hotswappable == []
    assert result.non_hotswappable == []
