"""Tests for client-side template evaluation."""

import base64

import pytest

from stackshift.errors import CfnEvaluationError
from stackshift.evaluate import TemplateEvaluator
from tests.conftest import STACK_NAME

TEMPLATE = {
    "Parameters": {
        "Env": {"Type": "String", "Default": "dev"},
        "Suffix": {"Type": "String"},
    },
    "Resources": {
        "Func": {"Type": "AWS::Lambda::Function", "Properties": {"Role": {"Fn::GetAtt": ["Role", "Arn"]}}},
        "Role": {"Type": "AWS::IAM::Role", "Properties": {}},
        "Machine": {"Type": "AWS::StepFunctions::StateMachine", "Properties": {}},
        "Api": {"Type": "AWS::AppSync::GraphQLApi", "Properties": {}},
        "Bucket": {"Type": "AWS::S3::Bucket", "Properties": {}},
        "Version": {"Type": "AWS::Lambda::Version", "Properties": {"FunctionName": {"Ref": "Func"}}},
        "Alias": {
            "Type": "AWS::Lambda::Alias",
            "Properties": {"FunctionVersion": {"Fn::Sub": "${Version.Version}"}},
        },
    },
}

DEPLOYED = [
    {"LogicalResourceId": "Func", "PhysicalResourceId": "my-function"},
    {"LogicalResourceId": "Role", "PhysicalResourceId": "my-role"},
    {
        "LogicalResourceId": "Machine",
        "PhysicalResourceId": "arn:aws:states:us-east-1:123456789012:stateMachine:my-machine",
    },
    {"LogicalResourceId": "Api", "PhysicalResourceId": "arn:aws:appsync:us-east-1:123456789012:apis/api-id"},
    {"LogicalResourceId": "Bucket", "PhysicalResourceId": "my-bucket"},
]


@pytest.fixture
def evaluator(cfn):
    cfn.list_stack_resources.return_value = DEPLOYED
    return TemplateEvaluator(
        cfn,
        STACK_NAME,
        TEMPLATE,
        {"Suffix": "blue"},
        account="123456789012",
        region="us-east-1",
    )


@pytest.mark.asyncio
async def test_literals_pass_through(evaluator):
    assert await evaluator.evaluate("plain") == "plain"
    assert await evaluator.evaluate(42) == 42
    assert await evaluator.evaluate({"A": ["x", {"B": 1}]}) == {"A": ["x", {"B": 1}]}


@pytest.mark.asyncio
async def test_ref_parameters_and_pseudo_parameters(evaluator):
    assert await evaluator.evaluate({"Ref": "Env"}) == "dev"
    assert await evaluator.evaluate({"Ref": "Suffix"}) == "blue"
    assert await evaluator.evaluate({"Ref": "AWS::AccountId"}) == "123456789012"
    assert await evaluator.evaluate({"Ref": "AWS::Region"}) == "us-east-1"
    assert await evaluator.evaluate({"Ref": "AWS::Partition"}) == "aws"
    assert await evaluator.evaluate({"Ref": "AWS::StackName"}) == STACK_NAME


@pytest.mark.asyncio
async def test_ref_resource_uses_physical_id(evaluator, cfn):
    assert await evaluator.evaluate({"Ref": "Func"}) == "my-function"
    assert await evaluator.evaluate({"Ref": "Role"}) == "my-role"
    # resources are listed once
    cfn.list_stack_resources.assert_called_once_with(STACK_NAME)


@pytest.mark.asyncio
async def test_no_value_is_dropped(evaluator):
    assert await evaluator.evaluate(["a", {"Ref": "AWS::NoValue"}]) == ["a"]
    assert await evaluator.evaluate({"A": {"Ref": "AWS::NoValue"}, "B": 1}) == {"B": 1}


@pytest.mark.asyncio
async def test_ref_unknown_raises(evaluator):
    with pytest.raises(CfnEvaluationError):
        await evaluator.evaluate({"Ref": "Nope"})


@pytest.mark.asyncio
async def test_get_att_arn(evaluator):
    assert await evaluator.evaluate({"Fn::GetAtt": ["Func", "Arn"]}) == (
        "arn:aws:lambda:us-east-1:123456789012:function:my-function"
    )
    assert await evaluator.evaluate({"Fn::GetAtt": "Role.Arn"}) == "arn:aws:iam::123456789012:role/my-role"
    assert await evaluator.evaluate({"Fn::GetAtt": ["Machine", "Arn"]}) == (
        "arn:aws:states:us-east-1:123456789012:stateMachine:my-machine"
    )
    assert await evaluator.evaluate({"Fn::GetAtt": ["Bucket", "Arn"]}) == "arn:aws:s3:::my-bucket"


@pytest.mark.asyncio
async def test_get_att_other_attributes(evaluator):
    assert await evaluator.evaluate({"Fn::GetAtt": ["Api", "ApiId"]}) == "api-id"
    assert await evaluator.evaluate({"Fn::GetAtt": ["Machine", "Name"]}) == "my-machine"
    assert await evaluator.evaluate({"Fn::GetAtt": ["Bucket", "RegionalDomainName"]}) == (
        "my-bucket.s3.us-east-1.amazonaws.com"
    )


@pytest.mark.asyncio
async def test_get_att_unsupported_attribute(evaluator):
    with pytest.raises(CfnEvaluationError, match="cannot be evaluated"):
        await evaluator.evaluate({"Fn::GetAtt": ["Role", "RoleId"]})


@pytest.mark.asyncio
async def test_join_split_select(evaluator):
    assert await evaluator.evaluate({"Fn::Join": ["-", ["a", {"Ref": "Env"}, "c"]]}) == "a-dev-c"
    assert await evaluator.evaluate({"Fn::Split": [",", "a,b,c"]}) == ["a", "b", "c"]
    assert await evaluator.evaluate({"Fn::Select": ["1", {"Fn::Split": [",", "a,b,c"]}]}) == "b"


@pytest.mark.asyncio
async def test_sub(evaluator):
    assert await evaluator.evaluate({"Fn::Sub": "${AWS::StackName}-${Env}"}) == f"{STACK_NAME}-dev"
    assert await evaluator.evaluate({"Fn::Sub": ["${Name}-x", {"Name": {"Ref": "Suffix"}}]}) == "blue-x"
    assert await evaluator.evaluate({"Fn::Sub": "${Role.Arn}"}) == "arn:aws:iam::123456789012:role/my-role"
    assert await evaluator.evaluate({"Fn::Sub": "${!Literal}"}) == "${Literal}"


@pytest.mark.asyncio
async def test_import_value(evaluator, cfn):
    cfn.list_exports.return_value = {"shared-vpc": "vpc-123"}

    assert await evaluator.evaluate({"Fn::ImportValue": "shared-vpc"}) == "vpc-123"
    with pytest.raises(CfnEvaluationError):
        await evaluator.evaluate({"Fn::ImportValue": "missing"})
    cfn.list_exports.assert_called_once()


@pytest.mark.asyncio
async def test_base64(evaluator):
    assert await evaluator.evaluate({"Fn::Base64": "hello"}) == base64.b64encode(b"hello").decode()


@pytest.mark.asyncio
async def test_unsupported_function(evaluator):
    with pytest.raises(CfnEvaluationError, match="Fn::GetAZs"):
        await evaluator.evaluate({"Fn::GetAZs": ""})


@pytest.mark.asyncio
async def test_establish_physical_name_prefers_template(evaluator):
    assert await evaluator.establish_physical_name("Func", {"Fn::Sub": "fn-${Env}"}) == "fn-dev"
    assert await evaluator.establish_physical_name("Func") == "my-function"


@pytest.mark.asyncio
async def test_establish_physical_name_falls_back_when_unresolvable(evaluator):
    assert await evaluator.establish_physical_name("Func", {"Fn::GetAZs": ""}) == "my-function"


def test_find_references_to(evaluator):
    assert [r.logical_id for r in evaluator.find_references_to("Role")] == ["Func"]
    assert [r.logical_id for r in evaluator.find_references_to("Func")] == ["Version"]
    assert [r.logical_id for r in evaluator.find_references_to("Version")] == ["Alias"]


@pytest.mark.asyncio
async def test_create_nested_evaluates_parameters_in_parent_scope(evaluator):
    nested = await evaluator.create_nested(
        "nested-stack",
        {"Parameters": {"Parent": {"Type": "String"}}, "Resources": {}},
        {"Parent": {"Ref": "Env"}},
    )

    assert await nested.evaluate({"Ref": "Parent"}) == "dev"
    assert await nested.evaluate({"Ref": "AWS::StackName"}) == "nested-stack"


@pytest.mark.parametrize(
    "expression",
    [
        {"Fn::Join": ["-"]},
        {"Fn::Join": ["-", "not-a-list"]},
        {"Fn::Join": [["-"], ["a", "b"]]},
        {"Fn::Split": [",", ["a", "b"]]},
        {"Fn::Split": "a,b"},
        {"Fn::Select": ["5", ["a", "b"]]},
        {"Fn::Select": ["first", ["a", "b"]]},
        {"Fn::Select": ["0", "ab", "extra"]},
        {"Fn::GetAtt": ["Func"]},
        {"Fn::Sub": ["${A}", "not-a-map"]},
    ],
)
@pytest.mark.asyncio
async def test_malformed_arguments_raise_evaluation_error(evaluator, expression):
    with pytest.raises(CfnEvaluationError):
        await evaluator.evaluate(expression)
