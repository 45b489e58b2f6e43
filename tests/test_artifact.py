"""Tests for stack artifacts, construct metadata and nested stack templates."""

import json

import pytest

from stackshift.artifact import LOGICAL_ID_METADATA, StackArtifact, load_manifest_metadata
from stackshift.errors import NestedStackError
from stackshift.nested import load_current_template_with_nested_stacks
from tests.conftest import STACK_NAME

MANIFEST = {
    "artifacts": {
        STACK_NAME: {
            "metadata": {
                f"/{STACK_NAME}/Api/Handler/Resource": [
                    {"type": LOGICAL_ID_METADATA, "data": "ApiHandler1234", "trace": ["at new Handler", "at main"]}
                ],
                f"/{STACK_NAME}/Queue/Resource": [{"type": LOGICAL_ID_METADATA, "data": "Queue5678"}],
            }
        }
    }
}


def test_find_metadata_for_simplifies_path():
    artifact = StackArtifact(STACK_NAME, {}, metadata=load_manifest_metadata(MANIFEST, STACK_NAME))

    metadata = artifact.find_metadata_for("ApiHandler1234")

    assert metadata.construct_path == "Api/Handler"
    assert metadata.entry.trace == ["at new Handler", "at main"]


def test_find_metadata_for_unknown_logical_id():
    artifact = StackArtifact(STACK_NAME, {}, metadata=load_manifest_metadata(MANIFEST, STACK_NAME))

    assert artifact.find_metadata_for("Nope") is None
    assert StackArtifact(STACK_NAME, {}).find_metadata_for("Queue5678") is None


def test_bare_metadata_mapping():
    raw = MANIFEST["artifacts"][STACK_NAME]["metadata"]

    metadata = load_manifest_metadata(raw, STACK_NAME)

    assert len(metadata) == 2


def test_from_files(tmp_path):
    template_file = tmp_path / "stack.template.json"
    template_file.write_text(json.dumps({"Resources": {"Queue5678": {"Type": "AWS::SQS::Queue"}}}))
    manifest_file = tmp_path / "manifest.json"
    manifest_file.write_text(json.dumps(MANIFEST))

    artifact = StackArtifact.from_files(str(template_file), STACK_NAME, str(manifest_file), termination_protection=True)

    assert artifact.template["Resources"]["Queue5678"]["Type"] == "AWS::SQS::Queue"
    assert artifact.find_metadata_for("Queue5678").construct_path == "Queue"
    assert artifact.termination_protection is True
    assert artifact.directory == tmp_path


def _nested_resource(asset_path):
    return {
        "Type": "AWS::CloudFormation::Stack",
        "Properties": {"TemplateURL": "https://example.com/nested.json"},
        "Metadata": {"aws:asset:path": asset_path},
    }


@pytest.mark.asyncio
async def test_load_nested_templates(tmp_path, cfn):
    nested_template = {"Resources": {"Func": {"Type": "AWS::Lambda::Function"}}}
    (tmp_path / "nested.template.json").write_text(json.dumps(nested_template))
    root_template = {"Resources": {"Nested": _nested_resource("nested.template.json")}}
    artifact = StackArtifact(STACK_NAME, root_template, template_file=str(tmp_path / "root.template.json"))

    cfn.list_stack_resources.side_effect = [
        [
            {
                "LogicalResourceId": "Nested",
                "PhysicalResourceId": "arn:aws:cloudformation:us-east-1:123456789012:stack/nested-abc/uuid",
            }
        ],
        [],
    ]
    cfn.get_template.return_value = {"Resources": {"Func": {"Type": "AWS::Lambda::Function", "Properties": {}}}}

    result = await load_current_template_with_nested_stacks(artifact, cfn, {"Resources": {}})

    nested = result.nested_stacks["Nested"]
    assert nested.physical_name == "nested-abc"
    assert nested.generated_template == nested_template
    assert nested.deployed_template["Resources"]["Func"]["Properties"] == {}
    cfn.get_template.assert_called_once_with("nested-abc")


@pytest.mark.asyncio
async def test_load_nested_templates_not_deployed_yet(tmp_path, cfn):
    (tmp_path / "nested.template.json").write_text("{}")
    root_template = {"Resources": {"Nested": _nested_resource("nested.template.json")}}
    artifact = StackArtifact(STACK_NAME, root_template, template_file=str(tmp_path / "root.template.json"))

    result = await load_current_template_with_nested_stacks(artifact, cfn, {})

    assert result.nested_stacks["Nested"].physical_name is None
    assert result.nested_stacks["Nested"].deployed_template == {}


@pytest.mark.asyncio
async def test_load_nested_templates_missing_file(tmp_path, cfn):
    root_template = {"Resources": {"Nested": _nested_resource("missing.template.json")}}
    artifact = StackArtifact(STACK_NAME, root_template, template_file=str(tmp_path / "root.template.json"))

    with pytest.raises(NestedStackError):
        await load_current_template_with_nested_stacks(artifact, cfn, {})
