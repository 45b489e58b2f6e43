"""Parsing and canonical serialization of CloudFormation templates."""

import json
from typing import Any

import yaml


class CfnYamlLoader(yaml.SafeLoader):
    """Safe YAML loader that keeps dates as strings and understands CloudFormation short forms."""


CfnYamlLoader.yaml_implicit_resolvers = {
    k: [r for r in v if r[0] != "tag:yaml.org,2002:timestamp"]
    for k, v in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _intrinsic_constructor(loader: yaml.Loader, tag_suffix: str, node: yaml.Node) -> dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == "Ref":
        return {"Ref": value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        resource, _, attribute = value.partition(".")
        return {"Fn::GetAtt": [resource, attribute]}
    if tag_suffix == "Condition":
        return {"Condition": value}
    return {f"Fn::{tag_suffix}": value}


CfnYamlLoader.add_multi_constructor("!", _intrinsic_constructor)


def deserialize_structure(body: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse a template body as returned by GetTemplate (JSON or YAML)."""
    if not body:
        return {}
    if isinstance(body, dict):
        return body
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        parsed = yaml.load(body, Loader=CfnYamlLoader)
        return parsed if isinstance(parsed, dict) else {}


def to_canonical_json(value: Any) -> str:
    """Serialize a template so that equal structures compare equal as strings."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
