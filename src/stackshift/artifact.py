"""The stack being deployed: its template plus construct metadata from the assembly."""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stackshift.models import MetadataEntry, ResourceMetadata
from stackshift.serialize import deserialize_structure

LOGICAL_ID_METADATA = "aws:cdk:logicalId"


@dataclass
class StackArtifact:
    """A synthesized stack, ready to deploy."""

    stack_name: str
    template: dict[str, Any]
    # construct path -> metadata entries, as found in the assembly manifest
    metadata: dict[str, list[MetadataEntry]] = field(default_factory=dict)
    termination_protection: bool = False
    template_file: str | None = None
    display_name: str | None = None

    @property
    def directory(self) -> Path:
        """The directory the template lives in; nested templates are resolved against it."""
        return Path(self.template_file).parent if self.template_file else Path.cwd()

    @property
    def name(self) -> str:
        return self.display_name or self.stack_name

    @classmethod
    def from_files(
        cls,
        template_file: str,
        stack_name: str,
        manifest_file: str | None = None,
        termination_protection: bool = False,
    ) -> "StackArtifact":
        """Load a template and, optionally, the metadata of the stack from a manifest."""
        template = deserialize_structure(Path(template_file).read_text())
        metadata = {}
        if manifest_file:
            metadata = load_manifest_metadata(json.loads(Path(manifest_file).read_text()), stack_name)
        return cls(
            stack_name=stack_name,
            template=template,
            metadata=metadata,
            termination_protection=termination_protection,
            template_file=template_file,
        )

    def find_metadata_for(self, logical_id: str | None) -> ResourceMetadata | None:
        """Find the construct that produced a logical ID. None if it is unknown."""
        if not logical_id or not self.metadata:
            return None
        for path, entries in self.metadata.items():
            for entry in entries:
                if entry.type == LOGICAL_ID_METADATA and entry.data == logical_id:
                    return ResourceMetadata(entry=entry, construct_path=self.simplify_construct_path(path))
        return None

    def simplify_construct_path(self, path: str) -> str:
        path = re.sub(r"/Resource$", "", path)
        path = re.sub(r"^/", "", path)
        prefix = self.stack_name + "/"
        if path.startswith(prefix):
            path = path[len(prefix):]
        return path


def load_manifest_metadata(manifest: dict[str, Any], stack_name: str) -> dict[str, list[MetadataEntry]]:
    """Read a stack's construct metadata from an assembly manifest.

    Accepts a full ``manifest.json`` (``artifacts.<stack>.metadata``) or a bare
    metadata mapping.
    """
    artifacts = manifest.get("artifacts")
    if isinstance(artifacts, dict):
        raw = (artifacts.get(stack_name) or {}).get("metadata") or {}
    else:
        raw = manifest

    return {
        path: [
            MetadataEntry(type=entry.get("type", ""), data=entry.get("data"), trace=entry.get("trace"))
            for entry in entries
        ]
        for path, entries in raw.items()
        if isinstance(entries, list)
    }
