"""Toolchain contracts, project manifests, and the default shell toolchain."""

from .base import (
    Builder,
    CompiledObject,
    DependencyPayload,
    LinkRequest,
    ProjectManifest,
    SourceUnit,
)
from .manifest import MANIFEST_NAME, discover_units, read_manifest
from .materialize import install_file, promote_artifact
from .shell import PREPARE_FLAG, ShellBundleBuilder

__all__ = [
    "Builder",
    "CompiledObject",
    "DependencyPayload",
    "LinkRequest",
    "MANIFEST_NAME",
    "PREPARE_FLAG",
    "ProjectManifest",
    "ShellBundleBuilder",
    "SourceUnit",
    "discover_units",
    "install_file",
    "promote_artifact",
    "read_manifest",
]
