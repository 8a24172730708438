"""Typed interfaces for compilation toolchains."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from kiln.secrets import BuildSecret


@dataclass(frozen=True, slots=True)
class ProjectManifest:
    name: str
    version: str
    root: Path
    entry: str = "main"
    sources: str = "src"
    dependencies: Mapping[str, str] = field(default_factory=dict)

    @property
    def source_root(self) -> Path:
        return self.root / self.sources


@dataclass(frozen=True, slots=True)
class SourceUnit:
    path: str
    source: bytes


@dataclass(frozen=True, slots=True)
class CompiledObject:
    unit: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class DependencyPayload:
    ident: str
    files: tuple[tuple[str, bytes], ...]


@dataclass(frozen=True, slots=True)
class LinkRequest:
    manifest: ProjectManifest
    objects: tuple[CompiledObject, ...]
    dependencies: tuple[DependencyPayload, ...] = ()
    secret: BuildSecret | None = None


class Builder(Protocol):
    name: str
    version: str
    suffix: str

    def compile_unit(self, unit: SourceUnit) -> bytes:
        """Compile one source unit into a cacheable object."""

    def link(self, request: LinkRequest) -> bytes:
        """Link objects and dependencies into the single artifact."""
