"""Protocol for external container build backends."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from kiln.secrets import BuildSecret


@dataclass(frozen=True, slots=True)
class ContainerBuildRequest:
    dockerfile: Path
    context: Path
    tag: str | None = None
    secret: BuildSecret | None = None


@dataclass(frozen=True, slots=True)
class ContainerBuildResult:
    image_id: str
    tag: str | None
    command: tuple[str, ...]


class ContainerBackend(Protocol):
    name: str

    def command(self, request: ContainerBuildRequest) -> list[str]:
        """Return the argv that builds *request*; never contains secret values."""

    def build(self, request: ContainerBuildRequest) -> ContainerBuildResult:
        """Run the build and return the resulting image id."""
