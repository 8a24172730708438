"""Lockfile typed model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

SourceKind = Literal["registry", "git"]

LOCKFILE_VERSION = 1


@dataclass(frozen=True, slots=True)
class LockedPackage:
    name: str
    version: str
    source: str
    checksum: str

    @property
    def kind(self) -> SourceKind:
        return "git" if self.source.startswith("git+") else "registry"

    @property
    def location(self) -> str:
        """Source location without the kind prefix (and git commit suffix)."""
        _, _, rest = self.source.partition("+")
        if self.kind == "git":
            return rest.partition("#")[0]
        return rest

    @property
    def commit(self) -> str | None:
        if self.kind != "git":
            return None
        return self.source.partition("#")[2] or None

    @property
    def ident(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True, slots=True)
class Lockfile:
    version: int
    packages: tuple[LockedPackage, ...] = field(default_factory=tuple)

    def find(self, name: str) -> tuple[LockedPackage, ...]:
        return tuple(package for package in self.packages if package.name == name)


__all__ = ["LOCKFILE_VERSION", "LockedPackage", "Lockfile", "SourceKind"]
