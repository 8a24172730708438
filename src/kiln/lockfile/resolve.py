"""Lockfile resolution helpers."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping

from kiln.errors import LockMismatchError
from kiln.lockfile.model import LOCKFILE_VERSION, LockedPackage, Lockfile

ANY_VERSION = "*"


def lockfile_digest(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def build_lockfile(packages: Iterable[LockedPackage]) -> Lockfile:
    ordered = sorted(packages, key=lambda item: (item.name, item.version))
    return Lockfile(version=LOCKFILE_VERSION, packages=tuple(ordered))


def resolve_locked(
    lockfile: Lockfile,
    requirements: Mapping[str, str],
    *,
    project: str,
) -> tuple[LockedPackage, ...]:
    """Resolve declared requirements strictly against the lockfile.

    Every requirement must match exactly one locked package. Requirements are
    either an exact version or ``"*"``. Nothing is ever relocked: any
    disagreement raises :class:`LockMismatchError`.
    """
    resolved: list[LockedPackage] = []
    for name, requirement in sorted(requirements.items()):
        candidates = lockfile.find(name)
        if not candidates:
            raise LockMismatchError(
                "Dependency is not pinned by the lockfile.",
                hint="Update kiln.lock to pin this dependency; builds never relock.",
                context={"project": project, "dependency": name, "requirement": requirement},
            )
        if requirement == ANY_VERSION:
            matches = candidates
        else:
            matches = tuple(item for item in candidates if item.version == requirement)
        if len(matches) != 1:
            raise LockMismatchError(
                "Dependency requirement does not match the locked version.",
                hint="Update kiln.lock or the project manifest so they agree.",
                context={
                    "project": project,
                    "dependency": name,
                    "requirement": requirement,
                    "locked": ",".join(item.version for item in candidates),
                },
            )
        resolved.append(matches[0])
    return tuple(resolved)
