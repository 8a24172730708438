"""Lockfile parser and serializer."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from kiln.errors import ManifestError
from kiln.lockfile.model import LOCKFILE_VERSION, LockedPackage, Lockfile

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")
SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
TREE_HASH_PATTERN = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.+_-]*$")


def serialize_lockfile(lockfile: Lockfile) -> str:
    payload = {
        "version": lockfile.version,
        "packages": [
            {
                "name": package.name,
                "version": package.version,
                "source": package.source,
                "checksum": package.checksum,
            }
            for package in sorted(lockfile.packages, key=lambda item: (item.name, item.version))
        ],
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def parse_lockfile(raw: str) -> Lockfile:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError("Invalid lockfile JSON.", hint=str(exc)) from exc

    if not isinstance(payload, dict):
        raise ManifestError("Invalid lockfile payload type.")

    version = _required_int(payload, "version")
    if version != LOCKFILE_VERSION:
        raise ManifestError(
            "Unsupported lockfile version.",
            hint=f"Regenerate the lockfile with format version {LOCKFILE_VERSION}.",
            context={"version": str(version)},
        )
    packages_raw = payload.get("packages", [])
    if not isinstance(packages_raw, list):
        raise ManifestError("Invalid lockfile `packages` value.")
    packages = tuple(_parse_locked_package(item) for item in packages_raw)

    seen: set[str] = set()
    for package in packages:
        if package.ident in seen:
            raise ManifestError(
                "Duplicate package entry in lockfile.",
                context={"package": package.ident},
            )
        seen.add(package.ident)
    return Lockfile(version=version, packages=packages)


def read_lockfile(path: str | Path) -> tuple[Lockfile, bytes]:
    """Read and validate a lockfile, returning the model and its raw bytes."""
    lock_path = Path(path)
    try:
        raw = lock_path.read_bytes()
    except FileNotFoundError as exc:
        raise ManifestError(
            "Lockfile does not exist.",
            hint="Commit a kiln.lock next to the project before running the pipeline.",
            context={"path": str(lock_path)},
        ) from exc
    except IsADirectoryError as exc:
        raise ManifestError(
            "Lockfile path is a directory.",
            context={"path": str(lock_path)},
        ) from exc
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ManifestError(
            "Lockfile is not valid UTF-8.",
            context={"path": str(lock_path)},
        ) from exc
    return parse_lockfile(text), raw


def write_lockfile(lockfile: Lockfile, path: str | Path) -> Path:
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(serialize_lockfile(lockfile), encoding="utf-8")
    return lock_path


def _parse_locked_package(item: Any) -> LockedPackage:
    if not isinstance(item, dict):
        raise ManifestError("Invalid package entry in lockfile.")
    package = LockedPackage(
        name=_required_str(item, "name"),
        version=_required_str(item, "version"),
        source=_required_str(item, "source"),
        checksum=_required_str(item, "checksum"),
    )
    if not NAME_PATTERN.fullmatch(package.name) or not VERSION_PATTERN.fullmatch(package.version):
        raise ManifestError(
            "Locked package name and version must be path-safe identifiers.",
            context={"name": package.name, "version": package.version},
        )
    if package.source.startswith("registry+"):
        if not package.location:
            raise ManifestError(
                "Registry source is missing a URL.",
                context={"package": package.ident},
            )
        if not SHA256_PATTERN.fullmatch(package.checksum):
            raise ManifestError(
                "Registry package checksum must be a sha256 hex digest.",
                context={"package": package.ident},
            )
    elif package.source.startswith("git+"):
        commit = package.commit or ""
        if not package.location or not COMMIT_PATTERN.fullmatch(commit):
            raise ManifestError(
                "Git source must be pinned as git+<repo>#<40-char commit>.",
                context={"package": package.ident, "source": package.source},
            )
        if not TREE_HASH_PATTERN.fullmatch(package.checksum):
            raise ManifestError(
                "Git package checksum must be the hex tree hash of the locked commit.",
                context={"package": package.ident},
            )
    else:
        raise ManifestError(
            "Unsupported package source kind.",
            hint="Use registry+<url> or git+<repo>#<commit>.",
            context={"package": package.ident, "source": package.source},
        )
    return package


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ManifestError(f"Invalid lockfile `{key}` value.")
    return value


def _required_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ManifestError(f"Invalid lockfile `{key}` value.")
    return value
