"""Project manifest (``kiln.toml``) loading and source discovery."""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Any

from kiln.builders.base import ProjectManifest, SourceUnit
from kiln.errors import ManifestError
from kiln.lockfile.io import NAME_PATTERN, VERSION_PATTERN

MANIFEST_NAME = "kiln.toml"
ENTRY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def read_manifest(source: str | Path) -> ProjectManifest:
    root = Path(source)
    manifest_path = root / MANIFEST_NAME
    try:
        with manifest_path.open("rb") as handle:
            payload = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ManifestError(
            "Project manifest does not exist.",
            hint=f"Add a {MANIFEST_NAME} at the root of the source tree.",
            context={"path": str(manifest_path)},
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(
            "Project manifest is not valid TOML.",
            context={"path": str(manifest_path), "error": str(exc)},
        ) from exc

    package = payload.get("package")
    if not isinstance(package, dict):
        raise ManifestError("Project manifest requires a [package] table.")
    name = _required_str(package, "name", pattern=NAME_PATTERN)
    version = _required_str(package, "version", pattern=VERSION_PATTERN)
    entry = _optional_str(package, "entry", default="main", pattern=ENTRY_PATTERN)
    sources = _optional_str(package, "sources", default="src")

    dependencies_raw = payload.get("dependencies", {})
    if not isinstance(dependencies_raw, dict):
        raise ManifestError("Project manifest [dependencies] must be a table.")
    dependencies: dict[str, str] = {}
    for dep_name, requirement in dependencies_raw.items():
        if not isinstance(requirement, str) or not requirement:
            raise ManifestError(
                "Dependency requirements must be version strings.",
                context={"dependency": dep_name},
            )
        dependencies[dep_name] = requirement

    return ProjectManifest(
        name=name,
        version=version,
        root=root,
        entry=entry,
        sources=sources,
        dependencies=dependencies,
    )


def discover_units(manifest: ProjectManifest, *, suffix: str) -> tuple[SourceUnit, ...]:
    """Collect every source unit under the source root, at any depth."""
    source_root = manifest.source_root
    if not source_root.is_dir():
        raise ManifestError(
            "Project source directory does not exist.",
            context={"path": str(source_root)},
        )
    units = [
        SourceUnit(
            path=path.relative_to(manifest.root).as_posix(),
            source=path.read_bytes(),
        )
        for path in source_root.rglob(f"*{suffix}")
        if path.is_file()
    ]
    if not units:
        raise ManifestError(
            "Project has no source units.",
            context={"path": str(source_root), "suffix": suffix},
        )
    return tuple(sorted(units, key=lambda unit: unit.path))


def _required_str(
    payload: dict[str, Any],
    key: str,
    *,
    pattern: re.Pattern[str] | None = None,
) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ManifestError(f"Invalid project manifest `{key}` value.")
    if pattern is not None and not pattern.fullmatch(value):
        raise ManifestError(f"Invalid project manifest `{key}` value.", context={key: value})
    return value


def _optional_str(
    payload: dict[str, Any],
    key: str,
    *,
    default: str,
    pattern: re.Pattern[str] | None = None,
) -> str:
    if key not in payload:
        return default
    return _required_str(payload, key, pattern=pattern)
