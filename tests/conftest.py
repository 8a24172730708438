"""Shared test fixtures."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from kiln.lockfile import LockedPackage, build_lockfile, write_lockfile

FOO_LIBRARY = """\
foo_greet() {
  printf 'foo 1.2.3 says %s\\n' "$1"
}
"""

MAIN_UNIT = """\
main() {
  foo_greet "port=${PORT:-unset}"
}

prepare() {
  mkdir -p "$HOME/.cache/svc"
  printf 'warm\\n' > "$HOME/.cache/svc/warm"
}
"""

UTIL_UNIT = """\
svc_util() {
  :
}
"""

ProjectFactory = Callable[..., Path]


@pytest.fixture
def foo_package(tmp_path: Path) -> LockedPackage:
    """A single-file registry package served from a file:// URL."""
    path = tmp_path / "registry" / "foo-1.2.3.sh"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FOO_LIBRARY, encoding="utf-8")
    return LockedPackage(
        name="foo",
        version="1.2.3",
        source=f"registry+{path.as_uri()}",
        checksum=hashlib.sha256(path.read_bytes()).hexdigest(),
    )


@pytest.fixture
def make_project(tmp_path: Path, foo_package: LockedPackage) -> ProjectFactory:
    """Write a project tree (kiln.toml, kiln.lock, src/) and return its root."""

    def _make(
        name: str = "project",
        *,
        package: str = "svc",
        dependencies: Mapping[str, str] | None = None,
        units: Mapping[str, str] | None = None,
        packages: tuple[LockedPackage, ...] | None = None,
    ) -> Path:
        root = tmp_path / name
        (root / "src").mkdir(parents=True, exist_ok=True)
        deps = {"foo": "1.2.3"} if dependencies is None else dict(dependencies)
        lines = ["[package]", f'name = "{package}"', 'version = "0.1.0"', "", "[dependencies]"]
        lines.extend(f'{dep} = "{requirement}"' for dep, requirement in sorted(deps.items()))
        (root / "kiln.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")
        sources = {"src/main.sh": MAIN_UNIT, "src/lib/util.sh": UTIL_UNIT}
        if units is not None:
            sources = dict(units)
        for relative, content in sources.items():
            unit_path = root / relative
            unit_path.parent.mkdir(parents=True, exist_ok=True)
            unit_path.write_text(content, encoding="utf-8")
        locked = (foo_package,) if packages is None else packages
        write_lockfile(build_lockfile(locked), root / "kiln.lock")
        return root

    return _make


@pytest.fixture
def project_dir(make_project: ProjectFactory) -> Path:
    return make_project()
