import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

from kiln.cache import CacheRegistry
from kiln.errors import ManifestError, ResolutionError
from kiln.fetch import cached_path
from kiln.lockfile import LockedPackage
from kiln.observability import StructuredLogger
from kiln.policy import Policy
from kiln.stages import FetchStage

ProjectFactory = Callable[..., Path]


def _stage(tmp_path: Path, name: str = "build", **kwargs: object) -> FetchStage:
    return FetchStage(
        project="svc",
        build_dir=tmp_path / name,
        registry=CacheRegistry(tmp_path / "cache"),
        **kwargs,  # type: ignore[arg-type]
    )


def test_fetch_populates_registry_volume_and_snapshot(
    tmp_path: Path,
    project_dir: Path,
    foo_package: LockedPackage,
) -> None:
    output = _stage(tmp_path).run(project_dir / "kiln.lock")

    entry = cached_path(sha256=foo_package.checksum, cache_dir=output.registry)
    assert output.registry == tmp_path / "cache" / "dependency-registry"
    assert entry.is_file()
    assert (output.snapshot / foo_package.checksum).read_bytes() == entry.read_bytes()
    assert output.downloaded == ("foo@1.2.3",)
    assert output.cached == ()
    assert (tmp_path / "build" / "fetch" / "scratch" / "kiln.lock").exists()


def test_fetch_key_depends_only_on_lockfile(
    tmp_path: Path,
    make_project: ProjectFactory,
) -> None:
    first_project = make_project("first")
    second_project = make_project("second", units={"src/main.sh": "main() {\n  echo changed\n}\n"})

    first = _stage(tmp_path, "build-1").run(first_project / "kiln.lock")
    second = _stage(tmp_path, "build-2").run(second_project / "kiln.lock")

    assert first.fetch_key == second.fetch_key
    assert first.lock_digest == second.lock_digest
    assert second.cached == ("foo@1.2.3",)
    assert sorted(path.name for path in first.snapshot.iterdir()) == sorted(
        path.name for path in second.snapshot.iterdir()
    )


def test_missing_lockfile_fails_before_cache_mutation(tmp_path: Path) -> None:
    with pytest.raises(ManifestError):
        _stage(tmp_path).run(tmp_path / "nowhere" / "kiln.lock")

    assert not (tmp_path / "cache").exists()
    assert not (tmp_path / "build").exists()


def test_invalid_lockfile_fails_before_cache_mutation(tmp_path: Path) -> None:
    lock_path = tmp_path / "kiln.lock"
    lock_path.write_text('{"version": 1, "packages": [{"name": "foo"}]}', encoding="utf-8")

    with pytest.raises(ManifestError):
        _stage(tmp_path).run(lock_path)

    assert not (tmp_path / "cache").exists()


def test_offline_fetch_requires_populated_caches(tmp_path: Path, project_dir: Path) -> None:
    offline = Policy(network_mode="offline")

    with pytest.raises(ResolutionError) as excinfo:
        _stage(tmp_path, policy=offline).run(project_dir / "kiln.lock")
    assert excinfo.value.context["package"] == "foo@1.2.3"

    _stage(tmp_path).run(project_dir / "kiln.lock")
    output = _stage(tmp_path, "build-offline", policy=offline).run(project_dir / "kiln.lock")
    assert output.cached == ("foo@1.2.3",)


def test_unreachable_package_is_resolution_error(
    tmp_path: Path,
    project_dir: Path,
    foo_package: LockedPackage,
) -> None:
    shutil.rmtree(Path(foo_package.location.removeprefix("file://")).parent)

    with pytest.raises(ResolutionError):
        _stage(tmp_path).run(project_dir / "kiln.lock")


def test_fetch_logs_each_package(tmp_path: Path, project_dir: Path) -> None:
    logger = StructuredLogger()

    _stage(tmp_path, logger=logger).run(project_dir / "kiln.lock")

    operations = [record["operation"] for record in logger.records_for_stage("fetch")]
    assert "fetch_package" in operations
    assert operations[-1] == "fetch_complete"
