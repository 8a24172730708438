import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from kiln.cache import (
    DEPENDENCY_REGISTRY,
    CacheRegistry,
    CacheVolume,
    compilation_volume,
)
from kiln.errors import CacheLockError, ValidationError
from kiln.observability import StructuredLogger


def test_compilation_volume_is_locked_and_project_stable() -> None:
    volume = compilation_volume("svc")

    assert volume == CacheVolume("svc-target", sharing="locked")
    assert DEPENDENCY_REGISTRY.sharing == "unlocked"


@pytest.mark.parametrize("volume_id", ["", ".locks", "../escape", "a/b"])
def test_volume_ids_must_be_path_safe(volume_id: str) -> None:
    with pytest.raises(ValidationError):
        CacheVolume(volume_id)


def test_locked_volume_serializes_holders(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache")
    volume = CacheVolume("shared-target", sharing="locked")
    counter = registry.path_for(volume) / "counter"

    def bump() -> None:
        with registry.mount(volume) as mounted:
            assert mounted.locked
            current = int(counter.read_text()) if counter.exists() else 0
            time.sleep(0.01)
            counter.write_text(str(current + 1))

    with ThreadPoolExecutor(max_workers=8) as pool:
        for future in [pool.submit(bump) for _ in range(16)]:
            future.result()

    assert counter.read_text() == "16"


def test_locked_volume_times_out_with_cache_lock_error(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache", lock_timeout=0.05)
    volume = compilation_volume("svc")
    errors: list[CacheLockError] = []

    def contend() -> None:
        try:
            registry.acquire(volume, stage="build")
        except CacheLockError as exc:
            errors.append(exc)

    with registry.mount(volume):
        worker = threading.Thread(target=contend)
        worker.start()
        worker.join()

    assert len(errors) == 1
    assert errors[0].context["volume"] == "svc-target"
    assert errors[0].stage == "build"


def test_different_ids_never_contend(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache", lock_timeout=0.05)

    with registry.mount(compilation_volume("one")) as first:
        with registry.mount(compilation_volume("two")) as second:
            assert first.locked
            assert second.locked
            assert first.path != second.path


def test_lock_is_released_on_context_exit(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache", lock_timeout=0.05)
    volume = compilation_volume("svc")

    with registry.mount(volume) as mounted:
        pass

    assert not mounted.locked
    with registry.mount(volume) as again:
        assert again.locked


def test_unlocked_volume_takes_no_lock(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache")

    with registry.mount(DEPENDENCY_REGISTRY) as mounted:
        assert not mounted.locked
        assert mounted.path == tmp_path / "cache" / "dependency-registry"
    assert not registry.lock_path_for(DEPENDENCY_REGISTRY).exists()


def test_mount_all_rejects_duplicate_ids(tmp_path: Path) -> None:
    registry = CacheRegistry(tmp_path / "cache")

    with pytest.raises(ValidationError):
        with registry.mount_all(DEPENDENCY_REGISTRY, CacheVolume("dependency-registry")):
            pass


def test_volume_mounts_are_logged(tmp_path: Path) -> None:
    logger = StructuredLogger()
    registry = CacheRegistry(tmp_path / "cache", logger=logger)

    with registry.mount_all(DEPENDENCY_REGISTRY, compilation_volume("svc"), stage="fetch"):
        pass

    operations = [(record["operation"], record["volume"]) for record in logger.records]
    assert ("volume_mount", "dependency-registry") in operations
    assert ("volume_release", "svc-target") in operations
    assert all(record["stage"] == "fetch" for record in logger.records)
