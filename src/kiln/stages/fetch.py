"""Fetch Stage: populate dependency caches from the lockfile alone."""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from kiln.cache import (
    DEPENDENCY_REGISTRY,
    DEPENDENCY_VCS,
    CacheRegistry,
    CacheVolume,
    compilation_volume,
    fetch_key,
)
from kiln.errors import PolicyError, ResolutionError
from kiln.fetch import cached_path, fetch, fetch_git
from kiln.lockfile import LockedPackage, lockfile_digest, read_lockfile
from kiln.models import FetchOutput
from kiln.observability import StructuredLogger
from kiln.policy import Policy

LOCKFILE_NAME = "kiln.lock"


@dataclass(slots=True)
class FetchStage:
    """Resolve and download every locked dependency into the shared caches.

    The stage key is derived from the lockfile bytes and the toolchain only,
    so edits to the project sources never invalidate fetched dependencies.
    """

    project: str
    build_dir: Path
    registry: CacheRegistry
    toolchain: str = "shell-bundle/1"
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    registry_volume: CacheVolume = DEPENDENCY_REGISTRY
    vcs_volume: CacheVolume = DEPENDENCY_VCS
    compilation: CacheVolume | None = None

    def run(self, lockfile_path: str | Path) -> FetchOutput:
        # Validation happens before any volume is mounted.
        lockfile, raw = read_lockfile(lockfile_path)
        key = fetch_key(raw, toolchain=self.toolchain)
        digest = lockfile_digest(raw)

        scratch = self.build_dir / "fetch" / "scratch"
        scratch.mkdir(parents=True, exist_ok=True)
        (scratch / LOCKFILE_NAME).write_bytes(raw)

        compilation = self.compilation or compilation_volume(self.project)
        downloaded: list[str] = []
        cached: list[str] = []
        with self.registry.mount_all(
            self.registry_volume,
            self.vcs_volume,
            compilation,
            stage="fetch",
        ) as mounted:
            registry_path = mounted[self.registry_volume.id].path
            vcs_path = mounted[self.vcs_volume.id].path
            for package in lockfile.packages:
                if package.kind == "git":
                    hit = self._fetch_git(package, vcs_path)
                else:
                    hit = self._fetch_registry(package, registry_path)
                (cached if hit else downloaded).append(package.ident)
                volume = self.vcs_volume if package.kind == "git" else self.registry_volume
                self.logger.log(
                    operation="fetch_package",
                    stage="fetch",
                    volume=volume.id,
                    message="Fetched locked dependency.",
                    extra={"package": package.ident, "kind": package.kind, "cache_hit": hit},
                )
            snapshot = self._snapshot(registry_path, lockfile.packages)

        self.logger.log(
            operation="fetch_complete",
            stage="fetch",
            message="Dependency caches are populated.",
            extra={"fetch_key": key, "downloaded": len(downloaded), "cached": len(cached)},
        )
        return FetchOutput(
            project=self.project,
            lockfile=lockfile,
            lock_digest=digest,
            fetch_key=key,
            registry=registry_path,
            vcs=vcs_path,
            snapshot=snapshot,
            downloaded=tuple(downloaded),
            cached=tuple(cached),
        )

    def _fetch_registry(self, package: LockedPackage, cache_dir: Path) -> bool:
        hit = cached_path(sha256=package.checksum, cache_dir=cache_dir).exists()
        try:
            fetch(
                package.location,
                sha256=package.checksum,
                cache_dir=cache_dir,
                policy=self.policy,
            )
        except PolicyError as exc:
            raise _offline_miss(package) from exc
        return hit

    def _fetch_git(self, package: LockedPackage, cache_dir: Path) -> bool:
        commit = package.commit or ""
        try:
            result = fetch_git(
                package.location,
                commit=commit,
                tree_hash=package.checksum,
                cache_dir=cache_dir,
                policy=self.policy,
            )
        except PolicyError as exc:
            raise _offline_miss(package) from exc
        return result.cache_hit

    def _snapshot(self, registry_path: Path, packages: tuple[LockedPackage, ...]) -> Path:
        """Copy this lockfile's registry entries to a stable per-build snapshot."""
        snapshot = self.build_dir / "fetch" / "registry"
        snapshot.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".registry-", dir=str(snapshot.parent)))
        try:
            for package in packages:
                if package.kind != "registry":
                    continue
                source = cached_path(sha256=package.checksum, cache_dir=registry_path)
                shutil.copy2(source, staging / package.checksum)
            if snapshot.exists():
                shutil.rmtree(snapshot)
            os.rename(staging, snapshot)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return snapshot


def _offline_miss(package: LockedPackage) -> ResolutionError:
    return ResolutionError(
        "Dependency is not cached and network access is disabled.",
        hint="Run an online fetch once to populate the dependency caches.",
        context={"operation": "fetch", "package": package.ident, "source": package.source},
    )
