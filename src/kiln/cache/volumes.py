"""Named cache volumes and the keyed lock registry that guards them.

A volume is a persistent directory under the registry root. ``unlocked``
volumes may be written concurrently and must only hold content-addressed
data. ``locked`` volumes are guarded by one file lock per volume id, so two
holders of the same id serialize across threads and processes, while
different ids never contend.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from filelock import FileLock, Timeout

from kiln.errors import CacheLockError, ValidationError
from kiln.observability import StructuredLogger

SharingMode = Literal["unlocked", "locked"]

VOLUME_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
LOCKS_DIRNAME = ".locks"


@dataclass(frozen=True, slots=True)
class CacheVolume:
    id: str
    sharing: SharingMode = "unlocked"

    def __post_init__(self) -> None:
        if not VOLUME_ID_PATTERN.fullmatch(self.id) or self.id == LOCKS_DIRNAME:
            raise ValidationError(
                "Cache volume ids must be simple path-safe names.",
                context={"volume": self.id},
            )
        if self.sharing not in ("unlocked", "locked"):
            raise ValidationError(
                "Unsupported cache volume sharing mode.",
                context={"volume": self.id, "sharing": str(self.sharing)},
            )


DEPENDENCY_REGISTRY = CacheVolume("dependency-registry")
DEPENDENCY_VCS = CacheVolume("dependency-vcs")


def compilation_volume(project: str) -> CacheVolume:
    """Locked compilation-output volume keyed by a project-stable id."""
    return CacheVolume(f"{project}-target", sharing="locked")


@dataclass(slots=True)
class MountedVolume:
    volume: CacheVolume
    path: Path
    _lock: FileLock | None = field(default=None, repr=False)

    @property
    def locked(self) -> bool:
        return self._lock is not None and self._lock.is_locked


class CacheRegistry:
    def __init__(
        self,
        root: str | Path,
        *,
        lock_timeout: float = -1,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.root = Path(root)
        self.lock_timeout = lock_timeout
        self.logger = logger

    def path_for(self, volume: CacheVolume) -> Path:
        return self.root / volume.id

    def lock_path_for(self, volume: CacheVolume) -> Path:
        return self.root / LOCKS_DIRNAME / f"{volume.id}.lock"

    def acquire(self, volume: CacheVolume, *, stage: str | None = None) -> MountedVolume:
        lock: FileLock | None = None
        if volume.sharing == "locked":
            lock_path = self.lock_path_for(volume)
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(lock_path), timeout=self.lock_timeout)
            try:
                lock.acquire()
            except Timeout as exc:
                raise CacheLockError(
                    "Timed out waiting for a locked cache volume.",
                    hint="Another build holds this volume; retry or raise policy.lock_timeout.",
                    context={
                        "volume": volume.id,
                        "timeout": str(self.lock_timeout),
                        "stage": stage or "",
                    },
                ) from exc
        path = self.path_for(volume)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            if lock is not None:
                lock.release()
            raise
        self._log(volume, stage=stage, operation="volume_mount", message="Mounted cache volume.")
        return MountedVolume(volume=volume, path=path, _lock=lock)

    def release(self, mounted: MountedVolume, *, stage: str | None = None) -> None:
        if mounted._lock is not None:
            mounted._lock.release()
            mounted._lock = None
        self._log(
            mounted.volume,
            stage=stage,
            operation="volume_release",
            message="Released cache volume.",
        )

    @contextmanager
    def mount(self, volume: CacheVolume, *, stage: str | None = None) -> Iterator[MountedVolume]:
        mounted = self.acquire(volume, stage=stage)
        try:
            yield mounted
        finally:
            self.release(mounted, stage=stage)

    @contextmanager
    def mount_all(
        self,
        *volumes: CacheVolume,
        stage: str | None = None,
    ) -> Iterator[dict[str, MountedVolume]]:
        """Mount several volumes, taking locks in sorted id order."""
        ids = [volume.id for volume in volumes]
        if len(set(ids)) != len(ids):
            raise ValidationError(
                "Cache volume ids must be unique per mount.",
                context={"ids": ",".join(ids)},
            )
        with ExitStack() as stack:
            mounted: dict[str, MountedVolume] = {}
            for volume in sorted(volumes, key=lambda item: item.id):
                mounted[volume.id] = stack.enter_context(self.mount(volume, stage=stage))
            yield mounted

    def _log(self, volume: CacheVolume, *, stage: str | None, operation: str, message: str) -> None:
        if self.logger is None:
            return
        self.logger.log(
            operation=operation,
            stage=stage,
            volume=volume.id,
            message=message,
            level="debug",
            extra={"sharing": volume.sharing},
        )
