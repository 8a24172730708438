"""Core typed dataclasses for stage outputs and runtime configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from kiln.lockfile import Lockfile

StageName = Literal["fetch", "build", "runtime"]
StageStatus = Literal["ok", "failed", "skipped"]
ComponentKind = Literal["target", "component"]

STAGE_ORDER: tuple[StageName, ...] = ("fetch", "build", "runtime")


@dataclass(frozen=True, slots=True)
class RuntimeComponent:
    kind: ComponentKind
    name: str
    argv: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    port: int = 8080
    log_level: str = "info"
    port_env: str = "PORT"
    log_env: str = "LOG_LEVEL"
    user: str = "app"
    uid: int = 1000
    gid: int | None = None
    install_dir: str = "/usr/local/bin"

    @property
    def group_id(self) -> int:
        return self.uid if self.gid is None else self.gid

    @property
    def home(self) -> str:
        return f"/home/{self.user}"

    def env(self) -> dict[str, str]:
        return {self.port_env: str(self.port), self.log_env: self.log_level}


@dataclass(frozen=True, slots=True)
class FetchOutput:
    project: str
    lockfile: Lockfile
    lock_digest: str
    fetch_key: str
    registry: Path
    vcs: Path
    snapshot: Path
    downloaded: tuple[str, ...] = ()
    cached: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BuildOutput:
    name: str
    version: str
    artifact: Path
    digest: str
    workspace: Path
    signed: bool
    dependencies: tuple[str, ...] = ()
    cache_hits: tuple[str, ...] = ()
    cache_misses: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ImageConfig:
    user: str
    uid: int
    gid: int
    workdir: str
    entrypoint: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    exposed_port: int = 8080
    components: tuple[RuntimeComponent, ...] = ()
    # Image path -> "uid:gid" applied when the rootfs is packaged.
    ownership: Mapping[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {
            "user": self.user,
            "uid": self.uid,
            "gid": self.gid,
            "workdir": self.workdir,
            "entrypoint": list(self.entrypoint),
            "env": dict(sorted(self.env.items())),
            "exposed_port": self.exposed_port,
            "components": [
                {"kind": item.kind, "name": item.name, "argv": list(item.argv)}
                for item in self.components
            ],
            "ownership": dict(sorted(self.ownership.items())),
        }


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    step: str
    created_by: str
    user: str


@dataclass(frozen=True, slots=True)
class RuntimeImage:
    path: Path
    rootfs: Path
    config: ImageConfig
    history: tuple[HistoryEntry, ...]
    digest: str

    def environment(self, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        """Effective process environment after deploy-time overrides."""
        env = dict(self.config.env)
        env.update(overrides or {})
        return env

    def host_path(self, image_path: str) -> Path:
        return self.rootfs / image_path.lstrip("/")


@dataclass(slots=True)
class StageRecord:
    name: StageName
    status: StageStatus
    error: dict[str, object] | None = None


@dataclass(slots=True)
class PipelineResult:
    fetch: FetchOutput
    build: BuildOutput
    image: RuntimeImage
    stages: list[StageRecord] = field(default_factory=list)
    report_path: Path | None = None


__all__ = [
    "BuildOutput",
    "ComponentKind",
    "FetchOutput",
    "HistoryEntry",
    "ImageConfig",
    "PipelineResult",
    "RuntimeComponent",
    "RuntimeConfig",
    "RuntimeImage",
    "STAGE_ORDER",
    "StageName",
    "StageRecord",
    "StageStatus",
]
