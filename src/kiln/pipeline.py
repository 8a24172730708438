"""Declarative Fetch → Build → Runtime pipeline."""

from __future__ import annotations

import dataclasses
import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Self, TypeVar

from kiln.backends import ContainerBackend, ContainerBuildRequest, ContainerBuildResult
from kiln.builders import Builder, ShellBundleBuilder, read_manifest
from kiln.cache import (
    DEPENDENCY_REGISTRY,
    DEPENDENCY_VCS,
    CacheRegistry,
    CacheVolume,
    SharingMode,
    compilation_volume,
)
from kiln.compiler import DockerfileEmission, DockerfilePlan, emit_dockerfile
from kiln.errors import KilnError, ValidationError
from kiln.models import (
    STAGE_ORDER,
    BuildOutput,
    ComponentKind,
    FetchOutput,
    PipelineResult,
    RuntimeComponent,
    RuntimeConfig,
    RuntimeImage,
    StageName,
    StageRecord,
)
from kiln.observability import StructuredLogger
from kiln.policy import Policy
from kiln.secrets import BuildSecret
from kiln.stages import BuildStage, FetchStage, RuntimeAssembly, validate_identity

T = TypeVar("T")

REPORT_NAME = "report.json"
DEFAULT_CACHE_DIRNAME = ".cache"
COMPONENT_KINDS: tuple[ComponentKind, ...] = ("target", "component")
# Paths under build_dir that a stage promotes; removed when the stage does not complete.
STAGE_OUTPUTS: dict[StageName, tuple[str, ...]] = {
    "fetch": ("fetch/registry",),
    "build": ("build/bin", "build/work"),
    "runtime": ("image",),
}


@dataclass(slots=True)
class Pipeline:
    """Recipe for one service artifact and its runtime image.

    Declarative methods only record configuration. :meth:`run` executes the
    stages strictly in order; each stage either promotes its typed output or
    raises a :class:`KilnError` tagged with the failing stage.
    """

    project: str
    build_dir: Path = field(default_factory=lambda: Path("build"))
    cache_root: Path | None = None
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    builder: Builder = field(default_factory=ShellBundleBuilder)
    _lockfile: Path | None = field(init=False, default=None, repr=False)
    _source: Path | None = field(init=False, default=None, repr=False)
    _components: list[RuntimeComponent] = field(init=False, default_factory=list, repr=False)
    _runtime: RuntimeConfig = field(init=False, default_factory=RuntimeConfig, repr=False)
    _volumes: dict[str, CacheVolume] = field(init=False, default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if not self.project:
            raise ValidationError("Pipeline requires a non-empty project name.")
        self.build_dir = Path(self.build_dir)
        if self.cache_root:
            self.cache_root = Path(self.cache_root)
        else:
            self.cache_root = self.build_dir / DEFAULT_CACHE_DIRNAME
        compilation = compilation_volume(self.project)
        self._volumes = {
            DEPENDENCY_REGISTRY.id: DEPENDENCY_REGISTRY,
            DEPENDENCY_VCS.id: DEPENDENCY_VCS,
            compilation.id: compilation,
        }

    @property
    def runtime_config(self) -> RuntimeConfig:
        return self._runtime

    @property
    def components(self) -> tuple[RuntimeComponent, ...]:
        return tuple(self._components)

    @property
    def compilation(self) -> CacheVolume:
        return self._volumes[compilation_volume(self.project).id]

    def volumes(self) -> tuple[CacheVolume, ...]:
        return tuple(self._volumes[key] for key in sorted(self._volumes))

    def lockfile(self, path: str | Path) -> Self:
        if not str(path):
            raise ValidationError("lockfile() requires a path.")
        self._lockfile = Path(path)
        return self

    def source(self, path: str | Path) -> Self:
        if not str(path):
            raise ValidationError("source() requires a path.")
        self._source = Path(path)
        return self

    def component(self, kind: ComponentKind, name: str, *argv: str) -> Self:
        if kind not in COMPONENT_KINDS:
            raise ValidationError(
                "Unsupported runtime component kind.",
                hint="Use 'target' or 'component'.",
                context={"kind": str(kind)},
            )
        if not name:
            raise ValidationError("component() requires a non-empty name.")
        self._components.append(RuntimeComponent(kind=kind, name=name, argv=tuple(argv)))
        return self

    def runtime(
        self,
        *,
        port: int | None = None,
        log_level: str | None = None,
        user: str | None = None,
        uid: int | None = None,
        gid: int | None = None,
    ) -> Self:
        changes: dict[str, Any] = {}
        if port is not None:
            if not 0 < port < 65536:
                raise ValidationError(
                    "runtime() port must be in 1..65535.",
                    context={"port": str(port)},
                )
            changes["port"] = port
        if log_level is not None:
            if not log_level:
                raise ValidationError("runtime() log_level must be non-empty.")
            changes["log_level"] = log_level
        if user is not None:
            changes["user"] = user
        if uid is not None:
            changes["uid"] = uid
        if gid is not None:
            changes["gid"] = gid
        updated = dataclasses.replace(self._runtime, **changes)
        validate_identity(updated)
        self._runtime = updated
        return self

    def cache(self, id: str, *, sharing: SharingMode = "unlocked") -> Self:
        if id not in self._volumes:
            raise ValidationError(
                "cache() only overrides the pipeline's own volumes.",
                context={"volume": id, "known": ",".join(sorted(self._volumes))},
            )
        if id == compilation_volume(self.project).id and sharing != "locked":
            raise ValidationError(
                "The compilation cache volume must stay locked.",
                context={"volume": id, "sharing": sharing},
            )
        self._volumes[id] = CacheVolume(id, sharing=sharing)
        return self

    def cache_registry(self) -> CacheRegistry:
        root = self.cache_root or self.build_dir / DEFAULT_CACHE_DIRNAME
        return CacheRegistry(
            root,
            lock_timeout=self.policy.lock_timeout,
            logger=self.logger,
        )

    def fetch_stage(self, *, policy: Policy | None = None) -> FetchStage:
        return FetchStage(
            project=self.project,
            build_dir=self.build_dir,
            registry=self.cache_registry(),
            toolchain=f"{self.builder.name}/{self.builder.version}",
            policy=policy or self.policy,
            logger=self.logger,
            registry_volume=self._volumes[DEPENDENCY_REGISTRY.id],
            vcs_volume=self._volumes[DEPENDENCY_VCS.id],
            compilation=self.compilation,
        )

    def build_stage(self) -> BuildStage:
        return BuildStage(
            build_dir=self.build_dir,
            registry=self.cache_registry(),
            builder=self.builder,
            policy=self.policy,
            logger=self.logger,
            compilation=self.compilation,
        )

    def runtime_stage(self) -> RuntimeAssembly:
        return RuntimeAssembly(
            build_dir=self.build_dir,
            config=self._runtime,
            components=self.components,
            policy=self.policy,
            logger=self.logger,
        )

    def run(self, secret: BuildSecret | None = None) -> PipelineResult:
        lockfile_path, source = self._require_inputs()
        if secret is not None:
            self.logger.redact(secret.reveal())
        records: list[StageRecord] = []
        fetch: FetchOutput | None = None
        build: BuildOutput | None = None
        try:
            fetch = self._run_stage(
                "fetch",
                records,
                partial(self.fetch_stage().run, lockfile_path),
            )
            build = self._run_stage(
                "build",
                records,
                partial(self.build_stage().run, fetch, source, secret=secret),
            )
            image = self._run_stage(
                "runtime",
                records,
                partial(self.runtime_stage().run, build, secret=secret),
            )
        except KilnError:
            self._discard_outputs(records)
            self._write_report(records, fetch=fetch, build=build)
            raise

        # Runtime Assembly owns the artifact now; the build workspace is discarded.
        shutil.rmtree(build.workspace, ignore_errors=True)
        report_path = self._write_report(records, fetch=fetch, build=build, image=image)
        return PipelineResult(
            fetch=fetch,
            build=build,
            image=image,
            stages=records,
            report_path=report_path,
        )

    def dockerfile_plan(self, *, secret_name: str | None = None) -> DockerfilePlan:
        lockfile_path, source = self._require_inputs()
        manifest = read_manifest(source)
        return DockerfilePlan(
            project=self.project,
            binary=manifest.name,
            volumes=self.volumes(),
            runtime=self._runtime,
            components=self.components,
            secret_name=secret_name,
            lockfile=lockfile_path.name,
        )

    def emit_dockerfile(
        self,
        path: str | Path,
        *,
        secret_name: str | None = None,
    ) -> DockerfileEmission:
        return emit_dockerfile(self.dockerfile_plan(secret_name=secret_name), path)

    def build_container(
        self,
        backend: ContainerBackend,
        *,
        tag: str | None = None,
        secret: BuildSecret | None = None,
    ) -> ContainerBuildResult:
        _, source = self._require_inputs()
        emission = self.emit_dockerfile(
            self.build_dir / "Dockerfile",
            secret_name=secret.name if secret is not None else None,
        )
        request = ContainerBuildRequest(
            dockerfile=emission.path,
            context=source,
            tag=tag,
            secret=secret,
        )
        result = backend.build(request)
        self.logger.log(
            operation="container_build",
            stage=None,
            builder=backend.name,
            message="Built container image from emitted Dockerfile.",
            extra={"image_id": result.image_id, "dockerfile_sha256": emission.sha256},
        )
        return result

    def _require_inputs(self) -> tuple[Path, Path]:
        if self._lockfile is None:
            raise ValidationError(
                "Pipeline has no lockfile.",
                hint="Call lockfile(path) before running the pipeline.",
            )
        if self._source is None:
            raise ValidationError(
                "Pipeline has no source tree.",
                hint="Call source(path) before running the pipeline.",
            )
        return self._lockfile, self._source

    def _run_stage(
        self,
        name: StageName,
        records: list[StageRecord],
        action: Callable[[], T],
    ) -> T:
        self.logger.log(operation="stage_start", stage=name, message="Starting stage.")
        try:
            output = action()
        except KilnError as exc:
            if not exc.context.get("stage"):
                exc.context["stage"] = name
            records.append(StageRecord(name=name, status="failed", error=exc.to_dict()))
            for later in STAGE_ORDER[STAGE_ORDER.index(name) + 1 :]:
                records.append(StageRecord(name=later, status="skipped"))
            self.logger.log(
                operation="stage_failed",
                stage=name,
                level="error",
                message="Stage failed.",
                extra={"code": exc.code},
            )
            raise
        records.append(StageRecord(name=name, status="ok"))
        self.logger.log(operation="stage_complete", stage=name, message="Completed stage.")
        return output

    def _discard_outputs(self, records: list[StageRecord]) -> None:
        for record in records:
            if record.status == "ok":
                continue
            for relative in STAGE_OUTPUTS[record.name]:
                shutil.rmtree(self.build_dir / relative, ignore_errors=True)

    def _write_report(
        self,
        records: list[StageRecord],
        *,
        fetch: FetchOutput | None = None,
        build: BuildOutput | None = None,
        image: RuntimeImage | None = None,
    ) -> Path:
        payload: dict[str, Any] = {
            "project": self.project,
            "stages": [
                {"name": record.name, "status": record.status, "error": record.error}
                for record in records
            ],
            "volumes": [
                {"id": volume.id, "sharing": volume.sharing} for volume in self.volumes()
            ],
            "logs": self.logger.records,
        }
        if fetch is not None:
            payload["lock_digest"] = fetch.lock_digest
            payload["fetch_key"] = fetch.fetch_key
            payload["dependencies"] = {
                "downloaded": list(fetch.downloaded),
                "cached": list(fetch.cached),
            }
        if build is not None:
            payload["cache"] = {"hits": list(build.cache_hits), "misses": list(build.cache_misses)}
            payload["artifact"] = {
                "name": build.name,
                "version": build.version,
                "sha256": build.digest,
                "signed": build.signed,
            }
        if image is not None:
            payload["image"] = {
                "path": str(image.path),
                "digest": image.digest,
                "entrypoint": list(image.config.entrypoint),
                "env": dict(image.config.env),
                "user": image.config.user,
            }
        report_path = self.build_dir / REPORT_NAME
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(
            json.dumps(self.logger.scrub(payload), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return report_path
