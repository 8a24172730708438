"""Build Stage: compile the source tree into exactly one artifact."""

from __future__ import annotations

import hashlib
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from kiln.builders import (
    Builder,
    CompiledObject,
    DependencyPayload,
    LinkRequest,
    ShellBundleBuilder,
    discover_units,
    promote_artifact,
    read_manifest,
)
from kiln.cache import (
    CacheRegistry,
    CacheVolume,
    ObjectCacheInput,
    ObjectStore,
    cache_key,
    compilation_volume,
)
from kiln.errors import ResolutionError, ValidationError
from kiln.fetch import assert_hash_matches, cached_path, checkout_path
from kiln.lockfile import LockedPackage, resolve_locked
from kiln.models import BuildOutput, FetchOutput
from kiln.observability import StructuredLogger
from kiln.policy import Policy, ensure_secret_policy
from kiln.secrets import BuildSecret

OBJECTS_DIRNAME = "objects"


@dataclass(slots=True)
class BuildStage:
    build_dir: Path
    registry: CacheRegistry
    builder: Builder = field(default_factory=ShellBundleBuilder)
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    compilation: CacheVolume | None = None

    @property
    def toolchain(self) -> str:
        return f"{self.builder.name}/{self.builder.version}"

    def artifact_path(self, name: str) -> Path:
        return self.build_dir / "build" / "bin" / name

    def run(
        self,
        fetch: FetchOutput,
        source: str | Path,
        secret: BuildSecret | None = None,
    ) -> BuildOutput:
        if not isinstance(fetch, FetchOutput):
            raise ValidationError(
                "Build Stage input must be the Fetch Stage output.",
                context={"stage": "build", "received": type(fetch).__name__},
            )
        manifest = read_manifest(source)
        ensure_secret_policy(
            policy=self.policy,
            secret_present=secret is not None,
            project=fetch.project,
        )
        if secret is not None:
            self.logger.redact(secret.reveal())

        resolved = resolve_locked(fetch.lockfile, manifest.dependencies, project=manifest.name)
        units = discover_units(manifest, suffix=self.builder.suffix)
        workspace = self.build_dir / "build" / "work"
        if workspace.exists():
            shutil.rmtree(workspace)
        dependencies = tuple(
            self._vendor(package, fetch=fetch, workspace=workspace) for package in resolved
        )
        idents = tuple(package.ident for package in resolved)

        volume = self.compilation or compilation_volume(fetch.project)
        hits: list[str] = []
        misses: list[str] = []
        objects: list[CompiledObject] = []
        with self.registry.mount(volume, stage="build") as mounted:
            store = ObjectStore(mounted.path / OBJECTS_DIRNAME)
            for unit in units:
                inputs = ObjectCacheInput(
                    unit=unit.path,
                    source_hash=hashlib.sha256(unit.source).hexdigest(),
                    toolchain=self.toolchain,
                    dependencies=idents,
                )
                payload = store.load(key=cache_key(inputs), expected_inputs=inputs)
                if payload is None:
                    payload = self.builder.compile_unit(unit)
                    store.save(inputs=inputs, artifact=payload)
                    misses.append(unit.path)
                else:
                    hits.append(unit.path)
                objects.append(CompiledObject(unit=unit.path, payload=payload))
            self.logger.log(
                operation="compile",
                stage="build",
                volume=volume.id,
                builder=self.builder.name,
                message="Compiled source units.",
                extra={"hits": len(hits), "misses": len(misses)},
            )

        bundle = self.builder.link(
            LinkRequest(
                manifest=manifest,
                objects=tuple(objects),
                dependencies=dependencies,
                secret=secret,
            )
        )
        artifact = self.artifact_path(manifest.name)
        digest = promote_artifact(bundle, destination=artifact)
        self.logger.log(
            operation="link",
            stage="build",
            builder=self.builder.name,
            message="Promoted compiled artifact.",
            extra={"artifact": str(artifact), "sha256": digest, "signed": secret is not None},
        )
        return BuildOutput(
            name=manifest.name,
            version=manifest.version,
            artifact=artifact,
            digest=digest,
            workspace=workspace,
            signed=secret is not None,
            dependencies=idents,
            cache_hits=tuple(hits),
            cache_misses=tuple(misses),
        )

    def _vendor(
        self,
        package: LockedPackage,
        *,
        fetch: FetchOutput,
        workspace: Path,
    ) -> DependencyPayload:
        """Copy one resolved dependency out of the caches into the workspace."""
        target = workspace / "vendor" / package.ident
        target.mkdir(parents=True, exist_ok=True)
        if package.kind == "git":
            checkout = checkout_path(
                commit=package.commit or "",
                tree_hash=package.checksum,
                cache_dir=fetch.vcs,
            )
            if not checkout.is_dir():
                raise _not_fetched(package)
            files: list[tuple[str, bytes]] = []
            for path in sorted(checkout.rglob(f"*{self.builder.suffix}")):
                relative = path.relative_to(checkout)
                if ".git" in relative.parts or not path.is_file():
                    continue
                payload = path.read_bytes()
                destination = target / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_bytes(payload)
                files.append((relative.as_posix(), payload))
            return DependencyPayload(ident=package.ident, files=tuple(files))

        entry = cached_path(sha256=package.checksum, cache_dir=fetch.snapshot)
        if not entry.is_file():
            raise _not_fetched(package)
        assert_hash_matches(entry, expected_sha256=package.checksum)
        file_name = PurePosixPath(urlsplit(package.location).path).name or package.name
        payload = entry.read_bytes()
        (target / file_name).write_bytes(payload)
        return DependencyPayload(ident=package.ident, files=((file_name, payload),))


def _not_fetched(package: LockedPackage) -> ResolutionError:
    return ResolutionError(
        "Locked dependency is missing from the dependency caches.",
        hint="Run the Fetch Stage for this lockfile before building; builds are offline.",
        context={"operation": "build", "package": package.ident, "source": package.source},
    )
