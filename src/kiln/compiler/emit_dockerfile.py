"""Three-stage BuildKit Dockerfile emission.

Renders the same Fetch → Build → Runtime chain the in-process pipeline runs:
- ``fetch`` copies only the lockfile and populates the cache mounts
- ``build`` copies the source tree and links the artifact, with the build
  secret mounted for that single ``RUN`` step
- the final stage installs components, creates the unprivileged user, copies
  the artifact, declares the runtime env and bakes ``--prepare``
"""

from __future__ import annotations

import hashlib
import json
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from kiln.builders import PREPARE_FLAG
from kiln.cache import CacheVolume
from kiln.errors import ValidationError
from kiln.models import RuntimeComponent, RuntimeConfig

CONTAINER_CACHE_ROOT = "/cache"
CONTAINER_BUILD_DIR = "/kiln"
CONTAINER_SOURCE_DIR = "/src"
DOCKERFILE_SYNTAX = "docker/dockerfile:1"


@dataclass(frozen=True, slots=True)
class DockerfilePlan:
    project: str
    binary: str
    volumes: tuple[CacheVolume, ...]
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    components: tuple[RuntimeComponent, ...] = ()
    secret_name: str | None = None
    lockfile: str = "kiln.lock"
    builder_image: str = "python:3.12-slim"
    runtime_image: str = "debian:bookworm-slim"
    kiln_requirement: str = "kiln"


@dataclass(frozen=True, slots=True)
class DockerfileEmission:
    path: Path
    sha256: str


def render_dockerfile(plan: DockerfilePlan) -> str:
    if not plan.volumes:
        raise ValidationError("Dockerfile emission requires at least one cache volume.")
    install_path = f"{plan.runtime.install_dir.rstrip('/')}/{plan.binary}"
    cache_mounts = [_cache_mount(volume) for volume in plan.volumes]
    common = [
        f"--project {shlex.quote(plan.project)}",
        f"--lockfile {shlex.quote(plan.lockfile)}",
        f"--build-dir {CONTAINER_BUILD_DIR}",
        f"--cache-root {CONTAINER_CACHE_ROOT}",
    ]

    lines = [
        f"# syntax={DOCKERFILE_SYNTAX}",
        "",
        "# fetch",
        f"FROM {plan.builder_image} AS fetch",
        f"RUN pip install --no-cache-dir {shlex.quote(plan.kiln_requirement)}",
        f"WORKDIR {CONTAINER_SOURCE_DIR}",
        f"COPY {plan.lockfile} {plan.lockfile}",
        _run_step(cache_mounts, "python -m kiln fetch " + " ".join(common)),
        "",
        "# build",
        "FROM fetch AS build",
        "COPY . .",
    ]
    build_mounts = list(cache_mounts)
    build_args = ["python -m kiln build", *common, f"--source {CONTAINER_SOURCE_DIR}"]
    if plan.secret_name is not None:
        # Mounted as an env var for this RUN step only.
        build_mounts.append(
            f"--mount=type=secret,id={plan.secret_name},env={plan.secret_name}"
        )
        build_args.append(f"--secret-env {plan.secret_name}")
    lines.append(_run_step(build_mounts, " ".join(build_args)))

    runtime = plan.runtime
    lines.extend(["", "# runtime", f"FROM {plan.runtime_image}"])
    components = json.dumps(
        [
            {"kind": item.kind, "name": item.name, "argv": list(item.argv)}
            for item in plan.components
        ],
        sort_keys=True,
    )
    lines.append(
        "RUN mkdir -p /etc/kiln && printf '%s\\n' "
        f"{shlex.quote(components)} > /etc/kiln/components.json"
    )
    for component in plan.components:
        if component.argv:
            lines.append(f"RUN ROOTFS=/ {shlex.join(component.argv)}")
    lines.extend(
        [
            f"RUN groupadd --gid {runtime.group_id} {runtime.user} && "
            f"useradd --create-home --uid {runtime.uid} --gid {runtime.group_id} {runtime.user}",
            f"USER {runtime.user}:{runtime.uid}",
            f"WORKDIR {runtime.home}",
            f"COPY --from=build {CONTAINER_BUILD_DIR}/build/bin/{plan.binary} {install_path}",
            f"ENV {runtime.port_env}={runtime.port}",
            f"ENV {runtime.log_env}={runtime.log_level}",
            f"EXPOSE {runtime.port}",
            f"RUN {install_path} {PREPARE_FLAG}",
            f"CMD {json.dumps([install_path])}",
        ]
    )
    return "\n".join(lines) + "\n"


def emit_dockerfile(plan: DockerfilePlan, destination: str | Path) -> DockerfileEmission:
    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = render_dockerfile(plan)
    path.write_text(content, encoding="utf-8")
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return DockerfileEmission(path=path, sha256=digest)


def _cache_mount(volume: CacheVolume) -> str:
    mount = f"--mount=type=cache,target={CONTAINER_CACHE_ROOT}/{volume.id},id={volume.id}"
    if volume.sharing == "locked":
        mount += ",sharing=locked"
    return mount


def _run_step(mounts: list[str], command: str) -> str:
    return "RUN \\\n" + "".join(f"  {mount} \\\n" for mount in mounts) + f"  {command}"
