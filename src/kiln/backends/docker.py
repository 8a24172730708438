"""BuildKit execution of an emitted Dockerfile via the docker CLI.

The build secret reaches docker only through the environment of the child
process (``--secret id=<NAME>,env=<NAME>``); the argv never carries it.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from contextlib import nullcontext
from dataclasses import dataclass, field

from kiln.backends.base import ContainerBuildRequest, ContainerBuildResult
from kiln.errors import AssemblyError
from kiln.observability import REDACTED


@dataclass(slots=True)
class DockerBackend:
    name: str = "docker"
    binary: str = "docker"
    build_args: list[str] = field(default_factory=list)

    def command(self, request: ContainerBuildRequest) -> list[str]:
        cmd = [self.binary, "build", "--quiet", "--file", str(request.dockerfile)]
        if request.tag is not None:
            cmd.extend(["--tag", request.tag])
        if request.secret is not None:
            name = request.secret.name
            cmd.extend(["--secret", f"id={name},env={name}"])
        cmd.extend(self.build_args)
        cmd.append(str(request.context))
        return cmd

    def build(self, request: ContainerBuildRequest) -> ContainerBuildResult:
        if shutil.which(self.binary) is None:
            raise AssemblyError(
                "Docker backend requires the docker CLI in PATH.",
                hint="Install docker with BuildKit support, or run the in-process pipeline.",
                context={"backend": self.name, "operation": "build"},
            )
        cmd = self.command(request)
        binding = request.secret.binding() if request.secret is not None else nullcontext({})
        with binding as secret_env:
            env = dict(os.environ)
            env["DOCKER_BUILDKIT"] = "1"
            env.update(secret_env)
            result = subprocess.run(
                cmd,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        if result.returncode != 0:
            stderr = result.stderr or ""
            if request.secret is not None:
                stderr = stderr.replace(request.secret.reveal(), REDACTED)
            stderr = stderr[:2000]
            raise AssemblyError(
                "docker build failed.",
                hint="Check the docker build output for details.",
                context={
                    "backend": self.name,
                    "operation": "build",
                    "returncode": str(result.returncode),
                    "stderr": stderr,
                    "command": " ".join(cmd),
                },
            )
        return ContainerBuildResult(
            image_id=result.stdout.strip(),
            tag=request.tag,
            command=tuple(cmd),
        )
