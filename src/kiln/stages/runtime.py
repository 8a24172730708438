"""Runtime Assembly: minimal unprivileged image around the compiled artifact.

Every step runs inside a temporary image directory under the build
directory. The directory is renamed to ``<build_dir>/image`` only after all
steps, including the optional secret absence scan, succeeded.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import cbor2

from kiln.builders import PREPARE_FLAG, install_file
from kiln.errors import AssemblyError, PolicyError, ValidationError
from kiln.models import (
    BuildOutput,
    HistoryEntry,
    ImageConfig,
    RuntimeComponent,
    RuntimeConfig,
    RuntimeImage,
)
from kiln.observability import StructuredLogger
from kiln.policy import Policy
from kiln.secrets import BuildSecret, verify_secret_absent

IMAGE_DIRNAME = "image"
COMPONENTS_PATH = "etc/kiln/components.json"
ROOT_USER = "root"
USER_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")


@dataclass(slots=True)
class RuntimeAssembly:
    build_dir: Path
    config: RuntimeConfig = field(default_factory=RuntimeConfig)
    components: tuple[RuntimeComponent, ...] = ()
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def run(self, build: BuildOutput, *, secret: BuildSecret | None = None) -> RuntimeImage:
        if not isinstance(build, BuildOutput):
            raise ValidationError(
                "Runtime Assembly input must be the Build Stage output.",
                context={"stage": "runtime", "received": type(build).__name__},
            )
        validate_identity(self.config)
        if self.policy.drop_privileges and os.geteuid() != 0:
            raise PolicyError(
                "Dropping to the runtime identity requires a root invoker.",
                hint="Run as root or leave policy.drop_privileges disabled.",
                context={"stage": "runtime", "euid": str(os.geteuid())},
            )
        self.build_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".image-", dir=str(self.build_dir)))
        if self.policy.drop_privileges:
            staging.chmod(0o755)
        try:
            rootfs = staging / "rootfs"
            rootfs.mkdir()
            history: list[HistoryEntry] = []

            self._install_components(rootfs, history)
            self._create_identity(rootfs, history)
            install_path = self._install_artifact(rootfs, build, history)
            env = self.config.env()
            history.append(
                HistoryEntry(
                    step="env",
                    created_by=" ".join(f"{key}={value}" for key, value in sorted(env.items())),
                    user=ROOT_USER,
                )
            )
            self._prepare(rootfs, install_path, env, history)

            config = ImageConfig(
                user=self.config.user,
                uid=self.config.uid,
                gid=self.config.group_id,
                workdir=self.config.home,
                entrypoint=(install_path,),
                env=env,
                exposed_port=self.config.port,
                components=self.components,
                ownership={self.config.home: f"{self.config.uid}:{self.config.group_id}"},
            )
            history.append(
                HistoryEntry(
                    step="entrypoint",
                    created_by=json.dumps(list(config.entrypoint)),
                    user=self.config.user,
                )
            )
            _write_json(staging / "config.json", config.to_payload())
            _write_json(
                staging / "history.json",
                [
                    {"step": entry.step, "created_by": entry.created_by, "user": entry.user}
                    for entry in history
                ],
            )

            if secret is not None and self.policy.verify_secret_absent:
                verify_secret_absent(
                    [rootfs, staging / "config.json", staging / "history.json"],
                    secret,
                )

            digest = image_digest(config, rootfs)
            final = self.build_dir / IMAGE_DIRNAME
            _replace_dir(staging, final)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        self.logger.log(
            operation="assemble",
            stage="runtime",
            message="Assembled runtime image.",
            extra={"digest": digest, "entrypoint": install_path, "user": self.config.user},
        )
        return RuntimeImage(
            path=final,
            rootfs=final / "rootfs",
            config=config,
            history=tuple(history),
            digest=digest,
        )

    def _install_components(self, rootfs: Path, history: list[HistoryEntry]) -> None:
        manifest = rootfs / COMPONENTS_PATH
        manifest.parent.mkdir(parents=True, exist_ok=True)
        _write_json(
            manifest,
            [
                {"kind": item.kind, "name": item.name, "argv": list(item.argv)}
                for item in self.components
            ],
        )
        for component in self.components:
            if component.argv:
                env = {
                    "PATH": os.environ.get("PATH", os.defpath),
                    "ROOTFS": str(rootfs),
                    **self.config.env(),
                }
                _run_step(
                    list(component.argv),
                    env=env,
                    cwd=rootfs,
                    timeout=None,
                    step="component",
                    context={"component": f"{component.kind}:{component.name}"},
                )
            history.append(
                HistoryEntry(
                    step="component",
                    created_by=f"install {component.kind} {component.name}",
                    user=ROOT_USER,
                )
            )
            self.logger.log(
                operation="install_component",
                stage="runtime",
                message="Installed runtime component.",
                extra={"kind": component.kind, "name": component.name},
            )

    def _create_identity(self, rootfs: Path, history: list[HistoryEntry]) -> None:
        user = self.config.user
        uid = self.config.uid
        gid = self.config.group_id
        home = self.config.home
        etc = rootfs / "etc"
        etc.mkdir(parents=True, exist_ok=True)
        (etc / "passwd").write_text(
            "root:x:0:0:root:/root:/bin/sh\n"
            f"{user}:x:{uid}:{gid}::{home}:/bin/sh\n",
            encoding="utf-8",
        )
        (etc / "group").write_text(f"root:x:0:\n{user}:x:{gid}:\n", encoding="utf-8")
        (rootfs / home.lstrip("/")).mkdir(parents=True, exist_ok=True)
        history.append(
            HistoryEntry(
                step="user",
                created_by=f"useradd --uid {uid} --gid {gid} --home-dir {home} {user}",
                user=ROOT_USER,
            )
        )

    def _install_artifact(
        self,
        rootfs: Path,
        build: BuildOutput,
        history: list[HistoryEntry],
    ) -> str:
        install_path = f"{self.config.install_dir.rstrip('/')}/{build.name}"
        if not build.artifact.is_file():
            raise AssemblyError(
                "Compiled artifact is missing.",
                context={"stage": "runtime", "artifact": str(build.artifact)},
            )
        digest = install_file(build.artifact, rootfs / install_path.lstrip("/"))
        if digest != build.digest:
            raise AssemblyError(
                "Compiled artifact changed after the Build Stage promoted it.",
                hint="Rebuild; artifacts are immutable once promoted.",
                context={"stage": "runtime", "expected": build.digest, "actual": digest},
            )
        history.append(
            HistoryEntry(
                step="install",
                created_by=f"copy {build.name} {install_path}",
                user=ROOT_USER,
            )
        )
        return install_path

    def _prepare(
        self,
        rootfs: Path,
        install_path: str,
        env: Mapping[str, str],
        history: list[HistoryEntry],
    ) -> None:
        home = rootfs / self.config.home.lstrip("/")
        uid = self.config.uid
        gid = self.config.group_id
        identity: tuple[int, int] | None = None
        runner = f"host:{os.geteuid()}"
        if self.policy.drop_privileges:
            _chown_tree(home, uid, gid)
            identity = (uid, gid)
            runner = self.config.user
        process_env = {"PATH": os.environ.get("PATH", os.defpath), "HOME": str(home), **env}
        _run_step(
            [str(rootfs / install_path.lstrip("/")), PREPARE_FLAG],
            env=process_env,
            cwd=home,
            timeout=self.policy.prepare_timeout,
            step="prepare",
            context={"artifact": install_path},
            identity=identity,
        )
        if os.geteuid() == 0:
            _chown_tree(home, uid, gid)
        history.append(
            HistoryEntry(
                step="prepare",
                created_by=f"{install_path} {PREPARE_FLAG}",
                user=runner,
            )
        )
        self.logger.log(
            operation="prepare",
            stage="runtime",
            message="Ran self-warm step.",
            extra={"artifact": install_path, "runner": runner},
        )


def validate_identity(config: RuntimeConfig) -> None:
    """Reject privileged or malformed runtime identities."""
    if not USER_PATTERN.fullmatch(config.user):
        raise ValidationError(
            "Runtime user name must be a lowercase POSIX account name.",
            hint="Use letters, digits, '_' or '-', starting with a letter or '_'.",
            context={"stage": "runtime", "user": repr(config.user)},
        )
    if config.user == ROOT_USER or config.uid == 0 or config.group_id == 0:
        raise ValidationError(
            "Runtime identity must be unprivileged.",
            hint="Pick a non-root user with a non-zero uid and gid.",
            context={"stage": "runtime", "user": config.user, "uid": str(config.uid)},
        )


def image_digest(config: ImageConfig, rootfs: Path) -> str:
    files = {
        path.relative_to(rootfs).as_posix(): hashlib.sha256(path.read_bytes()).hexdigest()
        for path in sorted(rootfs.rglob("*"))
        if path.is_file() and not path.is_symlink()
    }
    encoded = cbor2.dumps({"config": config.to_payload(), "files": files}, canonical=True)
    return hashlib.sha256(encoded).hexdigest()


def _run_step(
    argv: list[str],
    *,
    env: Mapping[str, str],
    cwd: Path,
    timeout: float | None,
    step: str,
    context: Mapping[str, str],
    identity: tuple[int, int] | None = None,
) -> None:
    owner: dict[str, object] = {}
    if identity is not None:
        owner = {"user": identity[0], "group": identity[1], "extra_groups": []}
    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd),
            env=dict(env),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            **owner,
        )
    except subprocess.TimeoutExpired as exc:
        raise AssemblyError(
            "Image assembly step timed out.",
            hint="Raise policy.prepare_timeout or fix the step.",
            context={"stage": "runtime", "step": step, "timeout": str(timeout), **context},
        ) from exc
    except OSError as exc:
        raise AssemblyError(
            "Image assembly step could not be started.",
            context={"stage": "runtime", "step": step, "error": str(exc), **context},
        ) from exc
    if completed.returncode != 0:
        raise AssemblyError(
            "Image assembly step failed.",
            context={
                "stage": "runtime",
                "step": step,
                "returncode": str(completed.returncode),
                "stderr": completed.stderr.strip()[:2000],
                **context,
            },
        )


def _write_json(path: Path, payload: object) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def _replace_dir(staging: Path, final: Path) -> None:
    previous: Path | None = None
    if final.exists():
        previous = final.with_name(f".{final.name}-previous-{os.getpid()}")
        os.rename(final, previous)
    try:
        os.rename(staging, final)
    except OSError:
        if previous is not None:
            os.rename(previous, final)
        raise
    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


def _chown_tree(root: Path, uid: int, gid: int) -> None:
    os.chown(root, uid, gid)
    for path in root.rglob("*"):
        os.chown(path, uid, gid, follow_symlinks=False)
