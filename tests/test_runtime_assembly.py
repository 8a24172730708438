import json
import os
import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from kiln.cache import CacheRegistry
from kiln.errors import AssemblyError, PolicyError, SecretLeakError, ValidationError
from kiln.models import BuildOutput, RuntimeComponent, RuntimeConfig
from kiln.policy import Policy
from kiln.secrets import BuildSecret, scan_for_secret
from kiln.stages import BuildStage, FetchStage, RuntimeAssembly

ProjectFactory = Callable[..., Path]

SECRET = BuildSecret("CODE_SECRET", "s3cr3t-build-key")


def _build(
    tmp_path: Path,
    project: Path,
    *,
    secret: BuildSecret | None = None,
) -> BuildOutput:
    build_dir = tmp_path / "build"
    registry = CacheRegistry(tmp_path / "cache")
    fetch = FetchStage(project="svc", build_dir=build_dir, registry=registry).run(
        project / "kiln.lock"
    )
    return BuildStage(build_dir=build_dir, registry=registry).run(fetch, project, secret=secret)


def test_runtime_image_layout(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)

    image = RuntimeAssembly(build_dir=tmp_path / "build").run(build)

    assert image.path == tmp_path / "build" / "image"
    binary = image.host_path("/usr/local/bin/svc")
    assert binary.read_bytes() == build.artifact.read_bytes()
    assert stat.S_IMODE(binary.stat().st_mode) == 0o755
    passwd = image.host_path("/etc/passwd").read_text(encoding="utf-8")
    assert "app:x:1000:1000::/home/app:/bin/sh" in passwd
    assert "app:x:1000:" in image.host_path("/etc/group").read_text(encoding="utf-8")
    assert image.config.entrypoint == ("/usr/local/bin/svc",)
    assert image.config.user == "app"
    assert image.config.uid == 1000
    assert dict(image.config.env) == {"PORT": "8080", "LOG_LEVEL": "info"}
    assert image.config.exposed_port == 8080


def test_prepare_runs_once_inside_the_image(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)

    image = RuntimeAssembly(build_dir=tmp_path / "build").run(build)

    marker = image.host_path("/home/app/.cache/svc/prepared")
    assert marker.read_text(encoding="utf-8") == "svc 0.1.0\n"
    assert image.host_path("/home/app/.cache/svc/warm").exists()
    history = json.loads((image.path / "history.json").read_text(encoding="utf-8"))
    steps = [entry["step"] for entry in history]
    assert steps == ["user", "install", "env", "prepare", "entrypoint"]
    assert history[3]["created_by"] == "/usr/local/bin/svc --prepare"
    assert history[3]["user"] == f"host:{os.geteuid()}"


def test_config_json_matches_image_config(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)

    image = RuntimeAssembly(build_dir=tmp_path / "build").run(build)

    payload = json.loads((image.path / "config.json").read_text(encoding="utf-8"))
    assert payload == image.config.to_payload()
    assert payload["workdir"] == "/home/app"


def test_image_digest_is_reproducible(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    assembly = RuntimeAssembly(build_dir=tmp_path / "build")

    first = assembly.run(build)
    second = assembly.run(build)

    assert first.digest == second.digest
    assert not [p for p in (tmp_path / "build").iterdir() if p.name.startswith(".image-")]


def test_environment_overrides_at_deploy_time(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    config = RuntimeConfig(port=9000, log_level="debug")

    image = RuntimeAssembly(build_dir=tmp_path / "build", config=config).run(build)

    assert image.environment() == {"PORT": "9000", "LOG_LEVEL": "debug"}
    assert image.environment({"PORT": "7000"}) == {"PORT": "7000", "LOG_LEVEL": "debug"}


def test_components_are_recorded_and_installed(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    components = (
        RuntimeComponent(kind="target", name="wasm32-unknown-unknown"),
        RuntimeComponent(
            kind="component",
            name="fmt",
            argv=("sh", "-c", 'mkdir -p "$ROOTFS/opt/fmt" && touch "$ROOTFS/opt/fmt/ready"'),
        ),
    )

    image = RuntimeAssembly(build_dir=tmp_path / "build", components=components).run(build)

    recorded = json.loads(image.host_path("/etc/kiln/components.json").read_text())
    assert [item["name"] for item in recorded] == ["wasm32-unknown-unknown", "fmt"]
    assert image.host_path("/opt/fmt/ready").exists()
    assert image.config.components == components


def test_failing_component_aborts_assembly(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    components = (RuntimeComponent(kind="component", name="broken", argv=("sh", "-c", "exit 4")),)

    with pytest.raises(AssemblyError) as excinfo:
        RuntimeAssembly(build_dir=tmp_path / "build", components=components).run(build)

    assert excinfo.value.context["returncode"] == "4"
    assert not (tmp_path / "build" / "image").exists()


def test_prepare_failure_produces_no_image(
    tmp_path: Path,
    make_project: ProjectFactory,
) -> None:
    failing = "main() {\n  :\n}\n\nprepare() {\n  exit 3\n}\n"
    project = make_project(units={"src/main.sh": failing})
    build = _build(tmp_path, project)

    with pytest.raises(AssemblyError) as excinfo:
        RuntimeAssembly(build_dir=tmp_path / "build").run(build)

    assert excinfo.value.context["step"] == "prepare"
    assert excinfo.value.context["returncode"] == "3"
    assert not (tmp_path / "build" / "image").exists()


def test_prepare_timeout_is_assembly_error(
    tmp_path: Path,
    make_project: ProjectFactory,
) -> None:
    slow = "main() {\n  :\n}\n\nprepare() {\n  exec sleep 5\n}\n"
    project = make_project(units={"src/main.sh": slow})
    build = _build(tmp_path, project)
    policy = Policy(prepare_timeout=0.2)

    with pytest.raises(AssemblyError, match="timed out"):
        RuntimeAssembly(build_dir=tmp_path / "build", policy=policy).run(build)

    assert not (tmp_path / "build" / "image").exists()


@pytest.mark.parametrize(
    "config",
    [
        RuntimeConfig(uid=0),
        RuntimeConfig(user="root"),
        RuntimeConfig(gid=0),
        RuntimeConfig(user="x:y"),
        RuntimeConfig(user="app\nroot"),
        RuntimeConfig(user="App"),
        RuntimeConfig(user="app\n"),
    ],
)
def test_privileged_identity_is_rejected(
    tmp_path: Path,
    project_dir: Path,
    config: RuntimeConfig,
) -> None:
    build = _build(tmp_path, project_dir)

    with pytest.raises(ValidationError):
        RuntimeAssembly(build_dir=tmp_path / "build", config=config).run(build)


def test_supplied_secret_never_reaches_the_image(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir, secret=SECRET)

    image = RuntimeAssembly(build_dir=tmp_path / "build").run(build, secret=SECRET)

    assert scan_for_secret([image.path], SECRET) == []


def test_leaked_secret_aborts_assembly(tmp_path: Path, make_project: ProjectFactory) -> None:
    leaky = "main() {\n  token='s3cr3t-build-key'\n  echo \"$token\"\n}\n"
    project = make_project(units={"src/main.sh": leaky})
    build = _build(tmp_path, project, secret=SECRET)

    with pytest.raises(SecretLeakError) as excinfo:
        RuntimeAssembly(build_dir=tmp_path / "build").run(build, secret=SECRET)

    assert "usr/local/bin/svc" in excinfo.value.context["files"]
    assert not (tmp_path / "build" / "image").exists()


def test_runtime_rejects_non_build_input(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        RuntimeAssembly(build_dir=tmp_path / "build").run(object())  # type: ignore[arg-type]


def test_components_do_not_inherit_the_host_environment(
    tmp_path: Path,
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CODE_SECRET", "s3cr3t-build-key")
    build = _build(tmp_path, project_dir)
    spy = 'printf "%s|%s" "${CODE_SECRET:-}" "${PORT:-}" > "$ROOTFS/spy"'
    components = (RuntimeComponent(kind="component", name="spy", argv=("sh", "-c", spy)),)

    image = RuntimeAssembly(build_dir=tmp_path / "build", components=components).run(build)

    assert image.host_path("/spy").read_text(encoding="utf-8") == "|8080"


def test_home_ownership_is_recorded(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    config = RuntimeConfig(user="svc", uid=1500, gid=1600)

    image = RuntimeAssembly(build_dir=tmp_path / "build", config=config).run(build)

    payload = json.loads((image.path / "config.json").read_text(encoding="utf-8"))
    assert payload["ownership"] == {"/home/svc": "1500:1600"}
    assert dict(image.config.ownership) == {"/home/svc": "1500:1600"}


@pytest.mark.skipif(os.geteuid() == 0, reason="requires an unprivileged invoker")
def test_dropping_privileges_requires_root(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)
    policy = Policy(drop_privileges=True)

    with pytest.raises(PolicyError, match="root invoker"):
        RuntimeAssembly(build_dir=tmp_path / "build", policy=policy).run(build)

    assert not (tmp_path / "build" / "image").exists()


@pytest.mark.skipif(os.geteuid() != 0, reason="requires root to change ownership")
def test_root_invoker_hands_home_to_runtime_user(tmp_path: Path, project_dir: Path) -> None:
    build = _build(tmp_path, project_dir)

    image = RuntimeAssembly(build_dir=tmp_path / "build").run(build)

    home = image.host_path("/home/app")
    assert (home.stat().st_uid, home.stat().st_gid) == (1000, 1000)
    marker = image.host_path("/home/app/.cache/svc/prepared")
    assert marker.stat().st_uid == 1000
