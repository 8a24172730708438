"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from kiln.errors import CompileError, PolicyError

NetworkMode = Literal["online", "offline"]
SecretMode = Literal["optional", "required"]


@dataclass(frozen=True, slots=True)
class Policy:
    network_mode: NetworkMode = "online"
    secret_mode: SecretMode = "optional"
    verify_secret_absent: bool = True
    # Seconds to wait for a locked cache volume; -1 waits forever.
    lock_timeout: float = -1
    prepare_timeout: float | None = 300.0
    # Run --prepare as the runtime uid/gid; needs a root invoker.
    drop_privileges: bool = False


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )


def ensure_secret_policy(*, policy: Policy, secret_present: bool, project: str) -> None:
    if policy.secret_mode == "required" and not secret_present:
        raise CompileError(
            "A build secret is required by policy but none was supplied.",
            hint="Pass secret=BuildSecret(...) to run() or relax policy.secret_mode.",
            context={"operation": "build", "project": project},
        )
