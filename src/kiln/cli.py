"""Command line entry point: ``python -m kiln <fetch|build|run|dockerfile>``.

``fetch`` and ``build`` are the commands the emitted Dockerfile runs inside
its fetch and build stages; ``run`` executes the whole in-process pipeline.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from kiln.errors import KilnError, ValidationError
from kiln.pipeline import Pipeline
from kiln.policy import Policy
from kiln.secrets import DEFAULT_SECRETS_PATH, BuildSecret, load_secrets


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kiln")
    commands = parser.add_subparsers(dest="command", required=True)

    for name in ("fetch", "build", "run", "dockerfile"):
        command = commands.add_parser(name)
        command.add_argument("--project", required=True)
        command.add_argument("--lockfile", default="kiln.lock")
        command.add_argument("--source", default=".")
        command.add_argument("--build-dir", default="build")
        command.add_argument("--cache-root", default=None)
        if name in ("fetch", "run"):
            command.add_argument("--offline", action="store_true")
        if name in ("build", "run"):
            command.add_argument("--secret-env", default=None, help="Read the secret from env.")
            command.add_argument("--secret", default=None, help="Secret name in the secrets file.")
            command.add_argument("--secrets-file", default=str(DEFAULT_SECRETS_PATH))
            command.add_argument("--require-secret", action="store_true")
        if name == "dockerfile":
            command.add_argument("--output", default="Dockerfile")
            command.add_argument("--secret-name", default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return _dispatch(args)
    except KilnError as exc:
        print(json.dumps(exc.to_dict(), indent=2, sort_keys=True), file=sys.stderr)
        return 1


def _dispatch(args: argparse.Namespace) -> int:
    policy = Policy(
        network_mode="offline" if getattr(args, "offline", False) else "online",
        secret_mode="required" if getattr(args, "require_secret", False) else "optional",
    )
    pipeline = Pipeline(
        project=args.project,
        build_dir=Path(args.build_dir),
        cache_root=Path(args.cache_root) if args.cache_root else None,
        policy=policy,
    )
    pipeline.lockfile(Path(args.source) / args.lockfile).source(args.source)

    if args.command == "dockerfile":
        emission = pipeline.emit_dockerfile(args.output, secret_name=args.secret_name)
        print(emission.path)
        return 0
    if args.command == "fetch":
        fetch = pipeline.fetch_stage().run(Path(args.source) / args.lockfile)
        print(fetch.fetch_key)
        return 0

    secret = _resolve_secret(args)
    if args.command == "build":
        # Caches were populated by the fetch stage; the build never reaches the network.
        offline = Policy(network_mode="offline")
        fetch = pipeline.fetch_stage(policy=offline).run(Path(args.source) / args.lockfile)
        build = pipeline.build_stage().run(fetch, Path(args.source), secret=secret)
        print(build.artifact)
        return 0

    result = pipeline.run(secret=secret)
    print(result.report_path)
    return 0


def _resolve_secret(args: argparse.Namespace) -> BuildSecret | None:
    if args.secret_env and args.secret:
        raise ValidationError("Pass either --secret-env or --secret, not both.")
    if args.secret_env:
        return BuildSecret.from_env(args.secret_env)
    if args.secret:
        secrets = load_secrets(args.secrets_file)
        if args.secret not in secrets:
            raise ValidationError(
                "Secret is not defined in the secrets file.",
                context={"path": args.secrets_file, "name": args.secret},
            )
        return secrets[args.secret]
    return None
