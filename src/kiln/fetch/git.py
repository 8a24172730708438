"""Git fetch with pinned commits, tree verification, and cache support."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import ResolutionError, ValidationError
from kiln.policy import Policy, ensure_network_allowed

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")


@dataclass(frozen=True, slots=True)
class GitFetchResult:
    path: Path
    commit: str
    tree_hash: str
    cache_hit: bool


def checkout_path(*, commit: str, tree_hash: str, cache_dir: str | Path) -> Path:
    return Path(cache_dir) / f"{commit}-{tree_hash}"


def fetch_git(
    repo: str,
    *,
    commit: str,
    tree_hash: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> GitFetchResult:
    """Fetch a pinned git commit, verify its tree hash, and cache the checkout."""
    if not COMMIT_PATTERN.fullmatch(commit):
        raise ValidationError(
            "fetch_git() requires a full 40-char commit SHA.",
            context={"operation": "fetch_git", "repo": repo, "commit": commit},
        )
    if not tree_hash:
        raise ValidationError("fetch_git() requires a tree_hash.")

    cache_root = Path(cache_dir)
    cache_root.mkdir(parents=True, exist_ok=True)
    final_path = checkout_path(commit=commit, tree_hash=tree_hash, cache_dir=cache_root)
    if final_path.exists():
        _verify_cached_checkout(checkout_path=final_path, tree_hash=tree_hash, commit=commit)
        return GitFetchResult(path=final_path, commit=commit, tree_hash=tree_hash, cache_hit=True)

    if policy is not None:
        ensure_network_allowed(policy=policy, operation="fetch_git")

    temp_root = Path(tempfile.mkdtemp(prefix=".git-", dir=str(cache_root)))
    try:
        _run_git(["clone", "--quiet", repo, str(temp_root)])
        _run_git(["checkout", "--quiet", commit], cwd=temp_root)
        actual_tree = _run_git(["rev-parse", "HEAD^{tree}"], cwd=temp_root)
        if actual_tree != tree_hash:
            raise ResolutionError(
                "Git tree hash mismatch.",
                hint="Pin the expected tree hash to the locked commit.",
                context={
                    "operation": "fetch_git",
                    "repo": repo,
                    "commit": commit,
                    "expected": tree_hash,
                    "actual": actual_tree,
                },
            )
        try:
            os.rename(temp_root, final_path)
        except OSError:
            if not final_path.exists():
                raise
            _verify_cached_checkout(checkout_path=final_path, tree_hash=tree_hash, commit=commit)
    finally:
        if temp_root.exists():
            shutil.rmtree(temp_root, ignore_errors=True)

    return GitFetchResult(path=final_path, commit=commit, tree_hash=tree_hash, cache_hit=False)


def _verify_cached_checkout(*, checkout_path: Path, tree_hash: str, commit: str) -> None:
    cached_commit = _run_git(["rev-parse", "HEAD"], cwd=checkout_path)
    cached_tree = _run_git(["rev-parse", "HEAD^{tree}"], cwd=checkout_path)
    if cached_commit != commit or cached_tree != tree_hash:
        raise ResolutionError(
            "Cached git checkout does not match expected commit/tree.",
            hint="Delete the cache entry and refetch.",
            context={
                "operation": "fetch_git",
                "path": str(checkout_path),
                "expected_commit": commit,
                "actual_commit": cached_commit,
                "expected_tree": tree_hash,
                "actual_tree": cached_tree,
            },
        )


def _run_git(argv: list[str], cwd: Path | None = None) -> str:
    command = ["git", *argv]
    try:
        completed = subprocess.run(
            command,
            cwd=cwd,
            check=False,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise ResolutionError(
            "git is not installed.",
            hint="Install git to fetch git-sourced dependencies.",
            context={"operation": "fetch_git"},
        ) from exc
    if completed.returncode != 0:
        raise ResolutionError(
            "Git command failed.",
            hint="Inspect the locked repository/commit and git installation.",
            context={
                "operation": "fetch_git",
                "argv": " ".join(command),
                "stderr": completed.stderr.strip(),
            },
        )
    return completed.stdout.strip()
