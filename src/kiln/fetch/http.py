"""Integrity-enforced HTTP/file fetch into a content-addressed directory."""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from kiln.errors import ResolutionError, ValidationError
from kiln.policy import Policy, ensure_network_allowed


def cached_path(*, sha256: str, cache_dir: str | Path) -> Path:
    return Path(cache_dir) / sha256


def fetch(
    url: str,
    *,
    sha256: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> Path:
    """Fetch content and return its content-addressed cached path."""
    if not sha256:
        raise ValidationError("fetch() requires a sha256 value.")
    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)
    artifact_path = cached_path(sha256=sha256, cache_dir=cache_path)

    if artifact_path.exists():
        assert_hash_matches(artifact_path, expected_sha256=sha256)
        return artifact_path

    if policy is not None:
        ensure_network_allowed(policy=policy, operation="fetch")

    try:
        with urlopen(url) as response:  # noqa: S310 - integrity check is mandatory below
            payload = response.read()
    except (URLError, OSError, ValueError) as exc:
        raise ResolutionError(
            "Dependency download failed.",
            hint="Check connectivity and the locked source URL, then retry.",
            context={"operation": "fetch", "url": url, "error": str(exc)},
        ) from exc

    actual_sha256 = hashlib.sha256(payload).hexdigest()
    if actual_sha256 != sha256:
        raise ResolutionError(
            "Fetched content hash mismatch.",
            hint="Update the lockfile checksum or source URL to a trusted immutable artifact.",
            context={"operation": "fetch", "url": url, "expected": sha256, "actual": actual_sha256},
        )

    # Concurrent writers race benignly: every writer renames identical bytes.
    fd, temp_name = tempfile.mkstemp(prefix=f".{sha256[:12]}-", dir=str(cache_path))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.replace(temp_name, artifact_path)
    finally:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
    return artifact_path


def assert_hash_matches(path: Path, *, expected_sha256: str) -> None:
    actual_sha256 = hashlib.sha256(path.read_bytes()).hexdigest()
    if actual_sha256 != expected_sha256:
        raise ResolutionError(
            "Cached artifact hash mismatch.",
            hint="Clear the dependency cache and refetch with trusted inputs.",
            context={
                "operation": "fetch",
                "path": str(path),
                "expected": expected_sha256,
                "actual": actual_sha256,
            },
        )
