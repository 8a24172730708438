"""Cache key derivation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ObjectCacheInput:
    unit: str
    source_hash: str
    toolchain: str
    dependencies: tuple[str, ...] = ()


def cache_key(inputs: ObjectCacheInput) -> str:
    canonical = json.dumps(input_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fetch_key(lockfile_raw: bytes, *, toolchain: str) -> str:
    """Key of a fetch: lockfile bytes and toolchain only, never the source tree."""
    digest = hashlib.sha256()
    digest.update(toolchain.encode("utf-8"))
    digest.update(b"\0")
    digest.update(lockfile_raw)
    return digest.hexdigest()


def input_payload(inputs: ObjectCacheInput) -> dict[str, Any]:
    return {
        "unit": inputs.unit,
        "source_hash": inputs.source_hash,
        "toolchain": inputs.toolchain,
        "dependencies": list(inputs.dependencies),
    }
