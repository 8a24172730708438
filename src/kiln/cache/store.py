"""Content-addressed object store with manifest verification."""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
from pathlib import Path

from kiln.cache.keys import ObjectCacheInput, cache_key, input_payload
from kiln.errors import CacheIntegrityError

OBJECT_FILE = "object.bin"
MANIFEST_FILE = "manifest.json"


class ObjectStore:
    """Compiled-object entries stored under a compilation cache volume.

    Entries are staged in a temporary directory and renamed into place, so a
    reader sees either a complete entry or none at all.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def load(self, *, key: str, expected_inputs: ObjectCacheInput) -> bytes | None:
        entry = self.root / key
        if not (entry / OBJECT_FILE).is_file() or not (entry / MANIFEST_FILE).is_file():
            return None

        manifest = _read_manifest(entry / MANIFEST_FILE)
        payload = (entry / OBJECT_FILE).read_bytes()
        checks = (
            ("key", key, "manifest key"),
            ("inputs", input_payload(expected_inputs), "manifest inputs"),
            ("object_sha256", hashlib.sha256(payload).hexdigest(), "object digest"),
        )
        for field_name, expected, label in checks:
            if manifest.get(field_name) != expected:
                raise CacheIntegrityError(
                    f"Compiled object {label} does not match.",
                    hint="Delete the entry from the compilation volume; it is rebuilt on demand.",
                    context={"operation": "object_load", "key": key, "field": field_name},
                )
        return payload

    def save(self, *, inputs: ObjectCacheInput, artifact: bytes) -> str:
        key = cache_key(inputs)
        entry = self.root / key
        if entry.exists():
            # Equal keys mean equal inputs; the stored object is kept.
            return key

        manifest = {
            "key": key,
            "inputs": input_payload(inputs),
            "object_sha256": hashlib.sha256(artifact).hexdigest(),
        }
        staging = Path(tempfile.mkdtemp(prefix=f".{key[:12]}-", dir=str(self.root)))
        try:
            (staging / OBJECT_FILE).write_bytes(artifact)
            (staging / MANIFEST_FILE).write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            try:
                os.rename(staging, entry)
            except OSError:
                # A concurrent writer won the rename.
                if not entry.exists():
                    raise
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return key

    def keys(self) -> list[str]:
        return sorted(
            path.name
            for path in self.root.iterdir()
            if path.is_dir() and not path.name.startswith(".")
        )


def _read_manifest(path: Path) -> dict[str, object]:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CacheIntegrityError(
            "Compiled object manifest is not valid JSON.",
            context={"operation": "object_load", "path": str(path)},
        ) from exc
    if not isinstance(parsed, dict):
        raise CacheIntegrityError(
            "Compiled object manifest must be a JSON object.",
            context={"operation": "object_load", "path": str(path)},
        )
    return parsed
