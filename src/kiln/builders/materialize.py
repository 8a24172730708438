"""Atomic artifact promotion helpers."""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path


def promote_artifact(payload: bytes, *, destination: Path, mode: int = 0o755) -> str:
    """Write *payload* next to *destination* and rename it into place.

    Returns the sha256 of the payload. A failure leaves *destination* untouched.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}-", dir=str(destination.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.chmod(temp_name, mode)
        os.replace(temp_name, destination)
    finally:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
    return hashlib.sha256(payload).hexdigest()


def install_file(source: Path, destination: Path, *, mode: int = 0o755) -> str:
    return promote_artifact(source.read_bytes(), destination=destination, mode=mode)
