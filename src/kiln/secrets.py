"""Build-time secret channel.

A :class:`BuildSecret` is supplied to a single pipeline run, handed only to
the link step of the Build Stage, and never written to a cache volume or to
the runtime image. ``repr``/``str`` are redacted, and
:func:`verify_secret_absent` scans persisted output for any occurrence.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import tomllib
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from kiln.errors import SecretLeakError, ValidationError
from kiln.observability import REDACTED

SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DEFAULT_SECRETS_PATH = Path(".secrets/secrets.toml")


class BuildSecret:
    __slots__ = ("name", "_value")

    def __init__(self, name: str, value: str) -> None:
        if not SECRET_NAME_PATTERN.fullmatch(name):
            raise ValidationError(
                "Build secret names must be valid environment variable names.",
                context={"name": name},
            )
        if not value:
            raise ValidationError("Build secret values must be non-empty.", context={"name": name})
        self.name = name
        self._value = value

    @classmethod
    def from_env(cls, name: str, environ: Mapping[str, str] | None = None) -> BuildSecret | None:
        source = os.environ if environ is None else environ
        value = source.get(name)
        if not value:
            return None
        return cls(name, value)

    def reveal(self) -> str:
        return self._value

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._value.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def needles(self) -> tuple[bytes, ...]:
        raw = self._value.encode("utf-8")
        return (raw, base64.b64encode(raw))

    @contextmanager
    def binding(self) -> Iterator[dict[str, str]]:
        """Yield a one-entry environment mapping that is cleared on exit."""
        env = {self.name: self._value}
        try:
            yield env
        finally:
            env.clear()

    def __repr__(self) -> str:
        return f"BuildSecret(name={self.name!r}, value={REDACTED!r})"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BuildSecret):
            return NotImplemented
        return self.name == other.name and hmac.compare_digest(self._value, other._value)

    def __hash__(self) -> int:
        return hash((self.name, hashlib.sha256(self._value.encode("utf-8")).hexdigest()))


def load_secrets(path: str | Path = DEFAULT_SECRETS_PATH) -> dict[str, BuildSecret]:
    """Load a flat ``NAME = "value"`` TOML table of build secrets."""
    secrets_path = Path(path)
    try:
        with secrets_path.open("rb") as handle:
            table = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ValidationError(
            "Secrets file does not exist.",
            hint="Create .secrets/secrets.toml or pass the secret explicitly.",
            context={"path": str(secrets_path)},
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(
            "Secrets file is not valid TOML.",
            context={"path": str(secrets_path), "error": str(exc)},
        ) from exc

    secrets: dict[str, BuildSecret] = {}
    for name, value in table.items():
        if not isinstance(value, str):
            raise ValidationError(
                "Invalid secret value; secrets must be strings.",
                context={"path": str(secrets_path), "name": name},
            )
        secrets[name] = BuildSecret(name, value)
    return secrets


def scan_for_secret(roots: Iterable[Path], secret: BuildSecret) -> list[Path]:
    """Return every regular file under *roots* containing the secret."""
    needles = secret.needles()
    hits: list[Path] = []
    for root in roots:
        candidates = [root] if root.is_file() else sorted(root.rglob("*"))
        for path in candidates:
            if path.is_symlink() or not path.is_file():
                continue
            payload = path.read_bytes()
            if any(needle in payload for needle in needles):
                hits.append(path)
    return hits


def verify_secret_absent(roots: Iterable[Path], secret: BuildSecret) -> None:
    hits = scan_for_secret(roots, secret)
    if hits:
        raise SecretLeakError(
            "Build secret found in persisted image content.",
            hint="Pass the secret only through the build secret channel.",
            context={
                "operation": "verify_secret_absent",
                "secret": secret.name,
                "files": ",".join(str(path) for path in hits),
            },
        )
