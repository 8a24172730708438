"""Lockfile model, serialization, and strict resolution."""

from .io import parse_lockfile, read_lockfile, serialize_lockfile, write_lockfile
from .model import LOCKFILE_VERSION, LockedPackage, Lockfile, SourceKind
from .resolve import ANY_VERSION, build_lockfile, lockfile_digest, resolve_locked

__all__ = [
    "ANY_VERSION",
    "LOCKFILE_VERSION",
    "LockedPackage",
    "Lockfile",
    "SourceKind",
    "build_lockfile",
    "lockfile_digest",
    "parse_lockfile",
    "read_lockfile",
    "resolve_locked",
    "serialize_lockfile",
    "write_lockfile",
]
