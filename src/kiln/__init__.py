"""Public package entrypoint for the kiln staged build pipeline."""

from .backends import DockerBackend
from .cache import CacheRegistry, CacheVolume, ObjectStore, compilation_volume
from .errors import (
    AssemblyError,
    CacheIntegrityError,
    CacheLockError,
    CompileError,
    ErrorCode,
    KilnError,
    LockMismatchError,
    ManifestError,
    PolicyError,
    ResolutionError,
    SecretLeakError,
    ValidationError,
)
from .lockfile import LockedPackage, Lockfile, read_lockfile, write_lockfile
from .models import (
    BuildOutput,
    FetchOutput,
    PipelineResult,
    RuntimeComponent,
    RuntimeConfig,
    RuntimeImage,
)
from .observability import StructuredLogger
from .pipeline import Pipeline
from .policy import Policy
from .secrets import BuildSecret, load_secrets
from .stages import BuildStage, FetchStage, RuntimeAssembly

__all__ = [
    "AssemblyError",
    "BuildOutput",
    "BuildSecret",
    "BuildStage",
    "CacheIntegrityError",
    "CacheLockError",
    "CacheRegistry",
    "CacheVolume",
    "CompileError",
    "DockerBackend",
    "ErrorCode",
    "FetchOutput",
    "FetchStage",
    "KilnError",
    "LockMismatchError",
    "LockedPackage",
    "Lockfile",
    "ManifestError",
    "ObjectStore",
    "Pipeline",
    "PipelineResult",
    "Policy",
    "PolicyError",
    "ResolutionError",
    "RuntimeAssembly",
    "RuntimeComponent",
    "RuntimeConfig",
    "RuntimeImage",
    "SecretLeakError",
    "StructuredLogger",
    "ValidationError",
    "compilation_volume",
    "load_secrets",
    "read_lockfile",
    "write_lockfile",
]
