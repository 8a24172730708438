"""Typed pipeline error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across pipeline stages."""

    VALIDATION = "E_VALIDATION"
    POLICY = "E_POLICY"
    MANIFEST = "E_MANIFEST"
    RESOLUTION = "E_RESOLUTION"
    LOCK_MISMATCH = "E_LOCK_MISMATCH"
    COMPILE = "E_COMPILE"
    ASSEMBLY = "E_ASSEMBLY"
    SECRET_LEAK = "E_SECRET_LEAK"
    CACHE_INTEGRITY = "E_CACHE_INTEGRITY"
    CACHE_LOCK = "E_CACHE_LOCK"


class KilnError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: dict[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def stage(self) -> str | None:
        return self.context.get("stage")

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class PolicyError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class ManifestError(KilnError):
    """Lockfile or project manifest is missing or invalid."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MANIFEST, hint=hint, context=context)


class ResolutionError(KilnError):
    """A pinned dependency could not be fetched or found in the caches."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RESOLUTION, hint=hint, context=context)


class LockMismatchError(KilnError):
    """Build-time dependency resolution disagrees with the lockfile."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOCK_MISMATCH, hint=hint, context=context)


class CompileError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMPILE, hint=hint, context=context)


class AssemblyError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        code: ErrorCode = ErrorCode.ASSEMBLY,
    ) -> None:
        super().__init__(message, code=code, hint=hint, context=context)


class SecretLeakError(AssemblyError):
    """The build secret was found in persisted image content."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, hint=hint, context=context, code=ErrorCode.SECRET_LEAK)


class CacheIntegrityError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE_INTEGRITY, hint=hint, context=context)


class CacheLockError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE_LOCK, hint=hint, context=context)


__all__ = [
    "AssemblyError",
    "CacheIntegrityError",
    "CacheLockError",
    "CompileError",
    "ErrorCode",
    "KilnError",
    "LockMismatchError",
    "ManifestError",
    "PolicyError",
    "ResolutionError",
    "SecretLeakError",
    "ValidationError",
]
