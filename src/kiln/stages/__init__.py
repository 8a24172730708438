"""Pipeline stages: Fetch → Build → Runtime Assembly."""

from .build import BuildStage
from .fetch import FetchStage
from .runtime import RuntimeAssembly, image_digest, validate_identity

__all__ = ["BuildStage", "FetchStage", "RuntimeAssembly", "image_digest", "validate_identity"]
