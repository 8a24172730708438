"""Container build backends for emitted Dockerfiles."""

from .base import ContainerBackend, ContainerBuildRequest, ContainerBuildResult
from .docker import DockerBackend

__all__ = [
    "ContainerBackend",
    "ContainerBuildRequest",
    "ContainerBuildResult",
    "DockerBackend",
]
