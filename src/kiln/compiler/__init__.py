"""Emitters that render the pipeline for external build engines."""

from .emit_dockerfile import (
    CONTAINER_BUILD_DIR,
    CONTAINER_CACHE_ROOT,
    DockerfileEmission,
    DockerfilePlan,
    emit_dockerfile,
    render_dockerfile,
)

__all__ = [
    "CONTAINER_BUILD_DIR",
    "CONTAINER_CACHE_ROOT",
    "DockerfileEmission",
    "DockerfilePlan",
    "emit_dockerfile",
    "render_dockerfile",
]
