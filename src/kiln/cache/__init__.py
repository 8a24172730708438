"""Cache volumes, lock registry, and content-addressed object store."""

from .keys import ObjectCacheInput, cache_key, fetch_key
from .store import ObjectStore
from .volumes import (
    DEPENDENCY_REGISTRY,
    DEPENDENCY_VCS,
    CacheRegistry,
    CacheVolume,
    MountedVolume,
    SharingMode,
    compilation_volume,
)

__all__ = [
    "DEPENDENCY_REGISTRY",
    "DEPENDENCY_VCS",
    "CacheRegistry",
    "CacheVolume",
    "MountedVolume",
    "ObjectCacheInput",
    "ObjectStore",
    "SharingMode",
    "cache_key",
    "compilation_volume",
    "fetch_key",
]
