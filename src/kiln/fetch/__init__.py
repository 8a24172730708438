"""Integrity-checked dependency retrieval."""

from .git import GitFetchResult, checkout_path, fetch_git
from .http import assert_hash_matches, cached_path, fetch

__all__ = [
    "GitFetchResult",
    "assert_hash_matches",
    "cached_path",
    "checkout_path",
    "fetch",
    "fetch_git",
]
