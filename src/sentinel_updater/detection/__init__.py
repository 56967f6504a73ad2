"""
Binary location detection for the managed agent.

Exports:
- BinaryResolver: Cached, multi-strategy resolver
- PathCache, ReadWriteLock: Shared resolved-path cache
- DetectionError, ResolvedBinary: Resolver results and diagnostics
- default_strategies: Standard strategy chain
"""

from sentinel_updater.detection.cache import CacheEntry, PathCache, ReadWriteLock
from sentinel_updater.detection.resolver import (
    MANUAL_METHOD,
    BinaryResolver,
    DetectionError,
    ResolvedBinary,
)
from sentinel_updater.detection.strategies import (
    CommonPathsStrategy,
    DetectionStrategy,
    PathSearchStrategy,
    RunningProcessStrategy,
    ServiceConfigStrategy,
    default_strategies,
)
from sentinel_updater.detection.validation import is_valid_binary_path, validate_binary_path

__all__ = [
    "MANUAL_METHOD",
    "BinaryResolver",
    "CacheEntry",
    "CommonPathsStrategy",
    "DetectionError",
    "DetectionStrategy",
    "PathCache",
    "PathSearchStrategy",
    "ReadWriteLock",
    "ResolvedBinary",
    "RunningProcessStrategy",
    "ServiceConfigStrategy",
    "default_strategies",
    "is_valid_binary_path",
    "validate_binary_path",
]
