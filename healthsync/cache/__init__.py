"""
Request classification and caching strategies.
"""

from .engine import CacheStrategyEngine
from .entries import (
    DEFAULT_TTL_BY_CATEGORY,
    CacheEntry,
    CacheRegion,
    CacheRules,
    CacheStats,
    ResourceClass,
    TTLCategory,
    entry_key,
    normalize_url,
)

__all__ = [
    "DEFAULT_TTL_BY_CATEGORY",
    "CacheEntry",
    "CacheRegion",
    "CacheRules",
    "CacheStats",
    "CacheStrategyEngine",
    "ResourceClass",
    "TTLCategory",
    "entry_key",
    "normalize_url",
]
