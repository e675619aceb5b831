"""
OCTACLUSTER Cache Hierarchy Module
===================================

L1/L2/L3/L4 cache controllers in front of the coherence directory.
"""

from .module import (
    AccessResult,
    CacheHierarchyModule,
    CacheLine,
    HierarchyConfig,
    HierarchyMetrics,
    MemoryRequest,
    MemorySide,
    PrivateCache,
    RequesterInfo,
    SharedCacheLevel,
    WORD_MASK,
    WORD_SIZE,
)

__all__ = [
    "AccessResult",
    "CacheHierarchyModule",
    "CacheLine",
    "HierarchyConfig",
    "HierarchyMetrics",
    "MemoryRequest",
    "MemorySide",
    "PrivateCache",
    "RequesterInfo",
    "SharedCacheLevel",
    "WORD_MASK",
    "WORD_SIZE",
]
