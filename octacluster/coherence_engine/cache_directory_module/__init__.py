"""
OCTACLUSTER Cache Directory Module
===================================

Authoritative per-line coherence state with FIFO-serialized transactions.

Usage:
    directory = CacheDirectory(DirectoryConfig(), backing=memory_side)
    directory.register_agent(0, l1_cache)

    async with directory.transaction(LineKey(0, 0x1000), requester=0) as txn:
        state = txn.request(RequestType.GET_SHARED)
"""

from .module import (
    AdmissionSlot,
    BackingStore,
    CacheAgent,
    CacheDirectory,
    CoherenceProtocol,
    CoherenceProtocolBase,
    CoherenceState,
    DirectoryAction,
    DirectoryConfig,
    DirectoryEntry,
    DirectoryMetrics,
    DirectoryTransaction,
    LineFill,
    LineKey,
    MESIProtocol,
    MOESIProtocol,
    RequesterRole,
    RequestType,
    Transition,
    create_protocol,
)

__all__ = [
    "AdmissionSlot",
    "BackingStore",
    "CacheAgent",
    "CacheDirectory",
    "CoherenceProtocol",
    "CoherenceProtocolBase",
    "CoherenceState",
    "DirectoryAction",
    "DirectoryConfig",
    "DirectoryEntry",
    "DirectoryMetrics",
    "DirectoryTransaction",
    "LineFill",
    "LineKey",
    "MESIProtocol",
    "MOESIProtocol",
    "RequesterRole",
    "RequestType",
    "Transition",
    "create_protocol",
]
