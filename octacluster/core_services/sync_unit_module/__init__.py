"""
OCTACLUSTER Synchronization Unit Module
========================================

Mailboxes, semaphores, barriers and atomics shared by the cluster cores.
"""

from .module import (
    AtomicMemory,
    BarrierConfig,
    BarrierRelease,
    HardwareBarrier,
    HardwareSemaphore,
    Mailbox,
    MailboxConfig,
    SemaphoreConfig,
    SyncConfig,
    SyncMetrics,
    SyncUnitModule,
)

__all__ = [
    "AtomicMemory",
    "BarrierConfig",
    "BarrierRelease",
    "HardwareBarrier",
    "HardwareSemaphore",
    "Mailbox",
    "MailboxConfig",
    "SemaphoreConfig",
    "SyncConfig",
    "SyncMetrics",
    "SyncUnitModule",
]
