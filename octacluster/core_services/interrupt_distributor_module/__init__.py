"""
OCTACLUSTER Interrupt Distributor Module
=========================================

Priority/affinity dispatch, migration, coalescing and message-signaled
interrupts.
"""

from .module import (
    InterruptConfig,
    InterruptDelivery,
    InterruptDistributorModule,
    InterruptMetrics,
    InterruptSourceConfig,
    MAX_PRIORITY,
    PendingInterrupt,
)

__all__ = [
    "InterruptConfig",
    "InterruptDelivery",
    "InterruptDistributorModule",
    "InterruptMetrics",
    "InterruptSourceConfig",
    "MAX_PRIORITY",
    "PendingInterrupt",
]
