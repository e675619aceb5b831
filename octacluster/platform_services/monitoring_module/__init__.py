"""
OCTACLUSTER Monitoring Module
==============================

Fault taxonomy, health monitor, trace bus and logical clock.
"""

from .module import (
    ClusterFault,
    CoherencyOverflow,
    DirectoryTraceEvent,
    FaultRecord,
    FaultSeverity,
    HealthMonitor,
    InterruptStorm,
    InterruptTraceEvent,
    NumaRangeFault,
    ProtocolViolation,
    SimClock,
    SyncPrimitiveMisuse,
    TraceBus,
    TraceEvent,
    TraceSubscriber,
)

__all__ = [
    "ClusterFault",
    "CoherencyOverflow",
    "DirectoryTraceEvent",
    "FaultRecord",
    "FaultSeverity",
    "HealthMonitor",
    "InterruptStorm",
    "InterruptTraceEvent",
    "NumaRangeFault",
    "ProtocolViolation",
    "SimClock",
    "SyncPrimitiveMisuse",
    "TraceBus",
    "TraceEvent",
    "TraceSubscriber",
]
