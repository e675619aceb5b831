"""
OCTACLUSTER Monitoring Module
platform_services/monitoring_module

Fault taxonomy, health monitoring and the read-only trace bus shared by every
component of the cluster model. Also hosts the logical clock used for
coalescing windows and barrier release instants.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class FaultSeverity(str, Enum):
    """How a fault is handled by the reporting component"""
    FATAL = "fatal"  # Reported and raised to the caller
    SOFT = "soft"  # Reported and resolved locally


# ============================================================================
# Fault Taxonomy
# ============================================================================

class ClusterFault(Exception):
    """Base exception for every fault raised by the cluster model"""

    severity: FaultSeverity = FaultSeverity.FATAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CoherencyOverflow(ClusterFault):
    """A line's sharer set exceeded the configured capacity"""
    severity = FaultSeverity.SOFT


class ProtocolViolation(ClusterFault):
    """An operation requested a transition the state machine disallows"""
    severity = FaultSeverity.FATAL


class NumaRangeFault(ClusterFault):
    """Address outside every configured NUMA node range"""
    severity = FaultSeverity.FATAL


class SyncPrimitiveMisuse(ClusterFault):
    """Semaphore over-release or barrier arrival from a non-member core"""
    severity = FaultSeverity.FATAL


class InterruptStorm(ClusterFault):
    """Interrupt coalescing saturated; the oldest pending event was dropped"""
    severity = FaultSeverity.SOFT


@dataclass
class FaultRecord:
    """A fault as seen by the health monitor"""
    component: str
    fault_type: str
    severity: FaultSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    tick: int = 0


HealthListener = Callable[[FaultRecord], None]


# ============================================================================
# Logical Clock
# ============================================================================

class SimClock:
    """Monotonic logical clock measured in ticks"""

    def __init__(self, start: int = 0):
        self._now = start

    @property
    def now(self) -> int:
        return self._now

    def advance(self, ticks: int = 1) -> int:
        if ticks < 0:
            raise ValueError("Clock cannot move backwards")
        self._now += ticks
        return self._now


# ============================================================================
# Health Monitor
# ============================================================================

class HealthMonitor:
    """
    External health-monitoring interface.

    Components report every fault here. Fatal faults are handed back to the
    reporting component so it can raise them; soft faults are only recorded.
    """

    def __init__(self, clock: Optional[SimClock] = None, history_size: int = 1000):
        self.clock = clock or SimClock()
        self.records: Deque[FaultRecord] = deque(maxlen=history_size)
        self.fatal_count = 0
        self.soft_count = 0
        self._listeners: List[HealthListener] = []
        self._logger = logging.getLogger(__name__)

    def add_listener(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    def report(self, component: str, fault: ClusterFault) -> ClusterFault:
        """Record a fault and return it (callers raise fatal ones)"""
        record = FaultRecord(
            component=component,
            fault_type=type(fault).__name__,
            severity=fault.severity,
            message=fault.message,
            details=dict(fault.details),
            tick=self.clock.now,
        )
        self.records.append(record)

        if fault.severity == FaultSeverity.FATAL:
            self.fatal_count += 1
            self._logger.error(f"[{component}] {record.fault_type}: {fault.message}")
        else:
            self.soft_count += 1
            self._logger.warning(f"[{component}] {record.fault_type}: {fault.message}")

        for listener in list(self._listeners):
            listener(record)

        return fault

    @property
    def is_healthy(self) -> bool:
        return self.fatal_count == 0

    def faults(self, severity: Optional[FaultSeverity] = None) -> List[FaultRecord]:
        if severity is None:
            return list(self.records)
        return [r for r in self.records if r.severity == severity]

    def get_status(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy,
            "fatal_faults": self.fatal_count,
            "soft_faults": self.soft_count,
            "recent": [
                {"component": r.component, "type": r.fault_type, "tick": r.tick}
                for r in list(self.records)[-10:]
            ],
        }


# ============================================================================
# Trace Bus
# ============================================================================

class DirectoryTraceEvent(BaseModel):
    """Directory state change, as delivered to trace subscribers"""
    model_config = ConfigDict(frozen=True)

    sequence: int
    asid: int
    line_address: int
    request: str
    requester: Optional[int] = None
    old_state: str
    new_state: str
    owner: Optional[int] = None
    sharers: Tuple[int, ...] = Field(default_factory=tuple)


class InterruptTraceEvent(BaseModel):
    """Interrupt dispatch, as delivered to trace subscribers"""
    model_config = ConfigDict(frozen=True)

    sequence: int
    tick: int
    source_id: int
    priority: int
    target_core: int
    coalesced: int = 1
    migrated: bool = False
    message_signaled: bool = False


TraceEvent = Union[DirectoryTraceEvent, InterruptTraceEvent]
TraceSubscriber = Callable[[TraceEvent], None]


class TraceBus:
    """
    Fan-out of immutable trace events to read-only subscribers.

    Subscribers only ever see frozen event models, so they cannot reach back
    into directory or interrupt state.
    """

    def __init__(self, history_size: int = 10000):
        self.history: Deque[TraceEvent] = deque(maxlen=history_size)
        self._subscribers: Dict[int, TraceSubscriber] = {}
        self._next_handle = 0
        self._sequence = 0
        self._logger = logging.getLogger(__name__)

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def subscribe(self, subscriber: TraceSubscriber) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._subscribers[handle] = subscriber
        return handle

    def unsubscribe(self, handle: int) -> None:
        self._subscribers.pop(handle, None)

    def publish(self, event: TraceEvent) -> None:
        self.history.append(event)
        for handle, subscriber in list(self._subscribers.items()):
            try:
                subscriber(event)
            except Exception as e:
                # A broken collector must not stall the coherence engine
                self._logger.error(f"Trace subscriber {handle} failed: {e}")

    def events(self, kind: Optional[type] = None) -> List[TraceEvent]:
        if kind is None:
            return list(self.history)
        return [e for e in self.history if isinstance(e, kind)]
