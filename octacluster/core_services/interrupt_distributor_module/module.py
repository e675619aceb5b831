"""
OCTACLUSTER Interrupt Distributor Module
core_services/interrupt_distributor_module

Priority/affinity interrupt dispatch with load-based migration, per-source
coalescing and message-signaled delivery.
"""

import asyncio
import heapq
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from octacluster.platform_services.monitoring_module import (
    HealthMonitor,
    InterruptStorm,
    InterruptTraceEvent,
    SimClock,
    TraceBus,
)

logger = logging.getLogger(__name__)

MAX_PRIORITY = 63


class InterruptSourceConfig(BaseModel):
    """Static description of one interrupt source"""
    source_id: int = Field(..., ge=0, description="Source identifier")
    priority: int = Field(..., ge=0, le=MAX_PRIORITY, description="Higher is more urgent")
    affinity: int = Field(..., ge=0, description="Default target core")
    migratable: bool = Field(default=True, description="May move off an overloaded core")
    coalesce_window: int = Field(default=0, ge=0, description="Coalescing window in clock ticks")


class InterruptConfig(BaseModel):
    """Configuration for the interrupt distributor"""
    sources: List[InterruptSourceConfig] = Field(default_factory=list)
    migration_threshold: float = Field(default=0.75, ge=0.0, le=1.0, description="Core load above which migration triggers")
    max_pending: int = Field(default=256, ge=1, description="Pending events before drop-oldest")
    coalesce_limit: int = Field(default=64, ge=1, description="Events merged into one pending entry")

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v: List[InterruptSourceConfig]) -> List[InterruptSourceConfig]:
        ids = [s.source_id for s in v]
        if len(set(ids)) != len(ids):
            raise ValueError("Interrupt source ids must be unique")
        return v


@dataclass
class PendingInterrupt:
    """An arbitrated event waiting for dispatch"""
    source_id: int
    priority: int
    sequence: int
    first_tick: int
    count: int = 1
    payload: Any = None
    live: bool = True


@dataclass(frozen=True)
class InterruptDelivery:
    """An interrupt handed to a core"""
    source_id: int
    priority: int
    core: int
    tick: int
    count: int = 1
    migrated: bool = False
    message_signaled: bool = False
    payload: Any = None


@dataclass
class InterruptMetrics:
    """Interrupt distributor metrics"""
    posted: int = 0
    coalesced: int = 0
    dispatched: int = 0
    migrations: int = 0
    dropped: int = 0
    message_signaled: int = 0
    message_signaled_queued: int = 0
    acknowledged: int = 0
    offline_deliveries: int = 0
    per_core: Dict[int, int] = field(default_factory=dict)


class InterruptDistributorModule:
    """
    Interrupt distributor for OCTACLUSTER.

    Arbitrated events are ordered by (priority desc, source id asc, arrival)
    in a heap with lazy deletion. The routing table starts at each source's
    affinity core and is rewritten whenever a dispatch migrates the source.
    """

    def __init__(
        self,
        config: Optional[InterruptConfig] = None,
        core_clusters: Optional[Dict[int, int]] = None,
        clock: Optional[SimClock] = None,
        health: Optional[HealthMonitor] = None,
        trace: Optional[TraceBus] = None
    ):
        self.config = config or InterruptConfig()
        self.core_clusters: Dict[int, int] = dict(core_clusters or {c: 0 for c in range(8)})
        self.clock = clock or SimClock()
        self.health = health or HealthMonitor(self.clock)
        self.trace = trace
        self.metrics = InterruptMetrics()

        self.sources: Dict[int, InterruptSourceConfig] = {}
        self.routing: Dict[int, int] = {}
        for source in self.config.sources:
            self.add_source(source)

        self.loads: Dict[int, float] = {c: 0.0 for c in self.core_clusters}
        self.available: Dict[int, bool] = {c: True for c in self.core_clusters}
        self.inboxes: Dict[int, asyncio.Queue] = {c: asyncio.Queue() for c in self.core_clusters}

        self._heap: List[Tuple[int, int, int, PendingInterrupt]] = []
        self._arrivals: Deque[PendingInterrupt] = deque()
        self._open: Dict[int, PendingInterrupt] = {}
        self._pending = 0
        self._sequence = 0

        self._in_flight: Dict[int, Optional[InterruptDelivery]] = {c: None for c in self.core_clusters}
        self._signaled: Dict[int, Deque[InterruptDelivery]] = {c: deque() for c in self.core_clusters}

        self._logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_source(self, source: InterruptSourceConfig) -> None:
        if source.affinity not in self.core_clusters:
            raise ValueError(f"Source {source.source_id} has unknown affinity core {source.affinity}")
        self.sources[source.source_id] = source
        self.routing[source.source_id] = source.affinity

    def _check_core(self, core: int) -> None:
        if core not in self.core_clusters:
            raise ValueError(f"Unknown core: {core}")

    def set_core_load(self, core: int, load: float) -> None:
        self._check_core(core)
        if not 0.0 <= load <= 1.0:
            raise ValueError(f"Core load must be within [0, 1], got {load}")
        self.loads[core] = load

    def set_core_available(self, core: int, available: bool) -> None:
        """Offline cores are skipped when picking a migration target"""
        self._check_core(core)
        self.available[core] = available

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post(
        self,
        source_id: int,
        payload: Any = None,
        target_core: Optional[int] = None
    ) -> Optional[InterruptDelivery]:
        """
        Raise an interrupt.

        With a target core the interrupt is message-signaled: it skips
        arbitration and is returned if it was delivered immediately, or
        queued behind the core's unacknowledged interrupt.
        Arbitrated posts always return None.
        """
        if source_id not in self.sources:
            raise ValueError(f"Unknown interrupt source: {source_id}")
        source = self.sources[source_id]
        now = self.clock.now
        self.metrics.posted += 1

        if target_core is not None:
            self._check_core(target_core)
            return self._post_signaled(source, target_core, payload, now)

        entry = self._open.get(source_id)
        if (
            entry is not None
            and entry.live
            and source.coalesce_window > 0
            and now - entry.first_tick < source.coalesce_window
            and entry.count < self.config.coalesce_limit
        ):
            entry.count += 1
            entry.payload = payload
            self.metrics.coalesced += 1
            return None

        if self._pending >= self.config.max_pending:
            self._drop_oldest(source_id)

        self._sequence += 1
        entry = PendingInterrupt(
            source_id=source_id,
            priority=source.priority,
            sequence=self._sequence,
            first_tick=now,
            payload=payload,
        )
        heapq.heappush(self._heap, (-entry.priority, entry.source_id, entry.sequence, entry))
        self._arrivals.append(entry)
        self._open[source_id] = entry
        self._pending += 1
        return None

    def _drop_oldest(self, incoming: int) -> None:
        while self._arrivals:
            victim = self._arrivals.popleft()
            if victim.live:
                self._retire(victim)
                self.metrics.dropped += 1
                self.health.report("interrupt_distributor", InterruptStorm(
                    f"Pending interrupts saturated at {self.config.max_pending}; "
                    f"dropped oldest event from source {victim.source_id}",
                    {"dropped_source": victim.source_id, "incoming_source": incoming, "count": victim.count},
                ))
                return

    def _retire(self, entry: PendingInterrupt) -> None:
        entry.live = False
        self._pending -= 1
        if self._open.get(entry.source_id) is entry:
            del self._open[entry.source_id]
        while self._arrivals and not self._arrivals[0].live:
            self._arrivals.popleft()
        if len(self._arrivals) > 2 * self._pending:
            self._arrivals = deque(e for e in self._arrivals if e.live)
        if len(self._heap) > 2 * self.config.max_pending:
            self._heap = [item for item in self._heap if item[3].live]
            heapq.heapify(self._heap)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self) -> Optional[InterruptDelivery]:
        """Deliver the most urgent pending interrupt, or None when idle"""
        while self._heap:
            _, _, _, entry = heapq.heappop(self._heap)
            if not entry.live:
                continue
            self._retire(entry)

            core, migrated = self._route(self.sources[entry.source_id])
            delivery = InterruptDelivery(
                source_id=entry.source_id,
                priority=entry.priority,
                core=core,
                tick=self.clock.now,
                count=entry.count,
                migrated=migrated,
                payload=entry.payload,
            )
            self.metrics.dispatched += 1
            self._deliver(delivery)
            return delivery
        return None

    def dispatch_all(self) -> List[InterruptDelivery]:
        deliveries = []
        while True:
            delivery = self.dispatch()
            if delivery is None:
                return deliveries
            deliveries.append(delivery)

    def _route(self, source: InterruptSourceConfig) -> Tuple[int, bool]:
        current = self.routing[source.source_id]
        overloaded = self.loads[current] > self.config.migration_threshold
        if not source.migratable or (self.available[current] and not overloaded):
            return self._stay(source.source_id, current)

        cluster = self.core_clusters[current]
        candidates = [
            c for c in sorted(self.core_clusters)
            if self.core_clusters[c] == cluster and self.available[c]
        ]
        if not candidates:
            return self._stay(source.source_id, current)

        target = min(candidates, key=lambda c: (self.loads[c], c))
        if target == current:
            return self._stay(source.source_id, current)

        self.routing[source.source_id] = target
        self.metrics.migrations += 1
        self._logger.info(
            f"Migrated interrupt source {source.source_id} from core {current} "
            f"to core {target} (load {self.loads[current]:.2f})"
        )
        return target, True

    def _post_signaled(
        self,
        source: InterruptSourceConfig,
        core: int,
        payload: Any,
        now: int
    ) -> Optional[InterruptDelivery]:
        delivery = InterruptDelivery(
            source_id=source.source_id,
            priority=source.priority,
            core=core,
            tick=now,
            message_signaled=True,
            payload=payload,
        )
        self.metrics.message_signaled += 1
        if self._in_flight[core] is not None:
            self._signaled[core].append(delivery)
            self.metrics.message_signaled_queued += 1
            return None
        self._in_flight[core] = delivery
        self._deliver(delivery)
        return delivery

    def acknowledge(self, core: int) -> Optional[InterruptDelivery]:
        """
        Complete the core's in-flight message-signaled interrupt and deliver
        the next one queued for it, if any.
        """
        self._check_core(core)
        if self._in_flight[core] is None:
            self._logger.debug(f"Acknowledge on core {core} with nothing in flight")
            return None

        self.metrics.acknowledged += 1
        self._in_flight[core] = None
        return self._deliver_next_signaled(core)

    def _deliver(self, delivery: InterruptDelivery) -> None:
        self.metrics.per_core[delivery.core] = self.metrics.per_core.get(delivery.core, 0) + 1
        self.inboxes[delivery.core].put_nowait(delivery)
        self._logger.debug(
            f"Interrupt from source {delivery.source_id} (priority {delivery.priority}) "
            f"delivered to core {delivery.core}"
        )
        if self.trace is not None:
            self.trace.publish(InterruptTraceEvent(
                sequence=self.trace.next_sequence(),
                tick=delivery.tick,
                source_id=delivery.source_id,
                priority=delivery.priority,
                target_core=delivery.core,
                coalesced=delivery.count,
                migrated=delivery.migrated,
                message_signaled=delivery.message_signaled,
            ))

    async def wait_interrupt(self, core: int) -> InterruptDelivery:
        """Suspend until an interrupt is delivered to the core"""
        self._check_core(core)
        return await self.inboxes[core].get()

    # ------------------------------------------------------------------
    # Core lifecycle and inspection
    # ------------------------------------------------------------------

    def reset_core(self, core: int) -> int:
        """Discard undelivered inbox entries and the in-flight interrupt"""
        self._check_core(core)
        discarded = 0
        inbox = self.inboxes[core]
        while not inbox.empty():
            inbox.get_nowait()
            discarded += 1
        if self._in_flight[core] is not None:
            self._in_flight[core] = None
            if self._signaled[core]:
                self._deliver_next_signaled(core)
        return discarded

    def _deliver_next_signaled(self, core: int) -> Optional[InterruptDelivery]:
        if self._in_flight[core] is not None or not self._signaled[core]:
            return None
        queued = self._signaled[core].popleft()
        delivery = InterruptDelivery(
            source_id=queued.source_id,
            priority=queued.priority,
            core=core,
            tick=self.clock.now,
            message_signaled=True,
            payload=queued.payload,
        )
        self._in_flight[core] = delivery
        self._deliver(delivery)
        return delivery

    def in_flight(self, core: int) -> Optional[InterruptDelivery]:
        self._check_core(core)
        return self._in_flight[core]

    @property
    def pending_count(self) -> int:
        return self._pending

    def _stay(self, source_id: int, core: int) -> Tuple[int, bool]:
        if not self.available[core]:
            self.metrics.offline_deliveries += 1
            self._logger.debug(f"Interrupt source {source_id} has no available core; delivering to offline core {core}")
        return core, False

    def pending(self) -> List[PendingInterrupt]:
        """Live pending entries in dispatch order"""
        live = [item for item in self._heap if item[3].live]
        return [item[3] for item in sorted(live, key=lambda item: item[:3])]

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "posted": m.posted,
            "coalesced": m.coalesced,
            "dispatched": m.dispatched,
            "migrations": m.migrations,
            "dropped": m.dropped,
            "message_signaled": m.message_signaled,
            "message_signaled_queued": m.message_signaled_queued,
            "acknowledged": m.acknowledged,
            "offline_deliveries": m.offline_deliveries,
            "pending": self._pending,
            "per_core": dict(m.per_core),
            "routing": dict(self.routing),
        }
