"""
OCTACLUSTER NUMA Routing Module
coherence_engine/numa_routing_module

Maps physical addresses to their owning NUMA memory node, annotates each
request with local/remote access cost, and arbitrates admission by QoS class
when the memory side is congested.
"""

import asyncio
import bisect
import heapq
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from octacluster.platform_services.monitoring_module import HealthMonitor, NumaRangeFault

logger = logging.getLogger(__name__)


class QoSClass(str, Enum):
    """Quality of Service classes"""
    REALTIME = "realtime"  # Serviced first under congestion
    INTERACTIVE = "interactive"
    BULK = "bulk"
    BACKGROUND = "background"  # Lowest priority


QOS_RANK: Dict[QoSClass, int] = {
    QoSClass.REALTIME: 3,
    QoSClass.INTERACTIVE: 2,
    QoSClass.BULK: 1,
    QoSClass.BACKGROUND: 0,
}


class NumaNodeConfig(BaseModel):
    """One NUMA memory node and the address range it owns"""
    node_id: int = Field(..., ge=0, description="Node identifier")
    base: int = Field(..., ge=0, description="First address owned by the node")
    size: int = Field(..., gt=0, description="Bytes owned by the node")
    local_cost: float = Field(
        default=100.0,
        gt=0.0,
        description="Access cost (cycles) from a core homed on this node"
    )
    remote_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Remote access cost relative to local"
    )

    @property
    def limit(self) -> int:
        return self.base + self.size


class NumaConfig(BaseModel):
    """Configuration for NUMA routing"""
    address_space: int = Field(
        default=1 << 32,
        gt=0,
        description="Size of the physical address space in bytes"
    )
    nodes: List[NumaNodeConfig] = Field(
        default_factory=lambda: [
            NumaNodeConfig(node_id=0, base=0, size=1 << 31),
            NumaNodeConfig(node_id=1, base=1 << 31, size=1 << 31),
        ],
        description="Memory nodes; ranges must partition the address space"
    )
    congestion_threshold: int = Field(
        default=16,
        ge=1,
        description="In-flight routed requests before QoS arbitration applies"
    )

    @model_validator(mode="after")
    def validate_partition(self) -> "NumaConfig":
        if not self.nodes:
            raise ValueError("At least one NUMA node is required")

        ids = [n.node_id for n in self.nodes]
        if len(set(ids)) != len(ids):
            raise ValueError("NUMA node ids must be unique")

        expected = 0
        for node in sorted(self.nodes, key=lambda n: n.base):
            if node.base != expected:
                kind = "overlap" if node.base < expected else "gap"
                raise ValueError(
                    f"NUMA ranges {kind} at 0x{min(node.base, expected):x}"
                )
            expected = node.limit

        if expected != self.address_space:
            raise ValueError(
                f"NUMA ranges end at 0x{expected:x}, "
                f"address space is 0x{self.address_space:x}"
            )
        return self


@dataclass(frozen=True)
class RouteInfo:
    """Routing annotation attached to a memory request"""
    address: int
    node_id: int
    access_cost: float
    is_remote: bool
    qos: QoSClass = QoSClass.BULK


@dataclass
class RoutingMetrics:
    """Metrics for NUMA routing"""
    resolutions: int = 0
    remote_resolutions: int = 0
    admissions: int = 0
    congested_admissions: int = 0
    parked: int = 0
    max_queue_depth: int = 0


class AdmissionTicket:
    """In-flight slot held by one routed request"""

    def __init__(self, router: "NumaRouter", route: RouteInfo):
        self.router = router
        self.route = route
        self.held = False

    def park(self) -> None:
        """Give the slot back while the request cannot be served"""
        if not self.held:
            return
        self.held = False
        self.router.metrics.parked += 1
        self.router._release()

    def resume(self) -> None:
        """Take the slot back without queueing; the request is being served"""
        if self.held:
            return
        self.held = True
        self.router._in_flight += 1


class NumaRouter:
    """
    Address-to-node resolver and QoS admission arbiter.

    Node selection depends on the address alone. Admission is a bounded
    gate: below the congestion threshold requests pass straight through,
    above it they wait in a heap ordered by (QoS desc, arrival).
    """

    def __init__(self, config: Optional[NumaConfig] = None, health: Optional[HealthMonitor] = None):
        self.config = config or NumaConfig()
        self.health = health or HealthMonitor()
        self.nodes: Dict[int, NumaNodeConfig] = {n.node_id: n for n in self.config.nodes}

        ordered = sorted(self.config.nodes, key=lambda n: n.base)
        self._bases: List[int] = [n.base for n in ordered]
        self._ordered_ids: List[int] = [n.node_id for n in ordered]

        self.metrics = RoutingMetrics()
        self._in_flight = 0
        self._arrivals = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._logger = logging.getLogger(__name__)

    def node_for(self, address: int) -> int:
        """Owning node of an address"""
        if address < 0 or address >= self.config.address_space:
            raise self.health.report("numa_router", NumaRangeFault(
                f"Address 0x{address:x} outside every NUMA node range",
                {"address": address, "address_space": self.config.address_space},
            ))
        index = bisect.bisect_right(self._bases, address) - 1
        return self._ordered_ids[index]

    def resolve(
        self,
        address: int,
        requester_node: Optional[int] = None,
        qos: QoSClass = QoSClass.BULK
    ) -> RouteInfo:
        """
        Resolve the owning node and access cost for an address.

        Args:
            address: Physical address
            requester_node: Home node of the requester; None is treated as local
            qos: QoS class carried by the request

        Returns:
            RouteInfo for the request
        """
        node_id = self.node_for(address)
        node = self.nodes[node_id]
        is_remote = requester_node is not None and requester_node != node_id
        cost = node.local_cost * node.remote_multiplier if is_remote else node.local_cost

        self.metrics.resolutions += 1
        if is_remote:
            self.metrics.remote_resolutions += 1

        return RouteInfo(
            address=address,
            node_id=node_id,
            access_cost=cost,
            is_remote=is_remote,
            qos=qos,
        )

    @asynccontextmanager
    async def admission(self, route: RouteInfo) -> AsyncIterator[AdmissionTicket]:
        """
        Hold an in-flight slot for a routed request.

        A parked ticket holds no slot until it is resumed.
        """
        ticket = AdmissionTicket(self, route)
        await self._admit(route.qos)
        ticket.held = True
        try:
            yield ticket
        finally:
            if ticket.held:
                ticket.held = False
                self._release()

    async def _admit(self, qos: QoSClass) -> None:
        self.metrics.admissions += 1
        if self._in_flight < self.config.congestion_threshold and not self._waiters:
            self._in_flight += 1
            return

        self.metrics.congested_admissions += 1
        self._arrivals += 1
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (-QOS_RANK[qos], self._arrivals, future))
        self.metrics.max_queue_depth = max(self.metrics.max_queue_depth, len(self._waiters))

        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Slot was granted before the cancel landed
                self._release()
            raise

    def _release(self) -> None:
        self._in_flight -= 1
        while self._waiters and self._in_flight < self.config.congestion_threshold:
            _, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self._in_flight += 1
            future.set_result(None)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queue_depth(self) -> int:
        return sum(1 for _, _, f in self._waiters if not f.done())

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "resolutions": self.metrics.resolutions,
            "remote_resolutions": self.metrics.remote_resolutions,
            "remote_ratio": (
                self.metrics.remote_resolutions / max(self.metrics.resolutions, 1)
            ),
            "admissions": self.metrics.admissions,
            "congested_admissions": self.metrics.congested_admissions,
            "parked": self.metrics.parked,
            "max_queue_depth": self.metrics.max_queue_depth,
            "in_flight": self._in_flight,
        }
