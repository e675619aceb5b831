"""
OCTACLUSTER Cluster Module
platform_services/cluster_module

System facade wiring the coherence engine, NUMA router, synchronization unit
and interrupt distributor into one eight-core clustered processor model.
Cores run as asyncio tasks on a single event loop.
"""

import asyncio
import dataclasses
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from octacluster.coherence_engine.cache_directory_module import CoherenceProtocol, DirectoryConfig
from octacluster.coherence_engine.cache_hierarchy_module import (
    AccessResult,
    CacheHierarchyModule,
    HierarchyConfig,
    MemoryRequest,
)
from octacluster.coherence_engine.numa_routing_module import NumaConfig, NumaRouter, QoSClass
from octacluster.core_services.interrupt_distributor_module import (
    InterruptConfig,
    InterruptDelivery,
    InterruptDistributorModule,
    InterruptSourceConfig,
)
from octacluster.core_services.sync_unit_module import (
    BarrierConfig,
    BarrierRelease,
    MailboxConfig,
    SemaphoreConfig,
    SyncConfig,
    SyncUnitModule,
)
from octacluster.platform_services.monitoring_module import (
    HealthMonitor,
    SimClock,
    TraceBus,
    TraceSubscriber,
)

logger = logging.getLogger(__name__)


class ClusterError(Exception):
    """Misuse of the cluster facade"""
    pass


class CoreStatus(str, Enum):
    """Power state of a core"""
    ONLINE = "online"
    OFFLINE = "offline"  # Lines flushed, excluded from directory service


class TopologyConfig(BaseModel):
    """Cluster/core layout"""
    clusters: int = Field(default=2, ge=1, le=16, description="Number of clusters")
    cores_per_cluster: int = Field(default=4, ge=1, le=64, description="Cores in each cluster")
    cluster_nodes: Optional[List[int]] = Field(
        default=None,
        description="Home NUMA node per cluster; cluster i defaults to node i"
    )

    @property
    def core_count(self) -> int:
        return self.clusters * self.cores_per_cluster

    def cluster_of(self, core: int) -> int:
        return core // self.cores_per_cluster

    def home_node(self, cluster: int, node_ids: List[int]) -> int:
        if self.cluster_nodes is not None:
            return self.cluster_nodes[cluster]
        ordered = sorted(node_ids)
        return ordered[cluster % len(ordered)]


class DmaPortConfig(BaseModel):
    """Peripheral DMA port acting as a memory requester"""
    port_id: int = Field(..., ge=0, description="Requester id; must not collide with a core")
    node_hint: Optional[int] = Field(default=None, description="NUMA node the port sits on")
    qos: QoSClass = Field(default=QoSClass.BULK, description="QoS class of the port's traffic")
    buffer_lines: int = Field(default=2, ge=1, le=64, description="Private buffer capacity")


class ClusterConfig(BaseModel):
    """Configuration of the whole cluster model"""
    topology: TopologyConfig = Field(default_factory=TopologyConfig)
    numa: NumaConfig = Field(default_factory=NumaConfig)
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
    hierarchy: HierarchyConfig = Field(default_factory=HierarchyConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    interrupts: InterruptConfig = Field(default_factory=InterruptConfig)
    dma_ports: List[DmaPortConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_topology(self) -> "ClusterConfig":
        cores = set(range(self.topology.core_count))
        node_ids = {n.node_id for n in self.numa.nodes}

        if self.topology.cluster_nodes is not None:
            if len(self.topology.cluster_nodes) != self.topology.clusters:
                raise ValueError("cluster_nodes must list one node per cluster")
            unknown = set(self.topology.cluster_nodes) - node_ids
            if unknown:
                raise ValueError(f"cluster_nodes reference unknown NUMA nodes {sorted(unknown)}")

        for barrier in self.sync.barriers:
            strangers = set(barrier.participants) - cores
            if strangers:
                raise ValueError(f"Barrier {barrier.barrier_id} lists unknown cores {sorted(strangers)}")

        for source in self.interrupts.sources:
            if source.affinity not in cores:
                raise ValueError(f"Interrupt source {source.source_id} has unknown affinity {source.affinity}")

        port_ids = [p.port_id for p in self.dma_ports]
        if len(set(port_ids)) != len(port_ids):
            raise ValueError("DMA port ids must be unique")
        for port in self.dma_ports:
            if port.port_id in cores:
                raise ValueError(f"DMA port {port.port_id} collides with a core id")
            if port.node_hint is not None and port.node_hint not in node_ids:
                raise ValueError(f"DMA port {port.port_id} hints unknown node {port.node_hint}")
        return self


class ClusterSettings(BaseSettings):
    """Process-level settings read from the environment or a .env file"""
    model_config = SettingsConfigDict(env_prefix="OCTACLUSTER_", env_file=".env", extra="ignore")

    log_level: str = Field(default="INFO")
    config_path: Optional[str] = Field(default=None, description="JSON ClusterConfig file")
    protocol: CoherenceProtocol = Field(default=CoherenceProtocol.MOESI)
    seed: int = Field(default=42)
    workload_ops: int = Field(default=1000, ge=1)
    workload_lines: int = Field(default=8, ge=1)
    workload_cores: int = Field(default=2, ge=1)


def default_cluster_config(protocol: CoherenceProtocol = CoherenceProtocol.MOESI) -> ClusterConfig:
    """Two clusters of four cores, each cluster homed on its own NUMA node"""
    topology = TopologyConfig(clusters=2, cores_per_cluster=4)
    cores = list(range(topology.core_count))
    per_cluster = [
        cores[c * topology.cores_per_cluster:(c + 1) * topology.cores_per_cluster]
        for c in range(topology.clusters)
    ]

    sync = SyncConfig(
        mailboxes=[MailboxConfig(channel_id=channel, depth=4) for channel in range(4)],
        semaphores=[
            SemaphoreConfig(semaphore_id=0, initial=1, maximum=1),
            SemaphoreConfig(semaphore_id=1, initial=4, maximum=4),
        ],
        barriers=[
            BarrierConfig(barrier_id=0, participants=cores),
            *[
                BarrierConfig(barrier_id=1 + c, participants=members)
                for c, members in enumerate(per_cluster)
            ],
        ],
    )

    # Per-core timers plus shared device sources
    sources = [
        InterruptSourceConfig(source_id=core, priority=32, affinity=core, migratable=False, coalesce_window=4)
        for core in cores
    ]
    sources += [
        InterruptSourceConfig(source_id=16, priority=48, affinity=0, coalesce_window=2),
        InterruptSourceConfig(source_id=17, priority=40, affinity=4, coalesce_window=2),
        InterruptSourceConfig(source_id=18, priority=10, affinity=1),
        InterruptSourceConfig(source_id=19, priority=10, affinity=5),
    ]

    return ClusterConfig(
        topology=topology,
        directory=DirectoryConfig(protocol=protocol),
        sync=sync,
        interrupts=InterruptConfig(sources=sources),
        dma_ports=[
            DmaPortConfig(port_id=100, node_hint=0, qos=QoSClass.REALTIME),
            DmaPortConfig(port_id=101, node_hint=1, qos=QoSClass.BACKGROUND),
        ],
    )


def load_cluster_config(path: str) -> ClusterConfig:
    """Parse a JSON ClusterConfig file"""
    return ClusterConfig.model_validate_json(Path(path).read_text())


@dataclasses.dataclass
class CoreInfo:
    """Runtime state of one core"""
    core_id: int
    cluster_id: int
    home_node: int
    status: CoreStatus = CoreStatus.ONLINE
    program: Optional[asyncio.Task] = None
    resets: int = 0


class CoreHandle:
    """Core-bound view of the cluster handed to core programs"""

    def __init__(self, system: "ClusterSystem", core_id: int):
        self.system = system
        self.core_id = core_id

    async def read(self, address: int, asid: int = 0, qos: QoSClass = QoSClass.BULK) -> int:
        return await self.system.read(self.core_id, address, asid, qos)

    async def write(self, address: int, value: int, asid: int = 0, qos: QoSClass = QoSClass.BULK) -> bool:
        return await self.system.write(self.core_id, address, value, asid, qos)

    async def compare_and_swap(self, address: int, expected: int, new: int, asid: int = 0) -> Tuple[bool, int]:
        return await self.system.compare_and_swap(self.core_id, address, expected, new, asid)

    async def fetch_and_add(self, address: int, delta: int, asid: int = 0) -> int:
        return await self.system.fetch_and_add(self.core_id, address, delta, asid)

    async def send(self, channel: int, message: Any) -> None:
        await self.system.sync.send(self.core_id, channel, message)

    async def receive(self, channel: int) -> Any:
        return await self.system.sync.receive(self.core_id, channel)

    async def acquire(self, semaphore_id: int) -> None:
        await self.system.sync.acquire(self.core_id, semaphore_id)

    def release(self, semaphore_id: int) -> None:
        self.system.sync.release(self.core_id, semaphore_id)

    async def arrive(self, barrier_id: int) -> BarrierRelease:
        return await self.system.sync.arrive(barrier_id, self.core_id)

    async def wait_interrupt(self) -> InterruptDelivery:
        return await self.system.interrupts.wait_interrupt(self.core_id)

    def acknowledge(self) -> Optional[InterruptDelivery]:
        return self.system.interrupts.acknowledge(self.core_id)


CoreProgram = Callable[[CoreHandle], Awaitable[Any]]


# ============================================================================
# Main Module Implementation
# ============================================================================

class ClusterSystem:
    """
    Eight-core clustered processor model for OCTACLUSTER.

    Features:
    - Directory-coherent four-level cache hierarchy (MOESI or MESI)
    - NUMA-aware routing with QoS admission
    - Mailboxes, semaphores, barriers and atomics
    - Priority/affinity interrupt distribution
    - Core offline/online and reset handling
    """

    def __init__(self, config: Optional[ClusterConfig] = None):
        self.config = config or default_cluster_config()
        self.clock = SimClock()
        self.health = HealthMonitor(self.clock)
        self.trace = TraceBus()

        self.router = NumaRouter(self.config.numa, self.health)
        self.hierarchy = CacheHierarchyModule(
            self.config.hierarchy,
            self.config.directory,
            router=self.router,
            health=self.health,
            trace=self.trace,
        )

        topology = self.config.topology
        node_ids = list(self.router.nodes)
        self.cores: Dict[int, CoreInfo] = {}
        for core in range(topology.core_count):
            cluster = topology.cluster_of(core)
            info = CoreInfo(core, cluster, topology.home_node(cluster, node_ids))
            self.cores[core] = info
            self.hierarchy.register_requester(core, info.cluster_id, info.home_node)

        self.dma_ports: Dict[int, DmaPortConfig] = {}
        for port in self.config.dma_ports:
            self.add_dma_port(port)

        self.sync = SyncUnitModule(self.config.sync, self.hierarchy, self.health, self.clock)
        self.interrupts = InterruptDistributorModule(
            self.config.interrupts,
            {core: info.cluster_id for core, info in self.cores.items()},
            clock=self.clock,
            health=self.health,
            trace=self.trace,
        )

        self._initialized = False
        self._shutting_down = False
        self._logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Initialize the cluster model"""
        if self._initialized:
            self._logger.warning("Cluster already initialized")
            return

        self._logger.info(
            f"Initializing ClusterSystem: {self.config.topology.clusters} clusters x "
            f"{self.config.topology.cores_per_cluster} cores, "
            f"{len(self.router.nodes)} NUMA nodes, "
            f"protocol {self.config.directory.protocol.value}"
        )
        self._initialized = True

    async def shutdown(self) -> None:
        """Stop every core program and write back all dirty lines"""
        if not self._initialized or self._shutting_down:
            return

        self._logger.info("Shutting down ClusterSystem")
        self._shutting_down = True
        try:
            for info in self.cores.values():
                await self._stop_program(info)
            written = await self.hierarchy.flush_all()
            self._logger.info(f"ClusterSystem shutdown complete ({written} lines written back)")
        finally:
            self._initialized = False
            self._shutting_down = False

    def _check_core(self, core: int) -> CoreInfo:
        if core not in self.cores:
            raise ClusterError(f"Unknown core: {core}")
        return self.cores[core]

    # ------------------------------------------------------------------
    # Memory operations
    # ------------------------------------------------------------------

    async def read(
        self,
        core: int,
        address: int,
        asid: int = 0,
        qos: QoSClass = QoSClass.BULK,
        isolated: bool = False
    ) -> int:
        result = await self.access(core, address, asid=asid, qos=qos, isolated=isolated)
        return result.data

    async def write(
        self,
        core: int,
        address: int,
        value: int,
        asid: int = 0,
        qos: QoSClass = QoSClass.BULK,
        isolated: bool = False
    ) -> bool:
        await self.access(core, address, value, asid=asid, qos=qos, isolated=isolated)
        return True

    async def access(
        self,
        requester: int,
        address: int,
        value: Optional[int] = None,
        asid: int = 0,
        qos: Optional[QoSClass] = None,
        isolated: bool = False
    ) -> AccessResult:
        """Read (value None) or write through the hierarchy, with full access detail"""
        node_hint = None
        if requester in self.dma_ports:
            port = self.dma_ports[requester]
            node_hint = port.node_hint
            qos = qos or port.qos
        else:
            self._check_core(requester)

        request = MemoryRequest(
            requester=requester,
            address=address,
            asid=asid,
            qos=qos or QoSClass.BULK,
            isolated=isolated,
            node_hint=node_hint,
        )
        if value is None:
            return await self.hierarchy.load(request)
        return await self.hierarchy.store(request, value)

    async def invalidate(self, address: int, asid: int = 0) -> bool:
        return await self.hierarchy.invalidate(address, asid)

    async def evict(self, core: int, address: int, asid: int = 0) -> bool:
        self._check_core(core)
        return await self.hierarchy.evict(core, address, asid)

    async def compare_and_swap(
        self,
        core: int,
        address: int,
        expected: int,
        new: int,
        asid: int = 0
    ) -> Tuple[bool, int]:
        self._check_core(core)
        return await self.sync.compare_and_swap(core, address, expected, new, asid)

    async def fetch_and_add(self, core: int, address: int, delta: int, asid: int = 0) -> int:
        self._check_core(core)
        return await self.sync.fetch_and_add(core, address, delta, asid)

    def add_dma_port(self, port: DmaPortConfig) -> None:
        """Attach a peripheral DMA port as a memory requester"""
        if port.port_id in self.cores or port.port_id in self.dma_ports:
            raise ClusterError(f"Requester id {port.port_id} already in use")
        self.dma_ports[port.port_id] = port
        self.hierarchy.register_requester(
            port.port_id,
            cluster_id=None,
            home_node=port.node_hint,
            kind="dma",
            l1_lines=port.buffer_lines,
        )

    async def flush_all(self) -> int:
        return await self.hierarchy.flush_all()

    def memory_snapshot(self, asid: int = 0) -> Dict[int, int]:
        return self.hierarchy.memory_snapshot(asid)

    # ------------------------------------------------------------------
    # Interrupts
    # ------------------------------------------------------------------

    def post_interrupt(
        self,
        source_id: int,
        payload: Any = None,
        target_core: Optional[int] = None
    ) -> Optional[InterruptDelivery]:
        return self.interrupts.post(source_id, payload, target_core)

    def dispatch_interrupt(self) -> Optional[InterruptDelivery]:
        return self.interrupts.dispatch()

    def acknowledge_interrupt(self, core: int) -> Optional[InterruptDelivery]:
        self._check_core(core)
        return self.interrupts.acknowledge(core)

    def tick(self, ticks: int = 1) -> int:
        """Advance the logical clock"""
        return self.clock.advance(ticks)

    # ------------------------------------------------------------------
    # Core lifecycle
    # ------------------------------------------------------------------

    def run_program(self, core: int, program: CoreProgram) -> asyncio.Task:
        """Start a program on a core; the core runs one program at a time"""
        info = self._check_core(core)
        if not self._initialized:
            raise ClusterError("Cluster not initialized")
        if info.program is not None and not info.program.done():
            raise ClusterError(f"Core {core} is already running a program")

        info.program = asyncio.create_task(program(CoreHandle(self, core)), name=f"core-{core}")
        return info.program

    async def wait_programs(self) -> Dict[int, Any]:
        """Wait for every running program; returns results by core"""
        running = {
            core: info.program for core, info in self.cores.items()
            if info.program is not None
        }
        results = await asyncio.gather(*running.values())
        return dict(zip(running.keys(), results))

    async def _stop_program(self, info: CoreInfo) -> None:
        task = info.program
        info.program = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def set_core_offline(self, core: int) -> int:
        """
        Power a core down: its lines are written back and invalidated before
        this returns, and its requests wait until it comes back online.

        Returns:
            Number of lines flushed
        """
        info = self._check_core(core)
        if info.status == CoreStatus.OFFLINE:
            return 0

        info.status = CoreStatus.OFFLINE
        self.hierarchy.directory.set_offline(core)
        self.interrupts.set_core_available(core, False)
        flushed = await self.hierarchy.flush_requester(core)
        self._logger.info(f"Core {core} offline ({flushed} lines flushed)")
        return flushed

    async def set_core_online(self, core: int) -> None:
        info = self._check_core(core)
        if info.status == CoreStatus.ONLINE:
            return
        info.status = CoreStatus.ONLINE
        self.hierarchy.directory.set_online(core)
        self.interrupts.set_core_available(core, True)
        self._logger.info(f"Core {core} online")

    async def reset_core(self, core: int) -> Dict[str, Any]:
        """
        Reset a core: cancel its program, write back and invalidate its lines
        and release its synchronization and interrupt state.
        """
        info = self._check_core(core)
        await self._stop_program(info)
        flushed = await self.hierarchy.flush_requester(core)
        released = self.sync.release_core(core)
        discarded = self.interrupts.reset_core(core)
        info.resets += 1
        self._logger.info(f"Core {core} reset ({flushed} lines flushed)")
        return {
            "core": core,
            "lines_flushed": flushed,
            "interrupts_discarded": discarded,
            **released,
        }

    # ------------------------------------------------------------------
    # Debug / trace
    # ------------------------------------------------------------------

    def subscribe_trace(self, subscriber: TraceSubscriber) -> int:
        return self.trace.subscribe(subscriber)

    def unsubscribe_trace(self, handle: int) -> None:
        self.trace.unsubscribe(handle)

    def get_directory_state(self) -> Dict[str, Any]:
        return self.hierarchy.directory.get_directory_state()

    def check_invariants(self) -> List[str]:
        """Coherence and synchronization invariants currently violated"""
        problems = self.hierarchy.directory.check_invariants()
        for sid, semaphore in self.sync.semaphores.items():
            if not 0 <= semaphore.count <= semaphore.maximum:
                problems.append(f"semaphore {sid}: count {semaphore.count} out of range")
        return problems

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "cores": {
                core: {
                    "status": info.status.value,
                    "cluster": info.cluster_id,
                    "home_node": info.home_node,
                    "resets": info.resets,
                    "running": info.program is not None and not info.program.done(),
                }
                for core, info in self.cores.items()
            },
            "hierarchy": self.hierarchy.get_metrics(),
            "numa": self.router.get_metrics(),
            "sync": self.sync.get_metrics(),
            "interrupts": self.interrupts.get_metrics(),
            "health": self.health.get_status(),
            "clock": self.clock.now,
        }

    # ------------------------------------------------------------------
    # Operation dispatcher
    # ------------------------------------------------------------------

    async def execute(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a cluster operation"""
        if not self._initialized:
            raise ClusterError("Cluster not initialized")

        operation = params.get("operation")
        asid = params.get("asid", 0)

        if operation == "read":
            value = await self.read(params["core"], params["address"], asid, QoSClass(params.get("qos", "bulk")))
            return {"status": "success", "value": value}

        elif operation == "write":
            await self.write(params["core"], params["address"], params["value"], asid, QoSClass(params.get("qos", "bulk")))
            return {"status": "success"}

        elif operation == "invalidate":
            invalidated = await self.invalidate(params["address"], asid)
            return {"status": "success", "invalidated": invalidated}

        elif operation == "evict":
            evicted = await self.evict(params["core"], params["address"], asid)
            return {"status": "success", "evicted": evicted}

        elif operation == "compare_and_swap":
            swapped, observed = await self.compare_and_swap(
                params["core"], params["address"], params["expected"], params["new"], asid
            )
            return {"status": "success", "swapped": swapped, "observed": observed}

        elif operation == "fetch_and_add":
            old = await self.fetch_and_add(params["core"], params["address"], params["delta"], asid)
            return {"status": "success", "old": old}

        elif operation == "post_interrupt":
            delivery = self.post_interrupt(params["source_id"], params.get("payload"), params.get("target_core"))
            return {"status": "success", "delivery": _delivery_dict(delivery)}

        elif operation == "dispatch_interrupt":
            return {"status": "success", "delivery": _delivery_dict(self.dispatch_interrupt())}

        elif operation == "acknowledge_interrupt":
            delivery = self.acknowledge_interrupt(params["core"])
            return {"status": "success", "delivery": _delivery_dict(delivery)}

        elif operation == "set_core_offline":
            flushed = await self.set_core_offline(params["core"])
            return {"status": "success", "lines_flushed": flushed}

        elif operation == "set_core_online":
            await self.set_core_online(params["core"])
            return {"status": "success"}

        elif operation == "reset_core":
            return {"status": "success", "reset": await self.reset_core(params["core"])}

        elif operation == "get_metrics":
            return {"status": "success", "metrics": self.get_metrics()}

        elif operation == "get_directory":
            return {"status": "success", "directory": self.get_directory_state()}

        else:
            raise ValueError(f"Unknown operation: {operation}")


def _delivery_dict(delivery: Optional[InterruptDelivery]) -> Optional[Dict[str, Any]]:
    return dataclasses.asdict(delivery) if delivery is not None else None


# ============================================================================
# Example Usage
# ============================================================================

async def main():
    """Example usage of ClusterSystem"""

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    cluster = ClusterSystem(default_cluster_config())
    await cluster.initialize()

    try:
        async def producer(core: CoreHandle):
            for i in range(6):
                await core.write(0x1000 + 8 * i, i * i)
                await core.send(0, i)
            await core.arrive(1)

        async def consumer(core: CoreHandle):
            total = 0
            for _ in range(6):
                index = await core.receive(0)
                total += await core.read(0x1000 + 8 * index)
            await core.fetch_and_add(0x2000, total)
            return total

        async def sibling(core: CoreHandle):
            await core.arrive(1)

        cluster.run_program(0, producer)
        cluster.run_program(4, consumer)
        for core in (1, 2, 3):
            cluster.run_program(core, sibling)
        results = await cluster.wait_programs()
        print(f"Consumer total: {results[4]}")

        cluster.post_interrupt(18)
        cluster.post_interrupt(16)
        print(f"First dispatch: {cluster.dispatch_interrupt()}")

        await cluster.flush_all()
        print(f"Invariant violations: {cluster.check_invariants()}")
        print(json.dumps(cluster.get_metrics()["hierarchy"]["directory"], indent=2))

    finally:
        await cluster.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
