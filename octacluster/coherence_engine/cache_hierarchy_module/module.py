"""
OCTACLUSTER Cache Hierarchy Module
coherence_engine/cache_hierarchy_module

Cache controllers for the four-level hierarchy: private L1 per requester,
L2 per cluster, a global L3 and one L4 slice per NUMA node in front of main
memory. L1 misses are routed through the NUMA router and serviced by the
coherence directory; the lower levels hold clean copies only.
"""

import asyncio
import logging
from collections import OrderedDict, defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from octacluster.coherence_engine.cache_directory_module import (
    CacheDirectory,
    CoherenceState,
    DirectoryConfig,
    LineFill,
    LineKey,
    RequestType,
)
from octacluster.coherence_engine.numa_routing_module import NumaRouter, QoSClass, RouteInfo
from octacluster.platform_services.monitoring_module import (
    HealthMonitor,
    ProtocolViolation,
    TraceBus,
)

logger = logging.getLogger(__name__)

WORD_SIZE = 8
WORD_MASK = (1 << 64) - 1

# Local state changes a private cache accepts from the directory
_LOCAL_TRANSITIONS: Set[Tuple[CoherenceState, CoherenceState]] = {
    (CoherenceState.EXCLUSIVE, CoherenceState.SHARED),
    (CoherenceState.EXCLUSIVE, CoherenceState.MODIFIED),
    (CoherenceState.MODIFIED, CoherenceState.OWNED),
    (CoherenceState.MODIFIED, CoherenceState.SHARED),
    (CoherenceState.SHARED, CoherenceState.MODIFIED),
    (CoherenceState.OWNED, CoherenceState.MODIFIED),
}


class HierarchyConfig(BaseModel):
    """Configuration for the cache hierarchy"""
    line_size: int = Field(
        default=64,
        ge=8,
        le=4096,
        description="Cache line size in bytes"
    )
    l1_lines: int = Field(default=32, ge=1, description="L1 capacity in lines")
    l2_lines: int = Field(default=256, ge=1, description="L2 capacity per cluster")
    l3_lines: int = Field(default=1024, ge=1, description="Global L3 capacity")
    l4_lines: int = Field(default=2048, ge=1, description="L4 capacity per NUMA node")
    l1_cost: float = Field(default=4.0, gt=0.0, description="L1 access cost (cycles)")
    l2_cost: float = Field(default=12.0, gt=0.0, description="L2 access cost (cycles)")
    l3_cost: float = Field(default=40.0, gt=0.0, description="L3 access cost (cycles)")
    l4_cost: float = Field(default=70.0, gt=0.0, description="L4 access cost (cycles)")
    directory_cost: float = Field(default=20.0, ge=0.0, description="Directory lookup cost")
    peer_cost: float = Field(default=30.0, ge=0.0, description="Cache-to-cache transfer cost")
    latency_window: int = Field(default=4096, ge=16, description="Latency samples kept")

    @field_validator("line_size")
    @classmethod
    def validate_line_size(cls, v: int) -> int:
        if v & (v - 1) or v % WORD_SIZE:
            raise ValueError("line_size must be a power of two and a multiple of 8")
        return v

    @property
    def words_per_line(self) -> int:
        return self.line_size // WORD_SIZE


class MemoryRequest(BaseModel):
    """Memory request issued by a core or a peripheral port"""
    model_config = ConfigDict(frozen=True)

    requester: int = Field(..., ge=0, description="Requesting agent id")
    address: int = Field(..., ge=0, description="Word-aligned physical address")
    asid: int = Field(default=0, ge=0, description="Address-space identifier")
    qos: QoSClass = Field(default=QoSClass.BULK, description="QoS class")
    isolated: bool = Field(default=False, description="Serve from a private copy")
    node_hint: Optional[int] = Field(default=None, description="NUMA node of the requester")


@dataclass
class AccessResult:
    """Outcome of a memory access"""
    data: int
    level: str
    latency: float
    state: CoherenceState
    node_id: Optional[int] = None
    is_remote: bool = False


@dataclass
class RequesterInfo:
    """Placement of a requester in the topology"""
    agent_id: int
    cluster_id: Optional[int]
    home_node: Optional[int]
    kind: str = "core"


@dataclass
class CacheLine:
    """Represents a single private cache line"""
    key: LineKey
    data: List[int]
    state: CoherenceState
    access_count: int = 0

    @property
    def dirty(self) -> bool:
        return self.state in (CoherenceState.MODIFIED, CoherenceState.OWNED)


@dataclass
class HierarchyMetrics:
    """Metrics for the cache hierarchy"""
    reads: int = 0
    writes: int = 0
    atomics: int = 0
    l1_read_hits: int = 0
    l1_write_hits: int = 0
    misses: int = 0
    upgrades: int = 0
    capacity_evictions: int = 0
    explicit_evictions: int = 0
    isolated_accesses: int = 0
    fill_sources: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    latencies: Deque[float] = field(default_factory=deque)


# ============================================================================
# Private (L1) Cache
# ============================================================================

class PrivateCache:
    """
    L1 cache of one requester.

    Lines only enter through the directory (install) and only change state or
    leave through directory snoops, so the directory stays authoritative.
    """

    def __init__(self, agent_id: int, capacity: int, words_per_line: int, health: HealthMonitor):
        self.agent_id = agent_id
        self.capacity = capacity
        self.words_per_line = words_per_line
        self.health = health
        self.lines: "OrderedDict[LineKey, CacheLine]" = OrderedDict()
        self.invalidations = 0

    def lookup(self, key: LineKey) -> Optional[CacheLine]:
        line = self.lines.get(key)
        if line is not None:
            self.lines.move_to_end(key)
            line.access_count += 1
        return line

    def victim_for(self, key: LineKey) -> Optional[LineKey]:
        """LRU line that must leave before key can be filled"""
        if key in self.lines or len(self.lines) < self.capacity:
            return None
        return next(iter(self.lines))

    def read_word(self, key: LineKey, word: int) -> int:
        return self._held(key).data[word]

    def write_word(self, key: LineKey, word: int, value: int) -> None:
        line = self._held(key)
        if line.state != CoherenceState.MODIFIED:
            raise self._violation(f"write to line in state {line.state.value}", key)
        line.data[word] = value

    def _held(self, key: LineKey) -> CacheLine:
        line = self.lines.get(key)
        if line is None:
            raise self._violation("line not resident", key)
        return line

    def _violation(self, what: str, key: LineKey) -> ProtocolViolation:
        return self.health.report(f"l1[{self.agent_id}]", ProtocolViolation(
            f"L1 {self.agent_id}: {what} (line 0x{key.address:x}, asid {key.asid})",
            {"agent": self.agent_id, "asid": key.asid, "address": key.address},
        ))

    # CacheAgent interface -------------------------------------------------

    def snoop_data(self, key: LineKey) -> List[int]:
        return list(self._held(key).data)

    def snoop_invalidate(self, key: LineKey) -> Optional[List[int]]:
        line = self.lines.pop(key, None)
        if line is None:
            return None
        self.invalidations += 1
        return line.data

    def set_state(self, key: LineKey, state: CoherenceState) -> None:
        line = self._held(key)
        if (line.state, state) not in _LOCAL_TRANSITIONS:
            raise self._violation(
                f"illegal local transition {line.state.value}->{state.value}", key
            )
        line.state = state

    def install(self, key: LineKey, state: CoherenceState, data: List[int]) -> None:
        if key not in self.lines and len(self.lines) >= self.capacity:
            raise self._violation("fill without a free way", key)
        self.lines[key] = CacheLine(key=key, data=list(data), state=state)
        self.lines.move_to_end(key)

    def line_state(self, key: LineKey) -> CoherenceState:
        line = self.lines.get(key)
        return line.state if line is not None else CoherenceState.INVALID

    def resident_keys(self) -> List[LineKey]:
        return list(self.lines)


# ============================================================================
# Shared Lower Levels (L2 / L3 / L4)
# ============================================================================

class SharedCacheLevel:
    """LRU cache of clean line copies"""

    def __init__(self, name: str, capacity: int, cost: float):
        self.name = name
        self.capacity = capacity
        self.cost = cost
        self.lines: "OrderedDict[LineKey, List[int]]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: LineKey) -> Optional[List[int]]:
        data = self.lines.get(key)
        if data is None:
            self.misses += 1
            return None
        self.hits += 1
        self.lines.move_to_end(key)
        return list(data)

    def put(self, key: LineKey, data: List[int]) -> None:
        if key in self.lines:
            self.lines.move_to_end(key)
        elif len(self.lines) >= self.capacity:
            # Clean copies; no write-back needed
            self.lines.popitem(last=False)
            self.evictions += 1
        self.lines[key] = list(data)

    def drop(self, key: LineKey) -> None:
        self.lines.pop(key, None)

    def __contains__(self, key: LineKey) -> bool:
        return key in self.lines

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "resident": len(self.lines),
        }


class MemorySide:
    """
    Everything below the directory: L2 per cluster, global L3, per-node L4
    and main memory. Every valid copy at these levels equals main memory.
    """

    def __init__(
        self,
        config: HierarchyConfig,
        router: NumaRouter,
        requesters: Dict[int, RequesterInfo]
    ):
        self.config = config
        self.router = router
        self.requesters = requesters
        self.memory: Dict[LineKey, List[int]] = {}
        self.l2: Dict[int, SharedCacheLevel] = {}
        self.l3 = SharedCacheLevel("L3", config.l3_lines, config.l3_cost)
        self.l4: Dict[int, SharedCacheLevel] = {
            node_id: SharedCacheLevel(f"L4[{node_id}]", config.l4_lines, config.l4_cost)
            for node_id in router.nodes
        }

    def add_cluster(self, cluster_id: int) -> None:
        if cluster_id not in self.l2:
            self.l2[cluster_id] = SharedCacheLevel(
                f"L2[{cluster_id}]", self.config.l2_lines, self.config.l2_cost
            )

    def _zero_line(self) -> List[int]:
        return [0] * self.config.words_per_line

    def _l2_for(self, requester: Optional[int]) -> Optional[SharedCacheLevel]:
        info = self.requesters.get(requester) if requester is not None else None
        if info is None or info.cluster_id is None:
            return None
        return self.l2.get(info.cluster_id)

    def load_line(
        self,
        key: LineKey,
        requester: Optional[int],
        route: Optional[RouteInfo] = None
    ) -> LineFill:
        if route is None:
            route = self.router.resolve(key.address)

        probed: List[SharedCacheLevel] = []
        cost = 0.0
        for level in (self._l2_for(requester), self.l3, self.l4[route.node_id]):
            if level is None:
                continue
            cost += level.cost
            data = level.get(key)
            if data is not None:
                for upper in probed:
                    upper.put(key, data)
                return LineFill(data=data, level=level.name.split("[")[0], cost=cost)
            probed.append(level)

        data = list(self.memory.get(key) or self._zero_line())
        for upper in probed:
            upper.put(key, data)
        return LineFill(data=data, level="memory", cost=cost + route.access_cost)

    def store_line(self, key: LineKey, data: List[int], writer: Optional[int]) -> None:
        self.memory[key] = list(data)
        node_id = self.router.node_for(key.address)
        self.l4[node_id].put(key, data)
        self.l3.put(key, data)

        writer_l2 = self._l2_for(writer)
        for l2 in self.l2.values():
            if l2 is writer_l2:
                l2.put(key, data)
            else:
                l2.drop(key)

    def peek_line(self, key: LineKey) -> List[int]:
        return list(self.memory.get(key) or self._zero_line())


# ============================================================================
# Main Module Implementation
# ============================================================================

class CacheHierarchyModule:
    """
    Cache hierarchy controllers with directory-based coherence.

    Operations follow the path L1 -> (NUMA routing, QoS admission) ->
    directory -> L2 -> L3 -> L4 -> memory. Each requester has at most one
    request in flight.
    """

    def __init__(
        self,
        config: Optional[HierarchyConfig] = None,
        directory_config: Optional[DirectoryConfig] = None,
        router: Optional[NumaRouter] = None,
        health: Optional[HealthMonitor] = None,
        trace: Optional[TraceBus] = None
    ):
        self.config = config or HierarchyConfig()
        self.health = health or HealthMonitor()
        self.trace = trace or TraceBus()
        self.router = router or NumaRouter(health=self.health)

        self.requesters: Dict[int, RequesterInfo] = {}
        self.l1: Dict[int, PrivateCache] = {}
        self.memory_side = MemorySide(self.config, self.router, self.requesters)
        self.directory = CacheDirectory(
            directory_config or DirectoryConfig(),
            backing=self.memory_side,
            health=self.health,
            trace=self.trace,
        )

        self.outstanding: Dict[int, Optional[str]] = {}
        self._request_locks: Dict[int, asyncio.Lock] = {}
        self.metrics = HierarchyMetrics(latencies=deque(maxlen=self.config.latency_window))
        self._logger = logging.getLogger(__name__)

    def register_requester(
        self,
        agent_id: int,
        cluster_id: Optional[int] = None,
        home_node: Optional[int] = None,
        kind: str = "core",
        l1_lines: Optional[int] = None
    ) -> PrivateCache:
        """Register a core or peripheral port with its private cache"""
        if agent_id in self.requesters:
            return self.l1[agent_id]

        self.requesters[agent_id] = RequesterInfo(agent_id, cluster_id, home_node, kind)
        if cluster_id is not None:
            self.memory_side.add_cluster(cluster_id)

        cache = PrivateCache(
            agent_id,
            l1_lines or self.config.l1_lines,
            self.config.words_per_line,
            self.health,
        )
        self.l1[agent_id] = cache
        self.directory.register_agent(agent_id, cache)
        self.outstanding[agent_id] = None
        self._request_locks[agent_id] = asyncio.Lock()
        self._logger.info(f"Registered {kind} {agent_id} (cluster {cluster_id}, node {home_node})")
        return cache

    # ------------------------------------------------------------------
    # Address helpers
    # ------------------------------------------------------------------

    def line_key(self, address: int, asid: int = 0) -> LineKey:
        return LineKey(asid, address - address % self.config.line_size)

    def word_index(self, address: int) -> int:
        if address % WORD_SIZE:
            raise ValueError(f"Unaligned word address 0x{address:x}")
        return (address % self.config.line_size) // WORD_SIZE

    def _requester_node(self, request: MemoryRequest) -> Optional[int]:
        if request.node_hint is not None:
            return request.node_hint
        return self.requesters[request.requester].home_node

    @asynccontextmanager
    async def _in_flight(self, agent_id: int, operation: str) -> AsyncIterator[None]:
        if agent_id not in self.requesters:
            raise ValueError(f"Requester {agent_id} not registered")
        async with self._request_locks[agent_id]:
            self.outstanding[agent_id] = operation
            try:
                yield
            finally:
                self.outstanding[agent_id] = None

    async def _make_room(self, agent_id: int, key: LineKey) -> None:
        """Evict the LRU victim before the miss is serviced"""
        victim = self.l1[agent_id].victim_for(key)
        if victim is not None:
            await self.directory.evict(victim, agent_id)
            self.metrics.capacity_evictions += 1

    def _route(self, request: MemoryRequest, key: LineKey) -> RouteInfo:
        return self.router.resolve(key.address, self._requester_node(request), request.qos)

    def _record(self, result: AccessResult) -> AccessResult:
        self.metrics.fill_sources[result.level] += 1
        self.metrics.latencies.append(result.latency)
        return result

    def _miss_latency(self, source: Optional[str], cost: float) -> float:
        latency = self.config.l1_cost + self.config.directory_cost + cost
        if source == "peer":
            latency += self.config.peer_cost
        return latency

    # ------------------------------------------------------------------
    # Coherent accesses
    # ------------------------------------------------------------------

    async def load(self, request: MemoryRequest) -> AccessResult:
        """Coherent word read"""
        async with self._in_flight(request.requester, "read"):
            self.metrics.reads += 1
            key = self.line_key(request.address, request.asid)
            word = self.word_index(request.address)

            if request.isolated:
                return await self._isolated(request, key, word, None)

            cache = self.l1[request.requester]
            line = cache.lookup(key)
            if line is not None:
                self.metrics.l1_read_hits += 1
                return self._record(AccessResult(
                    data=line.data[word],
                    level="L1",
                    latency=self.config.l1_cost,
                    state=line.state,
                ))

            self.metrics.misses += 1
            await self._make_room(request.requester, key)
            route = self._route(request, key)
            async with self.router.admission(route) as ticket:
                async with self.directory.transaction(key, request.requester, route, admission=ticket) as txn:
                    state = txn.request(RequestType.GET_SHARED)
                    value = cache.read_word(key, word)
                    source, cost = txn.source, txn.cost

            return self._record(AccessResult(
                data=value,
                level=source or "L1",
                latency=self._miss_latency(source, cost),
                state=state,
                node_id=route.node_id,
                is_remote=route.is_remote,
            ))

    async def store(self, request: MemoryRequest, value: int) -> AccessResult:
        """Coherent word write"""
        if not 0 <= value <= WORD_MASK:
            raise ValueError(f"Value {value} does not fit in a 64-bit word")

        async with self._in_flight(request.requester, "write"):
            self.metrics.writes += 1
            key = self.line_key(request.address, request.asid)
            word = self.word_index(request.address)

            if request.isolated:
                return await self._isolated(request, key, word, value)

            cache = self.l1[request.requester]
            line = cache.lookup(key)
            if line is not None and line.state == CoherenceState.MODIFIED:
                line.data[word] = value
                self.metrics.l1_write_hits += 1
                return self._record(AccessResult(
                    data=value,
                    level="L1",
                    latency=self.config.l1_cost,
                    state=line.state,
                ))

            if line is None:
                self.metrics.misses += 1
                await self._make_room(request.requester, key)
            else:
                self.metrics.upgrades += 1

            route = self._route(request, key)
            async with self.router.admission(route) as ticket:
                async with self.directory.transaction(key, request.requester, route, admission=ticket) as txn:
                    state = txn.request(RequestType.GET_MODIFIED)
                    cache.write_word(key, word, value)
                    source, cost = txn.source, txn.cost

            return self._record(AccessResult(
                data=value,
                level=source or "L1",
                latency=self._miss_latency(source, cost),
                state=state,
                node_id=route.node_id,
                is_remote=route.is_remote,
            ))

    async def _isolated(
        self,
        request: MemoryRequest,
        key: LineKey,
        word: int,
        value: Optional[int]
    ) -> AccessResult:
        self.metrics.isolated_accesses += 1
        route = self._route(request, key)
        async with self.router.admission(route) as ticket:
            async with self.directory.transaction(key, request.requester, route, admission=ticket) as txn:
                copy = txn.private_copy()
                if value is not None:
                    copy[word] = value
                data = copy[word]

        return self._record(AccessResult(
            data=data,
            level="private",
            latency=self.config.l1_cost + self.config.directory_cost,
            state=CoherenceState.INVALID,
            node_id=route.node_id,
            is_remote=route.is_remote,
        ))

    async def _atomic(self, request: MemoryRequest, operation: str, update) -> Tuple[int, int]:
        """Read-modify-write holding Modified for the whole operation"""
        async with self._in_flight(request.requester, operation):
            self.metrics.atomics += 1
            key = self.line_key(request.address, request.asid)
            word = self.word_index(request.address)
            cache = self.l1[request.requester]

            if cache.lookup(key) is None:
                await self._make_room(request.requester, key)

            route = self._route(request, key)
            async with self.router.admission(route) as ticket:
                async with self.directory.transaction(key, request.requester, route, admission=ticket) as txn:
                    txn.request(RequestType.GET_MODIFIED)
                    old = cache.read_word(key, word)
                    new = update(old)
                    if new != old:
                        cache.write_word(key, word, new)
            return old, new

    async def compare_and_swap(
        self,
        core: int,
        address: int,
        expected: int,
        new: int,
        asid: int = 0
    ) -> Tuple[bool, int]:
        """
        Atomically replace a word if it holds the expected value.

        Returns:
            Tuple of (swapped, observed value)
        """
        if not 0 <= new <= WORD_MASK:
            raise ValueError(f"Value {new} does not fit in a 64-bit word")
        request = MemoryRequest(requester=core, address=address, asid=asid)
        old, _ = await self._atomic(
            request, "compare_and_swap", lambda current: new if current == expected else current
        )
        return old == expected, old

    async def fetch_and_add(self, core: int, address: int, delta: int, asid: int = 0) -> int:
        """Atomically add to a word (64-bit wrap-around); returns the old value"""
        request = MemoryRequest(requester=core, address=address, asid=asid)
        old, _ = await self._atomic(
            request, "fetch_and_add", lambda current: (current + delta) & WORD_MASK
        )
        return old

    async def read(self, core: int, address: int, asid: int = 0, qos: QoSClass = QoSClass.BULK) -> int:
        result = await self.load(MemoryRequest(requester=core, address=address, asid=asid, qos=qos))
        return result.data

    async def write(
        self,
        core: int,
        address: int,
        value: int,
        asid: int = 0,
        qos: QoSClass = QoSClass.BULK
    ) -> bool:
        await self.store(MemoryRequest(requester=core, address=address, asid=asid, qos=qos), value)
        return True

    async def invalidate(self, address: int, asid: int = 0) -> bool:
        """Invalidate a line everywhere, writing back dirty data"""
        return await self.directory.invalidate(self.line_key(address, asid))

    async def evict(self, core: int, address: int, asid: int = 0) -> bool:
        """Evict a line from one core's L1"""
        key = self.line_key(address, asid)
        if self.l1[core].line_state(key) == CoherenceState.INVALID:
            return False
        evicted = await self.directory.evict(key, core)
        if evicted:
            self.metrics.explicit_evictions += 1
        return evicted

    async def flush_requester(self, agent_id: int) -> int:
        """Write back and invalidate every line held by one requester"""
        return await self.directory.flush_agent(agent_id)

    async def flush_all(self) -> int:
        return await self.directory.flush_all()

    async def peek(self, address: int, asid: int = 0) -> int:
        """Coherent value of a word without changing any cache state"""
        key = self.line_key(address, asid)
        word = self.word_index(address)
        async with self.directory.transaction(key, None) as txn:
            return txn.peek()[word]

    def memory_snapshot(self, asid: int = 0) -> Dict[int, int]:
        """Word contents of main memory for one address space"""
        snapshot: Dict[int, int] = {}
        for key, data in sorted(self.memory_side.memory.items()):
            if key.asid != asid:
                continue
            for index, value in enumerate(data):
                snapshot[key.address + index * WORD_SIZE] = value
        return snapshot

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def latency_stats(self) -> Dict[str, float]:
        if not self.metrics.latencies:
            return {"mean": 0.0, "p50": 0.0, "p99": 0.0, "max": 0.0}
        samples = np.fromiter(self.metrics.latencies, dtype=np.float64)
        return {
            "mean": round(float(samples.mean()), 3),
            "p50": round(float(np.percentile(samples, 50)), 3),
            "p99": round(float(np.percentile(samples, 99)), 3),
            "max": round(float(samples.max()), 3),
        }

    def get_metrics(self, agent_id: Optional[int] = None) -> Dict[str, Any]:
        """Get cache metrics"""
        if agent_id is not None:
            if agent_id not in self.l1:
                return {"error": f"Requester {agent_id} not found"}
            cache = self.l1[agent_id]
            return {
                "agent_id": agent_id,
                "resident_lines": len(cache.lines),
                "capacity": cache.capacity,
                "invalidations_received": cache.invalidations,
                "outstanding": self.outstanding.get(agent_id),
            }

        m = self.metrics
        accesses = m.reads + m.writes
        return {
            "reads": m.reads,
            "writes": m.writes,
            "atomics": m.atomics,
            "l1_read_hits": m.l1_read_hits,
            "l1_write_hits": m.l1_write_hits,
            "l1_hit_rate": (m.l1_read_hits + m.l1_write_hits) / max(accesses, 1),
            "misses": m.misses,
            "upgrades": m.upgrades,
            "capacity_evictions": m.capacity_evictions,
            "explicit_evictions": m.explicit_evictions,
            "isolated_accesses": m.isolated_accesses,
            "fill_sources": dict(m.fill_sources),
            "latency": self.latency_stats(),
            "levels": {
                **{lvl.name: lvl.get_metrics() for lvl in self.memory_side.l2.values()},
                "L3": self.memory_side.l3.get_metrics(),
                **{lvl.name: lvl.get_metrics() for lvl in self.memory_side.l4.values()},
            },
            "directory": self.directory.get_metrics(),
        }
