"""
OCTACLUSTER Cache Directory Module
coherence_engine/cache_directory_module

Authoritative per-line coherence directory for the cluster. Supports the
MOESI and MESI protocols through table-driven transitions, serializes
same-line requests through a per-line FIFO pending queue, tracks sharers
with a bounded capacity and keeps private copies for isolated requests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, AsyncIterator, Deque, Dict, List, NamedTuple, Optional, Protocol, Set, Tuple
)

from pydantic import BaseModel, Field

from octacluster.platform_services.monitoring_module import (
    CoherencyOverflow,
    DirectoryTraceEvent,
    HealthMonitor,
    ProtocolViolation,
    TraceBus,
)

logger = logging.getLogger(__name__)


class CoherenceState(str, Enum):
    """Cache line states for MESI/MOESI protocols"""
    MODIFIED = "M"  # Modified (dirty, exclusive)
    OWNED = "O"  # Owned (MOESI only - dirty but shared)
    EXCLUSIVE = "E"  # Exclusive (clean, only copy)
    SHARED = "S"  # Shared (clean, multiple copies may exist)
    INVALID = "I"  # Invalid (not present or stale)


class CoherenceProtocol(str, Enum):
    """Supported cache coherence protocols"""
    MESI = "mesi"  # Modified owner writes back when read by another core
    MOESI = "moesi"  # Modified owner keeps a dirty shared copy (Owned)


class RequestType(str, Enum):
    """Requests handled by the directory"""
    GET_SHARED = "get_shared"  # Read miss
    GET_MODIFIED = "get_modified"  # Write, upgrade or atomic
    PUT = "put"  # Eviction by a holder
    INVALIDATE = "invalidate"  # Global invalidation of the line


class RequesterRole(str, Enum):
    """Requester's relation to the line when its request is serviced"""
    NONE = "none"
    SHARER = "sharer"
    OWNER = "owner"


class DirectoryAction(str, Enum):
    """Steps executed, in order, by a directory transition"""
    FILL_FROM_MEMORY = "fill_from_memory"
    FORWARD_FROM_OWNER = "forward_from_owner"
    WRITE_BACK_OWNER = "write_back_owner"
    DEMOTE_OWNER = "demote_owner"
    INVALIDATE_OWNER = "invalidate_owner"
    INVALIDATE_SHARERS = "invalidate_sharers"
    ADD_SHARER = "add_sharer"
    GRANT_OWNER = "grant_owner"
    REMOVE_REQUESTER = "remove_requester"


class LineKey(NamedTuple):
    """Directory key: lines in different address spaces never alias"""
    asid: int
    address: int


class Transition(NamedTuple):
    next_state: CoherenceState
    actions: Tuple[DirectoryAction, ...]


TransitionTable = Dict[Tuple[CoherenceState, RequestType, RequesterRole], Transition]


@dataclass
class LineFill:
    """Line data delivered by the memory side"""
    data: List[int]
    level: str
    cost: float = 0.0


class CacheAgent(Protocol):
    """Private cache of one requester, driven by the directory"""

    def snoop_data(self, key: LineKey) -> List[int]:
        """Current contents of a held line"""
        ...

    def snoop_invalidate(self, key: LineKey) -> Optional[List[int]]:
        """Drop a line; returns its contents"""
        ...

    def set_state(self, key: LineKey, state: CoherenceState) -> None:
        """Change the local state of a held line"""
        ...

    def install(self, key: LineKey, state: CoherenceState, data: List[int]) -> None:
        """Fill a line into the cache"""
        ...

    def line_state(self, key: LineKey) -> CoherenceState:
        """Local state of a line (INVALID if absent)"""
        ...


class BackingStore(Protocol):
    """Memory side of the directory (lower cache levels and memory)"""

    def load_line(self, key: LineKey, requester: Optional[int], route: Any = None) -> LineFill:
        ...

    def store_line(self, key: LineKey, data: List[int], writer: Optional[int]) -> None:
        ...

    def peek_line(self, key: LineKey) -> List[int]:
        ...


class AdmissionSlot(Protocol):
    """Routing slot a queued request gives up while it cannot be served"""

    def park(self) -> None:
        ...

    def resume(self) -> None:
        ...


@dataclass
class PendingRequest:
    """A requester waiting for its turn on a line"""
    requester: Optional[int]
    future: asyncio.Future
    forced: bool = False
    admission: Optional[AdmissionSlot] = None


@dataclass
class DirectoryEntry:
    """Directory state for one resident line"""
    key: LineKey
    state: CoherenceState = CoherenceState.INVALID
    owner: Optional[int] = None
    sharers: List[int] = field(default_factory=list)  # Oldest first
    pending: Deque[PendingRequest] = field(default_factory=deque)
    busy: bool = False

    def role_of(self, requester: Optional[int]) -> RequesterRole:
        if requester is None:
            return RequesterRole.NONE
        if self.owner == requester:
            return RequesterRole.OWNER
        if requester in self.sharers:
            return RequesterRole.SHARER
        return RequesterRole.NONE

    def local_states(self) -> Dict[int, CoherenceState]:
        """Per-holder cache state implied by this entry"""
        states = {s: CoherenceState.SHARED for s in self.sharers}
        if self.owner is not None:
            states[self.owner] = self.state
        return states

    @property
    def is_empty(self) -> bool:
        return (
            self.state == CoherenceState.INVALID
            and self.owner is None
            and not self.sharers
        )


@dataclass
class DirectoryMetrics:
    """Metrics for the coherence directory"""
    transactions: int = 0
    get_shared: int = 0
    get_modified: int = 0
    puts: int = 0
    global_invalidations: int = 0
    snoop_invalidations: int = 0
    write_backs: int = 0
    forwards: int = 0
    memory_fills: int = 0
    overflow_evictions: int = 0
    queued_requests: int = 0
    max_pending_depth: int = 0
    entries_created: int = 0
    entries_destroyed: int = 0
    isolated_accesses: int = 0


class DirectoryConfig(BaseModel):
    """Configuration for the coherence directory"""
    protocol: CoherenceProtocol = Field(
        default=CoherenceProtocol.MOESI,
        description="Cache coherence protocol"
    )
    max_sharers: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Sharer capacity per line before forced eviction"
    )
    trace_enabled: bool = Field(
        default=True,
        description="Publish state changes on the trace bus"
    )


# ============================================================================
# Coherence Protocol Implementations
# ============================================================================

I, S, E, O, M = (
    CoherenceState.INVALID,
    CoherenceState.SHARED,
    CoherenceState.EXCLUSIVE,
    CoherenceState.OWNED,
    CoherenceState.MODIFIED,
)
GET_S, GET_M, PUT, INV = (
    RequestType.GET_SHARED,
    RequestType.GET_MODIFIED,
    RequestType.PUT,
    RequestType.INVALIDATE,
)
NONE, SHARER, OWNER = RequesterRole.NONE, RequesterRole.SHARER, RequesterRole.OWNER
A = DirectoryAction

_COMMON_TRANSITIONS: TransitionTable = {
    # Read requests
    (I, GET_S, NONE): Transition(E, (A.FILL_FROM_MEMORY, A.GRANT_OWNER)),
    (S, GET_S, NONE): Transition(S, (A.FILL_FROM_MEMORY, A.ADD_SHARER)),
    (S, GET_S, SHARER): Transition(S, ()),
    (E, GET_S, NONE): Transition(S, (A.DEMOTE_OWNER, A.FILL_FROM_MEMORY, A.ADD_SHARER)),
    (E, GET_S, OWNER): Transition(E, ()),
    (M, GET_S, OWNER): Transition(M, ()),
    # Write requests
    (I, GET_M, NONE): Transition(M, (A.FILL_FROM_MEMORY, A.GRANT_OWNER)),
    (S, GET_M, NONE): Transition(
        M, (A.INVALIDATE_SHARERS, A.FILL_FROM_MEMORY, A.GRANT_OWNER)
    ),
    (S, GET_M, SHARER): Transition(M, (A.INVALIDATE_SHARERS, A.GRANT_OWNER)),
    (E, GET_M, NONE): Transition(
        M, (A.INVALIDATE_OWNER, A.FILL_FROM_MEMORY, A.GRANT_OWNER)
    ),
    (E, GET_M, OWNER): Transition(M, (A.GRANT_OWNER,)),
    (M, GET_M, NONE): Transition(
        M, (A.WRITE_BACK_OWNER, A.INVALIDATE_OWNER, A.FILL_FROM_MEMORY, A.GRANT_OWNER)
    ),
    (M, GET_M, OWNER): Transition(M, ()),
    # Evictions
    (S, PUT, SHARER): Transition(S, (A.REMOVE_REQUESTER,)),
    (E, PUT, OWNER): Transition(I, (A.REMOVE_REQUESTER,)),
    (M, PUT, OWNER): Transition(I, (A.WRITE_BACK_OWNER, A.REMOVE_REQUESTER)),
    # Global invalidation
    (I, INV, NONE): Transition(I, ()),
    (S, INV, NONE): Transition(I, (A.INVALIDATE_SHARERS,)),
    (E, INV, NONE): Transition(I, (A.INVALIDATE_OWNER,)),
    (M, INV, NONE): Transition(I, (A.WRITE_BACK_OWNER, A.INVALIDATE_OWNER)),
}


class CoherenceProtocolBase(ABC):
    """Abstract base class for table-driven coherence protocols"""

    protocol: CoherenceProtocol

    def __init__(self):
        self.table: TransitionTable = {**_COMMON_TRANSITIONS, **self.variant_transitions()}

    @abstractmethod
    def variant_transitions(self) -> TransitionTable:
        """Rows that differ between protocols"""
        pass

    def lookup(
        self,
        state: CoherenceState,
        request: RequestType,
        role: RequesterRole
    ) -> Optional[Transition]:
        return self.table.get((state, request, role))


class MESIProtocol(CoherenceProtocolBase):
    """MESI: a Modified owner writes back and shares when read"""

    protocol = CoherenceProtocol.MESI

    def variant_transitions(self) -> TransitionTable:
        return {
            (M, GET_S, NONE): Transition(
                S, (A.WRITE_BACK_OWNER, A.DEMOTE_OWNER, A.FILL_FROM_MEMORY, A.ADD_SHARER)
            ),
        }


class MOESIProtocol(CoherenceProtocolBase):
    """MOESI: a Modified owner keeps a dirty readable copy (Owned)"""

    protocol = CoherenceProtocol.MOESI

    def variant_transitions(self) -> TransitionTable:
        return {
            (M, GET_S, NONE): Transition(O, (A.FORWARD_FROM_OWNER, A.ADD_SHARER)),
            (O, GET_S, NONE): Transition(O, (A.FORWARD_FROM_OWNER, A.ADD_SHARER)),
            (O, GET_S, OWNER): Transition(O, ()),
            (O, GET_S, SHARER): Transition(O, ()),
            (O, GET_M, NONE): Transition(M, (
                A.WRITE_BACK_OWNER, A.INVALIDATE_OWNER, A.INVALIDATE_SHARERS,
                A.FILL_FROM_MEMORY, A.GRANT_OWNER,
            )),
            (O, GET_M, SHARER): Transition(M, (
                A.WRITE_BACK_OWNER, A.INVALIDATE_OWNER, A.INVALIDATE_SHARERS,
                A.GRANT_OWNER,
            )),
            (O, GET_M, OWNER): Transition(M, (A.INVALIDATE_SHARERS, A.GRANT_OWNER)),
            (O, PUT, OWNER): Transition(S, (A.WRITE_BACK_OWNER, A.REMOVE_REQUESTER)),
            (O, PUT, SHARER): Transition(O, (A.REMOVE_REQUESTER,)),
            (O, INV, NONE): Transition(I, (
                A.WRITE_BACK_OWNER, A.INVALIDATE_OWNER, A.INVALIDATE_SHARERS,
            )),
        }


def create_protocol(protocol: CoherenceProtocol) -> CoherenceProtocolBase:
    """Create protocol based on configuration"""
    if protocol == CoherenceProtocol.MESI:
        return MESIProtocol()
    return MOESIProtocol()


# ============================================================================
# Directory Transaction
# ============================================================================

class DirectoryTransaction:
    """
    Exclusive service window on one line.

    Everything done through a transaction runs without suspension, so a state
    transition and its data transfers are atomic for other requesters of the
    same line. Never await while holding one.
    """

    def __init__(
        self,
        directory: "CacheDirectory",
        entry: DirectoryEntry,
        requester: Optional[int],
        route: Any = None
    ):
        self.directory = directory
        self.entry = entry
        self.requester = requester
        self.route = route
        self.data: Optional[List[int]] = None
        self.source: Optional[str] = None
        self.cost: float = 0.0

    @property
    def key(self) -> LineKey:
        return self.entry.key

    @property
    def state(self) -> CoherenceState:
        return self.entry.state

    @property
    def role(self) -> RequesterRole:
        return self.entry.role_of(self.requester)

    def request(self, request_type: RequestType) -> CoherenceState:
        """
        Apply one protocol transition for the requester.

        Returns:
            The requester's local state after the transition
        """
        return self.directory._apply(self, request_type)

    def peek(self) -> List[int]:
        """Authoritative line contents without any state change"""
        entry = self.entry
        if entry.state in (CoherenceState.MODIFIED, CoherenceState.OWNED):
            return self.directory.agents[entry.owner].snoop_data(entry.key)
        return self.directory.backing.peek_line(entry.key)

    def private_copy(self) -> List[int]:
        """Requester's isolated copy, seeded from the coherent value"""
        copy_key = (self.key, self.requester)
        copies = self.directory.private_copies
        if copy_key not in copies:
            copies[copy_key] = list(self.peek())
        self.directory.metrics.isolated_accesses += 1
        return copies[copy_key]


# ============================================================================
# Cache Directory
# ============================================================================

class CacheDirectory:
    """
    Directory-based coherence engine.

    Entries are created on first access and destroyed once no cache holds the
    line and nothing is pending on it. Each entry is its own serialization
    domain; there is no lock spanning lines.
    """

    def __init__(
        self,
        config: Optional[DirectoryConfig] = None,
        backing: Optional[BackingStore] = None,
        health: Optional[HealthMonitor] = None,
        trace: Optional[TraceBus] = None
    ):
        self.config = config or DirectoryConfig()
        self.protocol = create_protocol(self.config.protocol)
        self.backing = backing
        self.health = health or HealthMonitor()
        self.trace = trace or TraceBus()

        self.entries: Dict[LineKey, DirectoryEntry] = {}
        self.agents: Dict[int, CacheAgent] = {}
        self.offline: Set[int] = set()
        self.private_copies: Dict[Tuple[LineKey, Optional[int]], List[int]] = {}

        self.metrics = DirectoryMetrics()
        self._logger = logging.getLogger(__name__)

    def register_agent(self, agent_id: int, agent: CacheAgent) -> None:
        """Register the private cache of a requester"""
        self.agents[agent_id] = agent

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(
        self,
        key: LineKey,
        requester: Optional[int] = None,
        route: Any = None,
        forced: bool = False,
        admission: Optional[AdmissionSlot] = None
    ) -> AsyncIterator[DirectoryTransaction]:
        """
        Wait for the line and hold it for one transaction.

        Args:
            key: Line to serialize on
            requester: Requesting agent (None for system-wide operations)
            route: Routing annotation passed to the memory side
            forced: Issued by the system on behalf of the requester; served
                even while the requester is offline
            admission: Routing slot held by the request; parked while the
                requester is offline and resumed when the line is granted
        """
        entry = self.entries.get(key)
        if entry is None:
            entry = DirectoryEntry(key=key)
            self.entries[key] = entry
            self.metrics.entries_created += 1

        await self._enter(entry, requester, forced, admission)
        self.metrics.transactions += 1
        try:
            yield DirectoryTransaction(self, entry, requester, route)
        finally:
            self._leave(entry)

    def _eligible(self, requester: Optional[int], forced: bool) -> bool:
        return forced or requester is None or requester not in self.offline

    async def _enter(
        self,
        entry: DirectoryEntry,
        requester: Optional[int],
        forced: bool,
        admission: Optional[AdmissionSlot] = None
    ) -> None:
        # Waiters left behind while idle all belong to offline requesters
        if not entry.busy and self._eligible(requester, forced):
            entry.busy = True
            return

        waiter = PendingRequest(
            requester=requester,
            future=asyncio.get_running_loop().create_future(),
            forced=forced,
            admission=admission,
        )
        entry.pending.append(waiter)
        if admission is not None and not self._eligible(requester, forced):
            admission.park()
        self.metrics.queued_requests += 1
        self.metrics.max_pending_depth = max(self.metrics.max_pending_depth, len(entry.pending))

        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # The line was handed over before the cancel landed
                self._leave(entry)
            else:
                if waiter in entry.pending:
                    entry.pending.remove(waiter)
                self._discard_if_empty(entry)
            raise

    def _leave(self, entry: DirectoryEntry) -> None:
        entry.busy = False
        self._service_next(entry)
        self._discard_if_empty(entry)

    def _service_next(self, entry: DirectoryEntry) -> None:
        if entry.busy:
            return
        for waiter in list(entry.pending):
            if waiter.future.done():
                entry.pending.remove(waiter)
                continue
            if self._eligible(waiter.requester, waiter.forced):
                entry.pending.remove(waiter)
                entry.busy = True
                if waiter.admission is not None:
                    waiter.admission.resume()
                waiter.future.set_result(None)
                return

    def _discard_if_empty(self, entry: DirectoryEntry) -> None:
        if entry.busy or entry.pending or not entry.is_empty:
            return
        if self.entries.get(entry.key) is entry:
            del self.entries[entry.key]
            self.metrics.entries_destroyed += 1

    # ------------------------------------------------------------------
    # Protocol engine
    # ------------------------------------------------------------------

    def _apply(self, txn: DirectoryTransaction, request_type: RequestType) -> CoherenceState:
        entry = txn.entry
        requester = txn.requester
        role = entry.role_of(requester)
        old_state = entry.state
        before = entry.local_states()
        was_holder = role != RequesterRole.NONE

        transition = self.protocol.lookup(old_state, request_type, role)
        if transition is None:
            raise self.health.report("directory", ProtocolViolation(
                f"No transition for {request_type.value} from {old_state.value} "
                f"(requester {requester}, role {role.value}) on line "
                f"0x{entry.key.address:x}",
                {
                    "asid": entry.key.asid,
                    "address": entry.key.address,
                    "state": old_state.value,
                    "request": request_type.value,
                    "role": role.value,
                    "requester": requester,
                },
            ))

        self._count_request(request_type)
        for action in transition.actions:
            self._execute(txn, action)

        entry.state = transition.next_state
        if entry.state == CoherenceState.SHARED and not entry.sharers:
            entry.state = CoherenceState.INVALID

        self._sync_caches(txn, before, was_holder, request_type)
        self._publish(txn, request_type, old_state, before)

        if requester is None:
            return CoherenceState.INVALID
        return entry.local_states().get(requester, CoherenceState.INVALID)

    def _count_request(self, request_type: RequestType) -> None:
        if request_type == RequestType.GET_SHARED:
            self.metrics.get_shared += 1
        elif request_type == RequestType.GET_MODIFIED:
            self.metrics.get_modified += 1
        elif request_type == RequestType.PUT:
            self.metrics.puts += 1
        else:
            self.metrics.global_invalidations += 1

    def _execute(self, txn: DirectoryTransaction, action: DirectoryAction) -> None:
        entry = txn.entry
        key = entry.key
        requester = txn.requester

        if action == DirectoryAction.FILL_FROM_MEMORY:
            fill = self.backing.load_line(key, requester, txn.route)
            txn.data = list(fill.data)
            txn.source = fill.level
            txn.cost += fill.cost
            self.metrics.memory_fills += 1

        elif action == DirectoryAction.FORWARD_FROM_OWNER:
            txn.data = list(self.agents[entry.owner].snoop_data(key))
            txn.source = "peer"
            self.metrics.forwards += 1

        elif action == DirectoryAction.WRITE_BACK_OWNER:
            data = self.agents[entry.owner].snoop_data(key)
            self.backing.store_line(key, list(data), entry.owner)
            self.metrics.write_backs += 1

        elif action == DirectoryAction.DEMOTE_OWNER:
            entry.sharers.append(entry.owner)
            entry.owner = None

        elif action == DirectoryAction.INVALIDATE_OWNER:
            self.agents[entry.owner].snoop_invalidate(key)
            self.metrics.snoop_invalidations += 1
            entry.owner = None

        elif action == DirectoryAction.INVALIDATE_SHARERS:
            for sharer in entry.sharers:
                if sharer != requester:
                    self.agents[sharer].snoop_invalidate(key)
                    self.metrics.snoop_invalidations += 1
            entry.sharers = [s for s in entry.sharers if s == requester]

        elif action == DirectoryAction.ADD_SHARER:
            if len(entry.sharers) >= self.config.max_sharers:
                self._overflow_evict(entry)
            entry.sharers.append(requester)

        elif action == DirectoryAction.GRANT_OWNER:
            if requester in entry.sharers:
                entry.sharers.remove(requester)
            entry.owner = requester

        elif action == DirectoryAction.REMOVE_REQUESTER:
            self.agents[requester].snoop_invalidate(key)
            if entry.owner == requester:
                entry.owner = None
            else:
                entry.sharers.remove(requester)

    def _overflow_evict(self, entry: DirectoryEntry) -> None:
        victim = entry.sharers.pop(0)
        self.agents[victim].snoop_invalidate(entry.key)
        self.metrics.overflow_evictions += 1
        self.metrics.snoop_invalidations += 1
        self.health.report("directory", CoherencyOverflow(
            f"Sharer capacity {self.config.max_sharers} reached on line "
            f"0x{entry.key.address:x}; evicted core {victim}",
            {"asid": entry.key.asid, "address": entry.key.address, "victim": victim},
        ))

    def _sync_caches(
        self,
        txn: DirectoryTransaction,
        before: Dict[int, CoherenceState],
        was_holder: bool,
        request_type: RequestType
    ) -> None:
        """Bring every holder's private cache in line with the entry"""
        after = txn.entry.local_states()
        requester = txn.requester

        for agent_id, state in after.items():
            if agent_id == requester and not was_holder:
                if txn.data is None:
                    raise self.health.report("directory", ProtocolViolation(
                        f"Grant to {requester} on line 0x{txn.key.address:x} "
                        f"without data",
                        {"requester": requester, "request": request_type.value},
                    ))
                self.agents[agent_id].install(txn.key, state, txn.data)
            elif before.get(agent_id) != state:
                self.agents[agent_id].set_state(txn.key, state)

    def _publish(
        self,
        txn: DirectoryTransaction,
        request_type: RequestType,
        old_state: CoherenceState,
        before: Dict[int, CoherenceState]
    ) -> None:
        entry = txn.entry
        if not self.config.trace_enabled:
            return
        if old_state == entry.state and before == entry.local_states():
            return
        self.trace.publish(DirectoryTraceEvent(
            sequence=self.trace.next_sequence(),
            asid=entry.key.asid,
            line_address=entry.key.address,
            request=request_type.value,
            requester=txn.requester,
            old_state=old_state.value,
            new_state=entry.state.value,
            owner=entry.owner,
            sharers=tuple(entry.sharers),
        ))
        self._logger.debug(
            f"Line 0x{entry.key.address:x} (asid {entry.key.asid}) "
            f"{old_state.value}->{entry.state.value} on {request_type.value} "
            f"from {txn.requester}"
        )

    # ------------------------------------------------------------------
    # Directory-level operations
    # ------------------------------------------------------------------

    async def evict(self, key: LineKey, agent_id: int, forced: bool = False) -> bool:
        """Evict a line from one agent's cache, writing back dirty data"""
        if key not in self.entries:
            return False
        async with self.transaction(key, agent_id, forced=forced) as txn:
            if txn.role == RequesterRole.NONE:
                # Already invalidated by another requester
                return False
            txn.request(RequestType.PUT)
            return True

    async def invalidate(self, key: LineKey) -> bool:
        """Invalidate a line in every cache, writing back dirty data"""
        if key not in self.entries:
            return False
        async with self.transaction(key, None) as txn:
            if txn.state == CoherenceState.INVALID:
                return False
            txn.request(RequestType.INVALIDATE)
            return True

    def lines_held_by(self, agent_id: int) -> List[LineKey]:
        return [
            key for key, entry in self.entries.items()
            if entry.owner == agent_id or agent_id in entry.sharers
        ]

    async def flush_agent(self, agent_id: int) -> int:
        """Write back and invalidate every line an agent holds"""
        flushed = 0
        for key in self.lines_held_by(agent_id):
            if await self.evict(key, agent_id, forced=True):
                flushed += 1
        for copy_key in [k for k in self.private_copies if k[1] == agent_id]:
            del self.private_copies[copy_key]
        return flushed

    async def flush_all(self) -> int:
        """Write back and evict every dirty line"""
        written = 0
        for key in list(self.entries):
            entry = self.entries.get(key)
            if entry is None:
                continue
            if entry.state in (CoherenceState.MODIFIED, CoherenceState.OWNED):
                owner = entry.owner
                if await self.evict(key, owner, forced=True):
                    written += 1
        return written

    def set_offline(self, agent_id: int) -> None:
        """Stop serving an agent; its queued requests give up their routing slots"""
        self.offline.add(agent_id)
        for entry in self.entries.values():
            for waiter in entry.pending:
                if (
                    waiter.requester == agent_id
                    and not waiter.forced
                    and waiter.admission is not None
                    and not waiter.future.done()
                ):
                    waiter.admission.park()

    def set_online(self, agent_id: int) -> None:
        self.offline.discard(agent_id)
        for entry in list(self.entries.values()):
            if not entry.busy and entry.pending:
                self._service_next(entry)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_entry(self, key: LineKey) -> Optional[DirectoryEntry]:
        return self.entries.get(key)

    def check_invariants(self) -> List[str]:
        """Return every violated directory invariant (empty when healthy)"""
        problems: List[str] = []
        for key, entry in self.entries.items():
            where = f"line 0x{key.address:x} asid {key.asid}"
            if entry.state in (CoherenceState.MODIFIED, CoherenceState.EXCLUSIVE):
                if entry.owner is None:
                    problems.append(f"{where}: {entry.state.value} without owner")
                if entry.sharers:
                    problems.append(f"{where}: {entry.state.value} with sharers")
            elif entry.state == CoherenceState.OWNED:
                if entry.owner is None:
                    problems.append(f"{where}: O without owner")
            elif entry.state == CoherenceState.SHARED:
                if entry.owner is not None or not entry.sharers:
                    problems.append(f"{where}: malformed S entry")
            elif not entry.is_empty:
                problems.append(f"{where}: I entry with holders")

            if entry.is_empty and not entry.busy and not entry.pending:
                problems.append(f"{where}: empty entry persisted")

            if len(set(entry.sharers)) != len(entry.sharers):
                problems.append(f"{where}: duplicate sharers")

            for agent_id, state in entry.local_states().items():
                actual = self.agents[agent_id].line_state(key)
                if actual != state:
                    problems.append(
                        f"{where}: agent {agent_id} holds {actual.value}, "
                        f"directory says {state.value}"
                    )
        return problems

    def get_directory_state(self) -> Dict[str, Any]:
        """Get current directory state"""
        return {
            "entries": [
                {
                    "asid": key.asid,
                    "address": key.address,
                    "state": entry.state.value,
                    "owner": entry.owner,
                    "sharers": list(entry.sharers),
                    "pending": [p.requester for p in entry.pending],
                }
                for key, entry in sorted(self.entries.items())
            ],
            "total_entries": len(self.entries),
            "offline": sorted(self.offline),
            "private_copies": len(self.private_copies),
        }

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "protocol": self.config.protocol.value,
            "transactions": m.transactions,
            "get_shared": m.get_shared,
            "get_modified": m.get_modified,
            "puts": m.puts,
            "global_invalidations": m.global_invalidations,
            "snoop_invalidations": m.snoop_invalidations,
            "write_backs": m.write_backs,
            "forwards": m.forwards,
            "memory_fills": m.memory_fills,
            "overflow_evictions": m.overflow_evictions,
            "queued_requests": m.queued_requests,
            "max_pending_depth": m.max_pending_depth,
            "live_entries": len(self.entries),
            "entries_created": m.entries_created,
            "entries_destroyed": m.entries_destroyed,
            "isolated_accesses": m.isolated_accesses,
        }
