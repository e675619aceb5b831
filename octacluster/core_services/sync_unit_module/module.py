"""
OCTACLUSTER Synchronization Unit Module
core_services/sync_unit_module

Hardware inter-core synchronization: bounded mailboxes, counting semaphores,
member-checked barriers and atomic memory primitives. Every blocking call is
a cooperative suspension on an explicit FIFO wait queue.
"""

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from octacluster.platform_services.monitoring_module import (
    HealthMonitor,
    SimClock,
    SyncPrimitiveMisuse,
)

logger = logging.getLogger(__name__)


class MailboxConfig(BaseModel):
    """Configuration for one mailbox channel"""
    channel_id: int = Field(..., ge=0, description="Channel identifier")
    depth: int = Field(default=4, ge=1, le=4096, description="Queue capacity")


class SemaphoreConfig(BaseModel):
    """Configuration for one hardware semaphore"""
    semaphore_id: int = Field(..., ge=0, description="Semaphore identifier")
    initial: int = Field(default=1, ge=0, description="Initial count")
    maximum: int = Field(default=1, ge=1, description="Largest count allowed")

    @model_validator(mode="after")
    def validate_bounds(self) -> "SemaphoreConfig":
        if self.initial > self.maximum:
            raise ValueError("initial count exceeds maximum")
        return self


class BarrierConfig(BaseModel):
    """Configuration for one hardware barrier"""
    barrier_id: int = Field(..., ge=0, description="Barrier identifier")
    participants: List[int] = Field(..., min_length=1, description="Member core ids")

    @field_validator("participants")
    @classmethod
    def validate_participants(cls, v: List[int]) -> List[int]:
        if len(set(v)) != len(v):
            raise ValueError("Barrier participants must be unique")
        return v


class SyncConfig(BaseModel):
    """Configuration for the synchronization unit"""
    mailboxes: List[MailboxConfig] = Field(default_factory=list)
    semaphores: List[SemaphoreConfig] = Field(default_factory=list)
    barriers: List[BarrierConfig] = Field(default_factory=list)


class AtomicMemory(Protocol):
    """Coherent memory able to run atomic read-modify-write operations"""

    async def compare_and_swap(
        self, core: int, address: int, expected: int, new: int, asid: int = 0
    ) -> Tuple[bool, int]:
        ...

    async def fetch_and_add(self, core: int, address: int, delta: int, asid: int = 0) -> int:
        ...


@dataclass
class _Waiter:
    core: int
    future: asyncio.Future
    payload: Any = None


@dataclass(frozen=True)
class BarrierRelease:
    """Release of one barrier round, shared by every participant"""
    barrier_id: int
    round: int
    tick: int
    arrivals: Tuple[int, ...]


@dataclass
class SyncMetrics:
    """Synchronization unit metrics"""
    sends: int = 0
    receives: int = 0
    blocked_sends: int = 0
    blocked_receives: int = 0
    acquires: int = 0
    blocked_acquires: int = 0
    releases: int = 0
    barrier_arrivals: int = 0
    barrier_releases: int = 0
    atomics: int = 0
    cancelled_waits: int = 0


def _first_live(waiters: Deque[_Waiter]) -> Optional[_Waiter]:
    """Pop the oldest waiter whose future is still pending"""
    while waiters:
        waiter = waiters.popleft()
        if not waiter.future.done():
            return waiter
    return None


def _cancel_core(waiters: Deque[_Waiter], core: int) -> int:
    cancelled = 0
    for waiter in [w for w in waiters if w.core == core]:
        waiters.remove(waiter)
        if not waiter.future.done():
            waiter.future.cancel()
            cancelled += 1
    return cancelled


# ============================================================================
# Mailbox
# ============================================================================

class Mailbox:
    """Bounded FIFO message channel between cores"""

    def __init__(self, channel_id: int, depth: int, metrics: SyncMetrics):
        self.channel_id = channel_id
        self.depth = depth
        self.messages: Deque[Any] = deque()
        self._senders: Deque[_Waiter] = deque()
        self._receivers: Deque[_Waiter] = deque()
        self._metrics = metrics

    @property
    def is_full(self) -> bool:
        return len(self.messages) >= self.depth

    @property
    def is_empty(self) -> bool:
        return not self.messages

    @property
    def blocked_senders(self) -> int:
        return sum(1 for w in self._senders if not w.future.done())

    async def send(self, core: int, message: Any) -> None:
        """Enqueue a message, suspending while the channel is full"""
        self._metrics.sends += 1

        receiver = _first_live(self._receivers)
        if receiver is not None:
            # Channel is empty while receivers wait
            receiver.future.set_result(message)
            return

        if not self.is_full and not self.blocked_senders:
            self.messages.append(message)
            return

        self._metrics.blocked_sends += 1
        waiter = _Waiter(core, asyncio.get_running_loop().create_future(), message)
        self._senders.append(waiter)
        try:
            await waiter.future
        except asyncio.CancelledError:
            if not (waiter.future.done() and not waiter.future.cancelled()):
                if waiter in self._senders:
                    self._senders.remove(waiter)
                self._metrics.cancelled_waits += 1
            raise

    async def receive(self, core: int) -> Any:
        """
        Dequeue the oldest message, suspending while the channel is empty.

        A message handed to a receive that is then cancelled passes to the
        next waiting receiver, or goes back to the head of the channel. In
        the second case the channel can briefly hold depth + 1 messages if
        senders refilled it meanwhile; sends block until it drains.
        """
        self._metrics.receives += 1

        if self.messages:
            message = self.messages.popleft()
            self._admit_senders()
            return message

        self._metrics.blocked_receives += 1
        waiter = _Waiter(core, asyncio.get_running_loop().create_future())
        self._receivers.append(waiter)
        try:
            return await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Message was handed over before the cancel landed; keep it
                self._return_message(waiter.future.result())
            elif waiter in self._receivers:
                self._receivers.remove(waiter)
            self._metrics.cancelled_waits += 1
            raise

    def _return_message(self, message: Any) -> None:
        receiver = _first_live(self._receivers)
        if receiver is not None:
            receiver.future.set_result(message)
        else:
            self.messages.appendleft(message)

    def _admit_senders(self) -> None:
        while not self.is_full:
            sender = _first_live(self._senders)
            if sender is None:
                return
            self.messages.append(sender.payload)
            sender.future.set_result(None)

    def release_core(self, core: int) -> int:
        return _cancel_core(self._senders, core) + _cancel_core(self._receivers, core)


# ============================================================================
# Semaphore
# ============================================================================

class HardwareSemaphore:
    """Counting semaphore with FIFO wakeup and a configured maximum"""

    def __init__(self, config: SemaphoreConfig, metrics: SyncMetrics, health: HealthMonitor):
        self.semaphore_id = config.semaphore_id
        self.maximum = config.maximum
        self.count = config.initial
        self.holders: Counter = Counter()
        self._waiters: Deque[_Waiter] = deque()
        self._metrics = metrics
        self._health = health

    @property
    def waiting(self) -> List[int]:
        return [w.core for w in self._waiters if not w.future.done()]

    def try_acquire(self, core: int) -> bool:
        if self.count > 0 and not self.waiting:
            self.count -= 1
            self.holders[core] += 1
            self._metrics.acquires += 1
            return True
        return False

    async def acquire(self, core: int) -> None:
        """Decrement the count, suspending at zero"""
        if self.try_acquire(core):
            return

        self._metrics.blocked_acquires += 1
        waiter = _Waiter(core, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Unit was granted before the cancel landed; hand it on
                self.holders[core] -= 1
                if self.holders[core] <= 0:
                    del self.holders[core]
                self._hand_over_unit()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            self._metrics.cancelled_waits += 1
            raise
        self._metrics.acquires += 1

    def release(self, core: int) -> None:
        """Increment the count or wake the oldest waiter"""
        if not self.waiting and self.count >= self.maximum:
            raise self._health.report("sync_unit", SyncPrimitiveMisuse(
                f"Semaphore {self.semaphore_id} released by core {core} "
                f"past its maximum of {self.maximum}",
                {"semaphore": self.semaphore_id, "core": core, "count": self.count},
            ))

        # Return the caller's unit, or the oldest outstanding one
        holder = core if self.holders.get(core) else next(iter(self.holders), None)
        if holder is not None:
            self.holders[holder] -= 1
            if self.holders[holder] <= 0:
                del self.holders[holder]

        self._metrics.releases += 1
        self._hand_over_unit()

    def _hand_over_unit(self) -> None:
        waiter = _first_live(self._waiters)
        if waiter is not None:
            self.holders[waiter.core] += 1
            waiter.future.set_result(None)
        else:
            self.count += 1

    def release_core(self, core: int) -> int:
        cancelled = _cancel_core(self._waiters, core)
        held = self.holders.pop(core, 0)
        for _ in range(held):
            self._hand_over_unit()
        return cancelled + held


# ============================================================================
# Barrier
# ============================================================================

class HardwareBarrier:
    """
    Barrier over a fixed member set.

    The Nth arrival resets the barrier for the next round and resolves every
    waiter with the same release record inside one synchronous step.
    """

    def __init__(self, config: BarrierConfig, metrics: SyncMetrics, health: HealthMonitor, clock: SimClock):
        self.barrier_id = config.barrier_id
        self.members = frozenset(config.participants)
        self.round = 0
        self._waiting: Dict[int, asyncio.Future] = {}
        self._metrics = metrics
        self._health = health
        self._clock = clock

    @property
    def participants(self) -> int:
        return len(self.members)

    @property
    def arrived(self) -> List[int]:
        return list(self._waiting)

    async def arrive(self, core: int) -> BarrierRelease:
        if core not in self.members:
            raise self._health.report("sync_unit", SyncPrimitiveMisuse(
                f"Core {core} is not a member of barrier {self.barrier_id}",
                {"barrier": self.barrier_id, "core": core},
            ))
        if core in self._waiting:
            raise self._health.report("sync_unit", SyncPrimitiveMisuse(
                f"Core {core} arrived twice at barrier {self.barrier_id} "
                f"in round {self.round}",
                {"barrier": self.barrier_id, "core": core, "round": self.round},
            ))

        self._metrics.barrier_arrivals += 1
        future = asyncio.get_running_loop().create_future()
        self._waiting[core] = future

        if len(self._waiting) == self.participants:
            self._release_round()
            return future.result()

        try:
            return await future
        except asyncio.CancelledError:
            if self._waiting.get(core) is future:
                del self._waiting[core]
            self._metrics.cancelled_waits += 1
            raise

    def _release_round(self) -> None:
        release = BarrierRelease(
            barrier_id=self.barrier_id,
            round=self.round,
            tick=self._clock.now,
            arrivals=tuple(self._waiting),
        )
        waiters = self._waiting
        self._waiting = {}
        self.round += 1
        for future in waiters.values():
            future.set_result(release)
        self._metrics.barrier_releases += 1

    def release_core(self, core: int) -> int:
        future = self._waiting.pop(core, None)
        if future is not None and not future.done():
            future.cancel()
            return 1
        return 0


# ============================================================================
# Main Module Implementation
# ============================================================================

class SyncUnitModule:
    """
    Inter-core synchronization unit for OCTACLUSTER.

    Provides:
    - Mailboxes with blocking send/receive
    - Semaphores with FIFO wakeup
    - Barriers with atomic round release
    - Atomic primitives serialized through the coherence directory
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        memory: Optional[AtomicMemory] = None,
        health: Optional[HealthMonitor] = None,
        clock: Optional[SimClock] = None
    ):
        self.config = config or SyncConfig()
        self.memory = memory
        self.health = health or HealthMonitor()
        self.clock = clock or SimClock()
        self.metrics = SyncMetrics()

        self.mailboxes: Dict[int, Mailbox] = {
            c.channel_id: Mailbox(c.channel_id, c.depth, self.metrics)
            for c in self.config.mailboxes
        }
        self.semaphores: Dict[int, HardwareSemaphore] = {
            c.semaphore_id: HardwareSemaphore(c, self.metrics, self.health)
            for c in self.config.semaphores
        }
        self.barriers: Dict[int, HardwareBarrier] = {
            c.barrier_id: HardwareBarrier(c, self.metrics, self.health, self.clock)
            for c in self.config.barriers
        }
        self._logger = logging.getLogger(__name__)

    def _mailbox(self, channel: int) -> Mailbox:
        if channel not in self.mailboxes:
            raise ValueError(f"Unknown mailbox channel: {channel}")
        return self.mailboxes[channel]

    def _semaphore(self, semaphore_id: int) -> HardwareSemaphore:
        if semaphore_id not in self.semaphores:
            raise ValueError(f"Unknown semaphore: {semaphore_id}")
        return self.semaphores[semaphore_id]

    def _barrier(self, barrier_id: int) -> HardwareBarrier:
        if barrier_id not in self.barriers:
            raise ValueError(f"Unknown barrier: {barrier_id}")
        return self.barriers[barrier_id]

    async def send(self, core: int, channel: int, message: Any) -> None:
        await self._mailbox(channel).send(core, message)

    async def receive(self, core: int, channel: int) -> Any:
        return await self._mailbox(channel).receive(core)

    async def acquire(self, core: int, semaphore_id: int) -> None:
        await self._semaphore(semaphore_id).acquire(core)

    def try_acquire(self, core: int, semaphore_id: int) -> bool:
        return self._semaphore(semaphore_id).try_acquire(core)

    def release(self, core: int, semaphore_id: int) -> None:
        self._semaphore(semaphore_id).release(core)

    async def arrive(self, barrier_id: int, core: int) -> BarrierRelease:
        return await self._barrier(barrier_id).arrive(core)

    async def compare_and_swap(
        self,
        core: int,
        address: int,
        expected: int,
        new: int,
        asid: int = 0
    ) -> Tuple[bool, int]:
        if self.memory is None:
            raise ValueError("No coherent memory attached for atomics")
        self.metrics.atomics += 1
        return await self.memory.compare_and_swap(core, address, expected, new, asid)

    async def fetch_and_add(self, core: int, address: int, delta: int, asid: int = 0) -> int:
        if self.memory is None:
            raise ValueError("No coherent memory attached for atomics")
        self.metrics.atomics += 1
        return await self.memory.fetch_and_add(core, address, delta, asid)

    def release_core(self, core: int) -> Dict[str, int]:
        """Drop every wait and semaphore unit belonging to a reset core"""
        released = {
            "mailbox_waits": sum(m.release_core(core) for m in self.mailboxes.values()),
            "semaphore_units": sum(s.release_core(core) for s in self.semaphores.values()),
            "barrier_arrivals": sum(b.release_core(core) for b in self.barriers.values()),
        }
        if any(released.values()):
            self._logger.info(f"Released sync state of core {core}: {released}")
        return released

    def get_state(self) -> Dict[str, Any]:
        return {
            "mailboxes": {
                cid: {"depth": m.depth, "queued": len(m.messages), "full": m.is_full, "empty": m.is_empty}
                for cid, m in self.mailboxes.items()
            },
            "semaphores": {
                sid: {"count": s.count, "maximum": s.maximum, "waiting": s.waiting}
                for sid, s in self.semaphores.items()
            },
            "barriers": {
                bid: {"participants": b.participants, "arrived": b.arrived, "round": b.round}
                for bid, b in self.barriers.items()
            },
        }

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "sends": m.sends,
            "receives": m.receives,
            "blocked_sends": m.blocked_sends,
            "blocked_receives": m.blocked_receives,
            "acquires": m.acquires,
            "blocked_acquires": m.blocked_acquires,
            "releases": m.releases,
            "barrier_arrivals": m.barrier_arrivals,
            "barrier_releases": m.barrier_releases,
            "atomics": m.atomics,
            "cancelled_waits": m.cancelled_waits,
        }
