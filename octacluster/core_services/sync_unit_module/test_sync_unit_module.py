"""
Unit tests for the OCTACLUSTER Synchronization Unit Module
Requires: pytest, pytest-asyncio
"""

import asyncio

import pytest
from pydantic import ValidationError

from octacluster.coherence_engine.cache_hierarchy_module import CacheHierarchyModule
from octacluster.core_services.sync_unit_module import (
    BarrierConfig,
    MailboxConfig,
    SemaphoreConfig,
    SyncConfig,
    SyncUnitModule,
)
from octacluster.platform_services.monitoring_module import SyncPrimitiveMisuse

A, B, C = 0, 1, 2


@pytest.fixture
def sync(health, clock):
    config = SyncConfig(
        mailboxes=[MailboxConfig(channel_id=0, depth=4)],
        semaphores=[
            SemaphoreConfig(semaphore_id=0, initial=1, maximum=1),
            SemaphoreConfig(semaphore_id=1, initial=0, maximum=2),
        ],
        barriers=[BarrierConfig(barrier_id=0, participants=[A, B, C])],
    )
    return SyncUnitModule(config, health=health, clock=clock)


class TestConfiguration:
    """Test sync configuration validation"""

    def test_initial_above_maximum(self):
        with pytest.raises(ValidationError):
            SemaphoreConfig(semaphore_id=0, initial=3, maximum=2)

    def test_duplicate_participants(self):
        with pytest.raises(ValidationError):
            BarrierConfig(barrier_id=0, participants=[1, 1, 2])

    @pytest.mark.asyncio
    async def test_unknown_primitives(self, sync):
        with pytest.raises(ValueError):
            await sync.send(0, 9, "x")
        with pytest.raises(ValueError):
            await sync.acquire(0, 9)
        with pytest.raises(ValueError):
            await sync.arrive(9, 0)


class TestMailbox:
    """Test bounded mailbox semantics"""

    @pytest.mark.asyncio
    async def test_fifth_send_waits_for_receive(self, sync):
        mailbox = sync.mailboxes[0]
        for message in range(4):
            await sync.send(A, 0, message)
        assert mailbox.is_full

        fifth = asyncio.create_task(sync.send(A, 0, 4))
        await asyncio.sleep(0)
        assert not fifth.done()
        assert mailbox.blocked_senders == 1

        assert await sync.receive(B, 0) == 0
        await fifth

        received = [await sync.receive(B, 0) for _ in range(4)]
        assert received == [1, 2, 3, 4]
        assert mailbox.is_empty
        assert sync.metrics.blocked_sends == 1

    @pytest.mark.asyncio
    async def test_receive_waits_for_send(self, sync):
        receiver = asyncio.create_task(sync.receive(B, 0))
        await asyncio.sleep(0)
        assert not receiver.done()

        await sync.send(A, 0, "hello")
        assert await receiver == "hello"
        assert sync.mailboxes[0].is_empty

    @pytest.mark.asyncio
    async def test_receivers_served_in_order(self, sync):
        first = asyncio.create_task(sync.receive(B, 0))
        second = asyncio.create_task(sync.receive(C, 0))
        await asyncio.sleep(0)

        await sync.send(A, 0, "one")
        await sync.send(A, 0, "two")

        assert await first == "one"
        assert await second == "two"

    @pytest.mark.asyncio
    async def test_cancelled_sender_message_dropped(self, sync):
        for message in range(4):
            await sync.send(A, 0, message)
        blocked = asyncio.create_task(sync.send(A, 0, "late"))
        await asyncio.sleep(0)

        blocked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await blocked

        received = [await sync.receive(B, 0) for _ in range(4)]
        assert received == [0, 1, 2, 3]
        assert sync.mailboxes[0].is_empty

    @pytest.mark.asyncio
    async def test_cancelled_receive_passes_message_on(self, sync):
        first = asyncio.create_task(sync.receive(B, 0))
        second = asyncio.create_task(sync.receive(C, 0))
        await asyncio.sleep(0)

        await sync.send(A, 0, "x")
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        assert await second == "x"
        assert sync.mailboxes[0].is_empty

    @pytest.mark.asyncio
    async def test_cancelled_receive_requeues_at_head(self, sync):
        mailbox = sync.mailboxes[0]
        receiver = asyncio.create_task(sync.receive(B, 0))
        await asyncio.sleep(0)

        await sync.send(A, 0, "x")
        for message in range(4):
            await sync.send(A, 0, message)
        receiver.cancel()
        with pytest.raises(asyncio.CancelledError):
            await receiver

        assert len(mailbox.messages) == mailbox.depth + 1
        blocked = asyncio.create_task(sync.send(A, 0, "late"))
        await asyncio.sleep(0)
        assert not blocked.done()

        received = [await sync.receive(C, 0) for _ in range(5)]
        assert received == ["x", 0, 1, 2, 3]
        await blocked
        assert await sync.receive(C, 0) == "late"
        assert mailbox.is_empty


class TestSemaphore:
    """Test counting semaphore semantics"""

    @pytest.mark.asyncio
    async def test_fifo_wakeup(self, sync):
        semaphore = sync.semaphores[0]
        await sync.acquire(A, 0)
        assert semaphore.count == 0

        order = []

        async def waiter(core):
            await sync.acquire(core, 0)
            order.append(core)

        tasks = [asyncio.create_task(waiter(core)) for core in (C, B)]
        await asyncio.sleep(0)
        assert semaphore.waiting == [C, B]

        sync.release(A, 0)
        await asyncio.sleep(0)
        assert order == [C]
        assert semaphore.count == 0

        sync.release(C, 0)
        await asyncio.gather(*tasks)
        assert order == [C, B]

        sync.release(B, 0)
        assert semaphore.count == 1

    @pytest.mark.asyncio
    async def test_count_never_negative(self, sync):
        assert sync.try_acquire(A, 0)
        assert not sync.try_acquire(B, 0)
        assert sync.semaphores[0].count == 0

    @pytest.mark.asyncio
    async def test_release_past_maximum_is_fatal(self, sync, health):
        with pytest.raises(SyncPrimitiveMisuse):
            sync.release(A, 0)
        assert health.fatal_count == 1
        assert sync.semaphores[0].count == 1

    @pytest.mark.asyncio
    async def test_signal_without_acquire(self, sync):
        sync.release(A, 1)
        sync.release(A, 1)
        assert sync.semaphores[1].count == 2
        with pytest.raises(SyncPrimitiveMisuse):
            sync.release(A, 1)

    @pytest.mark.asyncio
    async def test_cancelled_waiter(self, sync):
        await sync.acquire(A, 0)
        waiter = asyncio.create_task(sync.acquire(B, 0))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        sync.release(A, 0)
        assert sync.semaphores[0].count == 1
        assert sync.semaphores[0].waiting == []


class TestBarrier:
    """Test barrier release semantics"""

    @pytest.mark.asyncio
    async def test_release_on_last_arrival(self, sync, clock):
        b_task = asyncio.create_task(sync.arrive(0, B))
        await asyncio.sleep(0)
        c_task = asyncio.create_task(sync.arrive(0, C))
        await asyncio.sleep(0)
        clock.advance(3)
        await asyncio.sleep(0)

        assert not b_task.done()
        assert not c_task.done()
        assert sync.barriers[0].arrived == [B, C]

        a_release = await sync.arrive(0, A)
        await asyncio.sleep(0)

        assert b_task.done() and c_task.done()
        assert b_task.result() is a_release
        assert c_task.result() is a_release
        assert a_release.arrivals == (B, C, A)
        assert a_release.round == 0
        assert a_release.tick == 3
        assert sync.barriers[0].arrived == []
        assert sync.barriers[0].round == 1

    @pytest.mark.asyncio
    async def test_barrier_is_reusable(self, sync):
        for expected_round in range(2):
            releases = await asyncio.gather(*(sync.arrive(0, core) for core in (A, B, C)))
            assert {r.round for r in releases} == {expected_round}
        assert sync.metrics.barrier_releases == 2

    @pytest.mark.asyncio
    async def test_non_member_is_fatal(self, sync, health):
        with pytest.raises(SyncPrimitiveMisuse):
            await sync.arrive(0, 7)
        assert health.fatal_count == 1

    @pytest.mark.asyncio
    async def test_double_arrival_is_fatal(self, sync):
        first = asyncio.create_task(sync.arrive(0, B))
        await asyncio.sleep(0)

        with pytest.raises(SyncPrimitiveMisuse):
            await sync.arrive(0, B)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert sync.barriers[0].arrived == []


class TestCoreRelease:
    """Test releasing the sync state of a reset core"""

    @pytest.mark.asyncio
    async def test_release_core(self, sync):
        await sync.acquire(A, 0)
        waiter = asyncio.create_task(sync.acquire(B, 0))
        arrival = asyncio.create_task(sync.arrive(0, A))
        await asyncio.sleep(0)

        released = sync.release_core(A)
        await waiter

        assert released["semaphore_units"] == 1
        assert released["barrier_arrivals"] == 1
        assert sync.semaphores[0].holders[B] == 1
        with pytest.raises(asyncio.CancelledError):
            await arrival


class TestAtomics:
    """Test atomics delegated to coherent memory"""

    @pytest.mark.asyncio
    async def test_atomics_through_hierarchy(self, health):
        hierarchy = CacheHierarchyModule(health=health)
        for core in range(2):
            hierarchy.register_requester(core, cluster_id=0, home_node=0)
        sync = SyncUnitModule(SyncConfig(), memory=hierarchy, health=health)

        assert await sync.fetch_and_add(0, 0x100, 5) == 0
        assert await sync.compare_and_swap(1, 0x100, 5, 9) == (True, 5)
        assert await hierarchy.read(0, 0x100) == 9
        assert sync.metrics.atomics == 2

    @pytest.mark.asyncio
    async def test_atomics_need_memory(self, sync):
        with pytest.raises(ValueError):
            await sync.fetch_and_add(0, 0x100, 1)
