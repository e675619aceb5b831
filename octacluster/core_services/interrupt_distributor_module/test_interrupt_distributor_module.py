"""
Unit tests for the OCTACLUSTER Interrupt Distributor Module
Requires: pytest, pytest-asyncio
"""

import asyncio

import pytest
from pydantic import ValidationError

from octacluster.core_services.interrupt_distributor_module import (
    InterruptConfig,
    InterruptDistributorModule,
    InterruptSourceConfig,
)
from octacluster.platform_services.monitoring_module import (
    FaultSeverity,
    InterruptTraceEvent,
)

CORE_CLUSTERS = {core: core // 4 for core in range(8)}


def _distributor(sources, clock, health, trace=None, **overrides):
    config = InterruptConfig(sources=sources, **overrides)
    return InterruptDistributorModule(config, CORE_CLUSTERS, clock=clock, health=health, trace=trace)


@pytest.fixture
def distributor(clock, health, trace):
    sources = [
        InterruptSourceConfig(source_id=1, priority=10, affinity=0),
        InterruptSourceConfig(source_id=2, priority=40, affinity=1),
        InterruptSourceConfig(source_id=3, priority=40, affinity=2),
        InterruptSourceConfig(source_id=4, priority=20, affinity=2, migratable=False),
        InterruptSourceConfig(source_id=5, priority=30, affinity=3, coalesce_window=4),
    ]
    return _distributor(sources, clock, health, trace)


class TestConfiguration:
    """Test interrupt configuration validation"""

    def test_priority_bounds(self):
        InterruptSourceConfig(source_id=0, priority=63, affinity=0)
        with pytest.raises(ValidationError):
            InterruptSourceConfig(source_id=0, priority=64, affinity=0)

    def test_unique_source_ids(self):
        with pytest.raises(ValidationError):
            InterruptConfig(sources=[
                InterruptSourceConfig(source_id=1, priority=1, affinity=0),
                InterruptSourceConfig(source_id=1, priority=2, affinity=1),
            ])

    def test_unknown_affinity_core(self, clock, health):
        with pytest.raises(ValueError):
            _distributor([InterruptSourceConfig(source_id=1, priority=1, affinity=12)], clock, health)

    def test_unknown_source(self, distributor):
        with pytest.raises(ValueError):
            distributor.post(99)

    def test_routing_starts_at_affinity(self, distributor):
        assert distributor.routing == {1: 0, 2: 1, 3: 2, 4: 2, 5: 3}


class TestArbitration:
    """Test priority ordering of pending interrupts"""

    def test_higher_priority_first(self, distributor):
        distributor.post(1)
        distributor.post(2)

        first = distributor.dispatch()
        second = distributor.dispatch()

        assert first.source_id == 2
        assert first.core == 1
        assert second.source_id == 1
        assert second.core == 0
        assert distributor.dispatch() is None

    def test_tie_broken_by_source_id(self, distributor):
        distributor.post(3)
        distributor.post(2)

        assert [d.source_id for d in distributor.dispatch_all()] == [2, 3]

    def test_pending_view(self, distributor):
        distributor.post(1)
        distributor.post(4)
        distributor.post(2)

        assert [p.source_id for p in distributor.pending()] == [2, 4, 1]
        assert distributor.pending_count == 3


class TestCoalescing:
    """Test merging of repeated events from one source"""

    def test_within_window(self, distributor, clock):
        distributor.post(5, payload="a")
        clock.advance(2)
        distributor.post(5, payload="b")
        clock.advance(1)
        distributor.post(5, payload="c")

        assert distributor.pending_count == 1
        delivery = distributor.dispatch()
        assert delivery.count == 3
        assert delivery.payload == "c"
        assert distributor.metrics.coalesced == 2

    def test_window_expires(self, distributor, clock):
        distributor.post(5)
        clock.advance(4)
        distributor.post(5)

        assert distributor.pending_count == 2

    def test_disabled_without_window(self, distributor):
        distributor.post(1)
        distributor.post(1)
        assert distributor.pending_count == 2

    def test_coalesce_limit(self, clock, health):
        source = InterruptSourceConfig(source_id=1, priority=5, affinity=0, coalesce_window=100)
        distributor = _distributor([source], clock, health, coalesce_limit=3)
        for _ in range(5):
            distributor.post(1)

        assert [d.count for d in distributor.dispatch_all()] == [3, 2]

    def test_dispatched_entry_not_reopened(self, distributor):
        distributor.post(5)
        distributor.dispatch()
        distributor.post(5)

        assert distributor.pending_count == 1
        assert distributor.dispatch().count == 1


class TestBackpressure:
    """Test drop-oldest once the pending limit is reached"""

    def test_drop_oldest(self, clock, health):
        sources = [InterruptSourceConfig(source_id=i, priority=i, affinity=0) for i in range(1, 4)]
        distributor = _distributor(sources, clock, health, max_pending=2)

        distributor.post(3)
        distributor.post(1)
        distributor.post(2)

        assert distributor.pending_count == 2
        assert [d.source_id for d in distributor.dispatch_all()] == [2, 1]
        assert distributor.metrics.dropped == 1

        storms = health.faults(FaultSeverity.SOFT)
        assert len(storms) == 1
        assert storms[0].details["dropped_source"] == 3
        assert health.is_healthy

    def test_retired_entries_do_not_accumulate(self, distributor):
        for _ in range(10000):
            distributor.post(1)
            distributor.dispatch()

        assert distributor.pending_count == 0
        assert len(distributor._arrivals) == 0
        assert len(distributor._heap) == 0

    def test_old_entry_behind_busy_source(self, distributor):
        distributor.post(1)
        for _ in range(1000):
            distributor.post(2)
            distributor.dispatch()

        assert distributor.pending_count == 1
        assert len(distributor._arrivals) <= 2
        assert distributor.dispatch().source_id == 1

    def test_drop_storm_keeps_heap_bounded(self, clock, health):
        source = InterruptSourceConfig(source_id=1, priority=1, affinity=0)
        distributor = _distributor([source], clock, health, max_pending=4)
        for _ in range(1000):
            distributor.post(1)

        assert distributor.pending_count == 4
        assert distributor.metrics.dropped == 996
        assert len(distributor._heap) <= 9
        assert len(distributor._arrivals) == 4
        assert len(distributor.dispatch_all()) == 4


class TestMigration:
    """Test load-based migration within a cluster"""

    def test_migrates_to_least_loaded(self, distributor):
        distributor.set_core_load(1, 0.9)
        distributor.set_core_load(0, 0.5)
        distributor.set_core_load(2, 0.2)
        distributor.set_core_load(3, 0.2)

        distributor.post(2)
        delivery = distributor.dispatch()

        assert delivery.core == 2
        assert delivery.migrated
        assert distributor.routing[2] == 2
        assert distributor.metrics.migrations == 1

    def test_stays_below_threshold(self, distributor):
        distributor.set_core_load(1, 0.75)
        distributor.post(2)
        delivery = distributor.dispatch()

        assert delivery.core == 1
        assert not delivery.migrated

    def test_never_crosses_cluster(self, distributor):
        for core in range(4):
            distributor.set_core_load(core, 0.9)
        distributor.set_core_load(1, 1.0)

        distributor.post(2)
        delivery = distributor.dispatch()

        assert delivery.core == 0
        assert CORE_CLUSTERS[delivery.core] == 0

    def test_pinned_source_stays(self, distributor):
        distributor.set_core_load(2, 1.0)
        distributor.post(4)
        delivery = distributor.dispatch()

        assert delivery.core == 2
        assert not delivery.migrated

    def test_pinned_source_on_offline_core(self, distributor, caplog):
        distributor.set_core_available(2, False)
        distributor.post(4)
        with caplog.at_level("DEBUG", logger=distributor._logger.name):
            delivery = distributor.dispatch()

        assert delivery.core == 2
        assert not delivery.migrated
        assert distributor.metrics.offline_deliveries == 1
        assert "offline core 2" in caplog.text

    def test_whole_cluster_offline(self, distributor):
        for core in range(4):
            distributor.set_core_available(core, False)
        distributor.post(2)
        delivery = distributor.dispatch()

        assert delivery.core == 1
        assert distributor.get_metrics()["offline_deliveries"] == 1

    def test_unavailable_core_migrates(self, distributor):
        distributor.set_core_available(0, False)
        distributor.post(1)
        delivery = distributor.dispatch()

        assert delivery.core == 1
        assert distributor.routing[1] == 1

    def test_load_must_be_fraction(self, distributor):
        with pytest.raises(ValueError):
            distributor.set_core_load(0, 1.5)


class TestDelivery:
    """Test core inboxes and message-signaled delivery"""

    @pytest.mark.asyncio
    async def test_wait_interrupt(self, distributor):
        waiter = asyncio.create_task(distributor.wait_interrupt(1))
        await asyncio.sleep(0)
        assert not waiter.done()

        distributor.post(2, payload="dma-done")
        distributor.dispatch()

        delivery = await waiter
        assert delivery.source_id == 2
        assert delivery.payload == "dma-done"

    def test_trace_events(self, distributor, trace):
        distributor.post(2)
        distributor.dispatch()

        events = trace.events(InterruptTraceEvent)
        assert len(events) == 1
        assert events[0].source_id == 2
        assert events[0].target_core == 1

    def test_message_signaled_serialized_per_core(self, distributor, clock):
        first = distributor.post(1, payload=1, target_core=6)
        second = distributor.post(2, payload=2, target_core=6)

        assert first.message_signaled
        assert first.core == 6
        assert second is None
        assert distributor.in_flight(6) is first
        assert distributor.pending_count == 0

        clock.advance(5)
        nxt = distributor.acknowledge(6)
        assert nxt.payload == 2
        assert nxt.tick == 5
        assert distributor.in_flight(6) is nxt

        assert distributor.acknowledge(6) is None
        assert distributor.in_flight(6) is None
        assert distributor.acknowledge(6) is None
        assert distributor.metrics.acknowledged == 2

    def test_reset_core(self, distributor):
        distributor.post(1, target_core=0)
        distributor.post(2, target_core=0)

        assert distributor.reset_core(0) == 1
        replacement = distributor.in_flight(0)
        assert replacement.source_id == 2
        assert distributor.inboxes[0].qsize() == 1

    def test_metrics(self, distributor):
        distributor.set_core_load(1, 0.9)
        distributor.post(2)
        distributor.post(1)
        distributor.dispatch_all()

        metrics = distributor.get_metrics()
        assert metrics["posted"] == 2
        assert metrics["dispatched"] == 2
        assert metrics["migrations"] == 1
        assert metrics["per_core"] == {0: 2}
        assert metrics["routing"][2] == 0
