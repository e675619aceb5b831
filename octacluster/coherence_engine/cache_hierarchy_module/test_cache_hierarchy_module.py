"""
Unit tests for the OCTACLUSTER Cache Hierarchy Module
Requires: pytest, pytest-asyncio
"""

import asyncio

import pytest
from pydantic import ValidationError

from octacluster.coherence_engine.cache_directory_module import CoherenceState, LineKey
from octacluster.coherence_engine.cache_hierarchy_module import (
    CacheHierarchyModule,
    HierarchyConfig,
    MemoryRequest,
    WORD_MASK,
)


@pytest.fixture
def hierarchy(health, trace):
    """Four cores: 0/1 in cluster 0 on node 0, 2/3 in cluster 1 on node 1"""
    module = CacheHierarchyModule(HierarchyConfig(l1_lines=4), health=health, trace=trace)
    for core in range(4):
        module.register_requester(core, cluster_id=core // 2, home_node=core // 2)
    return module


class TestConfiguration:
    """Test hierarchy configuration"""

    def test_words_per_line(self):
        assert HierarchyConfig().words_per_line == 8
        assert HierarchyConfig(line_size=128).words_per_line == 16

    def test_line_size_must_be_power_of_two(self):
        with pytest.raises(ValidationError):
            HierarchyConfig(line_size=48)

    def test_register_is_idempotent(self, hierarchy):
        cache = hierarchy.l1[0]
        assert hierarchy.register_requester(0, cluster_id=0, home_node=0) is cache

    @pytest.mark.asyncio
    async def test_unknown_requester(self, hierarchy):
        with pytest.raises(ValueError):
            await hierarchy.read(9, 0x1000)


class TestCoherentAccess:
    """Test reads and writes through the hierarchy"""

    @pytest.mark.asyncio
    async def test_first_read_fills_from_memory(self, hierarchy):
        first = await hierarchy.load(MemoryRequest(requester=0, address=0x1000))
        second = await hierarchy.load(MemoryRequest(requester=0, address=0x1008))

        assert first.level == "memory"
        assert first.state == CoherenceState.EXCLUSIVE
        # L1 + directory + L2/L3/L4 probes + local memory
        assert first.latency == 4.0 + 20.0 + 12.0 + 40.0 + 70.0 + 100.0
        assert second.level == "L1"
        assert second.latency == 4.0

    @pytest.mark.asyncio
    async def test_write_visible_to_other_cluster(self, hierarchy):
        await hierarchy.write(0, 0x1000, 7)
        result = await hierarchy.load(MemoryRequest(requester=2, address=0x1000))

        assert result.data == 7
        assert result.level == "peer"
        assert result.state == CoherenceState.SHARED
        entry = hierarchy.directory.get_entry(LineKey(0, 0x1000))
        assert entry.state == CoherenceState.OWNED
        assert entry.owner == 0

    @pytest.mark.asyncio
    async def test_write_after_share_invalidates_readers(self, hierarchy):
        await hierarchy.write(0, 0x1000, 1)
        assert await hierarchy.read(1, 0x1000) == 1
        assert await hierarchy.read(2, 0x1000) == 1

        await hierarchy.write(3, 0x1000, 2)

        for core in (0, 1, 2):
            assert hierarchy.l1[core].line_state(LineKey(0, 0x1000)) == CoherenceState.INVALID
            assert await hierarchy.read(core, 0x1000) == 2

    @pytest.mark.asyncio
    async def test_upgrade_from_shared(self, hierarchy):
        await hierarchy.read(0, 0x1000)
        await hierarchy.read(1, 0x1000)
        await hierarchy.write(0, 0x1000, 5)

        assert hierarchy.metrics.upgrades == 1
        assert hierarchy.l1[0].line_state(LineKey(0, 0x1000)) == CoherenceState.MODIFIED
        assert hierarchy.l1[1].line_state(LineKey(0, 0x1000)) == CoherenceState.INVALID

    @pytest.mark.asyncio
    async def test_unaligned_address_rejected(self, hierarchy):
        with pytest.raises(ValueError):
            await hierarchy.read(0, 0x1004)

    @pytest.mark.asyncio
    async def test_value_must_fit_word(self, hierarchy):
        with pytest.raises(ValueError):
            await hierarchy.write(0, 0x1000, 1 << 64)
        with pytest.raises(ValueError):
            await hierarchy.write(0, 0x1000, -1)

    @pytest.mark.asyncio
    async def test_remote_access_annotated(self, hierarchy):
        remote_address = (1 << 31) + 0x40
        result = await hierarchy.load(MemoryRequest(requester=0, address=remote_address))
        assert result.node_id == 1
        assert result.is_remote

        local = await hierarchy.load(MemoryRequest(requester=2, address=remote_address))
        assert local.node_id == 1
        assert not local.is_remote

    @pytest.mark.asyncio
    async def test_asids_do_not_alias(self, hierarchy):
        await hierarchy.write(0, 0x1000, 5, asid=1)

        assert await hierarchy.read(1, 0x1000, asid=2) == 0
        assert await hierarchy.read(1, 0x1000, asid=1) == 5

    @pytest.mark.asyncio
    async def test_sequential_reads_see_latest_write(self, hierarchy):
        reference = {}
        for i in range(240):
            core = i % 4
            address = 0x4000 + ((i // 4) % 6) * 64 + ((i // 3) % 8) * 8
            if i % 3:
                value = i * 1000 + core
                await hierarchy.write(core, address, value)
                reference[address] = value
            else:
                assert await hierarchy.read(core, address) == reference.get(address, 0)
        assert hierarchy.directory.check_invariants() == []
        assert hierarchy.metrics.capacity_evictions > 0


class TestLowerLevels:
    """Test L1 capacity and the clean lower levels"""

    @pytest.mark.asyncio
    async def test_capacity_eviction_writes_back(self, hierarchy):
        for i in range(5):
            await hierarchy.write(0, 0x1000 * (i + 1), i + 10)

        assert hierarchy.metrics.capacity_evictions == 1
        assert len(hierarchy.l1[0].lines) == 4
        assert hierarchy.memory_side.memory[LineKey(0, 0x1000)][0] == 10
        assert LineKey(0, 0x1000) not in hierarchy.directory.entries

    @pytest.mark.asyncio
    async def test_lower_levels_hold_memory_copies(self, hierarchy):
        key = LineKey(0, 0x1000)
        await hierarchy.write(0, 0x1000, 9)
        assert await hierarchy.evict(0, 0x1000)

        side = hierarchy.memory_side
        assert side.memory[key][0] == 9
        assert side.l2[0].lines[key] == side.memory[key]
        assert key not in side.l2[1]

        result = await hierarchy.load(MemoryRequest(requester=2, address=0x1000))
        assert result.level == "L3"
        assert result.data == 9
        assert side.l2[1].lines[key] == side.memory[key]
        assert side.l4[0].lines[key] == side.memory[key]

    @pytest.mark.asyncio
    async def test_write_back_drops_stale_cluster_copies(self, hierarchy):
        key = LineKey(0, 0x1000)
        await hierarchy.write(2, 0x1000, 1)
        await hierarchy.evict(2, 0x1000)
        assert key in hierarchy.memory_side.l2[1]

        await hierarchy.write(0, 0x1000, 2)
        await hierarchy.evict(0, 0x1000)

        assert key not in hierarchy.memory_side.l2[1]
        assert await hierarchy.read(3, 0x1000) == 2

    @pytest.mark.asyncio
    async def test_evict_not_held(self, hierarchy):
        assert not await hierarchy.evict(0, 0x1000)

    @pytest.mark.asyncio
    async def test_invalidate(self, hierarchy):
        await hierarchy.write(0, 0x1000, 4)
        assert await hierarchy.invalidate(0x1000)

        assert hierarchy.l1[0].line_state(LineKey(0, 0x1000)) == CoherenceState.INVALID
        assert hierarchy.memory_side.memory[LineKey(0, 0x1000)][0] == 4

    @pytest.mark.asyncio
    async def test_flush_all_and_snapshot(self, hierarchy):
        await hierarchy.write(0, 0x1000, 1)
        await hierarchy.write(1, 0x1040, 2)
        await hierarchy.write(2, 0x1048, 3)
        await hierarchy.read(3, 0x1000)

        await hierarchy.flush_all()
        snapshot = hierarchy.memory_snapshot()

        assert snapshot[0x1000] == 1
        assert snapshot[0x1040] == 2
        assert snapshot[0x1048] == 3
        dirty = {CoherenceState.MODIFIED, CoherenceState.OWNED}
        assert all(e.state not in dirty for e in hierarchy.directory.entries.values())

    @pytest.mark.asyncio
    async def test_peek_does_not_change_state(self, hierarchy):
        await hierarchy.write(0, 0x1000, 3)
        assert await hierarchy.peek(0x1000) == 3
        entry = hierarchy.directory.get_entry(LineKey(0, 0x1000))
        assert entry.state == CoherenceState.MODIFIED
        assert entry.owner == 0


class TestIsolatedAccess:
    """Test isolated requests served from private copies"""

    @pytest.mark.asyncio
    async def test_private_copy(self, hierarchy):
        await hierarchy.write(0, 0x2000, 11)

        seeded = await hierarchy.load(MemoryRequest(requester=1, address=0x2000, isolated=True))
        assert seeded.data == 11
        assert seeded.level == "private"

        await hierarchy.store(MemoryRequest(requester=1, address=0x2000, isolated=True), 99)

        assert await hierarchy.read(0, 0x2000) == 11
        again = await hierarchy.load(MemoryRequest(requester=1, address=0x2000, isolated=True))
        assert again.data == 99

        entry = hierarchy.directory.get_entry(LineKey(0, 0x2000))
        assert entry.owner == 0
        assert entry.sharers == []
        assert hierarchy.metrics.isolated_accesses == 3


class TestAtomics:
    """Test atomic read-modify-write operations"""

    @pytest.mark.asyncio
    async def test_compare_and_swap(self, hierarchy):
        await hierarchy.write(0, 0x3000, 5)

        assert await hierarchy.compare_and_swap(1, 0x3000, 5, 6) == (True, 5)
        assert await hierarchy.compare_and_swap(2, 0x3000, 5, 7) == (False, 6)
        assert await hierarchy.read(3, 0x3000) == 6

    @pytest.mark.asyncio
    async def test_fetch_and_add_wraps(self, hierarchy):
        await hierarchy.write(0, 0x3000, WORD_MASK)

        assert await hierarchy.fetch_and_add(1, 0x3000, 1) == WORD_MASK
        assert await hierarchy.read(2, 0x3000) == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments(self, hierarchy):
        async def worker(core):
            for _ in range(25):
                await hierarchy.fetch_and_add(core, 0x3000, 1)

        await asyncio.gather(*(worker(core) for core in range(4)))

        assert await hierarchy.read(0, 0x3000) == 100
        assert hierarchy.metrics.atomics == 100
        assert hierarchy.directory.check_invariants() == []


class TestMetrics:
    """Test metrics reporting"""

    @pytest.mark.asyncio
    async def test_metrics(self, hierarchy):
        await hierarchy.write(0, 0x1000, 1)
        await hierarchy.read(0, 0x1000)
        await hierarchy.read(1, 0x1000)

        metrics = hierarchy.get_metrics()
        assert metrics["reads"] == 2
        assert metrics["writes"] == 1
        assert metrics["l1_read_hits"] == 1
        assert metrics["fill_sources"]["L1"] == 1
        assert set(metrics["latency"]) == {"mean", "p50", "p99", "max"}
        assert "L3" in metrics["levels"]

        core_metrics = hierarchy.get_metrics(0)
        assert core_metrics["resident_lines"] == 1
        assert core_metrics["outstanding"] is None
        assert "error" in hierarchy.get_metrics(42)
