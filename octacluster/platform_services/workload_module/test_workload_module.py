"""
Unit tests for the OCTACLUSTER Workload Module
Requires: pytest
"""

import pytest
from pydantic import ValidationError

from octacluster.platform_services.workload_module import (
    MemoryOp,
    OpKind,
    ReferenceExecutor,
    WorkloadConfig,
    WorkloadGenerator,
    compare_memory,
    final_value_candidates,
)


class TestWorkloadGenerator:
    """Test seeded workload generation"""

    def test_same_seed_same_trace(self):
        config = WorkloadConfig(seed=11, operations=200)
        assert WorkloadGenerator(config).generate() == WorkloadGenerator(config).generate()

    def test_different_seed_different_trace(self):
        first = WorkloadGenerator(WorkloadConfig(seed=1, operations=200)).generate()
        second = WorkloadGenerator(WorkloadConfig(seed=2, operations=200)).generate()
        assert first != second

    def test_addresses_stay_in_region(self):
        config = WorkloadConfig(seed=5, operations=500, lines=8, cores=[0, 1, 4])
        ops = WorkloadGenerator(config).generate()

        assert len(ops) == 500
        limit = config.base_address + config.lines * config.line_size
        for op in ops:
            assert config.base_address <= op.address < limit
            assert op.address % 8 == 0
            assert op.core in (0, 1, 4)

    def test_write_ratio_extremes(self):
        reads = WorkloadGenerator(WorkloadConfig(operations=50, write_ratio=0.0)).generate()
        writes = WorkloadGenerator(WorkloadConfig(operations=50, write_ratio=1.0)).generate()

        assert all(op.kind == OpKind.READ and op.value == 0 for op in reads)
        assert all(op.kind == OpKind.WRITE and op.value > 0 for op in writes)

    def test_region_must_be_aligned(self):
        with pytest.raises(ValidationError):
            WorkloadConfig(base_address=0x10008)


class TestReferenceExecutor:
    """Test the sequentially consistent reference"""

    def test_reads_see_latest_write(self):
        ops = [
            MemoryOp(0, OpKind.READ, 0x100),
            MemoryOp(1, OpKind.WRITE, 0x100, 5),
            MemoryOp(0, OpKind.READ, 0x100),
            MemoryOp(0, OpKind.WRITE, 0x108, 6),
            MemoryOp(1, OpKind.WRITE, 0x100, 7),
            MemoryOp(1, OpKind.READ, 0x100),
        ]
        reference = ReferenceExecutor()

        assert reference.execute(ops) == [0, None, 5, None, None, 7]
        assert reference.snapshot() == {0x100: 7, 0x108: 6}


class TestComparison:
    """Test memory comparison helpers"""

    def test_absent_words_are_zero(self):
        assert compare_memory({0x100: 0, 0x108: 3}, {0x108: 3}) == []

    def test_reports_differences(self):
        mismatches = compare_memory({0x100: 1}, {0x100: 2, 0x108: 4})
        assert len(mismatches) == 2
        assert mismatches[0].startswith("0x100")

    def test_final_value_candidates(self):
        ops = [
            MemoryOp(0, OpKind.WRITE, 0x100, 1),
            MemoryOp(1, OpKind.WRITE, 0x100, 2),
            MemoryOp(0, OpKind.WRITE, 0x100, 3),
            MemoryOp(1, OpKind.READ, 0x108),
        ]
        assert final_value_candidates(ops) == {0x100: {2, 3}}
