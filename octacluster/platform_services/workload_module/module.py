"""
OCTACLUSTER Workload Module
platform_services/workload_module

Seeded memory-access workloads, a sequential-consistency reference executor
and drivers that replay a workload against the cluster model, either as one
fixed interleaving or as concurrently running core programs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field, model_validator

from octacluster.coherence_engine.cache_hierarchy_module import WORD_SIZE
from octacluster.platform_services.cluster_module import ClusterSystem, CoreHandle

logger = logging.getLogger(__name__)


class OpKind(str, Enum):
    """Memory operation kinds"""
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class MemoryOp:
    """One entry of a workload trace"""
    core: int
    kind: OpKind
    address: int
    value: int = 0


class WorkloadConfig(BaseModel):
    """Shape of a random workload"""
    seed: int = Field(default=42, description="RNG seed")
    operations: int = Field(default=1000, ge=1, description="Trace length")
    cores: List[int] = Field(default_factory=lambda: [0, 1], min_length=1)
    lines: int = Field(default=8, ge=1, description="Distinct cache lines touched")
    line_size: int = Field(default=64, ge=8, description="Line size in bytes")
    base_address: int = Field(default=0x10000, ge=0, description="First line of the region")
    write_ratio: float = Field(default=0.5, ge=0.0, le=1.0, description="Fraction of writes")

    @model_validator(mode="after")
    def validate_region(self) -> "WorkloadConfig":
        if self.base_address % self.line_size:
            raise ValueError("base_address must be line aligned")
        if self.line_size % WORD_SIZE:
            raise ValueError("line_size must be a multiple of the word size")
        return self

    @property
    def words_per_line(self) -> int:
        return self.line_size // WORD_SIZE


@dataclass
class WorkloadResult:
    """Outcome of running a workload"""
    reads: List[Optional[int]] = field(default_factory=list)
    memory: Dict[int, int] = field(default_factory=dict)
    mismatches: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.mismatches


class WorkloadGenerator:
    """Random interleaved read/write streams over a small region"""

    def __init__(self, config: Optional[WorkloadConfig] = None):
        self.config = config or WorkloadConfig()

    def generate(self) -> List[MemoryOp]:
        """The list order is the interleaving; the same seed gives the same trace"""
        cfg = self.config
        rng = np.random.default_rng(cfg.seed)
        n = cfg.operations

        cores = rng.choice(np.array(cfg.cores), size=n)
        writes = rng.random(n) < cfg.write_ratio
        lines = rng.integers(0, cfg.lines, size=n)
        words = rng.integers(0, cfg.words_per_line, size=n)
        values = rng.integers(1, 1 << 62, size=n, dtype=np.int64)

        ops: List[MemoryOp] = []
        for i in range(n):
            address = cfg.base_address + int(lines[i]) * cfg.line_size + int(words[i]) * WORD_SIZE
            ops.append(MemoryOp(
                core=int(cores[i]),
                kind=OpKind.WRITE if writes[i] else OpKind.READ,
                address=address,
                value=int(values[i]) if writes[i] else 0,
            ))
        return ops


class ReferenceExecutor:
    """Sequentially consistent flat memory"""

    def __init__(self):
        self.memory: Dict[int, int] = {}

    def execute(self, ops: List[MemoryOp]) -> List[Optional[int]]:
        """Apply ops in order; returns the value of each read (None for writes)"""
        results: List[Optional[int]] = []
        for op in ops:
            if op.kind == OpKind.WRITE:
                self.memory[op.address] = op.value
                results.append(None)
            else:
                results.append(self.memory.get(op.address, 0))
        return results

    def snapshot(self) -> Dict[int, int]:
        return dict(sorted(self.memory.items()))


def compare_memory(observed: Dict[int, int], expected: Dict[int, int]) -> List[str]:
    """Words that differ; absent words read as zero"""
    mismatches = []
    for address in sorted(set(observed) | set(expected)):
        got = observed.get(address, 0)
        want = expected.get(address, 0)
        if got != want:
            mismatches.append(f"0x{address:x}: model {got}, reference {want}")
    return mismatches


async def replay_sequential(system: ClusterSystem, ops: List[MemoryOp], asid: int = 0) -> WorkloadResult:
    """
    Replay the exact interleaving of a trace, one operation at a time, and
    check every read and the final memory against the reference executor.
    """
    reference = ReferenceExecutor()
    expected_reads = reference.execute(ops)

    result = WorkloadResult()
    for index, op in enumerate(ops):
        if op.kind == OpKind.WRITE:
            await system.write(op.core, op.address, op.value, asid)
            result.reads.append(None)
        else:
            value = await system.read(op.core, op.address, asid)
            result.reads.append(value)
            if value != expected_reads[index]:
                result.mismatches.append(
                    f"op {index}: core {op.core} read 0x{op.address:x} = {value}, "
                    f"reference {expected_reads[index]}"
                )

    await system.flush_all()
    result.memory = system.memory_snapshot(asid)
    result.mismatches.extend(compare_memory(result.memory, reference.snapshot()))
    return result


def final_value_candidates(ops: List[MemoryOp]) -> Dict[int, set]:
    """
    Per word, the values a sequentially consistent run may end with: the last
    write of each core in program order.
    """
    last: Dict[int, Dict[int, int]] = {}
    for op in ops:
        if op.kind == OpKind.WRITE:
            last.setdefault(op.address, {})[op.core] = op.value
    return {address: set(per_core.values()) for address, per_core in last.items()}


async def run_concurrent(system: ClusterSystem, ops: List[MemoryOp], asid: int = 0) -> WorkloadResult:
    """
    Run each core's slice of the trace as its own program and check the final
    memory is one a sequentially consistent execution could produce.
    """
    per_core: Dict[int, List[MemoryOp]] = {}
    for op in ops:
        per_core.setdefault(op.core, []).append(op)

    def program_for(core_ops: List[MemoryOp]):
        async def program(core: CoreHandle) -> List[Optional[int]]:
            reads: List[Optional[int]] = []
            for op in core_ops:
                if op.kind == OpKind.WRITE:
                    await core.write(op.address, op.value, asid)
                    reads.append(None)
                else:
                    reads.append(await core.read(op.address, asid))
            return reads
        return program

    for core, core_ops in per_core.items():
        system.run_program(core, program_for(core_ops))
    outcomes: Dict[int, Any] = await system.wait_programs()

    result = WorkloadResult()
    for core in sorted(per_core):
        result.reads.extend(outcomes[core])

    await system.flush_all()
    result.memory = system.memory_snapshot(asid)

    candidates = final_value_candidates(ops)
    for address, value in result.memory.items():
        allowed = candidates.get(address, {0})
        if value not in allowed:
            result.mismatches.append(f"0x{address:x}: final value {value} written by no core")
    for address in candidates:
        if address not in result.memory:
            result.mismatches.append(f"0x{address:x}: written but never reached memory")

    written = set()
    for op in ops:
        if op.kind == OpKind.WRITE:
            written.add(op.value)
    for value in result.reads:
        if value is not None and value != 0 and value not in written:
            result.mismatches.append(f"read returned {value}, which was never written")
    return result
