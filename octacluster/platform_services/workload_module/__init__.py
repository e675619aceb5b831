"""
OCTACLUSTER Workload Module
============================

Seeded workloads, the sequential-consistency reference executor and replay
drivers.
"""

from .module import (
    MemoryOp,
    OpKind,
    ReferenceExecutor,
    WorkloadConfig,
    WorkloadGenerator,
    WorkloadResult,
    compare_memory,
    final_value_candidates,
    replay_sequential,
    run_concurrent,
)

__all__ = [
    "MemoryOp",
    "OpKind",
    "ReferenceExecutor",
    "WorkloadConfig",
    "WorkloadGenerator",
    "WorkloadResult",
    "compare_memory",
    "final_value_candidates",
    "replay_sequential",
    "run_concurrent",
]
