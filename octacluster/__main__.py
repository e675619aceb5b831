"""
Command-line interface for the OCTACLUSTER model
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from octacluster import get_version
from octacluster.coherence_engine.cache_directory_module import CoherenceProtocol
from octacluster.platform_services.cluster_module import (
    ClusterConfig,
    ClusterSettings,
    ClusterSystem,
    default_cluster_config,
    load_cluster_config,
)
from octacluster.platform_services.workload_module import (
    WorkloadConfig,
    WorkloadGenerator,
    replay_sequential,
    run_concurrent,
)


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def load_config(config_path: Optional[Path], protocol: CoherenceProtocol) -> ClusterConfig:
    """Load configuration from a JSON file, or build the default topology"""
    if not config_path:
        return default_cluster_config(protocol)
    return load_cluster_config(str(config_path))


async def run_workload(
    config: ClusterConfig,
    workload: WorkloadConfig,
    concurrent: bool
) -> Dict[str, Any]:
    """Run one seeded workload and verify it against the reference executor"""
    logger = logging.getLogger(__name__)
    logger.info(f"Starting OCTACLUSTER model v{get_version()}")

    ops = WorkloadGenerator(workload).generate()
    cluster = ClusterSystem(config)
    await cluster.initialize()

    try:
        if concurrent:
            result = await run_concurrent(cluster, ops)
        else:
            result = await replay_sequential(cluster, ops)

        violations = cluster.check_invariants()
        logger.info(
            f"Workload finished: {len(ops)} ops, "
            f"{len(result.mismatches)} mismatches, {len(violations)} invariant violations"
        )
        return {
            "mode": "concurrent" if concurrent else "sequential",
            "operations": len(ops),
            "consistent": result.consistent,
            "mismatches": result.mismatches[:20],
            "invariant_violations": violations,
            "words_in_memory": len(result.memory),
            "metrics": cluster.get_metrics(),
        }
    finally:
        await cluster.shutdown()


def main() -> None:
    """Main entry point"""
    settings = ClusterSettings()

    parser = argparse.ArgumentParser(
        description="OCTACLUSTER coherence and synchronization model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path(settings.config_path) if settings.config_path else None,
        help="Path to a JSON cluster configuration"
    )

    parser.add_argument(
        "--log-level",
        default=settings.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--protocol",
        choices=[p.value for p in CoherenceProtocol],
        default=settings.protocol.value,
        help="Coherence protocol when no config file is given (default: moesi)"
    )

    parser.add_argument("--seed", type=int, default=settings.seed, help="Workload seed")
    parser.add_argument("--ops", type=int, default=settings.workload_ops, help="Workload length")
    parser.add_argument("--lines", type=int, default=settings.workload_lines, help="Lines touched")
    parser.add_argument("--cores", type=int, default=settings.workload_cores, help="Cores issuing requests")

    parser.add_argument(
        "--concurrent",
        action="store_true",
        help="Run each core's stream as its own program instead of replaying one interleaving"
    )

    args = parser.parse_args()

    setup_logging(args.log_level)

    config = load_config(args.config, CoherenceProtocol(args.protocol))
    if args.cores > config.topology.core_count:
        parser.error(f"--cores exceeds the {config.topology.core_count} configured cores")

    workload = WorkloadConfig(
        seed=args.seed,
        operations=args.ops,
        lines=args.lines,
        cores=list(range(args.cores)),
        line_size=config.hierarchy.line_size,
    )

    try:
        report = asyncio.run(run_workload(config, workload, args.concurrent))
    except KeyboardInterrupt:
        return

    print(json.dumps(report, indent=2, default=str))
    if not report["consistent"] or report["invariant_violations"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
