"""
OCTACLUSTER - Clustered Processor Coherence Model

Functional model of an eight-core clustered processing system: a
hierarchical, NUMA-aware, directory-coherent cache system with hardware
inter-core synchronization and interrupt distribution.

Blocks:
  coherence_engine   - cache directory, cache hierarchy, NUMA routing
  core_services      - synchronization unit, interrupt distributor
  platform_services  - monitoring, cluster facade, workloads

Version: 0.1.0
"""

__version__ = "0.1.0"
__license__ = "MIT"

from octacluster.platform_services.cluster_module import (
    ClusterConfig,
    ClusterSystem,
    default_cluster_config,
)


def get_version() -> str:
    """Get the current version of the cluster model."""
    return __version__


__all__ = [
    "ClusterConfig",
    "ClusterSystem",
    "default_cluster_config",
    "get_version",
]
