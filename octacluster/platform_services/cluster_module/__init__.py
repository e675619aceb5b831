"""
OCTACLUSTER Cluster Module
===========================

System facade: topology, configuration, core lifecycle and the operation
dispatcher.

Usage:
    cluster = ClusterSystem(default_cluster_config())
    await cluster.initialize()
    await cluster.write(0, 0x1000, 42)
    value = await cluster.read(4, 0x1000)
    await cluster.shutdown()
"""

from .module import (
    ClusterConfig,
    ClusterError,
    ClusterSettings,
    ClusterSystem,
    CoreHandle,
    CoreInfo,
    CoreProgram,
    CoreStatus,
    DmaPortConfig,
    TopologyConfig,
    default_cluster_config,
    load_cluster_config,
)

__all__ = [
    "ClusterConfig",
    "ClusterError",
    "ClusterSettings",
    "ClusterSystem",
    "CoreHandle",
    "CoreInfo",
    "CoreProgram",
    "CoreStatus",
    "DmaPortConfig",
    "TopologyConfig",
    "default_cluster_config",
    "load_cluster_config",
]
