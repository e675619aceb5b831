"""
Shared pytest fixtures for OCTACLUSTER tests
"""

from typing import AsyncGenerator

import pytest

from octacluster.coherence_engine.cache_directory_module import CoherenceProtocol
from octacluster.platform_services.cluster_module import ClusterSystem, default_cluster_config
from octacluster.platform_services.monitoring_module import HealthMonitor, SimClock, TraceBus


@pytest.fixture
def clock() -> SimClock:
    return SimClock()


@pytest.fixture
def health(clock) -> HealthMonitor:
    return HealthMonitor(clock)


@pytest.fixture
def trace() -> TraceBus:
    return TraceBus()


@pytest.fixture
async def cluster() -> AsyncGenerator[ClusterSystem, None]:
    """
    Initialized default cluster (MOESI).
    Shut down after the test completes.
    """
    system = ClusterSystem(default_cluster_config())
    await system.initialize()
    yield system
    await system.shutdown()


@pytest.fixture
async def mesi_cluster() -> AsyncGenerator[ClusterSystem, None]:
    system = ClusterSystem(default_cluster_config(CoherenceProtocol.MESI))
    await system.initialize()
    yield system
    await system.shutdown()
