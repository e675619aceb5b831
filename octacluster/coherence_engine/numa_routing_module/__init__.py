"""
OCTACLUSTER NUMA Routing Module
================================

Address-to-node resolution with local/remote cost and QoS admission.
"""

from .module import (
    AdmissionTicket,
    NumaConfig,
    NumaNodeConfig,
    NumaRouter,
    QOS_RANK,
    QoSClass,
    RouteInfo,
    RoutingMetrics,
)

__all__ = [
    "AdmissionTicket",
    "NumaConfig",
    "NumaNodeConfig",
    "NumaRouter",
    "QOS_RANK",
    "QoSClass",
    "RouteInfo",
    "RoutingMetrics",
]
