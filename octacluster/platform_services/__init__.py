"""
Platform Services block

Modules:
  monitoring_module  - faults, health monitor, trace bus, logical clock
  cluster_module     - system facade and configuration
  workload_module    - workloads and the reference executor
"""
