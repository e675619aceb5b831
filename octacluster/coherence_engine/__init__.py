"""
Coherence Engine block

Modules:
  cache_directory_module  - authoritative per-line coherence state
  cache_hierarchy_module  - L1/L2/L3/L4 cache controllers
  numa_routing_module     - address-to-node routing and QoS admission
"""
