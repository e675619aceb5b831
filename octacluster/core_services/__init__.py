"""
Core Services block

Modules:
  sync_unit_module              - mailboxes, semaphores, barriers, atomics
  interrupt_distributor_module  - priority/affinity interrupt dispatch
"""
