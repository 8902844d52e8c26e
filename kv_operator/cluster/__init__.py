"""
Cluster module for the KV operator.

This module provides:
- The tracked node/cluster model and role state machine
- Desired state (spec) and persisted status documents
- Slot partitioning and migration planning
"""

from .models import (
    Cluster,
    ClusterSpec,
    ClusterStatus,
    Condition,
    ManagedCluster,
    Node,
    Role,
)
from .slots import SlotMigration, SlotRange, assign_targets, compress_slots, plan_migrations, target_ranges

__all__ = [
    "Cluster",
    "ClusterSpec",
    "ClusterStatus",
    "Condition",
    "ManagedCluster",
    "Node",
    "Role",
    "SlotMigration",
    "SlotRange",
    "assign_targets",
    "compress_slots",
    "plan_migrations",
    "target_ranges",
]
