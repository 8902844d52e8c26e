"""
KV Operator - control loop for sharded, replicated key-value clusters.

Turns a declarative "N primaries x R replicas" resource into a running,
correctly partitioned and replicated set of cluster nodes.
"""

__version__ = "1.0.0"
