"""
KV Operator Configuration Settings

This module contains all configuration constants for the operator process.
Values come from the environment so the same image can be tuned per
deployment; command line flags in server.py override them.
"""

import os
from dataclasses import dataclass


# Custom resource identity
API_GROUP = "kv-operator.io"
API_VERSION = "v1alpha1"
RESOURCE_PLURAL = "kvclusters"
RESOURCE_KIND = "KVCluster"
OPERATOR_NAME = "kv-operator"

# Hash slot space shared by every cluster node
TOTAL_SLOTS = 16384

# Labels stamped on every pod and service the operator owns
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_CLUSTER_ID = "kv-operator.io/cluster-id"
LABEL_CLUSTER_NAME = "kv-operator.io/cluster-name"
LABEL_POD_NAME = "kv-operator.io/pod-name"

# Condition types and values
CONDITION_INITIALIZED = "Initialized"
CONDITION_SCALING = "Scaling"
STATUS_TRUE = "True"
STATUS_FALSE = "False"
SCALING_UP_REASON = "ScalingUp"
SCALING_UP_MESSAGE = "cluster needs more pods"
SCALING_DOWN_REASON = "ScalingDown"
SCALING_DOWN_MESSAGE = "cluster needs less pods"
INITIALIZING_REASON = "Initializing"
INITIALIZING_MESSAGE = "cluster is being initialized"
INITIALIZED_REASON = "Initialized"
INITIALIZED_MESSAGE = "cluster has been initialized"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class Settings:
    """Operator configuration settings."""

    # Watch scope ("" watches every namespace)
    NAMESPACE: str = os.environ.get("KV_OPERATOR_NAMESPACE", "")

    # Cluster node settings
    NODE_PORT: int = int(os.environ.get("KV_OPERATOR_NODE_PORT", "6379"))
    CLUSTER_DOMAIN: str = os.environ.get("KV_OPERATOR_CLUSTER_DOMAIN", "cluster.local")
    IMAGE: str = os.environ.get("KV_OPERATOR_IMAGE", "ghcr.io/microsoft/garnet:latest")
    TOTAL_SLOTS: int = TOTAL_SLOTS

    # Node command settings
    COMMAND_TIMEOUT: float = float(os.environ.get("KV_OPERATOR_COMMAND_TIMEOUT", "10"))
    REPLICATE_RETRY_ATTEMPTS: int = 10
    REPLICATE_RETRY_DELAY: float = 1.0
    MIGRATE_TIMEOUT_MS: int = int(os.environ.get("KV_OPERATOR_MIGRATE_TIMEOUT_MS", "30000"))
    MIGRATION_SETTLE_DELAY: float = float(os.environ.get("KV_OPERATOR_MIGRATION_SETTLE_DELAY", "5"))

    # Reconcile settings
    READINESS_TIMEOUT: float = float(os.environ.get("KV_OPERATOR_READINESS_TIMEOUT", "30"))
    MAX_CONCURRENT_RECONCILES: int = int(os.environ.get("KV_OPERATOR_MAX_CONCURRENT_RECONCILES", "10"))
    REQUEUE_MIN_DELAY: float = 10.0
    REQUEUE_MAX_DELAY: float = 60.0

    # Logging settings
    DEBUG: bool = _env_bool("KV_OPERATOR_DEBUG")
    LOG_LEVEL: str = os.environ.get("KV_OPERATOR_LOG_LEVEL", "INFO")


# Global settings instance
settings = Settings()
