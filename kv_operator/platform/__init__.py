"""Platform module: the orchestration API the operator drives."""

from .base import Platform, Pod, Service, desired_services

__all__ = ["Platform", "Pod", "Service", "desired_services"]
