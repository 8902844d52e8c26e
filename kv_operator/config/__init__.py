"""Configuration for the KV operator."""

from .settings import Settings, settings

__all__ = ["Settings", "settings"]
