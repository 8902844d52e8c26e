"""
Reconcile module for the KV operator.

One pass runs the stages in pipeline.STAGES in order against a
ReconcileContext; every stage commits its status changes before the next.
"""

from .context import ReconcileContext, StatusStore
from .pipeline import STAGES, Reconciler, Stage

__all__ = ["ReconcileContext", "Reconciler", "STAGES", "Stage", "StatusStore"]
