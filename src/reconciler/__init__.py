"""
Reconciler package.

The engine decides, the executor acts, and DeadMansSnitchReconciler ties
them to the store and the monitor client.
"""

from reconciler.base import ReconcilerPlugin, ReconcileRequest, ReconcileResult
from reconciler.deadmanssnitch import DeadMansSnitchReconciler
from reconciler.engine import Action, Decision, Footprint, decide, is_monitorable
from reconciler.executor import ActionExecutor, SyncSetConflictError

__all__ = [
    "Action",
    "ActionExecutor",
    "DeadMansSnitchReconciler",
    "Decision",
    "Footprint",
    "ReconcilerPlugin",
    "ReconcileRequest",
    "ReconcileResult",
    "SyncSetConflictError",
    "decide",
    "is_monitorable",
]
