"""
Convergence engine and the Profile/Contributor reconcilers built on it.

Each reconciler is an ordered list of named, idempotent upsert steps assembled once per
configuration; disabled features contribute a no-op step.
"""

from profile_manager.controller.contributor import ContributorReconciler
from profile_manager.controller.engine import Reconciler, ReconcileOutcome, Step, nop_step, run_steps
from profile_manager.controller.profile import ProfileReconciler
from profile_manager.controller.upsert import OperationResult

__all__ = [
    "ContributorReconciler",
    "OperationResult",
    "ProfileReconciler",
    "ReconcileOutcome",
    "Reconciler",
    "Step",
    "nop_step",
    "run_steps",
]
