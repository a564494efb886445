"""REEL Engine services."""

from reel_engine.services.bulk import BulkFanOutController
from reel_engine.services.cancellation import CancellationController
from reel_engine.services.reconciler import StatusReconciler, reconcile
from reel_engine.services.submission import JobSubmissionService

__all__ = [
    "BulkFanOutController",
    "CancellationController",
    "StatusReconciler",
    "JobSubmissionService",
    "reconcile",
]
