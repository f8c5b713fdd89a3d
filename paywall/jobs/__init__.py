"""
Background jobs module.
"""

from paywall.jobs.reconcile_fallback_grants import FallbackGrantReconciler, run_reconciliation

__all__ = ["FallbackGrantReconciler", "run_reconciliation"]
