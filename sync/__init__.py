"""
Sync package: ledger client and completion reconciliation.

Provides AdEarnLedger for catalog, quota and claims, and
CompletionReconciler for delivering claims with bounded retries.
"""

from sync.ledger_client import AdEarnLedger
from sync.reconciler import CompletionReconciler

__all__ = ["AdEarnLedger", "CompletionReconciler"]
