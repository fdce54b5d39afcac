"""Reconciliation of push payments.

This module learns the outcome of pending STK push transactions and
records it exactly once.

Features:
- Live change feed raced against a bounded poll of the ledger
- A single finalizer that owns every terminal transition
- Payer-facing flow states for UI adapters
- On-demand provider verification and sweeps of stale pending payments
"""

from .models import (
    PaymentUIState,
    ReportSource,
    ResultReport,
    LedgerView,
    FinalizeAction,
    FinalizeDecision,
    FinalizeOutcome,
    TransactionStatusView,
    ReconciliationOutcome,
    SweepRecord,
    SweepReport,
)
from .feed import ChangeFeed, Subscription
from .finalizer import Finalizer, decide
from .engine import ReconciliationEngine, WatchState, TIMEOUT_MESSAGE
from .flow import PaymentFlow, InvalidTransitionError
from .verifier import OnDemandVerifier

__all__ = [
    # Models
    "PaymentUIState",
    "ReportSource",
    "ResultReport",
    "LedgerView",
    "FinalizeAction",
    "FinalizeDecision",
    "FinalizeOutcome",
    "TransactionStatusView",
    "ReconciliationOutcome",
    "SweepRecord",
    "SweepReport",
    # Core components
    "ChangeFeed",
    "Subscription",
    "Finalizer",
    "decide",
    "ReconciliationEngine",
    "WatchState",
    "TIMEOUT_MESSAGE",
    "PaymentFlow",
    "InvalidTransitionError",
    "OnDemandVerifier",
]
