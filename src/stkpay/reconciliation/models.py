"""Models for payment reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field


class PaymentUIState(str, enum.Enum):
    """States of the payer-facing payment flow."""
    IDLE = "idle"
    SENDING = "sending"
    SENT = "sent"
    VERIFYING = "verifying"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_UI_STATES


TERMINAL_UI_STATES = frozenset({
    PaymentUIState.SUCCESS,
    PaymentUIState.ERROR,
    PaymentUIState.TIMEOUT,
    PaymentUIState.CANCELLED,
})


class ReportSource(str, enum.Enum):
    """Channel a provider result was observed on."""
    FEED = "feed"
    POLL = "poll"
    INVOICE_LOOKUP = "invoice_lookup"
    VERIFY = "verify"
    CALLBACK = "callback"
    SWEEP = "sweep"


class ResultReport(BaseModel):
    """A provider result for one transaction, as seen by a watcher."""
    transaction_id: str = Field(..., description="Ledger transaction ID")
    result_code: int = Field(..., description="Provider result code; 0 means success")
    result_desc: Optional[str] = Field(None, description="Provider description")
    receipt_number: Optional[str] = Field(None, description="Provider receipt on success")
    source: ReportSource = Field(..., description="Channel the result arrived on")
    observed_at: datetime = Field(default_factory=datetime.utcnow)


class LedgerView(BaseModel):
    """The parts of a transaction row ``decide`` looks at."""
    transaction_id: str
    status: str
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None


class FinalizeAction(str, enum.Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    NOOP = "noop"


class FinalizeDecision(BaseModel):
    action: FinalizeAction
    reason: str


class FinalizeOutcome(BaseModel):
    """Result of applying (or skipping) a terminal transition."""
    transaction_id: str = Field(..., description="Ledger transaction ID")
    status: str = Field(..., description="Transaction status after the call")
    result_code: Optional[int] = Field(None, description="Recorded provider result code")
    result_desc: Optional[str] = Field(None, description="Recorded provider description")
    receipt_number: Optional[str] = Field(None, description="Recorded provider receipt")
    applied: bool = Field(default=False, description="True if this call performed the transition")
    payment_id: Optional[str] = Field(None, description="Payment row created by this call")

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"


class TransactionStatusView(BaseModel):
    """Snapshot of a transaction returned by ``poll``."""
    transaction_id: str
    correlation_id: str
    invoice_id: str
    provider: str
    status: str
    amount: int
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, txn: Any) -> "TransactionStatusView":
        return cls(
            transaction_id=txn.id,
            correlation_id=txn.correlation_id,
            invoice_id=txn.invoice_id,
            provider=txn.provider,
            status=txn.status,
            amount=txn.amount,
            result_code=txn.result_code,
            result_desc=txn.result_desc,
            receipt_number=txn.receipt_number,
            updated_at=txn.updated_at,
        )


class ReconciliationOutcome(BaseModel):
    """How a watched payment ended, from the payer's point of view."""
    transaction_id: str = Field(..., description="Ledger transaction ID")
    state: PaymentUIState = Field(..., description="Terminal UI state")
    message: str = Field(..., description="Message to show the payer")
    status: Optional[str] = Field(None, description="Ledger status when the watch ended")
    result_code: Optional[int] = Field(None, description="Provider result code, if known")
    receipt_number: Optional[str] = Field(None, description="Provider receipt on success")
    source: Optional[ReportSource] = Field(None, description="Channel that decided the outcome")
    poll_attempts: int = Field(default=0, description="Polls made before the watch ended")


class SweepRecord(BaseModel):
    """Per-transaction line of a sweep report."""
    transaction_id: str
    correlation_id: str
    provider: str
    status_before: str
    status_after: str
    error: Optional[str] = None


class SweepReport(BaseModel):
    """Summary of a sweep over pending transactions."""
    id: str = Field(..., description="Report ID")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    total_pending: int = Field(default=0)
    total_finalized: int = Field(default=0)
    total_still_pending: int = Field(default=0)
    total_skipped: int = Field(default=0)
    total_errors: int = Field(default=0)
    records: List[SweepRecord] = Field(default_factory=list)

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the report without per-transaction records."""
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "total_pending": self.total_pending,
                "total_finalized": self.total_finalized,
                "total_still_pending": self.total_still_pending,
                "total_skipped": self.total_skipped,
                "total_errors": self.total_errors,
            },
        }

    def to_full_dict(self) -> Dict[str, Any]:
        result = self.to_summary_dict()
        result["records"] = [r.model_dump() for r in self.records]
        return result
