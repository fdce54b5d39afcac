"""The single writer of terminal transaction state."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..connectors import SUCCESS_RESULT_CODE
from ..database import (
    InvoiceRepository,
    OwnershipRepository,
    PaymentRecordRepository,
    Transaction,
    TransactionEventRepository,
    TransactionEventType,
    TransactionRepository,
    TransactionStatus,
)
from ..errors import TransactionNotFoundError
from .models import (
    FinalizeAction,
    FinalizeDecision,
    FinalizeOutcome,
    LedgerView,
    ResultReport,
)

logger = logging.getLogger(__name__)


def decide(view: LedgerView, report: ResultReport) -> FinalizeDecision:
    """Pure decision for a result report against the current ledger row."""
    if view.status != TransactionStatus.PENDING.value:
        return FinalizeDecision(action=FinalizeAction.NOOP, reason=f"already {view.status}")
    if report.result_code == SUCCESS_RESULT_CODE:
        return FinalizeDecision(action=FinalizeAction.COMPLETE, reason="provider reported success")
    return FinalizeDecision(
        action=FinalizeAction.FAIL,
        reason=f"provider reported result code {report.result_code}",
    )


def outcome_from(txn: Transaction, applied: bool = False, payment_id: Optional[str] = None) -> FinalizeOutcome:
    return FinalizeOutcome(
        transaction_id=txn.id,
        status=txn.status,
        result_code=txn.result_code,
        result_desc=txn.result_desc,
        receipt_number=txn.receipt_number,
        applied=applied,
        payment_id=payment_id,
    )


class Finalizer:
    """Applies terminal transitions.

    The transition is a guarded update on ``status = 'pending'``; invoice and
    payment writes happen only when that update wins, inside the caller's
    database transaction. Calling ``finalize`` again for a terminal row is a
    no-op that reports the recorded outcome.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.transactions = TransactionRepository(session)
        self.invoices = InvoiceRepository(session)
        self.ownership = OwnershipRepository(session)
        self.payments = PaymentRecordRepository(session)
        self.events = TransactionEventRepository(session)

    async def finalize(self, transaction_id: str, report: ResultReport) -> FinalizeOutcome:
        """Apply a result report to a transaction.

        Args:
            transaction_id: Transaction to finalize.
            report: Provider result to apply.

        Returns:
            FinalizeOutcome describing the ledger state after the call.

        Raises:
            TransactionNotFoundError: If the transaction does not exist.
        """
        txn = await self.transactions.get_by_id(transaction_id, refresh=True)
        if txn is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")

        view = LedgerView(
            transaction_id=txn.id,
            status=txn.status,
            result_code=txn.result_code,
            result_desc=txn.result_desc,
            receipt_number=txn.receipt_number,
        )
        decision = decide(view, report)
        if decision.action == FinalizeAction.NOOP:
            logger.debug(f"Finalize skipped for {transaction_id}: {decision.reason}")
            return outcome_from(txn)

        new_status = (
            TransactionStatus.COMPLETED
            if decision.action == FinalizeAction.COMPLETE
            else TransactionStatus.FAILED
        )
        receipt = report.receipt_number or txn.receipt_number
        result_desc = report.result_desc or txn.result_desc

        won = await self.transactions.transition(
            transaction_id,
            new_status,
            result_code=report.result_code,
            result_desc=result_desc,
            receipt_number=receipt,
        )
        if not won:
            txn = await self.transactions.get_by_id(transaction_id, refresh=True)
            logger.info(f"Transaction {transaction_id} was finalized concurrently as {txn.status}")
            return outcome_from(txn)

        payment_id = None
        if new_status == TransactionStatus.COMPLETED:
            payment_id = await self._record_payment(txn, receipt)

        await self.events.record(
            transaction_id,
            TransactionEventType.FINALIZED.value,
            previous_status=TransactionStatus.PENDING.value,
            new_status=new_status.value,
            result_code=report.result_code,
            source=report.source.value,
            message=result_desc,
        )
        txn = await self.transactions.get_by_id(transaction_id, refresh=True)
        logger.info(
            f"Finalized transaction {transaction_id} as {new_status.value} "
            f"via {report.source.value}"
        )
        return outcome_from(txn, applied=True, payment_id=payment_id)

    async def _record_payment(self, txn: Transaction, receipt: Optional[str]) -> str:
        await self.invoices.mark_paid(txn.invoice_id, receipt)

        invoice = await self.invoices.get_by_id(txn.invoice_id)
        lease_id = invoice.lease_id if invoice else None
        tenant_id = invoice.tenant_id if invoice else None
        if tenant_id is None and lease_id:
            lease = await self.ownership.get_lease(lease_id)
            tenant_id = lease.tenant_id if lease else None

        payment = await self.payments.create(
            transaction_id=txn.id,
            invoice_id=txn.invoice_id,
            lease_id=lease_id,
            tenant_id=tenant_id,
            owner_id=txn.owner_id,
            amount=txn.amount,
            receipt_number=receipt,
            payment_method="mpesa",
        )
        return payment.id
