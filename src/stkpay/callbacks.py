"""Provider callback ingestion."""

import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .connectors import ConnectorBase, ProviderResult
from .database import (
    ProviderKind,
    Transaction,
    TransactionEventRepository,
    TransactionEventType,
    TransactionRepository,
    session_scope,
)
from .errors import AmountMismatchError, UnsupportedProviderError
from .phone import mask_phone
from .reconciliation.feed import ChangeFeed
from .reconciliation.finalizer import Finalizer
from .reconciliation.models import (
    FinalizeOutcome,
    ReportSource,
    ResultReport,
    TransactionStatusView,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01


class IngestResult(BaseModel):
    """What happened to one callback."""
    matched: bool
    transaction_id: Optional[str] = None
    correlation_id: Optional[str] = None
    result_code: Optional[int] = None
    outcome: Optional[FinalizeOutcome] = None


class CallbackIngestor:
    """Records provider callbacks against pending transactions.

    A callback first stores the provider result on the pending row, which is
    what live-feed watchers react to, then runs ``finalize`` itself so a
    payment settles even when nobody is watching.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connectors: Mapping[ProviderKind, ConnectorBase],
        feed: Optional[ChangeFeed] = None,
    ):
        self.session_factory = session_factory
        self.connectors = connectors
        self.feed = feed or ChangeFeed()

    async def _match(
        self,
        repo: TransactionRepository,
        provider: ProviderKind,
        result: ProviderResult,
    ) -> Optional[Transaction]:
        if result.correlation_id:
            txn = await repo.get_by_correlation_id(result.correlation_id)
            if txn is not None:
                return txn
        if provider != ProviderKind.KOPOKOPO:
            return None
        if result.reference:
            txn = await repo.get_latest_by_reference(result.reference, pending_only=True)
            if txn is not None:
                return txn
        if result.phone_number and result.amount is not None:
            return await repo.find_pending_by_phone_and_amount(
                result.phone_number, int(round(result.amount))
            )
        return None

    async def ingest(self, provider: ProviderKind, payload: Dict[str, Any]) -> IngestResult:
        """Apply a provider callback.

        Args:
            provider: Provider the callback came from.
            payload: Decoded JSON body.

        Returns:
            IngestResult; ``matched`` is False for callbacks no transaction
            claims, which are acknowledged without writes.

        Raises:
            ValueError: If the payload does not have the provider's shape.
            AmountMismatchError: If a success callback reports a different amount.
        """
        connector = self.connectors.get(provider)
        if connector is None:
            raise UnsupportedProviderError(f"No connector for provider {provider.value}")
        result = connector.parse_callback(payload)

        async with session_scope(self.session_factory) as session:
            repo = TransactionRepository(session)
            txn = await self._match(repo, provider, result)
            if txn is None:
                logger.warning(
                    f"Unmatched {provider.value} callback: correlation {result.correlation_id}, "
                    f"reference {result.reference}, phone {mask_phone(result.phone_number or '')}"
                )
                return IngestResult(matched=False, correlation_id=result.correlation_id)

            transaction_id = txn.id
            if txn.is_terminal:
                logger.info(f"Callback for {transaction_id} arrived after it was {txn.status}")
                return IngestResult(
                    matched=True,
                    transaction_id=transaction_id,
                    correlation_id=txn.correlation_id,
                    result_code=txn.result_code,
                )
            if not result.is_final:
                logger.info(f"Callback for {transaction_id} reports the payment still in flight")
                return IngestResult(matched=True, transaction_id=transaction_id, correlation_id=txn.correlation_id)

            if result.succeeded and result.amount is not None:
                if abs(result.amount - txn.amount) > AMOUNT_TOLERANCE:
                    logger.error(
                        f"Amount mismatch on {transaction_id}: expected {txn.amount}, "
                        f"provider reported {result.amount}"
                    )
                    raise AmountMismatchError(
                        "Callback amount does not match the transaction",
                        details={"transaction_id": transaction_id, "expected": txn.amount, "received": result.amount},
                    )

            recorded = await repo.record_result(
                transaction_id,
                result.result_code,
                result.result_desc,
                receipt_number=result.receipt_number,
                metadata={"callback": result.raw},
            )
            if recorded:
                await TransactionEventRepository(session).record(
                    transaction_id,
                    TransactionEventType.RESULT_RECORDED.value,
                    previous_status=txn.status,
                    result_code=result.result_code,
                    source=ReportSource.CALLBACK.value,
                    message=result.result_desc,
                )
            txn = await repo.get_by_id(transaction_id, refresh=True)
            recorded_view = TransactionStatusView.from_transaction(txn)

        self.feed.publish(recorded_view)

        async with session_scope(self.session_factory) as session:
            outcome = await Finalizer(session).finalize(transaction_id, ResultReport(
                transaction_id=transaction_id,
                result_code=result.result_code,
                result_desc=result.result_desc,
                receipt_number=result.receipt_number,
                source=ReportSource.CALLBACK,
            ))
            final_view = None
            if outcome.applied:
                txn = await TransactionRepository(session).get_by_id(transaction_id, refresh=True)
                final_view = TransactionStatusView.from_transaction(txn)

        if final_view is not None:
            self.feed.publish(final_view)
        logger.info(
            f"Ingested {provider.value} callback for {transaction_id}: "
            f"result code {result.result_code}, status {outcome.status}"
        )
        return IngestResult(
            matched=True,
            transaction_id=transaction_id,
            correlation_id=recorded_view.correlation_id,
            result_code=result.result_code,
            outcome=outcome,
        )
