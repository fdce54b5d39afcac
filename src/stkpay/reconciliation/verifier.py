"""On-demand verification of aggregator payments and sweeps of pending ones."""

import uuid
import logging
from datetime import datetime, timedelta
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..connectors import ConnectorBase, ProviderResult
from ..credentials import CredentialService
from ..database import (
    ProviderKind,
    Transaction,
    TransactionEventRepository,
    TransactionEventType,
    TransactionRepository,
    session_scope,
)
from ..errors import (
    StkPayError,
    TransactionNotFoundError,
    UnsupportedProviderError,
    VerificationUnavailableError,
)
from ..vault import CredentialVault
from .feed import ChangeFeed
from .finalizer import Finalizer, outcome_from
from .models import (
    FinalizeOutcome,
    ReportSource,
    ResultReport,
    SweepRecord,
    SweepReport,
    TransactionStatusView,
)

logger = logging.getLogger(__name__)


class OnDemandVerifier:
    """Asks the aggregator provider directly for a payment's status.

    Used when a payer insists they paid but no callback arrived. Each call
    is stateless and safe to run alongside an active watch: the result goes
    through the same ``finalize`` as every other channel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        connectors: Mapping[ProviderKind, ConnectorBase],
        feed: Optional[ChangeFeed] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.connectors = connectors
        self.feed = feed or ChangeFeed()
        self.settings = settings or get_settings()

    async def _locate(
        self,
        repo: TransactionRepository,
        correlation_id: Optional[str],
        reference: Optional[str],
    ) -> Optional[Transaction]:
        if correlation_id:
            txn = await repo.get_pending_by_correlation_id(correlation_id)
            if txn is None:
                txn = await repo.get_by_correlation_id(correlation_id)
            if txn is not None:
                return txn
        if reference:
            txn = await repo.get_latest_by_reference(reference, pending_only=True)
            if txn is None:
                txn = await repo.get_latest_by_reference(reference, pending_only=False)
            return txn
        return None

    async def verify_now(
        self,
        correlation_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> FinalizeOutcome:
        """Query the provider and finalize if it has a verdict.

        Args:
            correlation_id: Provider id of the push request.
            reference: Application reference (``INV-<invoice id>``).

        Returns:
            FinalizeOutcome; ``status`` stays ``pending`` if the provider
            has not settled the payment yet.

        Raises:
            TransactionNotFoundError: If no transaction matches.
            UnsupportedProviderError: If the transaction is not an aggregator one.
            VerificationUnavailableError: If no provider status URL was recorded.
            ConfigurationError: If no aggregator credentials are available.
            VerificationError: If the provider cannot be queried.
        """
        if not correlation_id and not reference:
            raise TransactionNotFoundError("A correlation id or reference is required")

        async with session_scope(self.session_factory) as session:
            repo = TransactionRepository(session)
            txn = await self._locate(repo, correlation_id, reference)
            if txn is None:
                raise TransactionNotFoundError(
                    f"No transaction for {correlation_id or reference}",
                    details={"correlation_id": correlation_id, "reference": reference},
                )
            if txn.is_terminal:
                logger.info(f"Transaction {txn.id} already {txn.status}; no provider query needed")
                return outcome_from(txn)
            if txn.provider != ProviderKind.KOPOKOPO.value:
                raise UnsupportedProviderError(
                    f"Verification is only available for Kopo Kopo payments, not {txn.provider}",
                    details={"transaction_id": txn.id},
                )
            metadata = txn.provider_metadata
            status_url = metadata.get("status_url")
            if not status_url:
                raise VerificationUnavailableError(
                    "No provider status URL was recorded for this payment",
                    details={"transaction_id": txn.id},
                )

            credentials = await CredentialService(
                session, self.vault, self.settings
            ).aggregator_credentials(txn.owner_id)

            attempts = await repo.increment_metadata_counter(
                txn,
                "reconcile_attempts",
                {"last_reconcile_at": datetime.utcnow().isoformat()},
            )
            await TransactionEventRepository(session).record(
                txn.id,
                TransactionEventType.VERIFY_ATTEMPTED.value,
                previous_status=txn.status,
                source=ReportSource.VERIFY.value,
                message=f"attempt {attempts}",
            )
            transaction_id = txn.id

        # No database transaction is held open across the provider call
        connector = self.connectors.get(ProviderKind.KOPOKOPO)
        if connector is None:
            raise UnsupportedProviderError("No Kopo Kopo connector configured")
        result = await connector.fetch_status(status_url, credentials)
        logger.info(
            f"Verification attempt {attempts} for {transaction_id}: "
            f"result code {result.result_code}"
        )
        return await self._apply(transaction_id, result)

    async def _apply(self, transaction_id: str, result: ProviderResult) -> FinalizeOutcome:
        change = None
        async with session_scope(self.session_factory) as session:
            repo = TransactionRepository(session)
            if not result.is_final:
                txn = await repo.get_by_id(transaction_id, refresh=True)
                return outcome_from(txn)

            await repo.record_result(
                transaction_id,
                result.result_code,
                result.result_desc,
                receipt_number=result.receipt_number,
                metadata={"verify_response": result.raw},
            )
            outcome = await Finalizer(session).finalize(transaction_id, ResultReport(
                transaction_id=transaction_id,
                result_code=result.result_code,
                result_desc=result.result_desc,
                receipt_number=result.receipt_number,
                source=ReportSource.VERIFY,
            ))
            txn = await repo.get_by_id(transaction_id, refresh=True)
            if outcome.applied:
                await repo.merge_metadata(txn, {
                    "reconciled": True,
                    "reconciled_at": datetime.utcnow().isoformat(),
                })
                change = TransactionStatusView.from_transaction(txn)

        if change is not None:
            self.feed.publish(change)
        return outcome

    async def sweep(
        self,
        older_than: timedelta = timedelta(minutes=5),
        limit: int = 100,
    ) -> SweepReport:
        """Verify every aggregator transaction left pending longer than ``older_than``.

        Daraja transactions have no status resource to query and are
        reported as skipped.
        """
        report = SweepReport(id=str(uuid.uuid4()))
        cutoff = datetime.utcnow() - older_than
        async with session_scope(self.session_factory) as session:
            pending = await TransactionRepository(session).list_pending(created_before=cutoff, limit=limit)
        report.total_pending = len(pending)

        for txn in pending:
            record = SweepRecord(
                transaction_id=txn.id,
                correlation_id=txn.correlation_id,
                provider=txn.provider,
                status_before=txn.status,
                status_after=txn.status,
            )
            if txn.provider != ProviderKind.KOPOKOPO.value:
                report.total_skipped += 1
                record.error = "no status query for provider"
                report.records.append(record)
                continue
            try:
                outcome = await self.verify_now(correlation_id=txn.correlation_id)
            except StkPayError as e:
                logger.error(f"Sweep could not verify {txn.id}: {e.message}")
                report.total_errors += 1
                record.error = e.kind.value
                report.records.append(record)
                continue
            record.status_after = outcome.status
            if outcome.is_terminal:
                report.total_finalized += 1
            else:
                report.total_still_pending += 1
            report.records.append(record)

        report.completed_at = datetime.utcnow()
        logger.info(
            f"Sweep {report.id}: {report.total_finalized} finalized, "
            f"{report.total_still_pending} still pending, {report.total_errors} errors"
        )
        return report
