"""Repository layer for ledger persistence operations."""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .models import (
    Owner,
    Property,
    Unit,
    Lease,
    Invoice,
    InvoiceStatus,
    ProcessorConfig,
    PaymentPreference,
    ConfigPreference,
    Transaction,
    TransactionStatus,
    TransactionEvent,
    Payment,
)

logger = logging.getLogger(__name__)

# Pending transactions searched when matching by application reference
REFERENCE_LOOKUP_LIMIT = 10


class OwnershipRepository:
    """Read access to the invoice -> lease -> unit -> property -> owner graph."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return await self.session.get(Invoice, invoice_id)

    async def get_lease(self, lease_id: str) -> Optional[Lease]:
        return await self.session.get(Lease, lease_id)

    async def get_unit(self, unit_id: str) -> Optional[Unit]:
        return await self.session.get(Unit, unit_id)

    async def get_property(self, property_id: str) -> Optional[Property]:
        return await self.session.get(Property, property_id)

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        return await self.session.get(Owner, owner_id)


class InvoiceRepository:
    """Repository for invoice state changes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, invoice_id: str) -> Optional[Invoice]:
        return await self.session.get(Invoice, invoice_id)

    async def mark_paid(
        self,
        invoice_id: str,
        receipt_number: Optional[str],
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """Move an invoice to ``paid`` unless it already is.

        Returns:
            True if this call changed the invoice.
        """
        now = paid_at or datetime.utcnow()
        result = await self.session.execute(
            update(Invoice)
            .where(and_(
                Invoice.id == invoice_id,
                Invoice.status != InvoiceStatus.PAID.value,
            ))
            .values(
                status=InvoiceStatus.PAID.value,
                receipt_number=receipt_number,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info(f"Invoice {invoice_id} marked paid with receipt {receipt_number}")
        return changed


class ProcessorConfigRepository:
    """Repository for owner processor configurations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_owner(self, owner_id: str) -> Optional[ProcessorConfig]:
        result = await self.session.execute(
            select(ProcessorConfig).where(ProcessorConfig.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get_active_for_owner(self, owner_id: str) -> Optional[ProcessorConfig]:
        result = await self.session.execute(
            select(ProcessorConfig).where(and_(
                ProcessorConfig.owner_id == owner_id,
                ProcessorConfig.is_active.is_(True),
            ))
        )
        return result.scalar_one_or_none()

    async def upsert(self, owner_id: str, **fields: Any) -> ProcessorConfig:
        """Create or replace the owner's configuration.

        Args:
            owner_id: Owner the configuration belongs to.
            **fields: Column values to set.

        Returns:
            The saved ProcessorConfig.
        """
        config = await self.get_for_owner(owner_id)
        if config is None:
            config = ProcessorConfig(owner_id=owner_id, **fields)
            self.session.add(config)
            action = "Created"
        else:
            for name, value in fields.items():
                setattr(config, name, value)
            config.updated_at = datetime.utcnow()
            action = "Updated"
        await self.session.flush()
        logger.info(f"{action} {config.processor_kind} processor config for owner {owner_id}")
        return config

    async def mark_verified(self, config: ProcessorConfig) -> ProcessorConfig:
        config.credentials_verified = True
        config.verified_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Processor config {config.id} credentials verified")
        return config


class PreferenceRepository:
    """Repository for owner payment preferences."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, owner_id: str) -> Optional[PaymentPreference]:
        result = await self.session.execute(
            select(PaymentPreference).where(PaymentPreference.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get_value(self, owner_id: str) -> ConfigPreference:
        """Preference for an owner; unset means platform default."""
        pref = await self.get(owner_id)
        if pref is None:
            return ConfigPreference.PLATFORM_DEFAULT
        return ConfigPreference(pref.preference)

    async def set(self, owner_id: str, preference: ConfigPreference) -> PaymentPreference:
        pref = await self.get(owner_id)
        if pref is None:
            pref = PaymentPreference(owner_id=owner_id, preference=preference.value)
            self.session.add(pref)
        else:
            pref.preference = preference.value
            pref.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Owner {owner_id} payment preference set to {preference.value}")
        return pref


class TransactionRepository:
    """Repository for Transaction rows.

    Every write that can move a transaction out of ``pending`` is a guarded
    UPDATE whose row count tells the caller whether it won.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        provider: str,
        correlation_id: str,
        invoice_id: str,
        amount: int,
        phone_number: str,
        reference: str,
        owner_id: Optional[str] = None,
        merchant_request_id: Optional[str] = None,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Insert a pending transaction.

        Args:
            provider: Provider kind value.
            correlation_id: Provider-assigned id echoed by callbacks.
            invoice_id: Invoice being paid.
            amount: Amount in whole shillings.
            phone_number: Normalized payer MSISDN.
            reference: Application reference sent to the provider.
            owner_id: Payee owner.
            merchant_request_id: Secondary provider id, if any.
            initiated_by: User who initiated the payment.
            metadata: Optional metadata dictionary.

        Returns:
            Created Transaction instance.
        """
        txn = Transaction(
            provider=provider,
            correlation_id=correlation_id,
            merchant_request_id=merchant_request_id,
            invoice_id=invoice_id,
            owner_id=owner_id,
            initiated_by=initiated_by,
            amount=amount,
            phone_number=phone_number,
            reference=reference,
            status=TransactionStatus.PENDING.value,
        )
        txn.provider_metadata = metadata or {}
        self.session.add(txn)
        await self.session.flush()

        logger.info(f"Created {provider} transaction {txn.id} for invoice {invoice_id}")
        return txn

    async def get_by_id(self, transaction_id: str, refresh: bool = False) -> Optional[Transaction]:
        """Get a transaction by its ID.

        Args:
            transaction_id: Transaction ID.
            refresh: Re-read the row even if it is already in the session.

        Returns:
            Transaction instance if found, None otherwise.
        """
        return await self.session.get(Transaction, transaction_id, populate_existing=refresh)

    async def get_by_correlation_id(self, correlation_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.correlation_id == correlation_id)
        )
        return result.scalar_one_or_none()

    async def get_pending_by_correlation_id(self, correlation_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(and_(
                Transaction.correlation_id == correlation_id,
                Transaction.status == TransactionStatus.PENDING.value,
            ))
        )
        return result.scalar_one_or_none()

    async def get_latest_by_reference(
        self,
        reference: str,
        pending_only: bool = True,
    ) -> Optional[Transaction]:
        """Most recent transaction carrying an application reference."""
        query = select(Transaction).where(Transaction.reference == reference)
        if pending_only:
            query = query.where(Transaction.status == TransactionStatus.PENDING.value)
        query = query.order_by(Transaction.created_at.desc()).limit(REFERENCE_LOOKUP_LIMIT)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_latest_for_invoice(self, invoice_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.invoice_id == invoice_id)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_pending_by_phone_and_amount(
        self,
        phone_number: str,
        amount: int,
    ) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(and_(
                Transaction.phone_number == phone_number,
                Transaction.amount == amount,
                Transaction.status == TransactionStatus.PENDING.value,
            ))
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_pending(
        self,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        """List pending transactions, oldest first."""
        query = select(Transaction).where(
            Transaction.status == TransactionStatus.PENDING.value
        )
        if created_before is not None:
            query = query.where(Transaction.created_at < created_before)
        query = query.order_by(Transaction.created_at.asc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def record_result(
        self,
        transaction_id: str,
        result_code: int,
        result_desc: Optional[str],
        receipt_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store a provider result on a still-pending transaction.

        Returns:
            True if the row was pending and has been updated.
        """
        values: Dict[str, Any] = {
            "result_code": result_code,
            "result_desc": result_desc,
            "updated_at": datetime.utcnow(),
        }
        if receipt_number:
            values["receipt_number"] = receipt_number
        if metadata is not None:
            txn = await self.get_by_id(transaction_id, refresh=True)
            merged = dict(txn.provider_metadata) if txn else {}
            merged.update(metadata)
            values["metadata_json"] = json.dumps(merged)

        result = await self.session.execute(
            update(Transaction)
            .where(and_(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.PENDING.value,
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        result_code: int,
        result_desc: Optional[str],
        receipt_number: Optional[str] = None,
    ) -> bool:
        """Guarded terminal write: ``UPDATE ... WHERE status = 'pending'``.

        Returns:
            True if this call performed the transition.
        """
        now = datetime.utcnow()
        values: Dict[str, Any] = {
            "status": new_status.value,
            "result_code": result_code,
            "result_desc": result_desc,
            "finalized_at": now,
            "updated_at": now,
        }
        if receipt_number:
            values["receipt_number"] = receipt_number
        result = await self.session.execute(
            update(Transaction)
            .where(and_(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.PENDING.value,
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1
        if won:
            logger.info(f"Transaction {transaction_id} transitioned to {new_status.value}")
        return won

    async def merge_metadata(self, transaction: Transaction, updates: Dict[str, Any]) -> Transaction:
        """Overwrite metadata keys on a row this session already holds.

        Not safe for counters that concurrent sessions update; use
        increment_metadata_counter for those.
        """
        merged = dict(transaction.provider_metadata)
        merged.update(updates)
        transaction.provider_metadata = merged
        transaction.updated_at = datetime.utcnow()
        await self.session.flush()
        return transaction

    async def increment_metadata_counter(
        self,
        transaction: Transaction,
        key: str,
        updates: Optional[Dict[str, Any]] = None,
        max_retries: int = 5,
    ) -> int:
        """Increment an integer metadata counter without losing concurrent increments.

        The write is guarded on ``updated_at`` (compare-and-swap); on a lost
        race the row is re-read and the increment retried.

        Args:
            transaction: Transaction loaded in this session.
            key: Metadata key holding the counter.
            updates: Other metadata keys to write alongside the counter.
            max_retries: Attempts before giving up.

        Returns:
            The counter value this call wrote.

        Raises:
            StaleDataError: If every attempt lost the race.
        """
        for _ in range(max_retries):
            merged = dict(transaction.provider_metadata)
            value = int(merged.get(key, 0)) + 1
            merged.update(updates or {})
            merged[key] = value
            result = await self.session.execute(
                update(Transaction)
                .where(and_(
                    Transaction.id == transaction.id,
                    Transaction.updated_at == transaction.updated_at,
                ))
                .values(metadata_json=json.dumps(merged), updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.refresh(transaction)
            if result.rowcount == 1:
                return value
            logger.debug(f"Metadata counter {key} on {transaction.id} changed concurrently, retrying")
        raise StaleDataError(f"Could not update {key} on transaction {transaction.id}")


class PaymentRecordRepository:
    """Repository for the append-only payments table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> Payment:
        payment = Payment(**fields)
        self.session.add(payment)
        await self.session.flush()
        logger.info(f"Recorded payment {payment.id} for transaction {payment.transaction_id}")
        return payment

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_for_invoice(self, invoice_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.invoice_id == invoice_id)
        )
        return list(result.scalars().all())


class TransactionEventRepository:
    """Repository for the transaction audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        transaction_id: str,
        event_type: str,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        result_code: Optional[int] = None,
        source: Optional[str] = None,
        message: Optional[str] = None,
    ) -> TransactionEvent:
        event = TransactionEvent(
            transaction_id=transaction_id,
            event_type=event_type,
            previous_status=previous_status,
            new_status=new_status,
            result_code=result_code,
            source=source,
            message=message,
        )
        self.session.add(event)
        await self.session.flush()
        logger.debug(f"Recorded {event_type} event for transaction {transaction_id}")
        return event

    async def list_for_transaction(self, transaction_id: str) -> List[TransactionEvent]:
        result = await self.session.execute(
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.created_at.asc())
        )
        return list(result.scalars().all())
