"""SQLAlchemy models for the payment ledger and the ownership graph it reads."""

import uuid
import json
import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ProcessorKind(str, enum.Enum):
    """How an owner collects M-Pesa payments."""
    PAYBILL = "paybill"
    TILL_DIRECT = "till_direct"
    TILL_AGGREGATOR = "till_aggregator"

    @property
    def provider(self) -> "ProviderKind":
        if self is ProcessorKind.TILL_AGGREGATOR:
            return ProviderKind.KOPOKOPO
        return ProviderKind.MPESA


class ProviderKind(str, enum.Enum):
    """Provider families the engine can talk to."""
    MPESA = "mpesa"
    KOPOKOPO = "kopokopo"


class ConfigPreference(str, enum.Enum):
    CUSTOM = "custom"
    PLATFORM_DEFAULT = "platform_default"


class TransactionStatus(str, enum.Enum):
    """Ledger statuses. Only ``pending`` is non-terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    PAID = "paid"


class TransactionEventType(str, enum.Enum):
    """Audit events recorded against a transaction."""
    INITIATED = "initiated"
    RESULT_RECORDED = "result_recorded"
    FINALIZED = "finalized"
    VERIFY_ATTEMPTED = "verify_attempted"


class Owner(Base):
    """Payee (landlord) who owns properties."""
    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("owners.id"), nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class Unit(Base):
    __tablename__ = "units"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    property_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("properties.id"), nullable=True, index=True)
    unit_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class Lease(Base):
    __tablename__ = "leases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    unit_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("units.id"), nullable=True, index=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)


class Invoice(Base):
    """Invoice owed by a tenant. Amounts are whole shillings."""
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    lease_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("leases.id"), nullable=True, index=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InvoiceStatus.PENDING.value)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lease_id": self.lease_id,
            "invoice_number": self.invoice_number,
            "amount": self.amount,
            "status": self.status,
            "receipt_number": self.receipt_number,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class ProcessorConfig(Base):
    """An owner's M-Pesa processor configuration.

    Secret columns hold vault ciphertext, each encrypted independently.
    """
    __tablename__ = "processor_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("owners.id"), nullable=False, unique=True)
    processor_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="sandbox")

    # Paybill number or till number
    shortcode: Mapped[str] = mapped_column(String(20), nullable=False)

    # Daraja credentials (encrypted)
    consumer_key_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consumer_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    passkey_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Aggregator credentials
    client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    client_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    callback_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    credentials_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def kind(self) -> ProcessorKind:
        return ProcessorKind(self.processor_kind)

    @property
    def provider(self) -> ProviderKind:
        return self.kind.provider

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the configuration. Never includes secrets."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "processor_kind": self.processor_kind,
            "display_name": self.display_name,
            "environment": self.environment,
            "shortcode": self.shortcode,
            "client_id": self.client_id,
            "callback_url": self.callback_url,
            "is_active": self.is_active,
            "credentials_verified": self.credentials_verified,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PaymentPreference(Base):
    __tablename__ = "payment_preferences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("owners.id"), nullable=False, unique=True)
    preference: Mapped[str] = mapped_column(String(30), nullable=False, default=ConfigPreference.PLATFORM_DEFAULT.value)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Transaction(Base):
    """One push-payment initiation attempt."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=False)
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value)

    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Callback URL, provider status URL, reconcile attempts, raw payloads
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    events: Mapped[List["TransactionEvent"]] = relationship(
        "TransactionEvent",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionEvent.created_at",
    )

    __table_args__ = (
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_invoice_id", "invoice_id"),
        Index("ix_transactions_reference", "reference"),
        Index("ix_transactions_created_at", "created_at"),
    )

    @property
    def provider_metadata(self) -> Dict[str, Any]:
        """Get metadata as dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return {}

    @provider_metadata.setter
    def provider_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        """Set metadata from dictionary."""
        if value is not None:
            self.metadata_json = json.dumps(value)
        else:
            self.metadata_json = None

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "provider": self.provider,
            "correlation_id": self.correlation_id,
            "reference": self.reference,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "status": self.status,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "receipt_number": self.receipt_number,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


class Payment(Base):
    """Append-only payment record, one per completed transaction."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.id"), nullable=False, unique=True)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    lease_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False, default="mpesa")
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "receipt_number": self.receipt_number,
            "payment_method": self.payment_method,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class TransactionEvent(Base):
    """Audit trail of state changes for a transaction."""
    __tablename__ = "transaction_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="events")

    __table_args__ = (
        Index("ix_transaction_events_event_type", "event_type"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "event_type": self.event_type,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "result_code": self.result_code,
            "source": self.source,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
