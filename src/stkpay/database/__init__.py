"""Database module for the payment ledger."""

from .models import (
    Base,
    Owner,
    Property,
    Unit,
    Lease,
    Invoice,
    InvoiceStatus,
    ProcessorConfig,
    ProcessorKind,
    ProviderKind,
    PaymentPreference,
    ConfigPreference,
    Transaction,
    TransactionStatus,
    TransactionEvent,
    TransactionEventType,
    Payment,
)
from .session import (
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    session_scope,
)
from .repository import (
    OwnershipRepository,
    InvoiceRepository,
    ProcessorConfigRepository,
    PreferenceRepository,
    TransactionRepository,
    PaymentRecordRepository,
    TransactionEventRepository,
)

__all__ = [
    # Models
    "Base",
    "Owner",
    "Property",
    "Unit",
    "Lease",
    "Invoice",
    "InvoiceStatus",
    "ProcessorConfig",
    "ProcessorKind",
    "ProviderKind",
    "PaymentPreference",
    "ConfigPreference",
    "Transaction",
    "TransactionStatus",
    "TransactionEvent",
    "TransactionEventType",
    "Payment",
    # Session management
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "session_scope",
    # Repositories
    "OwnershipRepository",
    "InvoiceRepository",
    "ProcessorConfigRepository",
    "PreferenceRepository",
    "TransactionRepository",
    "PaymentRecordRepository",
    "TransactionEventRepository",
]
