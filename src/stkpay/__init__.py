# stkpay package
__version__ = "0.1.0"

from .config import Settings, get_settings
from .errors import ErrorKind, StkPayError, ProviderError
from .database import (
    Transaction,
    TransactionStatus,
    Payment,
    ProcessorKind,
    ProviderKind,
    init_db,
    close_db,
)
from .vault import CredentialVault
from .gateway import InitiationResult
from .services import PaymentEngine

# Reconciliation exports
from .reconciliation import (
    PaymentUIState,
    PaymentFlow,
    ReconciliationOutcome,
    FinalizeOutcome,
    TransactionStatusView,
    SweepReport,
)
