"""Initiation gateway: validates, resolves and sends push-payment requests."""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Mapping, Union

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import CallerSession, SessionRefresher, ensure_fresh_session
from .config import Settings, get_settings
from .connectors import ConnectorBase, PushRequest
from .credentials import CredentialService
from .database import (
    InvoiceStatus,
    ProviderKind,
    TransactionEventRepository,
    TransactionEventType,
    TransactionRepository,
    TransactionStatus,
)
from .errors import (
    InvalidAmountError,
    InvoiceAlreadyPaidError,
    ProviderError,
    UnsupportedProviderError,
)
from .phone import mask_phone, normalize_phone
from .resolver import ConfigResolver
from .vault import CredentialVault

logger = logging.getLogger(__name__)

MAX_AMOUNT = 1_000_000

AmountInput = Union[int, float, str, Decimal, None]


def make_reference(invoice_id: str) -> str:
    """Application reference sent to the provider for an invoice."""
    return f"INV-{invoice_id}"


def validate_amount(amount: AmountInput) -> int:
    """Check an amount is within (0, 1,000,000] and round to whole shillings.

    Raises:
        InvalidAmountError: If the amount is missing, malformed or out of range.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmountError("Amount is required")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {amount}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError("Amount must be greater than zero", details={"amount": str(amount)})
    if value > MAX_AMOUNT:
        raise InvalidAmountError(
            f"Amount must not exceed {MAX_AMOUNT:,}",
            details={"amount": str(amount)},
        )
    rounded = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded < 1:
        raise InvalidAmountError("Amount must be at least 1", details={"amount": str(amount)})
    return rounded


class InitiationResult(BaseModel):
    """What the caller needs to start watching a payment."""
    transaction_id: str
    correlation_id: str
    provider: str
    reference: str
    amount: int
    status: str = TransactionStatus.PENDING.value
    config_source: str
    customer_message: Optional[str] = None


class InitiationGateway:
    """Sends push-payment requests and records pending transactions."""

    def __init__(
        self,
        session: AsyncSession,
        vault: CredentialVault,
        connectors: Mapping[ProviderKind, ConnectorBase],
        settings: Optional[Settings] = None,
        refresher: Optional[SessionRefresher] = None,
    ):
        """Initialize the gateway.

        Args:
            session: AsyncSession instance for database operations.
            vault: Vault used to decrypt owner credentials.
            connectors: Connector per provider kind.
            settings: Engine settings; defaults to process settings.
            refresher: Renews caller sessions that are close to expiry.
        """
        self.session = session
        self.settings = settings or get_settings()
        self.connectors = connectors
        self.refresher = refresher
        self.resolver = ConfigResolver(session, self.settings)
        self.credentials = CredentialService(session, vault, self.settings, connectors)
        self.transactions = TransactionRepository(session)
        self.events = TransactionEventRepository(session)

    async def initiate(
        self,
        invoice_id: str,
        phone: str,
        caller: Optional[CallerSession],
        amount: AmountInput = None,
        description: Optional[str] = None,
        payer_first_name: Optional[str] = None,
        payer_last_name: Optional[str] = None,
        payer_email: Optional[str] = None,
    ) -> InitiationResult:
        """Send a push-payment request for an invoice.

        Args:
            invoice_id: Invoice being paid.
            phone: Payer phone number in any accepted Kenyan format.
            caller: Session of the user initiating the payment.
            amount: Amount to charge; defaults to the invoice amount.
            description: Description shown to the payer.
            payer_first_name: Payer name for aggregator requests.
            payer_last_name: Payer name for aggregator requests.
            payer_email: Payer email for aggregator requests.

        Returns:
            InitiationResult for the pending transaction.

        Raises:
            InputError: Invalid phone or amount, or an already paid invoice.
            SessionExpiredError: If the caller's session cannot be used.
            ConfigurationError: If no usable configuration exists.
            VaultError: If stored credentials cannot be decrypted.
            ProviderError: If the provider rejects the request. No
                transaction is recorded in that case.
        """
        phone_number = normalize_phone(phone)
        if amount is not None:
            validate_amount(amount)

        caller = await ensure_fresh_session(
            caller,
            self.refresher,
            threshold_seconds=self.settings.session_refresh_threshold,
        )

        invoice = await self.resolver.get_invoice(invoice_id)
        charge = validate_amount(amount if amount is not None else invoice.amount)
        if invoice.status == InvoiceStatus.PAID.value:
            raise InvoiceAlreadyPaidError(
                "This invoice has already been paid",
                details={"invoice_id": invoice_id},
            )

        # Re-resolved on every attempt
        resolved = await self.resolver.resolve_for_invoice(invoice_id)
        connector = self.connectors.get(resolved.provider)
        if connector is None:
            raise UnsupportedProviderError(f"No connector for provider {resolved.provider.value}")
        credentials = self.credentials.credentials_for(resolved)

        reference = make_reference(invoice_id)
        callback_url = resolved.callback_url or self.settings.callback_url(resolved.provider.value)
        request = PushRequest(
            amount=charge,
            phone_number=phone_number,
            reference=reference,
            description=description or f"Payment for invoice {invoice.invoice_number or invoice_id}",
            callback_url=callback_url,
            invoice_id=invoice_id,
            owner_id=resolved.owner_id,
            customer_id=caller.user_id,
            payer_first_name=payer_first_name,
            payer_last_name=payer_last_name,
            payer_email=payer_email,
        )

        logger.info(
            f"Initiating {resolved.provider.value} push for invoice {invoice_id} "
            f"amount {charge} to {mask_phone(phone_number)} ({resolved.source})"
        )
        try:
            response = await connector.initiate(request, credentials)
        except ProviderError as e:
            logger.warning(f"Push for invoice {invoice_id} rejected: {e.error_id} {e.message}")
            raise

        metadata = {
            "callback_url": callback_url,
            "config_source": resolved.source,
            "processor_kind": resolved.processor_kind.value,
            "reconcile_attempts": 0,
        }
        if response.status_url:
            metadata["status_url"] = response.status_url

        txn = await self.transactions.create(
            provider=resolved.provider.value,
            correlation_id=response.correlation_id,
            merchant_request_id=response.merchant_request_id,
            invoice_id=invoice_id,
            owner_id=resolved.owner_id,
            initiated_by=caller.user_id,
            amount=charge,
            phone_number=phone_number,
            reference=reference,
            metadata=metadata,
        )
        await self.events.record(
            txn.id,
            TransactionEventType.INITIATED.value,
            new_status=TransactionStatus.PENDING.value,
            source="gateway",
            message=response.customer_message,
        )

        return InitiationResult(
            transaction_id=txn.id,
            correlation_id=txn.correlation_id,
            provider=txn.provider,
            reference=reference,
            amount=charge,
            config_source=resolved.source,
            customer_message=response.customer_message,
        )
