"""Payment engine facade used by the UI adapter, the HTTP layer and the CLI."""

import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import CallerSession, SessionRefresher
from .callbacks import CallbackIngestor, IngestResult
from .config import Settings, get_settings
from .connectors import ConnectorBase, default_connectors
from .credentials import CredentialService
from .database import ProviderKind, TransactionRepository, session_scope
from .gateway import AmountInput, InitiationGateway, InitiationResult
from .reconciliation.engine import ReconciliationEngine
from .reconciliation.feed import ChangeFeed, Subscription
from .reconciliation.flow import PaymentFlow, StateListener
from .reconciliation.models import (
    FinalizeOutcome,
    ReconciliationOutcome,
    SweepReport,
    TransactionStatusView,
)
from .reconciliation.verifier import OnDemandVerifier
from .resolver import Availability, ConfigResolver
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class PaymentEngine:
    """Entry point for every payment operation.

    Each operation opens its own database session from ``session_factory``
    and commits before returning, so a watcher started right after
    ``initiate`` sees the pending row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: Optional[CredentialVault] = None,
        connectors: Optional[Mapping[ProviderKind, ConnectorBase]] = None,
        settings: Optional[Settings] = None,
        feed: Optional[ChangeFeed] = None,
        refresher: Optional[SessionRefresher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the engine.

        Args:
            session_factory: Factory for database sessions.
            vault: Credential vault; built from ``settings.encryption_key``
                on first use if omitted.
            connectors: Connector per provider; Daraja and Kopo Kopo by default.
            settings: Engine settings; defaults to process settings.
            feed: Change feed shared by ingestion and watchers.
            refresher: Renews caller sessions close to expiry.
            http_client: Shared HTTP client for the default connectors.
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.connectors = connectors if connectors is not None else default_connectors(
            client=http_client,
            timeout=self.settings.http_timeout,
        )
        self.feed = feed or ChangeFeed()
        self.refresher = refresher
        self._vault = vault
        self.reconciler = ReconciliationEngine(session_factory, self.feed, self.settings)
        self.ingestor = CallbackIngestor(session_factory, self.connectors, self.feed)

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault(self.settings.encryption_key)
        return self._vault

    @property
    def verifier(self) -> OnDemandVerifier:
        return OnDemandVerifier(
            self.session_factory,
            self.vault,
            self.connectors,
            feed=self.feed,
            settings=self.settings,
        )

    # Payer operations

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
        """Send a push-payment request; see ``InitiationGateway.initiate``."""
        async with session_scope(self.session_factory) as session:
            gateway = InitiationGateway(
                session,
                self.vault,
                self.connectors,
                settings=self.settings,
                refresher=self.refresher,
            )
            return await gateway.initiate(
                invoice_id,
                phone,
                caller,
                amount=amount,
                description=description,
                payer_first_name=payer_first_name,
                payer_last_name=payer_last_name,
                payer_email=payer_email,
            )

    def subscribe(self, transaction_id: str) -> Subscription:
        return self.feed.subscribe(transaction_id)

    async def poll(self, transaction_id: str) -> Optional[TransactionStatusView]:
        """Current state of a transaction, or None if it does not exist."""
        async with session_scope(self.session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(transaction_id)
            if txn is None:
                return None
            return TransactionStatusView.from_transaction(txn)

    async def watch(self, transaction_id: str) -> ReconciliationOutcome:
        return await self.reconciler.watch(transaction_id)

    def new_flow(self, listener: Optional[StateListener] = None) -> PaymentFlow:
        """A payer-facing flow driving initiate and watch through the UI states."""
        return PaymentFlow(self, listener)

    async def verify_now(
        self,
        correlation_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> FinalizeOutcome:
        return await self.verifier.verify_now(correlation_id=correlation_id, reference=reference)

    async def sweep_pending(
        self,
        older_than: timedelta = timedelta(minutes=5),
        limit: int = 100,
    ) -> SweepReport:
        return await self.verifier.sweep(older_than=older_than, limit=limit)

    async def ingest_callback(self, provider: ProviderKind, payload: Dict[str, Any]) -> IngestResult:
        return await self.ingestor.ingest(provider, payload)

    async def check_availability(self, invoice_id: str) -> Availability:
        async with session_scope(self.session_factory) as session:
            return await ConfigResolver(session, self.settings).check_availability(invoice_id)

    # Owner administration

    async def save_credentials(self, owner_id: str, **fields: Any) -> Dict[str, Any]:
        """Store an owner's credentials; see ``CredentialService.save_credentials``."""
        async with session_scope(self.session_factory) as session:
            service = CredentialService(session, self.vault, self.settings, self.connectors)
            return await service.save_credentials(owner_id, **fields)

    async def verify_credentials(self, owner_id: str) -> Dict[str, Any]:
        async with session_scope(self.session_factory) as session:
            service = CredentialService(session, self.vault, self.settings, self.connectors)
            return await service.verify_credentials(owner_id)

    async def set_preference(self, owner_id: str, preference: str) -> Dict[str, Any]:
        async with session_scope(self.session_factory) as session:
            service = CredentialService(session, self.vault, self.settings, self.connectors)
            return await service.set_preference(owner_id, preference)
