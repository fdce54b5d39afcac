"""Shared test fixtures and configuration."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest
from pydantic import SecretStr

# Set up test environment variables before importing modules
TEST_ENCRYPTION_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="

os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STKPAY_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)

from stkpay.auth import CallerSession
from stkpay.config import PlatformDarajaCredentials, PlatformKopoKopoCredentials, Settings
from stkpay.connectors import SimulatorConfig, SimulatorConnector
from stkpay.database import (
    Base,
    Invoice,
    Lease,
    Owner,
    ProcessorConfig,
    ProcessorKind,
    Property,
    ProviderKind,
    Transaction,
    Unit,
    create_async_engine,
    get_async_session_factory,
    session_scope,
)
from stkpay.reconciliation import ChangeFeed
from stkpay.services import PaymentEngine
from stkpay.vault import CredentialVault


@dataclass
class Chain:
    """Ids of a seeded owner -> property -> unit -> lease -> invoice chain."""
    owner_id: str
    property_id: str
    unit_id: str
    lease_id: str
    tenant_id: str
    invoice_id: str


@pytest.fixture
def settings() -> Settings:
    """Engine settings with a fast poll and platform credentials."""
    return Settings(
        poll_interval=0.01,
        max_poll_attempts=20,
        secondary_lookup_after=3,
        encryption_key=SecretStr(TEST_ENCRYPTION_KEY),
        callback_base_url="https://pay.example.test",
        platform_daraja=PlatformDarajaCredentials(
            consumer_key=SecretStr("platform_consumer_key"),
            consumer_secret=SecretStr("platform_consumer_secret"),
            passkey=SecretStr("platform_passkey_0123456789"),
            shortcode="174379",
        ),
        platform_kopokopo=PlatformKopoKopoCredentials(
            client_id="platform_k2_client_id",
            client_secret=SecretStr("platform_k2_client_secret"),
            till_number="5555555",
        ),
    )


@pytest.fixture
def vault(settings) -> CredentialVault:
    return CredentialVault(settings.encryption_key)


# Database fixtures. A file database so that concurrent sessions behave as
# they do against a real server.
@pytest.fixture
async def db_engine(tmp_path):
    """Create a file-backed SQLite database for testing."""
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'stkpay_test.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def simulator() -> SimulatorConnector:
    """Daraja stand-in."""
    return SimulatorConnector(SimulatorConfig(seed=42))


@pytest.fixture
def k2_simulator() -> SimulatorConnector:
    """Kopo Kopo stand-in; its pushes carry a status URL."""
    return SimulatorConnector(SimulatorConfig(seed=7), provider=ProviderKind.KOPOKOPO)


@pytest.fixture
def connectors(simulator, k2_simulator) -> Dict[ProviderKind, SimulatorConnector]:
    return {ProviderKind.MPESA: simulator, ProviderKind.KOPOKOPO: k2_simulator}


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def caller() -> CallerSession:
    return CallerSession(user_id="tenant-user-1")


@pytest.fixture
def payment_engine(session_factory, vault, connectors, settings, feed) -> PaymentEngine:
    return PaymentEngine(
        session_factory,
        vault=vault,
        connectors=connectors,
        settings=settings,
        feed=feed,
    )


@pytest.fixture
def seed_chain(session_factory):
    """Factory that commits an ownership chain and returns its ids."""

    async def _seed(
        amount: int = 15000,
        invoice_status: str = "pending",
        invoice_number: Optional[str] = "INV-2024-001",
    ) -> Chain:
        async with session_scope(session_factory) as session:
            owner = Owner(name="Wanjiku Properties")
            session.add(owner)
            await session.flush()
            prop = Property(owner_id=owner.id, name="Riverside Apartments")
            session.add(prop)
            await session.flush()
            unit = Unit(property_id=prop.id, unit_number="A4")
            session.add(unit)
            await session.flush()
            lease = Lease(unit_id=unit.id, tenant_id="tenant-1")
            session.add(lease)
            await session.flush()
            invoice = Invoice(
                lease_id=lease.id,
                tenant_id=lease.tenant_id,
                invoice_number=invoice_number,
                amount=amount,
                status=invoice_status,
            )
            session.add(invoice)
            await session.flush()
            return Chain(
                owner_id=owner.id,
                property_id=prop.id,
                unit_id=unit.id,
                lease_id=lease.id,
                tenant_id=lease.tenant_id,
                invoice_id=invoice.id,
            )

    return _seed


@pytest.fixture
def seed_config(session_factory, vault):
    """Factory that commits an owner processor configuration."""

    async def _seed(
        owner_id: str,
        processor_kind: ProcessorKind = ProcessorKind.PAYBILL,
        is_active: bool = True,
        credentials_verified: bool = True,
        shortcode: str = "600000",
    ) -> str:
        fields: Dict[str, Any] = {}
        if processor_kind == ProcessorKind.TILL_AGGREGATOR:
            fields["client_id"] = "owner_k2_client_id"
            fields["client_secret_encrypted"] = vault.encrypt("owner_k2_client_secret")
        else:
            fields["consumer_key_encrypted"] = vault.encrypt("owner_consumer_key")
            fields["consumer_secret_encrypted"] = vault.encrypt("owner_consumer_secret")
            fields["passkey_encrypted"] = vault.encrypt("owner_passkey_0123456789")
        async with session_scope(session_factory) as session:
            config = ProcessorConfig(
                owner_id=owner_id,
                processor_kind=processor_kind.value,
                shortcode=shortcode,
                is_active=is_active,
                credentials_verified=credentials_verified,
                **fields,
            )
            session.add(config)
            await session.flush()
            return config.id

    return _seed


@pytest.fixture
def seed_transaction(session_factory):
    """Factory that commits a pending transaction for an invoice."""

    async def _seed(
        chain: Chain,
        correlation_id: str = "ws_CO_test_0001",
        provider: ProviderKind = ProviderKind.MPESA,
        amount: int = 15000,
        phone_number: str = "254712345678",
        metadata: Optional[Dict[str, Any]] = None,
        age: timedelta = timedelta(0),
    ) -> str:
        async with session_scope(session_factory) as session:
            txn = Transaction(
                created_at=datetime.utcnow() - age,
                provider=provider.value,
                correlation_id=correlation_id,
                invoice_id=chain.invoice_id,
                owner_id=chain.owner_id,
                amount=amount,
                phone_number=phone_number,
                reference=f"INV-{chain.invoice_id}",
            )
            txn.provider_metadata = metadata or {}
            session.add(txn)
            await session.flush()
            return txn.id

    return _seed


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}
