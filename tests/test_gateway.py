"""Tests for payment initiation."""

from datetime import datetime, timedelta

import pytest

from stkpay.auth import CallerSession, StaticSessionRefresher
from stkpay.connectors import SimulatorConnector
from stkpay.database import (
    ProcessorConfigRepository,
    ProcessorKind,
    TransactionEventRepository,
    TransactionRepository,
    session_scope,
)
from stkpay.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidAmountError,
    InvalidPhoneError,
    InvoiceAlreadyPaidError,
    ProviderError,
    ReferenceChainError,
    SessionExpiredError,
)
from stkpay.gateway import InitiationGateway
from stkpay.services import PaymentEngine


async def count_transactions(session_factory) -> int:
    async with session_scope(session_factory) as session:
        return len(await TransactionRepository(session).list_pending())


class TestInitiate:
    """Tests for a successful push request."""

    async def test_platform_default_push(self, payment_engine, seed_chain, simulator, caller, session_factory):
        chain = await seed_chain()
        result = await payment_engine.initiate(chain.invoice_id, "0712345678", caller)

        assert result.status == "pending"
        assert result.config_source == "platform_default"
        assert result.provider == "mpesa"
        assert result.amount == 15000
        assert result.reference == f"INV-{chain.invoice_id}"

        push = simulator.pushes[result.correlation_id]
        assert push.request.phone_number == "254712345678"
        assert push.request.callback_url == "https://pay.example.test/callbacks/mpesa"
        assert push.request.customer_id == caller.user_id
        assert "INV-2024-001" in push.request.description

        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(result.transaction_id)
            assert txn.status == "pending"
            assert txn.owner_id == chain.owner_id
            assert txn.initiated_by == caller.user_id
            assert txn.provider_metadata["config_source"] == "platform_default"
            assert txn.provider_metadata["reconcile_attempts"] == 0
            events = await TransactionEventRepository(session).list_for_transaction(txn.id)
            assert [e.event_type for e in events] == ["initiated"]

    async def test_explicit_amount_rounded(self, payment_engine, seed_chain, caller):
        chain = await seed_chain()
        result = await payment_engine.initiate(chain.invoice_id, "0712345678", caller, amount="5000.5")
        assert result.amount == 5001

    async def test_owner_aggregator_config(self, payment_engine, seed_chain, seed_config, k2_simulator, caller, session_factory):
        """Aggregator pushes record the provider status URL for later verification."""
        chain = await seed_chain()
        await seed_config(chain.owner_id, ProcessorKind.TILL_AGGREGATOR, shortcode="7654321")
        result = await payment_engine.initiate(
            chain.invoice_id, "+254712345678", caller, payer_first_name="Amina"
        )

        assert result.provider == "kopokopo"
        assert result.config_source == "custom"
        assert result.correlation_id in k2_simulator.pushes
        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(result.transaction_id)
            assert txn.provider_metadata["status_url"].endswith(result.correlation_id)
            assert txn.provider_metadata["processor_kind"] == "till_aggregator"

    async def test_config_callback_url_wins(self, session_factory, seed_chain, seed_config, caller, payment_engine, simulator):
        chain = await seed_chain()
        await seed_config(chain.owner_id)
        async with session_scope(session_factory) as session:
            config = await ProcessorConfigRepository(session).get_for_owner(chain.owner_id)
            config.callback_url = "https://owner.example.test/mpesa"
        result = await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        assert simulator.pushes[result.correlation_id].request.callback_url == "https://owner.example.test/mpesa"


class TestInitiateRejections:
    """Tests for initiation failures; none of them may leave a transaction."""

    async def test_invalid_phone_before_network(self, payment_engine, seed_chain, simulator, caller):
        chain = await seed_chain()
        with pytest.raises(InvalidPhoneError):
            await payment_engine.initiate(chain.invoice_id, "12345", caller)
        assert simulator.token_requests == 0

    async def test_invalid_amount(self, payment_engine, seed_chain, simulator, caller):
        chain = await seed_chain()
        with pytest.raises(InvalidAmountError):
            await payment_engine.initiate(chain.invoice_id, "0712345678", caller, amount=2_000_000)
        assert simulator.token_requests == 0

    async def test_paid_invoice(self, payment_engine, seed_chain, caller, session_factory):
        chain = await seed_chain(invoice_status="paid")
        with pytest.raises(InvoiceAlreadyPaidError) as exc_info:
            await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        assert exc_info.value.kind == ErrorKind.INVOICE_ALREADY_PAID
        assert await count_transactions(session_factory) == 0

    async def test_missing_invoice(self, payment_engine, caller):
        with pytest.raises(ReferenceChainError) as exc_info:
            await payment_engine.initiate("no-such-invoice", "0712345678", caller)
        assert exc_info.value.kind == ErrorKind.INVOICE_NOT_FOUND

    async def test_unverified_config(self, payment_engine, seed_chain, seed_config, simulator, caller):
        chain = await seed_chain()
        await seed_config(chain.owner_id, credentials_verified=False)
        with pytest.raises(ConfigurationError) as exc_info:
            await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        assert exc_info.value.kind == ErrorKind.CREDENTIALS_NOT_VERIFIED
        assert simulator.pushes == {}

    async def test_inactive_config(self, payment_engine, seed_chain, seed_config, caller):
        chain = await seed_chain()
        await seed_config(chain.owner_id, is_active=False)
        with pytest.raises(ConfigurationError) as exc_info:
            await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        assert exc_info.value.kind == ErrorKind.CONFIG_INACTIVE

    async def test_provider_rejection_records_nothing(self, payment_engine, seed_chain, caller, session_factory):
        chain = await seed_chain()
        with pytest.raises(ProviderError) as exc_info:
            await payment_engine.initiate(chain.invoice_id, SimulatorConnector.PHONE_REJECT, caller)
        assert exc_info.value.user_message == "Failed to send payment request to your phone."
        assert await count_transactions(session_factory) == 0

    async def test_missing_session(self, payment_engine, seed_chain):
        chain = await seed_chain()
        with pytest.raises(SessionExpiredError):
            await payment_engine.initiate(chain.invoice_id, "0712345678", None)

    async def test_expiring_session_refreshed(self, session_factory, vault, connectors, settings, seed_chain):
        chain = await seed_chain()
        engine = PaymentEngine(
            session_factory,
            vault=vault,
            connectors=connectors,
            settings=settings,
            refresher=StaticSessionRefresher(),
        )
        caller = CallerSession(user_id="u1", expires_at=datetime.utcnow() + timedelta(seconds=30))
        result = await engine.initiate(chain.invoice_id, "0712345678", caller)
        assert result.status == "pending"


class TestGatewaySession:
    """Tests for the gateway inside a caller-managed session."""

    async def test_rejection_leaves_session_clean(self, session_factory, vault, connectors, settings, seed_chain, caller):
        chain = await seed_chain()
        async with session_scope(session_factory) as session:
            gateway = InitiationGateway(session, vault, connectors, settings)
            with pytest.raises(ProviderError):
                await gateway.initiate(chain.invoice_id, SimulatorConnector.PHONE_TIMEOUT, caller)
            assert not session.new
