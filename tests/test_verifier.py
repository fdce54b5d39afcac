"""Tests for on-demand verification and pending sweeps."""

from datetime import timedelta

import pytest

from stkpay.database import (
    PaymentRecordRepository,
    ProcessorKind,
    ProviderKind,
    TransactionEventRepository,
    TransactionRepository,
    session_scope,
)
from stkpay.errors import (
    ErrorKind,
    TransactionNotFoundError,
    UnsupportedProviderError,
    VerificationUnavailableError,
)


@pytest.fixture
async def k2_payment(payment_engine, seed_chain, seed_config, caller):
    """A pending Kopo Kopo payment initiated through the engine."""
    chain = await seed_chain()
    await seed_config(chain.owner_id, ProcessorKind.TILL_AGGREGATOR, shortcode="7654321")
    result = await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
    return chain, result


class TestVerifyNow:
    """Tests for querying the aggregator for one payment."""

    async def test_settled_payment_is_finalized(self, payment_engine, k2_payment, k2_simulator, session_factory):
        chain, result = k2_payment
        k2_simulator.complete(result.correlation_id, receipt_number="K2RCPT9")

        outcome = await payment_engine.verify_now(correlation_id=result.correlation_id)

        assert outcome.applied is True
        assert outcome.status == "completed"
        assert outcome.receipt_number == "K2RCPT9"
        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(result.transaction_id)
            metadata = txn.provider_metadata
            assert metadata["reconcile_attempts"] == 1
            assert metadata["reconciled"] is True
            assert "verify_response" in metadata
            payments = await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id)
            assert len(payments) == 1
            events = [e.event_type for e in await TransactionEventRepository(session).list_for_transaction(txn.id)]
            assert events == ["initiated", "verify_attempted", "finalized"]

    async def test_unsettled_payment_stays_pending(self, payment_engine, k2_payment, k2_simulator, session_factory):
        _, result = k2_payment

        outcome = await payment_engine.verify_now(reference=result.reference)

        assert outcome.status == "pending"
        assert outcome.applied is False
        assert k2_simulator.status_queries == 1
        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(result.transaction_id)
            assert txn.provider_metadata["reconcile_attempts"] == 1
            assert "last_reconcile_at" in txn.provider_metadata

    async def test_terminal_transaction_skips_provider(self, payment_engine, k2_payment, k2_simulator):
        _, result = k2_payment
        k2_simulator.complete(result.correlation_id, result_code=1)
        first = await payment_engine.verify_now(correlation_id=result.correlation_id)
        queries = k2_simulator.status_queries

        second = await payment_engine.verify_now(correlation_id=result.correlation_id)

        assert first.status == second.status == "failed"
        assert second.applied is False
        assert k2_simulator.status_queries == queries

    async def test_each_verification_authenticates(self, payment_engine, k2_payment, k2_simulator):
        _, result = k2_payment
        tokens = k2_simulator.token_requests
        await payment_engine.verify_now(correlation_id=result.correlation_id)
        assert k2_simulator.token_requests == tokens + 1

    async def test_requires_identifier(self, payment_engine):
        with pytest.raises(TransactionNotFoundError):
            await payment_engine.verify_now()

    async def test_unknown_transaction(self, payment_engine):
        with pytest.raises(TransactionNotFoundError) as exc_info:
            await payment_engine.verify_now(correlation_id="nope")
        assert exc_info.value.kind == ErrorKind.TRANSACTION_NOT_FOUND

    async def test_daraja_transaction_unsupported(self, payment_engine, seed_chain, seed_transaction):
        chain = await seed_chain()
        await seed_transaction(chain, correlation_id="ws_CO_daraja")
        with pytest.raises(UnsupportedProviderError):
            await payment_engine.verify_now(correlation_id="ws_CO_daraja")

    async def test_missing_status_url(self, payment_engine, seed_chain, seed_transaction):
        chain = await seed_chain()
        await seed_transaction(chain, correlation_id="k2-no-url", provider=ProviderKind.KOPOKOPO)
        with pytest.raises(VerificationUnavailableError) as exc_info:
            await payment_engine.verify_now(correlation_id="k2-no-url")
        assert exc_info.value.kind == ErrorKind.VERIFICATION_UNAVAILABLE


class TestSweep:
    """Tests for sweeping old pending transactions."""

    async def test_sweep_counts(self, payment_engine, seed_chain, seed_transaction, k2_simulator, caller, seed_config):
        chain = await seed_chain()
        await seed_config(chain.owner_id, ProcessorKind.TILL_AGGREGATOR, shortcode="7654321")
        settled = await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        unsettled = await payment_engine.initiate(chain.invoice_id, "0712345678", caller)
        k2_simulator.complete(settled.correlation_id)
        await seed_transaction(chain, correlation_id="ws_CO_daraja_old", age=timedelta(minutes=30))
        await seed_transaction(
            chain, correlation_id="k2-broken", provider=ProviderKind.KOPOKOPO, age=timedelta(minutes=30)
        )

        report = await payment_engine.sweep_pending(older_than=timedelta(0), limit=10)

        assert report.total_pending == 4
        assert report.total_finalized == 1
        assert report.total_still_pending == 1
        assert report.total_skipped == 1
        assert report.total_errors == 1
        by_correlation = {r.correlation_id: r for r in report.records}
        assert by_correlation[settled.correlation_id].status_after == "completed"
        assert by_correlation[unsettled.correlation_id].status_after == "pending"
        assert by_correlation["k2-broken"].error == "verification-unavailable"
        assert report.completed_at is not None
        assert "records" not in report.to_summary_dict()
        assert len(report.to_full_dict()["records"]) == 4

    async def test_sweep_ignores_recent(self, payment_engine, seed_chain, seed_transaction):
        chain = await seed_chain()
        await seed_transaction(chain, provider=ProviderKind.KOPOKOPO)
        report = await payment_engine.sweep_pending(older_than=timedelta(minutes=5))
        assert report.total_pending == 0
