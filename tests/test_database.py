"""Tests for ledger models and repositories."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from stkpay.database import (
    ConfigPreference,
    InvoiceRepository,
    PaymentRecordRepository,
    PreferenceRepository,
    ProcessorConfigRepository,
    Transaction,
    TransactionEventRepository,
    TransactionEventType,
    TransactionRepository,
    TransactionStatus,
    session_scope,
)


class TestTransactionModel:
    """Tests for the Transaction model."""

    def test_metadata_round_trip(self):
        txn = Transaction()
        txn.provider_metadata = {"status_url": "https://k2.test/x", "reconcile_attempts": 0}
        assert txn.provider_metadata["status_url"] == "https://k2.test/x"
        txn.provider_metadata = None
        assert txn.provider_metadata == {}

    def test_is_terminal(self):
        assert not Transaction(status="pending").is_terminal
        assert Transaction(status="completed").is_terminal
        assert Transaction(status="failed").is_terminal


class TestTransactionRepository:
    """Tests for TransactionRepository."""

    async def test_create_and_lookup(self, db_session, seed_chain):
        chain = await seed_chain()
        repo = TransactionRepository(db_session)
        txn = await repo.create(
            provider="mpesa",
            correlation_id="ws_CO_create_1",
            invoice_id=chain.invoice_id,
            amount=15000,
            phone_number="254712345678",
            reference=f"INV-{chain.invoice_id}",
            owner_id=chain.owner_id,
            metadata={"reconcile_attempts": 0},
        )
        await db_session.commit()

        assert txn.status == TransactionStatus.PENDING.value
        assert (await repo.get_by_correlation_id("ws_CO_create_1")).id == txn.id
        assert (await repo.get_pending_by_correlation_id("ws_CO_create_1")).id == txn.id
        assert (await repo.get_latest_by_reference(f"INV-{chain.invoice_id}")).id == txn.id
        assert (await repo.get_latest_for_invoice(chain.invoice_id)).id == txn.id
        assert (await repo.find_pending_by_phone_and_amount("254712345678", 15000)).id == txn.id
        assert await repo.find_pending_by_phone_and_amount("254712345678", 14999) is None

    async def test_guarded_transition_only_once(self, session_factory, seed_chain, seed_transaction):
        """Only the first terminal write on a pending row succeeds."""
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async with session_scope(session_factory) as session:
            repo = TransactionRepository(session)
            assert await repo.transition(txn_id, TransactionStatus.COMPLETED, 0, "ok", "SAB123") is True
            assert await repo.transition(txn_id, TransactionStatus.FAILED, 1032, "cancelled") is False

        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(txn_id)
            assert txn.status == "completed"
            assert txn.result_code == 0
            assert txn.receipt_number == "SAB123"
            assert txn.finalized_at is not None

    async def test_record_result_merges_metadata(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain, metadata={"callback_url": "https://cb"})

        async with session_scope(session_factory) as session:
            repo = TransactionRepository(session)
            assert await repo.record_result(txn_id, 1032, "Cancelled", metadata={"callback": {"x": 1}})

        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(txn_id)
            assert txn.status == "pending"
            assert txn.result_code == 1032
            assert txn.provider_metadata == {"callback_url": "https://cb", "callback": {"x": 1}}

    async def test_record_result_skips_terminal_rows(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)
        async with session_scope(session_factory) as session:
            repo = TransactionRepository(session)
            await repo.transition(txn_id, TransactionStatus.FAILED, 1, "failed")
            assert await repo.record_result(txn_id, 0, "late success") is False

    async def test_counter_increment_survives_stale_read(self, session_factory, seed_chain, seed_transaction):
        """An increment based on a stale row is retried, not lost."""
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async with session_scope(session_factory) as slow:
            stale = await TransactionRepository(slow).get_by_id(txn_id)
            async with session_scope(session_factory) as fast:
                repo = TransactionRepository(fast)
                txn = await repo.get_by_id(txn_id)
                assert await repo.increment_metadata_counter(txn, "reconcile_attempts") == 1
            value = await TransactionRepository(slow).increment_metadata_counter(
                stale, "reconcile_attempts", {"last_reconcile_at": "now"}
            )
            assert value == 2

        async with session_scope(session_factory) as session:
            txn = await TransactionRepository(session).get_by_id(txn_id)
            assert txn.provider_metadata["reconcile_attempts"] == 2
            assert txn.provider_metadata["last_reconcile_at"] == "now"

    async def test_list_pending_filters_by_age(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        old_id = await seed_transaction(chain, correlation_id="old", age=timedelta(minutes=30))
        await seed_transaction(chain, correlation_id="fresh")

        async with session_scope(session_factory) as session:
            repo = TransactionRepository(session)
            stale = await repo.list_pending(created_before=datetime.utcnow() - timedelta(minutes=5))
            assert [t.id for t in stale] == [old_id]
            assert len(await repo.list_pending()) == 2


class TestInvoiceRepository:
    """Tests for InvoiceRepository."""

    async def test_mark_paid_once(self, session_factory, seed_chain):
        chain = await seed_chain()
        async with session_scope(session_factory) as session:
            repo = InvoiceRepository(session)
            assert await repo.mark_paid(chain.invoice_id, "SAB123") is True
            assert await repo.mark_paid(chain.invoice_id, "SAB999") is False

        async with session_scope(session_factory) as session:
            invoice = await InvoiceRepository(session).get_by_id(chain.invoice_id)
            assert invoice.status == "paid"
            assert invoice.receipt_number == "SAB123"
            assert invoice.paid_at is not None


class TestConfigAndPreferenceRepositories:
    """Tests for processor configuration and preference storage."""

    async def test_preference_defaults_to_platform(self, db_session, seed_chain):
        chain = await seed_chain()
        repo = PreferenceRepository(db_session)
        assert await repo.get_value(chain.owner_id) == ConfigPreference.PLATFORM_DEFAULT
        await repo.set(chain.owner_id, ConfigPreference.CUSTOM)
        assert await repo.get_value(chain.owner_id) == ConfigPreference.CUSTOM

    async def test_upsert_replaces_config(self, db_session, seed_chain):
        chain = await seed_chain()
        repo = ProcessorConfigRepository(db_session)
        first = await repo.upsert(chain.owner_id, processor_kind="paybill", shortcode="600000")
        second = await repo.upsert(chain.owner_id, processor_kind="till_direct", shortcode="700000")
        assert first.id == second.id
        assert second.shortcode == "700000"
        assert (await repo.get_active_for_owner(chain.owner_id)).processor_kind == "till_direct"

        second.is_active = False
        await db_session.flush()
        assert await repo.get_active_for_owner(chain.owner_id) is None
        assert await repo.get_for_owner(chain.owner_id) is not None

    async def test_mark_verified(self, db_session, seed_chain):
        chain = await seed_chain()
        repo = ProcessorConfigRepository(db_session)
        config = await repo.upsert(chain.owner_id, processor_kind="paybill", shortcode="600000")
        assert config.credentials_verified is False
        await repo.mark_verified(config)
        assert config.credentials_verified is True
        assert config.verified_at is not None

    def test_config_to_dict_has_no_secrets(self):
        from stkpay.database import ProcessorConfig
        config = ProcessorConfig(
            owner_id="o1",
            processor_kind="paybill",
            shortcode="600000",
            consumer_key_encrypted="cipher-key",
            passkey_encrypted="cipher-pass",
        )
        data = config.to_dict()
        assert "cipher-key" not in str(data)
        assert "cipher-pass" not in str(data)


class TestEventAndPaymentRepositories:
    """Tests for the audit trail and payment records."""

    async def test_events_in_order(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)
        async with session_scope(session_factory) as session:
            repo = TransactionEventRepository(session)
            await repo.record(txn_id, TransactionEventType.INITIATED.value, new_status="pending")
            await repo.record(txn_id, TransactionEventType.FINALIZED.value, "pending", "completed", 0)
            events = await repo.list_for_transaction(txn_id)
        assert [e.event_type for e in events] == ["initiated", "finalized"]

    async def test_one_payment_per_transaction(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)
        async with session_scope(session_factory) as session:
            repo = PaymentRecordRepository(session)
            await repo.create(transaction_id=txn_id, invoice_id=chain.invoice_id, amount=15000)

        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                await PaymentRecordRepository(session).create(
                    transaction_id=txn_id, invoice_id=chain.invoice_id, amount=15000
                )

        async with session_scope(session_factory) as session:
            payments = await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id)
            assert len(payments) == 1
