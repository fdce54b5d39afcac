"""Tests for the terminal-state writer."""

import asyncio

import pytest

from stkpay.database import (
    InvoiceRepository,
    PaymentRecordRepository,
    TransactionEventRepository,
    session_scope,
)
from stkpay.errors import TransactionNotFoundError
from stkpay.reconciliation import Finalizer, decide
from stkpay.reconciliation.models import (
    FinalizeAction,
    LedgerView,
    ReportSource,
    ResultReport,
)


def report(transaction_id: str, result_code: int = 0, receipt: str = "SAB123XYZ", source=ReportSource.CALLBACK):
    return ResultReport(
        transaction_id=transaction_id,
        result_code=result_code,
        result_desc="ok" if result_code == 0 else "Request cancelled by user",
        receipt_number=receipt if result_code == 0 else None,
        source=source,
    )


class TestDecide:
    """Tests for the pure finalize decision."""

    def test_pending_success_completes(self):
        decision = decide(LedgerView(transaction_id="t", status="pending"), report("t"))
        assert decision.action == FinalizeAction.COMPLETE

    def test_pending_failure_fails(self):
        decision = decide(LedgerView(transaction_id="t", status="pending"), report("t", 1032))
        assert decision.action == FinalizeAction.FAIL
        assert "1032" in decision.reason

    @pytest.mark.parametrize("status", ["completed", "failed"])
    def test_terminal_is_noop(self, status):
        decision = decide(LedgerView(transaction_id="t", status=status), report("t"))
        assert decision.action == FinalizeAction.NOOP


class TestFinalizer:
    """Tests for applying terminal transitions."""

    async def test_success_pays_invoice_once(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async with session_scope(session_factory) as session:
            outcome = await Finalizer(session).finalize(txn_id, report(txn_id))

        assert outcome.applied is True
        assert outcome.succeeded
        assert outcome.receipt_number == "SAB123XYZ"
        assert outcome.payment_id is not None

        async with session_scope(session_factory) as session:
            invoice = await InvoiceRepository(session).get_by_id(chain.invoice_id)
            assert invoice.status == "paid"
            assert invoice.receipt_number == "SAB123XYZ"
            payments = await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id)
            assert len(payments) == 1
            assert payments[0].amount == 15000
            assert payments[0].tenant_id == chain.tenant_id
            assert payments[0].lease_id == chain.lease_id
            events = await TransactionEventRepository(session).list_for_transaction(txn_id)
            assert [(e.event_type, e.new_status, e.source) for e in events] == [
                ("finalized", "completed", "callback"),
            ]

    async def test_failure_leaves_invoice_unpaid(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async with session_scope(session_factory) as session:
            outcome = await Finalizer(session).finalize(txn_id, report(txn_id, 1032))

        assert outcome.applied is True
        assert outcome.status == "failed"
        assert outcome.result_code == 1032
        assert outcome.payment_id is None
        async with session_scope(session_factory) as session:
            invoice = await InvoiceRepository(session).get_by_id(chain.invoice_id)
            assert invoice.status == "pending"
            assert await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id) == []

    async def test_repeat_is_noop(self, session_factory, seed_chain, seed_transaction):
        """A later contradictory report does not change a terminal row."""
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async with session_scope(session_factory) as session:
            await Finalizer(session).finalize(txn_id, report(txn_id))
        async with session_scope(session_factory) as session:
            again = await Finalizer(session).finalize(txn_id, report(txn_id, 1, source=ReportSource.POLL))

        assert again.applied is False
        assert again.status == "completed"
        assert again.result_code == 0
        async with session_scope(session_factory) as session:
            assert len(await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id)) == 1

    async def test_concurrent_finalize_has_one_winner(self, session_factory, seed_chain, seed_transaction):
        chain = await seed_chain()
        txn_id = await seed_transaction(chain)

        async def run(source):
            async with session_scope(session_factory) as session:
                return await Finalizer(session).finalize(txn_id, report(txn_id, source=source))

        outcomes = await asyncio.gather(
            run(ReportSource.CALLBACK),
            run(ReportSource.POLL),
            run(ReportSource.VERIFY),
        )

        assert sum(1 for o in outcomes if o.applied) == 1
        assert all(o.status == "completed" for o in outcomes)
        async with session_scope(session_factory) as session:
            assert len(await PaymentRecordRepository(session).list_for_invoice(chain.invoice_id)) == 1

    async def test_unknown_transaction(self, db_session):
        with pytest.raises(TransactionNotFoundError):
            await Finalizer(db_session).finalize("missing", report("missing"))
