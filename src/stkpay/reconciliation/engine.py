"""Reconciliation engine: races the live feed against a bounded poll."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..connectors import SUCCESS_RESULT_CODE
from ..database import Transaction, TransactionRepository, session_scope
from ..errors import StkPayError
from .feed import ChangeFeed
from .finalizer import Finalizer
from .models import (
    FinalizeOutcome,
    PaymentUIState,
    ReconciliationOutcome,
    ReportSource,
    ResultReport,
    TransactionStatusView,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    "We could not confirm your payment in time. Please verify the payment "
    "manually or contact support if money left your account."
)


class _PollExhausted:
    """Queue sentinel posted when the poller runs out of attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts


QueueItem = Union[ResultReport, _PollExhausted]


@dataclass
class WatchState:
    """Per-transaction idempotency record kept by the consumer."""
    transaction_id: str
    ui_state: PaymentUIState = PaymentUIState.VERIFYING
    last_result_code: Optional[int] = None
    poll_attempts: int = 0
    outcome: Optional[ReconciliationOutcome] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def success_message(receipt_number: Optional[str]) -> str:
    if receipt_number:
        return f"Payment received. M-Pesa receipt {receipt_number}."
    return "Payment received."


def failure_message(result_desc: Optional[str]) -> str:
    return result_desc or "The payment was not completed."


class ReconciliationEngine:
    """Learns the outcome of a pending transaction exactly once.

    Two producers feed one queue: a live-feed watcher and a poller. A single
    consumer applies ``finalize`` for each new result code and stops at the
    first terminal outcome; duplicates and late arrivals are no-ops.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the engine.

        Args:
            session_factory: Factory for the fresh sessions each read uses.
            feed: Change feed shared with callback ingestion.
            settings: Engine settings; defaults to process settings.
        """
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.settings = settings or get_settings()
        self._states: Dict[str, WatchState] = {}

    def state_for(self, transaction_id: str) -> Optional[WatchState]:
        return self._states.get(transaction_id)

    async def _read(self, transaction_id: str) -> Optional[Transaction]:
        async with session_scope(self.session_factory) as session:
            return await TransactionRepository(session).get_by_id(transaction_id)

    @staticmethod
    def _report_from(txn: Transaction, source: ReportSource) -> Optional[ResultReport]:
        if txn.result_code is None:
            return None
        return ResultReport(
            transaction_id=txn.id,
            result_code=txn.result_code,
            result_desc=txn.result_desc,
            receipt_number=txn.receipt_number,
            source=source,
        )

    async def _watch_feed(self, transaction_id: str, queue: "asyncio.Queue[QueueItem]") -> None:
        # Subscribe before the first read so no change slips in between
        async with self.feed.subscribe(transaction_id) as subscription:
            try:
                txn = await self._read(transaction_id)
            except SQLAlchemyError as e:
                logger.warning(f"Initial read for {transaction_id} failed, relying on feed and poll: {e}")
                txn = None
            if txn is not None:
                report = self._report_from(txn, ReportSource.FEED)
                if report is not None:
                    await queue.put(report)
            async for change in subscription:
                if change.result_code is None:
                    continue
                await queue.put(ResultReport(
                    transaction_id=change.transaction_id,
                    result_code=change.result_code,
                    result_desc=change.result_desc,
                    receipt_number=change.receipt_number,
                    source=ReportSource.FEED,
                ))

    async def _poll(
        self,
        state: WatchState,
        queue: "asyncio.Queue[QueueItem]",
    ) -> None:
        transaction_id = state.transaction_id
        for attempt in range(1, self.settings.max_poll_attempts + 1):
            await asyncio.sleep(self.settings.poll_interval)
            state.poll_attempts = attempt
            try:
                async with session_scope(self.session_factory) as session:
                    repo = TransactionRepository(session)
                    txn = await repo.get_by_id(transaction_id)
                    if txn is None:
                        logger.warning(f"Polled transaction {transaction_id} does not exist")
                        continue
                    report = self._report_from(txn, ReportSource.POLL)
                    if report is None and attempt > self.settings.secondary_lookup_after:
                        # A newer attempt for the same invoice may have been paid instead.
                        # Only its success ends this watch; its failure says nothing about this one.
                        latest = await repo.get_latest_for_invoice(txn.invoice_id)
                        if (
                            latest is not None
                            and latest.id != txn.id
                            and latest.result_code == SUCCESS_RESULT_CODE
                        ):
                            report = self._report_from(latest, ReportSource.INVOICE_LOOKUP)
            except SQLAlchemyError as e:
                logger.warning(f"Poll {attempt} for {transaction_id} failed, retrying: {e}")
                continue
            if report is not None:
                await queue.put(report)

        await queue.put(_PollExhausted(self.settings.max_poll_attempts))

    async def _consume(self, state: WatchState, report: ResultReport) -> Optional[ReconciliationOutcome]:
        async with state.lock:
            if state.ui_state.is_terminal:
                return state.outcome
            own = report.transaction_id == state.transaction_id
            if own and report.result_code == state.last_result_code:
                return None

            change = None
            try:
                async with session_scope(self.session_factory) as session:
                    outcome = await Finalizer(session).finalize(report.transaction_id, report)
                    if outcome.applied:
                        txn = await TransactionRepository(session).get_by_id(outcome.transaction_id)
                        change = TransactionStatusView.from_transaction(txn)
            except (SQLAlchemyError, StkPayError) as e:
                logger.error(f"Finalize for {report.transaction_id} failed, waiting for next report: {e}")
                return None
            if own:
                state.last_result_code = report.result_code
            if change is not None:
                self.feed.publish(change)

            if not outcome.is_terminal:
                return None
            if not own and not outcome.succeeded:
                return None

            state.ui_state = PaymentUIState.SUCCESS if outcome.succeeded else PaymentUIState.ERROR
            state.outcome = self._to_outcome(state, outcome, report.source)
            return state.outcome

    @staticmethod
    def _to_outcome(
        state: WatchState,
        outcome: FinalizeOutcome,
        source: ReportSource,
    ) -> ReconciliationOutcome:
        if outcome.succeeded:
            message = success_message(outcome.receipt_number)
        else:
            message = failure_message(outcome.result_desc)
        return ReconciliationOutcome(
            transaction_id=state.transaction_id,
            state=state.ui_state,
            message=message,
            status=outcome.status,
            result_code=outcome.result_code,
            receipt_number=outcome.receipt_number,
            source=source,
            poll_attempts=state.poll_attempts,
        )

    async def watch(self, transaction_id: str) -> ReconciliationOutcome:
        """Wait for the outcome of a pending transaction.

        Returns:
            The terminal outcome, or a ``timeout`` outcome once the poll
            budget is spent. The transaction is left pending on timeout.

        Cancelling the returned awaitable stops both watchers.
        """
        state = WatchState(transaction_id=transaction_id)
        self._states[transaction_id] = state
        queue: "asyncio.Queue[QueueItem]" = asyncio.Queue()
        producers = [
            asyncio.create_task(self._watch_feed(transaction_id, queue)),
            asyncio.create_task(self._poll(state, queue)),
        ]
        logger.info(
            f"Watching transaction {transaction_id} "
            f"({self.settings.poll_interval}s x {self.settings.max_poll_attempts})"
        )
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _PollExhausted):
                    state.ui_state = PaymentUIState.TIMEOUT
                    state.outcome = ReconciliationOutcome(
                        transaction_id=transaction_id,
                        state=PaymentUIState.TIMEOUT,
                        message=TIMEOUT_MESSAGE,
                        status="pending",
                        poll_attempts=item.attempts,
                    )
                    logger.warning(
                        f"Transaction {transaction_id} unresolved after {item.attempts} polls"
                    )
                    return state.outcome
                outcome = await self._consume(state, item)
                if outcome is not None:
                    return outcome
        finally:
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)
            self._states.pop(transaction_id, None)
