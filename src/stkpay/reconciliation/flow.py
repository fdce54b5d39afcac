"""Payer-facing payment flow: idle -> sending -> sent -> verifying -> terminal."""

import asyncio
import logging
from typing import Any, Callable, Dict, FrozenSet, Optional

from ..errors import ProviderError, StkPayError
from .models import PaymentUIState, ReconciliationOutcome

logger = logging.getLogger(__name__)

StateListener = Callable[[PaymentUIState], None]

ALLOWED_TRANSITIONS: Dict[PaymentUIState, FrozenSet[PaymentUIState]] = {
    PaymentUIState.IDLE: frozenset({PaymentUIState.SENDING}),
    PaymentUIState.SENDING: frozenset({PaymentUIState.SENT, PaymentUIState.ERROR, PaymentUIState.CANCELLED}),
    PaymentUIState.SENT: frozenset({PaymentUIState.VERIFYING, PaymentUIState.CANCELLED}),
    PaymentUIState.VERIFYING: frozenset({
        PaymentUIState.SUCCESS,
        PaymentUIState.ERROR,
        PaymentUIState.TIMEOUT,
        PaymentUIState.CANCELLED,
    }),
    # A terminal flow can be restarted for a retry
    PaymentUIState.SUCCESS: frozenset(),
    PaymentUIState.ERROR: frozenset({PaymentUIState.SENDING}),
    PaymentUIState.TIMEOUT: frozenset({PaymentUIState.SENDING}),
    PaymentUIState.CANCELLED: frozenset({PaymentUIState.SENDING}),
}


class InvalidTransitionError(RuntimeError):
    pass


class PaymentFlow:
    """Drives one payer's payment attempt through the UI states.

    ``engine`` is anything with ``initiate(...)`` and ``watch(transaction_id)``
    coroutines, normally ``stkpay.services.PaymentEngine``.
    """

    def __init__(self, engine: Any, listener: Optional[StateListener] = None):
        self.engine = engine
        self.listener = listener
        self.state = PaymentUIState.IDLE
        self.transaction_id: Optional[str] = None
        self.outcome: Optional[ReconciliationOutcome] = None
        self.error: Optional[StkPayError] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closed = False

    def _transition(self, new_state: PaymentUIState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {new_state.value}")
        logger.debug(f"Payment flow {self.state.value} -> {new_state.value}")
        self.state = new_state
        if self.listener is not None:
            self.listener(new_state)

    def _finish(self, outcome: ReconciliationOutcome) -> ReconciliationOutcome:
        self.outcome = outcome
        if self.state != outcome.state:
            self._transition(outcome.state)
        return outcome

    async def start(self, invoice_id: str, phone: str, caller: Any, **kwargs: Any) -> ReconciliationOutcome:
        """Send the push request and wait for its outcome.

        Initiation failures end the flow in ``error`` with the user-facing
        message; they are not raised.
        """
        self._transition(PaymentUIState.SENDING)
        self._closed = False
        self.error = None
        self.transaction_id = None

        try:
            result = await self.engine.initiate(invoice_id, phone, caller, **kwargs)
        except StkPayError as e:
            self.error = e
            if self._closed:
                return self._cancelled()
            message = e.user_message if isinstance(e, ProviderError) else e.message
            return self._finish(ReconciliationOutcome(
                transaction_id="",
                state=PaymentUIState.ERROR,
                message=message,
            ))

        self.transaction_id = result.transaction_id
        if self._closed:
            return self._cancelled()
        self._transition(PaymentUIState.SENT)
        self._transition(PaymentUIState.VERIFYING)

        self._watch_task = asyncio.create_task(self.engine.watch(result.transaction_id))
        try:
            outcome = await self._watch_task
        except asyncio.CancelledError:
            if self._closed:
                return self._cancelled()
            raise
        finally:
            self._watch_task = None
        if self._closed:
            # Closed after the watch finished but before this resumed
            return self._cancelled()
        return self._finish(outcome)

    def _cancelled(self) -> ReconciliationOutcome:
        outcome = ReconciliationOutcome(
            transaction_id=self.transaction_id or "",
            state=PaymentUIState.CANCELLED,
            message="Stopped waiting for confirmation. The payment may still complete.",
            status="pending" if self.transaction_id else None,
        )
        self.outcome = outcome
        return outcome

    async def close(self) -> None:
        """Stop watching. The provider payment itself is not cancelled."""
        if self.state.is_terminal:
            return
        self._closed = True
        if self.state != PaymentUIState.IDLE:
            self._transition(PaymentUIState.CANCELLED)
        task = self._watch_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
