"""In-process change feed for transaction rows."""

import asyncio
import logging
from typing import Dict, Optional, Set

from .models import TransactionStatusView

logger = logging.getLogger(__name__)


class Subscription:
    """Stream of changes to one transaction.

    Usable as an async iterator and as an async context manager; leaving
    the context unsubscribes.
    """

    def __init__(self, feed: "ChangeFeed", transaction_id: str):
        self.feed = feed
        self.transaction_id = transaction_id
        self._queue: "asyncio.Queue[TransactionStatusView]" = asyncio.Queue()
        self.closed = False

    def _deliver(self, change: TransactionStatusView) -> None:
        if not self.closed:
            self._queue.put_nowait(change)

    async def get(self, timeout: Optional[float] = None) -> TransactionStatusView:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed._unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> TransactionStatusView:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChangeFeed:
    """Publish/subscribe of transaction changes keyed by transaction id.

    Writers publish after their database transaction commits, so a
    subscriber never sees a change that could still roll back.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, transaction_id: str) -> Subscription:
        subscription = Subscription(self, transaction_id)
        self._subscribers.setdefault(transaction_id, set()).add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.transaction_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.transaction_id]

    def publish(self, change: TransactionStatusView) -> int:
        """Deliver a change to every subscriber of its transaction.

        Returns:
            Number of subscribers notified.
        """
        subscribers = list(self._subscribers.get(change.transaction_id, ()))
        for subscription in subscribers:
            subscription._deliver(change)
        if subscribers:
            logger.debug(
                f"Published {change.status} change for {change.transaction_id} "
                f"to {len(subscribers)} subscriber(s)"
            )
        return len(subscribers)

    def subscriber_count(self, transaction_id: str) -> int:
        return len(self._subscribers.get(transaction_id, ()))
