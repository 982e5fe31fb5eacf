"""In-process change feed.

Every committed store write is published here as a ``ChangeEvent``; each
subscriber gets its own queue scoped to one table, so a slow consumer never
blocks the writer or other subscribers.
"""

import asyncio
import logging

from riderescue.domain.schemas import ChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Async iterator over one subscriber queue.

    The queue is registered when the subscription is created, not on first
    iteration, so events published in between are not lost.
    """

    def __init__(self, feed: "ChangeFeed", table: str):
        self.feed = feed
        self.table = table
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True
        self.feed.remove_subscriber(self)


class ChangeFeed:
    """Fan-out of change events to per-table subscriber queues."""

    def __init__(self):
        # table -> set of subscriptions
        self.subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, table: str) -> Subscription:
        subscription = Subscription(self, table)
        if table not in self.subscribers:
            self.subscribers[table] = set()
        self.subscribers[table].add(subscription)
        return subscription

    def remove_subscriber(self, subscription: Subscription) -> None:
        group = self.subscribers.get(subscription.table)
        if group is not None:
            group.discard(subscription)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver *event* to every subscriber of its table."""
        subscriptions = list(self.subscribers.get(event.table, set()))
        logger.debug(
            "Publishing %s on %s to %d subscribers",
            event.type.value, event.table, len(subscriptions),
        )
        for subscription in subscriptions:
            subscription.queue.put_nowait(event)
