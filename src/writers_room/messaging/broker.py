"""
Broadcast channels for dialog and control events.

A Broker fans every message published on a channel out to every live
subscription of that channel. Delivery is fire-and-forget: there is no
acknowledgement step, and a subscription only sees messages published
after it was opened.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class Subscription(ABC):
    """
    Async iterator over the raw messages of one channel.

    Iteration ends once close() has been called.
    """

    def __init__(self, channel: str):
        self.channel = channel

    def __aiter__(self) -> "Subscription":
        return self

    @abstractmethod
    async def __anext__(self) -> Any:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving messages and end iteration."""
        ...


class Broker(ABC):
    """Abstract publish/subscribe transport."""

    @abstractmethod
    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """Broadcast a message to every current subscriber of a channel."""
        ...

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Open a new subscription to a channel."""
        ...

    async def close(self) -> None:
        """Release transport resources. No-op by default."""
        return None


_CLOSED = object()


class InMemorySubscription(Subscription):
    def __init__(self, broker: "InMemoryBroker", channel: str):
        super().__init__(channel)
        self._broker = broker
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False

    def deliver(self, message: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(message)

    async def __anext__(self) -> Any:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        message = await self._queue.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker._detach(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryBroker(Broker):
    """
    Process-local broker backed by one asyncio.Queue per subscription.

    publish() enqueues into every subscriber queue without awaiting in
    between, so all subscribers of a channel observe the same order.
    """

    def __init__(self):
        self._subscriptions: Dict[str, List[InMemorySubscription]] = {}
        self.published: Dict[str, int] = {}

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        self.published[channel] = self.published.get(channel, 0) + 1
        for subscription in list(self._subscriptions.get(channel, [])):
            subscription.deliver(copy.deepcopy(message))

    async def subscribe(self, channel: str) -> Subscription:
        subscription = InMemorySubscription(self, channel)
        self._subscriptions.setdefault(channel, []).append(subscription)
        logger.debug(f"New subscriber on {channel} ({self.subscriber_count(channel)} total)")
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, []))

    def _detach(self, subscription: InMemorySubscription) -> None:
        subscribers = self._subscriptions.get(subscription.channel, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def close(self) -> None:
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._subscriptions.clear()
