"""
Redis pub/sub transport for the dialog channel.

Messages are JSON-encoded on publish and decoded on receipt. Payloads that
fail to decode are handed through unchanged so the protocol layer can
reject them.
"""

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from writers_room.messaging.broker import Broker, Subscription

logger = logging.getLogger(__name__)


class RedisSubscription(Subscription):
    def __init__(self, pubsub: Any, channel: str, poll_interval: float = 1.0):
        super().__init__(channel)
        self._pubsub = pubsub
        self._poll_interval = poll_interval
        self.closed = False

    async def __anext__(self) -> Any:
        while not self.closed:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=self._poll_interval
            )
            if message is None or message.get("type") != "message":
                continue
            data = message["data"]
            try:
                return json.loads(data)
            except (TypeError, ValueError):
                logger.debug(f"Undecodable payload on {self.channel}: {data!r}")
                return data
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._pubsub.unsubscribe(self.channel)
        await self._pubsub.aclose()


class RedisBroker(Broker):
    """Broker backed by a Redis server's PUBLISH/SUBSCRIBE."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[Any] = None,
        poll_interval: float = 1.0,
    ):
        self.url = url
        self._client = client if client is not None else redis.from_url(url, decode_responses=True)
        self._poll_interval = poll_interval

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        await self._client.publish(channel, json.dumps(message, default=str))

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        logger.debug(f"Subscribed to redis channel {channel} at {self.url}")
        return RedisSubscription(pubsub, channel, poll_interval=self._poll_interval)

    async def close(self) -> None:
        await self._client.aclose()
