"""Redis pub/sub relay for change events.

Web workers and Celery workers each hold their own ``ChangeFeed``. The bridge
republishes every locally published event on a Redis channel and feeds events
from other processes into the local feed, so a match made by the Celery sweep
reaches the WebSocket sessions held by any web worker.
"""

import asyncio
import json
import logging
import uuid

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.services.change_feed import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)


class RedisChangeBridge:
    """Relays ``ChangeEvent``s between a local feed and a Redis channel."""

    def __init__(
        self,
        feed: ChangeFeed,
        client: aioredis.Redis | None = None,
        channel: str | None = None,
        origin: str | None = None,
    ):
        self.feed = feed
        self.client = client or aioredis.from_url(settings.redis_url, decode_responses=True)
        self.channel = channel or settings.realtime_channel
        self.origin = origin or uuid.uuid4().hex
        self._listener: asyncio.Task | None = None

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(settings.realtime_publish_attempts),
        wait=wait_exponential(
            min=settings.realtime_retry_min_wait,
            max=settings.realtime_retry_max_wait,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def forward(self, event: ChangeEvent) -> None:
        """Publish a local event for the other processes."""
        payload = event.to_dict()
        payload["origin"] = self.origin
        await self.client.publish(self.channel, json.dumps(payload))

    async def handle_message(self, data: str | bytes) -> bool:
        """Feed one raw pub/sub payload into the local feed.

        Returns:
            True if the event was relayed, False if it was ours or unreadable
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            event = ChangeEvent.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping malformed change event: {str(e)}")
            return False

        if event.origin == self.origin:
            return False

        await self.feed.publish(event, forward=False)
        return True

    async def start(self, listen: bool = True) -> None:
        self.feed.add_forwarder(self.forward)
        if listen:
            self._listener = asyncio.create_task(self._listen(), name="redis-change-bridge")
        logger.info(f"Realtime bridge attached to Redis channel {self.channel}")

    async def stop(self) -> None:
        self.feed.remove_forwarder(self.forward)
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self.client.aclose()
        logger.info("Realtime bridge stopped")

    async def _listen(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for item in pubsub.listen():
                if item and item.get("type") == "message":
                    await self.handle_message(item.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()


def build_publisher_feed() -> tuple[ChangeFeed, RedisChangeBridge | None]:
    """Feed for processes that only publish (Celery workers).

    Events go to Redis when the redis backend is configured; otherwise they
    stay local and only reach subscribers in this process.
    """
    feed = ChangeFeed()
    bridge = None
    if settings.uses_redis_realtime:
        bridge = RedisChangeBridge(feed)
        feed.add_forwarder(bridge.forward)
    return feed, bridge
