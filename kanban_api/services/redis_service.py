"""Redis pub/sub backing the ``redis`` event transport.

Every worker process publishes board events to the tenant's channel
(``tenant_<id>_events``, or ``kanban_events`` in single-tenant mode) and
keeps one subscriber connection for the channels its WebSocket clients
belong to. A channel stays subscribed while at least one local handler is
registered for it, so a tenant with no connected clients costs nothing.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub

from ..config import settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]

# How long one read on the subscriber connection may block
READ_TIMEOUT_SECONDS = 1.0


class RedisService:
    """Publisher client plus one subscriber connection per process."""

    def __init__(self) -> None:
        self._client: Optional[aioredis.Redis] = None
        self._subscriber: Optional[PubSub] = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: dict[str, list[MessageHandler]] = {}

    async def connect(self) -> None:
        """
        Open the pooled client and start reading tenant channels.

        Raises:
            redis.exceptions.ConnectionError: If the server does not answer PING
        """
        client = aioredis.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            retry_on_timeout=settings.redis_retry_on_timeout,
            decode_responses=True,
        )
        await client.ping()
        self._client = client
        self._subscriber = client.pubsub()
        if self._handlers:
            await self._subscriber.subscribe(*self._handlers)
        self._reader = asyncio.create_task(self._read_events())
        logger.info(f"Redis event transport connected ({len(self._handlers)} channels)")

    async def disconnect(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if self._subscriber is not None:
            await self._subscriber.aclose()
            self._subscriber = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Redis event transport closed")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def publish(self, channel: str, envelope: dict) -> int:
        """
        Send one event envelope to a tenant channel.

        Returns:
            How many subscriber connections (worker processes) received it
        """
        if self._client is None:
            raise RuntimeError("Redis event transport is not connected")
        return await self._client.publish(channel, json.dumps(envelope, default=str))

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Deliver envelopes of ``channel`` to ``handler`` as well."""
        handlers = self._handlers.setdefault(channel, [])
        if not handlers and self._subscriber is not None:
            await self._subscriber.subscribe(channel)
            logger.debug(f"Listening on {channel}")
        handlers.append(handler)

    async def unsubscribe(self, channel: str, handler: Optional[MessageHandler] = None) -> None:
        """Stop delivering to ``handler`` (or to every handler when None)."""
        handlers = self._handlers.get(channel)
        if handlers is None:
            return
        if handler is None:
            handlers.clear()
        elif handler in handlers:
            handlers.remove(handler)
        if handlers:
            return

        del self._handlers[channel]
        if self._subscriber is not None:
            await self._subscriber.unsubscribe(channel)
            logger.debug(f"Stopped listening on {channel}")

    async def _dispatch(self, channel: str, envelope: dict) -> None:
        for handler in list(self._handlers.get(channel, ())):
            try:
                await handler(envelope)
            except Exception as e:
                logger.error(f"Event handler failed on {channel}: {e}")

    async def _read_events(self) -> None:
        """Background task feeding subscriber messages to the channel handlers."""
        while self._subscriber is not None:
            # get_message raises while nothing is subscribed
            if not self._handlers:
                await asyncio.sleep(READ_TIMEOUT_SECONDS / 2)
                continue
            try:
                message = await self._subscriber.get_message(
                    ignore_subscribe_messages=True,
                    timeout=READ_TIMEOUT_SECONDS,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Redis subscriber read failed, retrying: {e}")
                await asyncio.sleep(1)
                continue
            if not message or message["type"] != "message":
                continue
            try:
                envelope = json.loads(message["data"])
            except ValueError:
                logger.warning(f"Dropping malformed event on {message['channel']}")
                continue
            await self._dispatch(message["channel"], envelope)

    async def health_check(self) -> dict[str, Any]:
        if self._client is None:
            return {"status": "disconnected"}
        try:
            await self._client.ping()
        except Exception as e:
            return {"status": "error", "error": str(e)}
        return {"status": "healthy", "channels": len(self._handlers)}


redis_service = RedisService()


__all__ = [
    "MessageHandler",
    "RedisService",
    "redis_service",
]
