"""
Tenant-scoped real-time event publishing.

Every successful mutation publishes one envelope::

    {"event": "task-updated", "tenant_id": "acme",
     "timestamp": "2024-05-01T12:00:00.000000+00:00", "data": {...}}

on the channel of its tenant (``tenant_<id>_events``) or on the global
``kanban_events`` channel in single-tenant mode. Subscribers listening on one
tenant's channel never see another tenant's envelopes.

Publishing is fire-and-forget: transport errors and timeouts are logged as
warnings and never reach the request that triggered them, because the
mutation has already been committed by then.

Backends:
- ``RedisEventPublisher``: Redis pub/sub via ``redis_service``
- ``PostgresEventPublisher``: ``pg_notify`` / ``LISTEN`` through asyncpg
- ``LocalEventPublisher``: in-process delivery for single-worker setups
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import asyncpg

from ..config import settings
from ..exceptions import PublishFailed
from .redis_service import RedisService, redis_service

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "kanban_events"
PG_NOTIFY_MAX_BYTES = 8000

EventHandler = Callable[[dict], Awaitable[None]]

_CHANNEL_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def channel_for(tenant_id: Optional[str]) -> str:
    """Channel name for a tenant; also a valid PostgreSQL identifier."""
    if not tenant_id:
        return GLOBAL_CHANNEL
    return f"tenant_{_CHANNEL_UNSAFE.sub('_', tenant_id)}_events"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_envelope(event_name: str, payload: Optional[dict], tenant_id: Optional[str]) -> dict:
    """Wrap a payload; ``data.timestamp`` is filled in when missing."""
    now = utc_timestamp()
    data = dict(payload or {})
    data.setdefault("timestamp", now)
    return {
        "event": event_name,
        "tenant_id": tenant_id,
        "timestamp": now,
        "data": data,
    }


class EventPublisher(ABC):
    """Transport-agnostic publisher. Callers depend only on this interface."""

    name = "base"

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout if timeout is not None else settings.publish_timeout_seconds

    async def start(self) -> None:
        """Open transport connections. Called once at startup."""

    async def stop(self) -> None:
        """Close transport connections. Called once at shutdown."""

    async def publish(
        self,
        event_name: str,
        payload: Optional[dict] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        """
        Publish an event. Never raises.

        Args:
            event_name: Event name, e.g. ``task-created``
            payload: Event data; receives a ``timestamp`` if it has none
            tenant_id: Tenant scope, None for the global channel
        """
        channel = channel_for(tenant_id)
        envelope = build_envelope(event_name, payload, tenant_id)
        try:
            try:
                await asyncio.wait_for(self._send(channel, envelope), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise PublishFailed(channel, f"timed out after {self.timeout}s") from e
            except PublishFailed:
                raise
            except Exception as e:
                raise PublishFailed(channel, str(e)) from e
        except PublishFailed as e:
            logger.warning(f"Event '{event_name}' not delivered: {e.detail}")
            return
        logger.debug(f"Published {event_name} on {channel}")

    @abstractmethod
    async def _send(self, channel: str, envelope: dict) -> None:
        """Deliver one envelope on a channel."""

    @abstractmethod
    async def subscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        """Receive every envelope published for ``tenant_id``."""

    @abstractmethod
    async def unsubscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        """Stop delivering envelopes to ``handler``."""

    async def health_check(self) -> dict[str, Any]:
        return {"transport": self.name, "status": "healthy"}


class LocalEventPublisher(EventPublisher):
    """In-process delivery. Only correct with a single worker process."""

    name = "local"

    def __init__(self, timeout: Optional[float] = None) -> None:
        super().__init__(timeout)
        self._handlers: dict[str, list[EventHandler]] = {}

    async def _send(self, channel: str, envelope: dict) -> None:
        for handler in list(self._handlers.get(channel, [])):
            try:
                await handler(envelope)
            except Exception as e:
                logger.error(f"Handler error on {channel}: {e}")

    async def subscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        self._handlers.setdefault(channel_for(tenant_id), []).append(handler)

    async def unsubscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        channel = channel_for(tenant_id)
        handlers = self._handlers.get(channel, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(channel, None)


class RedisEventPublisher(EventPublisher):
    """Redis pub/sub transport. Works across worker processes."""

    name = "redis"

    def __init__(self, redis: RedisService = redis_service, timeout: Optional[float] = None) -> None:
        super().__init__(timeout)
        self.redis = redis

    async def start(self) -> None:
        await self.redis.connect()

    async def stop(self) -> None:
        await self.redis.disconnect()

    async def _send(self, channel: str, envelope: dict) -> None:
        if not self.redis.is_connected:
            raise PublishFailed(channel, "redis not connected")
        await self.redis.publish(channel, envelope)

    async def subscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        await self.redis.subscribe(channel_for(tenant_id), handler)

    async def unsubscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        await self.redis.unsubscribe(channel_for(tenant_id), handler)

    async def health_check(self) -> dict[str, Any]:
        return {"transport": self.name, **(await self.redis.health_check())}


class PostgresEventPublisher(EventPublisher):
    """
    PostgreSQL LISTEN/NOTIFY transport.

    A small asyncpg pool sends ``pg_notify``; one dedicated connection holds
    the LISTEN registrations.
    """

    name = "postgres"

    def __init__(self, dsn: Optional[str] = None, timeout: Optional[float] = None) -> None:
        super().__init__(timeout)
        self.dsn = dsn or settings.notify_dsn
        self._pool: Optional[asyncpg.Pool] = None
        self._listener: Optional[asyncpg.Connection] = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._dispatch_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=4)
        self._listener = await asyncpg.connect(self.dsn)
        for channel in self._handlers:
            await self._listener.add_listener(channel, self._on_notification)
        logger.info("PostgreSQL notification service connected")

    async def stop(self) -> None:
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @staticmethod
    def encode(envelope: dict) -> str:
        """Serialize an envelope, shrinking it to a notice when over the NOTIFY limit."""
        payload = json.dumps(envelope, default=str)
        if len(payload.encode("utf-8")) <= PG_NOTIFY_MAX_BYTES:
            return payload

        data = envelope.get("data") or {}
        minimal: dict[str, Any] = {
            "timestamp": data.get("timestamp") or envelope.get("timestamp"),
            "message": "Payload too large, refresh to load changes",
        }
        if "boardId" in data:
            minimal["boardId"] = data["boardId"]
        logger.warning(
            f"Payload too large ({len(payload)} bytes) for {envelope.get('event')}, "
            f"sending minimal notification"
        )
        return json.dumps({**envelope, "data": minimal}, default=str)

    async def _send(self, channel: str, envelope: dict) -> None:
        if self._pool is None:
            raise PublishFailed(channel, "postgres notify not connected")
        async with self._pool.acquire() as conn:
            await conn.execute("SELECT pg_notify($1, $2)", channel, self.encode(envelope))

    def _on_notification(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            envelope = json.loads(payload)
        except ValueError as e:
            logger.error(f"Invalid notification payload on {channel}: {e}")
            return
        for handler in list(self._handlers.get(channel, [])):
            task = asyncio.create_task(self._dispatch(channel, handler, envelope))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, channel: str, handler: EventHandler, envelope: dict) -> None:
        try:
            await handler(envelope)
        except Exception as e:
            logger.error(f"Handler error on {channel}: {e}")

    async def subscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        channel = channel_for(tenant_id)
        if channel not in self._handlers:
            self._handlers[channel] = []
            if self._listener is not None:
                await self._listener.add_listener(channel, self._on_notification)
        self._handlers[channel].append(handler)

    async def unsubscribe(self, tenant_id: Optional[str], handler: EventHandler) -> None:
        channel = channel_for(tenant_id)
        handlers = self._handlers.get(channel, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers and channel in self._handlers:
            del self._handlers[channel]
            if self._listener is not None:
                await self._listener.remove_listener(channel, self._on_notification)

    async def health_check(self) -> dict[str, Any]:
        status = "healthy" if self._pool is not None else "disconnected"
        return {"transport": self.name, "status": status, "channels": len(self._handlers)}


def create_event_publisher() -> EventPublisher:
    """Build the publisher selected by ``settings.event_transport``."""
    if settings.event_transport == "postgres":
        return PostgresEventPublisher()
    if settings.event_transport == "local":
        return LocalEventPublisher()
    return RedisEventPublisher()


_publisher: EventPublisher = LocalEventPublisher()


def get_event_publisher() -> EventPublisher:
    """Return the process-wide publisher (also used as a FastAPI dependency)."""
    return _publisher


def set_event_publisher(publisher: EventPublisher) -> None:
    """Install the publisher chosen at startup."""
    global _publisher
    _publisher = publisher


__all__ = [
    "EventPublisher",
    "GLOBAL_CHANNEL",
    "LocalEventPublisher",
    "PostgresEventPublisher",
    "RedisEventPublisher",
    "build_envelope",
    "channel_for",
    "create_event_publisher",
    "get_event_publisher",
    "set_event_publisher",
    "utc_timestamp",
]
