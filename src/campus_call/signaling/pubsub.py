"""Publish/subscribe relay contract and its Postgres LISTEN/NOTIFY backend.

The relay is weak: delivery is best-effort/at-least-once, there
is no ordering between events, and nothing is delivered to a subscription
after :meth:`PubSub.unsubscribe` returns. Everything above this layer is
written against those guarantees only.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import asyncpg

from campus_call.errors import ChannelJoinError, SignalingError

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]

# Postgres rejects NOTIFY payloads of 8000 bytes or more
MAX_PAYLOAD_BYTES = 7999


@dataclasses.dataclass(eq=False)
class Subscription:
    topic: str
    callback: EventCallback
    active: bool = True

    def deliver(self, event: str, payload: Any) -> None:
        if not self.active:
            return
        self.callback(event, payload)


class PubSub(Protocol):
    async def subscribe(self, topic: str, callback: EventCallback) -> Subscription: ...

    async def publish(self, topic: str, event: str, payload: Any) -> None: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


def encode_envelope(event: str, payload: Any) -> str:
    return json.dumps({"event": event, "payload": payload}, separators=(",", ":"))


def decode_envelope(raw: str) -> tuple[str, Any]:
    data = json.loads(raw)
    if not isinstance(data, dict) or not isinstance(data.get("event"), str):
        raise ValueError("envelope without event name")
    return data["event"], data.get("payload")


class PgPubSub:
    """Relay over Postgres ``LISTEN``/``NOTIFY``.

    All subscriptions in a process share one dedicated listening connection;
    publishing goes through the pool. Topic names are used verbatim as
    channel names (max 63 bytes).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._conn: asyncpg.Connection | None = None
        self._conn_lock = asyncio.Lock()
        self._subs: dict[str, list[Subscription]] = {}

    async def _listen_conn(self) -> asyncpg.Connection:
        async with self._conn_lock:
            if self._conn is None or self._conn.is_closed():
                self._conn = await self._pool.acquire()
            return self._conn

    def _on_notify(
        self, _conn: asyncpg.Connection, _pid: int, channel: str, raw: str
    ) -> None:
        try:
            event, payload = decode_envelope(raw)
        except ValueError:
            logger.warning("Dropping undecodable notification on %s", channel)
            return
        logger.debug("Relay %s <- %s", channel, event)
        for sub in list(self._subs.get(channel, ())):
            try:
                sub.deliver(event, payload)
            except Exception:
                logger.exception("Subscriber callback failed on %s", channel)

    async def subscribe(self, topic: str, callback: EventCallback) -> Subscription:
        sub = Subscription(topic=topic, callback=callback)
        try:
            conn = await self._listen_conn()
            if topic not in self._subs:
                await conn.add_listener(topic, self._on_notify)
        except (OSError, asyncpg.PostgresError) as exc:
            raise ChannelJoinError(f"cannot subscribe to {topic}: {exc}") from exc
        self._subs.setdefault(topic, []).append(sub)
        logger.debug("Subscribed to %s", topic)
        return sub

    async def publish(self, topic: str, event: str, payload: Any) -> None:
        raw = encode_envelope(event, payload)
        if len(raw.encode("utf-8")) > MAX_PAYLOAD_BYTES:
            raise SignalingError(f"{event} payload too large for relay")
        try:
            await self._pool.execute("SELECT pg_notify($1, $2)", topic, raw)
        except (OSError, asyncpg.PostgresError) as exc:
            raise SignalingError(f"publish to {topic} failed: {exc}") from exc
        logger.debug("Relay %s -> %s", topic, event)

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        subs = self._subs.get(subscription.topic)
        if not subs or subscription not in subs:
            return
        subs.remove(subscription)
        if subs:
            return
        del self._subs[subscription.topic]
        if self._conn is not None and not self._conn.is_closed():
            try:
                await self._conn.remove_listener(subscription.topic, self._on_notify)
            except (OSError, asyncpg.PostgresError):
                logger.warning("UNLISTEN %s failed", subscription.topic, exc_info=True)
        logger.debug("Unsubscribed from %s", subscription.topic)

    async def close(self) -> None:
        for subs in self._subs.values():
            for sub in subs:
                sub.active = False
        self._subs.clear()
        async with self._conn_lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await self._pool.release(conn)
