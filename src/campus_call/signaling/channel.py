"""Signaling channel between the two participants of one call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from campus_call.errors import InvalidMessage, SignalingError
from campus_call.signaling.message import (
    Message,
    MessageType,
    encode_message,
    parse_message,
)
from campus_call.signaling.pubsub import PubSub, Subscription

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


def call_topic(session_id: str) -> str:
    return f"call-{session_id}"


def match_topic(user_id: str) -> str:
    return f"random-match-{user_id}"


def incoming_topic(user_id: str) -> str:
    return f"incoming-calls-{user_id}"


class SignalingChannel:
    """A joined signaling topic scoped to one call.

    Incoming messages are validated, filtered to those sent by the expected
    peer, and dispatched to the handler registered for their type. Every
    delivery runs the handler again, so handlers must tolerate redelivery.
    Handlers run as tasks owned by the channel; :meth:`close` cancels any
    still in flight and guarantees no further dispatch.

    ``peer_id=None`` accepts messages from any sender (used for
    matchmaking inboxes, where the sender is not known in advance).
    """

    def __init__(
        self, pubsub: PubSub, topic: str, *, local_id: str, peer_id: str | None
    ) -> None:
        self.topic = topic
        self.local_id = local_id
        self.peer_id = peer_id
        self._pubsub = pubsub
        self._subscription: Subscription | None = None
        self._handlers: dict[MessageType, Handler] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @classmethod
    async def open(
        cls,
        pubsub: PubSub,
        topic: str,
        *,
        local_id: str,
        peer_id: str | None = None,
    ) -> SignalingChannel:
        """Join *topic*. Raises ChannelJoinError if the relay refuses."""
        channel = cls(pubsub, topic, local_id=local_id, peer_id=peer_id)
        channel._subscription = await pubsub.subscribe(topic, channel._on_event)
        logger.info("Joined signaling channel %s as %s", topic, local_id)
        return channel

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, kind: MessageType, handler: Handler) -> SignalingChannel:
        self._handlers[kind] = handler
        return self

    def _on_event(self, event: str, payload: Any) -> None:
        if self._closed:
            return
        try:
            message = parse_message(event, payload)
        except InvalidMessage as exc:
            logger.warning("Dropping invalid message on %s: %s", self.topic, exc)
            return

        sender = getattr(message, "sender", None)
        if self.peer_id is not None and sender != self.peer_id:
            # Our own broadcasts echo back, and strangers are ignored
            logger.debug("Ignoring %s from %r on %s", event, sender, self.topic)
            return

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug("No handler for %s on %s", event, self.topic)
            return
        task = asyncio.get_running_loop().create_task(self._run(handler, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: Handler, message: Message) -> None:
        try:
            result = handler(message)
            if result is not None:
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler for %s on %s failed", message.type, self.topic)

    async def send(self, message: Message) -> None:
        """Publish *message*. Raises SignalingError if the relay refuses it."""
        if self._closed:
            logger.debug("Not sending %s on closed %s", message.type, self.topic)
            return
        event, payload = encode_message(message)
        await self._pubsub.publish(self.topic, event, payload)

    async def send_best_effort(self, message: Message) -> bool:
        try:
            await self.send(message)
        except SignalingError as exc:
            logger.warning("Lost %s on %s: %s", message.type, self.topic, exc)
            return False
        return True

    async def close(self) -> None:
        """Unsubscribe. Safe to call again; only the first call does work."""
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await self._pubsub.unsubscribe(sub)
        logger.info("Left signaling channel %s", self.topic)
