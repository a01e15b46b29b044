"""Callee-side notification of new ringing sessions."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from typing import Any

from campus_call.call.state import CallStatus
from campus_call.call.store import CallSessionStore
from campus_call.errors import SessionStoreError
from campus_call.profiles import ProfileLookup, lookup_profile
from campus_call.signaling.channel import incoming_topic
from campus_call.signaling.pubsub import PubSub, Subscription

logger = logging.getLogger(__name__)

INCOMING_CALL_EVENT = "incoming-call"


@dataclasses.dataclass(frozen=True)
class IncomingCall:
    session_id: str
    caller_id: str
    caller_name: str = "Unknown"
    caller_institution: str | None = None


class IncomingCallWatcher:
    """Watches the user's incoming-calls topic for newly inserted sessions.

    Only sessions inserted as ``ringing`` surface; random matches are
    inserted ``accepted`` and reach the callee through the matchmaking inbox
    instead. At most one call is pending; a newer one replaces it.
    """

    def __init__(
        self,
        pubsub: PubSub,
        store: CallSessionStore,
        user_id: str,
        *,
        profiles: ProfileLookup | None = None,
        on_incoming: Callable[[IncomingCall], None] | None = None,
    ) -> None:
        self._pubsub = pubsub
        self._store = store
        self.user_id = user_id
        self._profiles = profiles
        self._on_incoming = on_incoming
        self._subscription: Subscription | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self.pending: IncomingCall | None = None

    async def open(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self._pubsub.subscribe(
            incoming_topic(self.user_id), self._on_event
        )
        logger.info("Watching incoming calls for %s", self.user_id)

    def _on_event(self, event: str, payload: Any) -> None:
        if event != INCOMING_CALL_EVENT or not isinstance(payload, dict):
            return
        if payload.get("receiver_id") != self.user_id:
            return
        if payload.get("status") != CallStatus.RINGING:
            return
        session_id = payload.get("id")
        caller_id = payload.get("caller_id")
        if not isinstance(session_id, str) or not isinstance(caller_id, str):
            logger.warning("Malformed incoming-call payload: %r", payload)
            return
        task = asyncio.get_running_loop().create_task(
            self._announce(session_id, caller_id)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _announce(self, session_id: str, caller_id: str) -> None:
        profile = await lookup_profile(self._profiles, caller_id)
        call = IncomingCall(
            session_id=session_id,
            caller_id=caller_id,
            caller_name=profile.name if profile else "Unknown",
            caller_institution=profile.institution if profile else None,
        )
        if self._subscription is None:
            return
        self.pending = call
        logger.info("Incoming call %s from %s", session_id, caller_id)
        if self._on_incoming is not None:
            self._on_incoming(call)

    def accept(self) -> IncomingCall | None:
        """Take the pending call; the host then answers it as callee."""
        call, self.pending = self.pending, None
        return call

    async def decline(self) -> bool:
        """Mark the pending call ended without ever joining its channel."""
        call, self.pending = self.pending, None
        if call is None:
            return False
        try:
            await self._store.update_status(call.session_id, CallStatus.ENDED)
        except SessionStoreError:
            logger.warning("Could not decline %s", call.session_id, exc_info=True)
            return False
        logger.info("Declined call %s", call.session_id)
        return True

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await self._pubsub.unsubscribe(sub)
        self.pending = None
