"""Random-match waiting room.

Correctness rests entirely on :meth:`PgMatchQueue.claim`, which runs the
``claim_random_match`` stored function: one transaction locks the caller's
own row and the oldest other waiting row (``FOR UPDATE SKIP LOCKED``) and
deletes both. Once a pair is claimed neither user is claimable by anyone
else. The client-side poll loop only provides liveness.

Flow for one user::

    search()  open inbox random-match-<me>, upsert queue row, start polling
      ├─ claim() returns partner → create accepted session, push ``matched``
      │                             to random-match-<partner>  (we are caller)
      └─ ``matched`` arrives      → we were claimed             (we are callee)
    cancel()  close the gate, stop polling, close inbox, delete queue row
    every MATCH_REJOIN_AFTER while searching: re-insert our row if a claimant
    removed it and its ``matched`` never came
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Protocol

import asyncpg

from campus_call.call.state import CallStatus, Role
from campus_call.call.store import CallSessionStore
from campus_call.errors import CallError, MatchmakingError
from campus_call.profiles import ProfileLookup, lookup_profile
from campus_call.signaling.channel import SignalingChannel, match_topic
from campus_call.signaling.message import Matched, MessageType
from campus_call.signaling.pubsub import PubSub

logger = logging.getLogger(__name__)

POLL_INTERVAL = 3.0
NOTIFY_LINGER = 2.0
REJOIN_AFTER = 30.0


class MatchQueue(Protocol):
    async def enqueue(self, user_id: str) -> None: ...

    async def claim(self, user_id: str) -> str | None: ...

    async def cancel(self, user_id: str) -> bool: ...

    async def rejoin(self, user_id: str) -> bool: ...


class PgMatchQueue:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def enqueue(self, user_id: str) -> None:
        """Insert or refresh the user's single waiting row."""
        try:
            await self._pool.execute(
                "INSERT INTO random_match_queue (user_id) VALUES ($1)"
                " ON CONFLICT (user_id) DO UPDATE SET joined_at = clock_timestamp()",
                user_id,
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise MatchmakingError(f"could not join match queue: {exc}") from exc
        logger.info("%s joined the match queue", user_id)

    async def claim(self, user_id: str) -> str | None:
        """Atomically take a partner for *user_id*, or None."""
        try:
            partner = await self._pool.fetchval(
                "SELECT claim_random_match($1)", user_id
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise MatchmakingError(f"claim failed: {exc}") from exc
        if partner is not None:
            logger.info("%s claimed %s", user_id, partner)
        return partner

    async def cancel(self, user_id: str) -> bool:
        """Remove the user's row. Returns False if it was already gone."""
        try:
            result = await self._pool.execute(
                "DELETE FROM random_match_queue WHERE user_id = $1", user_id
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise MatchmakingError(f"could not leave match queue: {exc}") from exc
        return result != "DELETE 0"

    async def rejoin(self, user_id: str) -> bool:
        """Re-insert the user's row if it is gone, keeping its place otherwise."""
        try:
            result = await self._pool.execute(
                "INSERT INTO random_match_queue (user_id) VALUES ($1)"
                " ON CONFLICT (user_id) DO NOTHING",
                user_id,
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise MatchmakingError(f"could not rejoin match queue: {exc}") from exc
        return result != "INSERT 0 0"

    async def waiting(self) -> list[str]:
        rows = await self._pool.fetch(
            "SELECT user_id FROM random_match_queue ORDER BY joined_at"
        )
        return [r["user_id"] for r in rows]


class MatchState(StrEnum):
    IDLE = "idle"
    SEARCHING = "searching"
    MATCHED = "matched"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class MatchResult:
    peer_id: str
    session_id: str
    role: Role
    peer_name: str = "Peer"
    peer_institution: str | None = None


class Matchmaker:
    """One user's search for a random partner.

    Owns the inbox subscription, the poll task and any short-lived
    notification channels. :meth:`cancel` releases the first two;
    :meth:`close` also waits out pending notifications. The state value is
    the cancellation gate: a ``matched`` message is only acted on while
    searching.
    """

    def __init__(
        self,
        *,
        user_id: str,
        queue: MatchQueue,
        store: CallSessionStore,
        pubsub: PubSub,
        poll_interval: float = POLL_INTERVAL,
        notify_linger: float = NOTIFY_LINGER,
        rejoin_after: float = REJOIN_AFTER,
        profiles: ProfileLookup | None = None,
        on_match: Callable[[MatchResult], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self._queue = queue
        self._store = store
        self._pubsub = pubsub
        self._poll_interval = poll_interval
        self._notify_linger = notify_linger
        self._rejoin_after = rejoin_after
        self._profiles = profiles
        self._on_match = on_match
        self.state = MatchState.IDLE
        self._inbox: SignalingChannel | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._notifiers: set[asyncio.Task[None]] = set()
        self._result: asyncio.Future[MatchResult] | None = None

    async def search(self) -> None:
        """Join the queue and start looking for a partner."""
        if self.state != MatchState.IDLE:
            raise MatchmakingError(f"cannot search while {self.state}")
        self.state = MatchState.SEARCHING
        self._result = asyncio.get_running_loop().create_future()
        try:
            # Listen before becoming claimable so no ``matched`` is missed
            self._inbox = await SignalingChannel.open(
                self._pubsub, match_topic(self.user_id), local_id=self.user_id
            )
            self._inbox.on(MessageType.MATCHED, self._handle_matched)
            await self._queue.enqueue(self.user_id)
        except CallError:
            self.state = MatchState.FAILED
            await self._release()
            raise
        self._wakeup.clear()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def wait(self) -> MatchResult:
        """Block until matched. Raises CancelledError if the search is cancelled."""
        if self._result is None:
            raise MatchmakingError("search() has not been called")
        return await asyncio.shield(self._result)

    async def _poll(self) -> None:
        loop = asyncio.get_running_loop()
        rejoin_at = loop.time() + self._rejoin_after
        while self.state == MatchState.SEARCHING:
            if loop.time() >= rejoin_at:
                rejoin_at = loop.time() + self._rejoin_after
                await self._rejoin()
            try:
                partner = await self._queue.claim(self.user_id)
            except MatchmakingError as exc:
                logger.warning("Match poll for %s failed: %s", self.user_id, exc)
                partner = None
            if partner is not None:
                if self.state != MatchState.SEARCHING:
                    # Cancelled while our claim was in flight
                    await self._requeue(partner)
                    return
                await self._claimed(partner)
                return
            try:
                await asyncio.wait_for(self._wakeup.wait(), self._poll_interval)
            except TimeoutError:
                pass

    async def _rejoin(self) -> None:
        """Get back in line if a claimant took our row but its notice never came."""
        try:
            restored = await self._queue.rejoin(self.user_id)
        except MatchmakingError as exc:
            logger.warning("Rejoining the queue failed for %s: %s", self.user_id, exc)
            return
        if restored and self.state == MatchState.SEARCHING:
            logger.warning(
                "%s was claimed but never notified; back in the queue", self.user_id
            )
        elif restored:
            await self._leave_queue()

    async def _leave_queue(self) -> None:
        try:
            await self._queue.cancel(self.user_id)
        except MatchmakingError:
            logger.warning(
                "Leaving the queue failed for %s", self.user_id, exc_info=True
            )

    async def _requeue(self, partner: str) -> None:
        try:
            await self._queue.enqueue(partner)
        except MatchmakingError:
            logger.warning("Could not return %s to the queue", partner, exc_info=True)

    async def _claimed(self, partner: str) -> None:
        self.state = MatchState.MATCHED
        await self._close_inbox()
        try:
            session = await self._store.create(
                self.user_id, partner, status=CallStatus.ACCEPTED
            )
        except CallError as exc:
            logger.error(
                "No call session for match %s/%s: %s", self.user_id, partner, exc
            )
            self.state = MatchState.FAILED
            await self._requeue(partner)
            self._fail(MatchmakingError(f"could not create call session: {exc}"))
            return

        partner_profile = await lookup_profile(self._profiles, partner)
        own_profile = await lookup_profile(self._profiles, self.user_id)
        notice = Matched(
            peer_id=self.user_id,
            session_id=session.id,
            peer_name=own_profile.name if own_profile else "Peer",
            peer_institution=own_profile.institution if own_profile else None,
        )
        task = asyncio.get_running_loop().create_task(self._notify(partner, notice))
        self._notifiers.add(task)
        task.add_done_callback(self._notifiers.discard)

        self._resolve(
            MatchResult(
                peer_id=partner,
                session_id=session.id,
                role=Role.CALLER,
                peer_name=partner_profile.name if partner_profile else "Peer",
                peer_institution=(
                    partner_profile.institution if partner_profile else None
                ),
            )
        )

    async def _notify(self, partner: str, notice: Matched) -> None:
        """Push ``matched`` over a throwaway channel, then drop it after a linger."""
        channel: SignalingChannel | None = None
        try:
            channel = await SignalingChannel.open(
                self._pubsub, match_topic(partner), local_id=self.user_id
            )
            await channel.send(notice)
            logger.info("Notified %s of match %s", partner, notice.session_id)
            await asyncio.sleep(self._notify_linger)
        except CallError as exc:
            logger.warning("Match notification to %s lost: %s", partner, exc)
        finally:
            if channel is not None:
                await channel.close()

    async def _handle_matched(self, message: Matched) -> None:
        if self.state != MatchState.SEARCHING:
            logger.debug("Ignoring matched for %s while %s", self.user_id, self.state)
            return
        if message.peer_id == self.user_id:
            return
        self.state = MatchState.MATCHED
        self._wakeup.set()
        logger.info("%s was matched with %s", self.user_id, message.peer_id)
        self._resolve(
            MatchResult(
                peer_id=message.peer_id,
                session_id=message.session_id,
                role=Role.CALLEE,
                peer_name=message.peer_name,
                peer_institution=message.peer_institution,
            )
        )
        await self._close_inbox()
        # A rejoin may have raced the notice
        await self._leave_queue()

    def _resolve(self, result: MatchResult) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
        if self._on_match is not None:
            self._on_match(result)

    def _fail(self, exc: BaseException) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_exception(exc)
            # Mark retrieved; wait() may never be called
            self._result.exception()

    async def cancel(self) -> bool:
        """Stop searching. Returns True if our queue row was still present.

        Once this returns, no ``matched`` notification is acted upon.
        """
        if self.state != MatchState.SEARCHING:
            return False
        self.state = MatchState.CANCELLED
        self._wakeup.set()
        await self._close_inbox()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None
        removed = False
        try:
            removed = await self._queue.cancel(self.user_id)
        except MatchmakingError:
            logger.warning(
                "Leaving the queue failed for %s", self.user_id, exc_info=True
            )
        if self._result is not None and not self._result.done():
            self._result.cancel()
        logger.info("%s cancelled matchmaking (row removed: %s)", self.user_id, removed)
        return removed

    async def _close_inbox(self) -> None:
        inbox, self._inbox = self._inbox, None
        if inbox is not None:
            await inbox.close()

    async def _release(self) -> None:
        self._wakeup.set()
        await self._close_inbox()
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        """Release everything; leaves the queue if still searching.

        A ``matched`` push still on its way to the partner is allowed to
        finish, since the partner's queue row is already gone.
        """
        if self.state == MatchState.SEARCHING:
            await self.cancel()
        await self._release()
        if not self._notifiers:
            return
        try:
            await asyncio.wait(set(self._notifiers))
        except asyncio.CancelledError:
            for notifier in list(self._notifiers):
                notifier.cancel()
            raise
