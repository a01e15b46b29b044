"""Two-party call driver exposed to the hosting UI.

``CallController`` wires the state machine, the signaling channel and the
peer-connection manager together for one participant of one call:

- caller: ``start()`` → ringing, publish offer, honor the first answer →
  accepted;
- callee: ``answer()`` → join the channel, answer the first offer →
  accepted;
- either: remote ``hangup``, local ``end()``, a terminal transport state or
  leaving the ``async with`` block → ended, followed by exactly one teardown
  and one ``on_ended`` callback.

Signaling may be redelivered and reordered; every handler below is safe to
run any number of times.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from campus_call.call.media import MediaStream
from campus_call.call.peer import PeerConnection, PeerConnectionManager
from campus_call.call.ringtone import Ringer
from campus_call.call.state import CallStateMachine, CallStatus, Negotiation, Role
from campus_call.call.store import CallSessionStore
from campus_call.errors import (
    CallError,
    CallSetupError,
    SessionStoreError,
    SignalingError,
)
from campus_call.signaling.channel import SignalingChannel, call_topic
from campus_call.signaling.message import (
    Answer,
    Candidate,
    Hangup,
    IceCandidate,
    MessageType,
    Offer,
)
from campus_call.signaling.pubsub import PubSub

logger = logging.getLogger(__name__)

StreamSink = Callable[[MediaStream], None]

OFFER_RETRY_INTERVAL = 3.0


class CallController:
    def __init__(
        self,
        *,
        local_id: str,
        peer_id: str,
        session_id: str,
        role: Role,
        pubsub: PubSub,
        store: CallSessionStore,
        media: PeerConnectionManager,
        ringer: Ringer | None = None,
        ring_timeout: float | None = None,
        offer_retry_interval: float | None = OFFER_RETRY_INTERVAL,
        on_ended: Callable[[], None] | None = None,
    ) -> None:
        self.local_id = local_id
        self.peer_id = peer_id
        self.session_id = session_id
        self.role = role
        self._pubsub = pubsub
        self._store = store
        self._media = media
        self._ringer = ringer
        self._ring_timeout = ring_timeout
        self._offer_retry_interval = offer_retry_interval
        self._on_ended = on_ended
        self._machine = CallStateMachine(role)
        self._pc: PeerConnection | None = None
        self._pending_candidates: list[Candidate] = []
        self._offer_sdp: str | None = None
        self._ring_timer: asyncio.TimerHandle | None = None
        self._offer_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._local_sinks: list[StreamSink] = []
        self._remote_sinks: list[StreamSink] = []
        self._ended = asyncio.Event()
        self.end_reason: str | None = None
        self.is_muted = False
        self.is_camera_off = False

    # -- UI contract -------------------------------------------------------

    @property
    def status(self) -> CallStatus:
        return self._machine.status

    @property
    def negotiation(self) -> Negotiation:
        return self._machine.negotiation

    @property
    def local_stream(self) -> MediaStream | None:
        return self._media.local_stream

    @property
    def remote_stream(self) -> MediaStream | None:
        return self._media.remote_stream

    def attach_local_view(self, sink: StreamSink) -> None:
        self._local_sinks.append(sink)
        if self._media.local_stream is not None:
            sink(self._media.local_stream)

    def attach_remote_view(self, sink: StreamSink) -> None:
        self._remote_sinks.append(sink)
        if self._media.remote_stream is not None:
            sink(self._media.remote_stream)

    async def wait_ended(self) -> None:
        await self._ended.wait()

    async def start(self) -> None:
        """Caller: ring the callee and publish the offer."""
        if self.role != Role.CALLER:
            raise CallSetupError("only the caller starts a call")
        if not self._machine.transition(CallStatus.RINGING):
            logger.warning("start() ignored in status %s", self.status)
            return
        self._start_ringing()
        if not await self._setup(
            {
                MessageType.ANSWER: self._handle_answer,
                MessageType.ICE_CANDIDATE: self._handle_candidate,
                MessageType.HANGUP: self._handle_hangup,
            }
        ):
            return
        assert self._pc is not None
        try:
            offer = await self._pc.create_offer()
            await self._pc.set_local_description("offer", offer)
            self._offer_sdp = self._pc.local_sdp or offer
            # Ready for an answer before the offer can reach the callee
            self._machine.offer_published()
            await self._channel_send(Offer(sdp=self._offer_sdp, sender=self.local_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._machine.ended:
                return
            logger.exception("Publishing offer for %s failed", self.session_id)
            self._machine.negotiation_failed()
            await self._finish("offer failed", notify_peer=True)
            raise CallSetupError(f"offer failed: {exc}") from exc
        self._schedule_offer_retry()

    async def answer(self) -> None:
        """Callee: join the call channel and wait for the caller's offer."""
        if self.role != Role.CALLEE:
            raise CallSetupError("only the callee answers a call")
        if self.status != CallStatus.IDLE or self.negotiation != Negotiation.NEW:
            logger.warning("answer() ignored in status %s", self.status)
            return
        if not await self._setup(
            {
                MessageType.OFFER: self._handle_offer,
                MessageType.ICE_CANDIDATE: self._handle_candidate,
                MessageType.HANGUP: self._handle_hangup,
            }
        ):
            return
        self._machine.await_offer()

    async def end(self) -> None:
        """Hang up: ended immediately, tell the peer, release everything."""
        await self._finish("local hangup", notify_peer=True)

    async def close(self) -> None:
        """Release the call when its owner goes away (same as hanging up)."""
        await self._finish("closed", notify_peer=True)

    async def __aenter__(self) -> CallController:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def toggle_mute(self) -> bool:
        stream = self._media.local_stream
        tracks = stream.audio_tracks() if stream is not None else []
        if tracks:
            self.is_muted = not self.is_muted
            for track in tracks:
                track.enabled = not self.is_muted
        return self.is_muted

    def toggle_camera(self) -> bool:
        stream = self._media.local_stream
        tracks = stream.video_tracks() if stream is not None else []
        if tracks:
            self.is_camera_off = not self.is_camera_off
            for track in tracks:
                track.enabled = not self.is_camera_off
        return self.is_camera_off

    # -- setup -------------------------------------------------------------

    async def _setup(self, handlers: dict[MessageType, Any]) -> bool:
        """Acquire media, join the channel, build the transport.

        Returns False if the call ended while setting up. Setup errors end
        the call, release whatever was acquired and propagate.
        """
        try:
            stream = await self._media.acquire_local_media()
            for sink in self._local_sinks:
                sink(stream)
            channel = await SignalingChannel.open(
                self._pubsub,
                call_topic(self.session_id),
                local_id=self.local_id,
                peer_id=self.peer_id,
            )
            try:
                self._media.adopt_channel(channel)
            except CallSetupError:
                await channel.close()
                raise
            for kind, handler in handlers.items():
                channel.on(kind, handler)
            self._pc = self._media.create_transport(
                local_id=self.local_id,
                on_remote_stream=self._remote_stream_arrived,
                on_failure=self._transport_failed,
            )
        except CallError as exc:
            if self._machine.ended:
                logger.info("Call %s ended during setup", self.session_id)
                return False
            logger.warning("Call setup failed for %s: %s", self.session_id, exc)
            await self._finish(f"setup failed: {exc}")
            raise
        except asyncio.CancelledError:
            await self._finish("setup cancelled")
            raise
        except Exception as exc:
            if self._machine.ended:
                logger.info("Call %s ended during setup", self.session_id)
                return False
            logger.exception("Call setup crashed for %s", self.session_id)
            await self._finish(f"setup failed: {exc}")
            raise CallSetupError(f"setup failed: {exc}") from exc
        return not self._machine.ended

    # -- signaling handlers --------------------------------------------------

    async def _handle_offer(self, message: Offer) -> None:
        pc = self._pc
        if pc is None or not self._machine.take_offer():
            logger.debug(
                "Ignoring offer for %s (%s)", self.session_id, self.negotiation
            )
            return
        try:
            await pc.set_remote_description("offer", message.sdp)
            await self._flush_candidates(pc)
            answer = await pc.create_answer()
            await pc.set_local_description("answer", answer)
            await self._channel_send(
                Answer(sdp=pc.local_sdp or answer, sender=self.local_id)
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._machine.ended:
                return
            if self._machine.answer_failed():
                logger.warning(
                    "Answering %s failed; will retry on the next offer",
                    self.session_id,
                    exc_info=True,
                )
                return
            logger.exception("Answering %s failed again", self.session_id)
            await self._finish("answer failed", notify_peer=True)
            return
        if not self._machine.answer_published():
            return
        await self._enter_accepted()

    async def _handle_answer(self, message: Answer) -> None:
        pc = self._pc
        if pc is None or pc.signaling_state != "have-local-offer":
            logger.debug("Ignoring answer for %s: no local offer", self.session_id)
            return
        if not self._machine.take_answer():
            logger.debug("Ignoring duplicate answer for %s", self.session_id)
            return
        self._cancel_offer_retry()
        try:
            await pc.set_remote_description("answer", message.sdp)
            await self._flush_candidates(pc)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._machine.ended:
                return
            logger.exception("Applying answer for %s failed", self.session_id)
            await self._finish("answer rejected", notify_peer=True)
            return
        await self._enter_accepted()

    async def _handle_candidate(self, message: IceCandidate) -> None:
        pc = self._pc
        if pc is None or self._machine.ended:
            logger.debug("Dropping late candidate for %s", self.session_id)
            return
        if pc.remote_sdp is None:
            # No remote description yet; applied once it is set
            self._pending_candidates.append(message.candidate)
            return
        await self._apply_candidate(pc, message.candidate)

    async def _handle_hangup(self, message: Hangup) -> None:
        await self._finish("remote hangup")

    async def _apply_candidate(self, pc: PeerConnection, candidate: Candidate) -> None:
        try:
            await pc.add_ice_candidate(candidate)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Stale candidates are dropped
            logger.debug("Ignoring candidate for %s: %s", self.session_id, exc)

    async def _flush_candidates(self, pc: PeerConnection) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(pc, candidate)

    # -- transitions ----------------------------------------------------------

    async def _enter_accepted(self) -> None:
        if not self._machine.transition(CallStatus.ACCEPTED):
            return
        self._stop_ringing()
        try:
            await self._store.update_status(self.session_id, CallStatus.ACCEPTED)
        except SessionStoreError:
            logger.warning(
                "Could not record %s as accepted", self.session_id, exc_info=True
            )

    def _remote_stream_arrived(self, stream: MediaStream) -> None:
        for sink in self._remote_sinks:
            sink(stream)

    def _transport_failed(self, state: str) -> None:
        self._spawn(self._finish(f"transport {state}"))

    async def _finish(self, reason: str, *, notify_peer: bool = False) -> None:
        if not self._machine.transition(CallStatus.ENDED):
            return
        self.end_reason = reason
        logger.info("Call %s ended: %s", self.session_id, reason)
        self._stop_ringing()
        self._cancel_offer_retry()
        self._pending_candidates.clear()

        channel = self._media.channel
        if notify_peer and channel is not None:
            await channel.send_best_effort(Hangup(sender=self.local_id))

        await self._media.teardown()
        self._pc = None

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        try:
            await self._store.update_status(self.session_id, CallStatus.ENDED)
        except SessionStoreError:
            logger.warning(
                "Could not record %s as ended", self.session_id, exc_info=True
            )

        self._ended.set()
        if self._on_ended is not None:
            try:
                self._on_ended()
            except Exception:
                logger.exception("on_ended callback failed")

    # -- timers ---------------------------------------------------------------

    def _start_ringing(self) -> None:
        loop = asyncio.get_running_loop()
        if self._ringer is not None:
            self._ringer.start()
        if self._ring_timeout is not None:
            self._ring_timer = loop.call_later(
                self._ring_timeout,
                lambda: self._spawn(self._finish("no answer", notify_peer=True)),
            )

    def _stop_ringing(self) -> None:
        if self._ringer is not None:
            self._ringer.stop()
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None

    def _schedule_offer_retry(self) -> None:
        if self._offer_retry_interval is None or self._machine.ended:
            return
        loop = asyncio.get_running_loop()
        self._offer_timer = loop.call_later(
            self._offer_retry_interval, self._resend_offer
        )

    def _resend_offer(self) -> None:
        """Republish the same offer while no answer has arrived; a callee that
        joined late would otherwise never see it."""
        self._offer_timer = None
        if self.negotiation != Negotiation.AWAITING_ANSWER:
            return
        if self._offer_sdp is None:
            return
        channel = self._media.channel
        if channel is None:
            return
        logger.debug("Re-sending offer for %s", self.session_id)
        self._spawn(
            channel.send_best_effort(Offer(sdp=self._offer_sdp, sender=self.local_id))
        )
        self._schedule_offer_retry()

    def _cancel_offer_retry(self) -> None:
        if self._offer_timer is not None:
            self._offer_timer.cancel()
            self._offer_timer = None

    # -- helpers ---------------------------------------------------------------

    async def _channel_send(self, message: Offer | Answer) -> None:
        channel = self._media.channel
        if channel is None:
            raise SignalingError("channel is closed")
        await channel.send(message)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
