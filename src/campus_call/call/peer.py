"""Media & peer-connection manager.

Owns everything one participant acquires for a call: the local media stream,
the point-to-point transport and the signaling channel. :meth:`teardown`
releases all of it and is the single release path for every way a call can
end.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from campus_call.call.media import (
    DEFAULT_CONSTRAINTS,
    MediaConstraints,
    MediaDevices,
    MediaStream,
    acquire_local_media,
    stop_stream,
)
from campus_call.config import IceServer
from campus_call.errors import CallSetupError
from campus_call.signaling.channel import SignalingChannel
from campus_call.signaling.message import Candidate, IceCandidate

logger = logging.getLogger(__name__)

# Connection states that end the call. The transport is the authoritative
# failure detector; signaling messages are advisory.
TERMINAL_CONNECTION_STATES = frozenset({"failed", "disconnected", "closed"})


class PeerConnection(Protocol):
    on_ice_candidate: Callable[[Candidate], None] | None
    on_track: Callable[[MediaStream], None] | None
    on_connection_state_change: Callable[[str], None] | None

    @property
    def signaling_state(self) -> str: ...

    @property
    def connection_state(self) -> str: ...

    @property
    def local_sdp(self) -> str | None: ...

    @property
    def remote_sdp(self) -> str | None: ...

    def add_track(self, track: Any) -> None: ...

    async def create_offer(self) -> str: ...

    async def create_answer(self) -> str: ...

    async def set_local_description(self, kind: str, sdp: str) -> None: ...

    async def set_remote_description(self, kind: str, sdp: str) -> None: ...

    async def add_ice_candidate(self, candidate: Candidate) -> None: ...

    async def close(self) -> None: ...


PeerConnectionFactory = Callable[[Sequence[IceServer]], PeerConnection]


class PeerConnectionManager:
    def __init__(
        self,
        devices: MediaDevices,
        pc_factory: PeerConnectionFactory,
        ice_servers: Sequence[IceServer],
        *,
        constraints: MediaConstraints = DEFAULT_CONSTRAINTS,
    ) -> None:
        self._devices = devices
        self._pc_factory = pc_factory
        self._ice_servers = tuple(ice_servers)
        self._constraints = constraints
        self.local_stream: MediaStream | None = None
        self.remote_stream: MediaStream | None = None
        self.pc: PeerConnection | None = None
        self.channel: SignalingChannel | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._torn_down = False

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    async def acquire_local_media(self) -> MediaStream:
        if self.local_stream is not None:
            return self.local_stream
        stream = await acquire_local_media(self._devices, self._constraints)
        if self._torn_down:
            # The call ended while the devices were opening
            stop_stream(stream)
            raise CallSetupError("call ended during media acquisition")
        self.local_stream = stream
        return stream

    def adopt_channel(self, channel: SignalingChannel) -> None:
        """Take ownership of *channel*; it is closed by :meth:`teardown`."""
        if self._torn_down:
            raise CallSetupError("call ended during channel join")
        self.channel = channel

    def create_transport(
        self,
        *,
        local_id: str,
        on_remote_stream: Callable[[MediaStream], None],
        on_failure: Callable[[str], None],
    ) -> PeerConnection:
        """Build the peer connection over the adopted channel and local stream."""
        if self._torn_down:
            raise CallSetupError("call already torn down")
        if self.local_stream is None or self.channel is None:
            raise CallSetupError("local media and channel are required first")
        channel = self.channel
        pc = self._pc_factory(self._ice_servers)
        self.pc = pc

        for track in self.local_stream.get_tracks():
            pc.add_track(track)

        def handle_candidate(candidate: Candidate) -> None:
            if self._torn_down:
                return
            self._spawn(
                channel.send_best_effort(
                    IceCandidate(candidate=candidate, sender=local_id)
                )
            )

        def handle_track(stream: MediaStream) -> None:
            if self._torn_down:
                return
            self.remote_stream = stream
            on_remote_stream(stream)

        def handle_state(state: str) -> None:
            logger.info("Peer connection state: %s", state)
            if state in TERMINAL_CONNECTION_STATES and not self._torn_down:
                on_failure(state)

        pc.on_ice_candidate = handle_candidate
        pc.on_track = handle_track
        pc.on_connection_state_change = handle_state
        logger.info(
            "Transport created with %d ICE server(s), %d local track(s)",
            len(self._ice_servers),
            len(self.local_stream.get_tracks()),
        )
        return pc

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def teardown(self) -> None:
        """Stop local tracks, close transport and channel, drop references.

        Idempotent: later calls return immediately.
        """
        if self._torn_down:
            return
        self._torn_down = True

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

        stream, self.local_stream = self.local_stream, None
        if stream is not None:
            stopped = stop_stream(stream)
            logger.debug("Stopped %d local track(s)", stopped)

        pc, self.pc = self.pc, None
        if pc is not None:
            # Detach first so our own close() cannot re-enter the call
            pc.on_ice_candidate = None
            pc.on_track = None
            pc.on_connection_state_change = None
            try:
                await pc.close()
            except Exception:
                logger.exception("Closing peer connection failed")

        channel, self.channel = self.channel, None
        if channel is not None:
            await channel.close()

        self.remote_stream = None
        logger.info("Call resources released")
