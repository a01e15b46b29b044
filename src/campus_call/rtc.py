"""aiortc bindings for the peer-connection and media-device contracts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame, VideoFrame

from campus_call.call.media import MediaConstraints, MediaStream
from campus_call.config import IceServer
from campus_call.errors import MediaAccessDenied, MediaUnavailable
from campus_call.signaling.message import Candidate

logger = logging.getLogger(__name__)


def to_rtc_configuration(ice_servers: Sequence[IceServer]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(
                urls=list(server.urls),
                username=server.username,
                credential=server.credential,
            )
            for server in ice_servers
        ]
    )


def candidates_from_sdp(sdp: str) -> list[Candidate]:
    """List the ``a=candidate`` lines of a description with their m-section."""
    found: list[Candidate] = []
    index = -1
    mid: str | None = None
    section: list[str] = []

    def flush() -> None:
        for line in section:
            found.append(Candidate(candidate=line, sdp_mid=mid, sdp_mline_index=index))

    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            flush()
            index += 1
            mid = None
            section = []
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:") :]
        elif line.startswith("a=candidate:") and index >= 0:
            section.append(line[len("a=") :])
    flush()
    return found


class SwitchableTrack(MediaStreamTrack):
    """Wraps a capture track so it can be muted without renegotiation.

    While ``enabled`` is False the track keeps its timing but sends silence
    (audio) or black frames (video).
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    @property
    def ready_state(self) -> str:
        return self.readyState

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            blank = AudioFrame(
                format=frame.format.name,
                layout=frame.layout.name,
                samples=frame.samples,
            )
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
            blank.sample_rate = frame.sample_rate
        else:
            blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
            # Y = 0, U = V = 128 is black in yuv420p
            for i, plane in enumerate(blank.planes):
                fill = b"\x00" if i == 0 else b"\x80"
                plane.update(fill * plane.buffer_size)
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcPeerConnection:
    """PeerConnection backed by :class:`aiortc.RTCPeerConnection`.

    aiortc gathers candidates while setting the local description and embeds
    them in it; they are also surfaced one by one through
    ``on_ice_candidate`` so browser peers can trickle them.
    """

    def __init__(self, ice_servers: Sequence[IceServer]) -> None:
        self._pc = RTCPeerConnection(configuration=to_rtc_configuration(ice_servers))
        self._remote = MediaStream()
        self.on_ice_candidate: Callable[[Candidate], None] | None = None
        self.on_track: Callable[[MediaStream], None] | None = None
        self.on_connection_state_change: Callable[[str], None] | None = None
        self._pc.on("track", self._handle_track)
        self._pc.on("connectionstatechange", self._handle_state)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_sdp(self) -> str | None:
        desc = self._pc.localDescription
        return desc.sdp if desc is not None else None

    @property
    def remote_sdp(self) -> str | None:
        desc = self._pc.remoteDescription
        return desc.sdp if desc is not None else None

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> str:
        return (await self._pc.createOffer()).sdp

    async def create_answer(self) -> str:
        return (await self._pc.createAnswer()).sdp

    async def set_local_description(self, kind: str, sdp: str) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=kind))
        if self.on_ice_candidate is not None and self.local_sdp is not None:
            for candidate in candidates_from_sdp(self.local_sdp):
                self.on_ice_candidate(candidate)

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        if not candidate.candidate:
            # End-of-candidates marker
            return
        line = candidate.candidate
        if line.startswith("candidate:"):
            line = line[len("candidate:") :]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        logger.info("Remote %s track received", track.kind)
        self._remote.add_track(track)
        if self.on_track is not None:
            self.on_track(self._remote)

    def _handle_state(self) -> None:
        if self.on_connection_state_change is not None:
            self.on_connection_state_change(self._pc.connectionState)

    async def close(self) -> None:
        await self._pc.close()


class AiortcMediaDevices:
    """Opens capture devices through FFmpeg (``v4l2`` video, ``pulse`` audio).

    FFmpeg's ``pulse`` input has no audio processing of its own, so echo
    cancellation, noise suppression and gain control come from the capture
    source: load ``module-echo-cancel aec_method=webrtc
    aec_args="noise_suppression=1 digital_gain_control=1"`` and point
    ``audio_device`` at its source. The numeric constraints are passed to
    FFmpeg as device options.
    """

    def __init__(
        self,
        *,
        video_device: str = "/dev/video0",
        audio_device: str = "default",
        video_format: str = "v4l2",
        audio_format: str = "pulse",
    ) -> None:
        self._video_device = video_device
        self._audio_device = audio_device
        self._video_format = video_format
        self._audio_format = audio_format

    @staticmethod
    def _open(file: str, fmt: str, options: dict[str, str]) -> MediaPlayer:
        try:
            return MediaPlayer(file, format=fmt, options=options)
        except PermissionError as exc:
            raise MediaAccessDenied(f"access to {file} denied") from exc
        except (OSError, ValueError) as exc:
            raise MediaUnavailable(f"cannot open {file}: {exc}") from exc

    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        loop = asyncio.get_running_loop()
        audio = constraints.audio
        if not (
            audio.echo_cancellation
            and audio.noise_suppression
            and audio.auto_gain_control
        ):
            logger.warning("Audio processing constraints relaxed: %s", audio)
        mic = await loop.run_in_executor(
            None,
            self._open,
            self._audio_device,
            self._audio_format,
            {
                "sample_rate": str(audio.sample_rate),
                "channels": str(audio.channel_count),
            },
        )
        tracks: list[SwitchableTrack] = []
        if mic.audio is None:
            raise MediaUnavailable(f"{self._audio_device} has no audio")
        tracks.append(SwitchableTrack(mic.audio))

        video = constraints.video
        if video is not None:
            try:
                camera = await loop.run_in_executor(
                    None,
                    self._open,
                    self._video_device,
                    self._video_format,
                    {
                        "video_size": f"{video.width}x{video.height}",
                        "framerate": str(video.frame_rate),
                    },
                )
            except (MediaAccessDenied, MediaUnavailable):
                tracks[0].stop()
                raise
            if camera.video is None:
                tracks[0].stop()
                raise MediaUnavailable(f"{self._video_device} has no video")
            tracks.append(SwitchableTrack(camera.video))
        return MediaStream(tracks)
