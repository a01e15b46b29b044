"""Local camera/microphone acquisition."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any, Protocol

from campus_call.errors import MediaAccessDenied, MediaUnavailable

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class AudioConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    channel_count: int = 1
    sample_rate: int = 48000


@dataclasses.dataclass(frozen=True)
class VideoConstraints:
    facing_mode: str = "user"
    width: int = 1280
    height: int = 720
    frame_rate: int = 30


@dataclasses.dataclass(frozen=True)
class MediaConstraints:
    audio: AudioConstraints = AudioConstraints()
    video: VideoConstraints | None = VideoConstraints()

    def audio_only(self) -> MediaConstraints:
        return dataclasses.replace(self, video=None)


DEFAULT_CONSTRAINTS = MediaConstraints()


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    @property
    def ready_state(self) -> str: ...

    def stop(self) -> None: ...


class MediaDevices(Protocol):
    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        """Raise MediaAccessDenied on refusal, MediaUnavailable on device failure."""
        ...


class MediaStream:
    """An ordered collection of tracks, local or remote."""

    def __init__(self, tracks: Iterable[Any] = ()) -> None:
        self._tracks: list[Any] = list(tracks)

    def add_track(self, track: Any) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self) -> list[Any]:
        return list(self._tracks)

    def audio_tracks(self) -> list[Any]:
        return [t for t in self._tracks if t.kind == "audio"]

    def video_tracks(self) -> list[Any]:
        return [t for t in self._tracks if t.kind == "video"]

    def live_tracks(self) -> list[Any]:
        return [t for t in self._tracks if t.ready_state == "live"]


def stop_stream(stream: MediaStream) -> int:
    """Stop every live track; return how many were stopped."""
    stopped = 0
    for track in stream.get_tracks():
        if track.ready_state == "live":
            track.stop()
            stopped += 1
    return stopped


async def acquire_local_media(
    devices: MediaDevices, constraints: MediaConstraints = DEFAULT_CONSTRAINTS
) -> MediaStream:
    """Open camera + microphone, degrading to audio-only once on camera failure.

    A permission refusal is surfaced as-is and never retried.
    """
    try:
        stream = await devices.get_user_media(constraints)
    except MediaAccessDenied:
        logger.warning("Camera/microphone access denied")
        raise
    except MediaUnavailable as exc:
        if constraints.video is None:
            raise
        logger.warning("Camera unavailable (%s), falling back to audio-only", exc)
        try:
            stream = await devices.get_user_media(constraints.audio_only())
        except MediaUnavailable as audio_exc:
            raise MediaUnavailable(f"no usable microphone: {audio_exc}") from audio_exc
    logger.info(
        "Local media acquired: %d audio, %d video track(s)",
        len(stream.audio_tracks()),
        len(stream.video_tracks()),
    )
    return stream
