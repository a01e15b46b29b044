"""Tests for local media acquisition and constraints."""

import pytest

from campus_call.call.media import (
    DEFAULT_CONSTRAINTS,
    MediaStream,
    acquire_local_media,
    stop_stream,
)
from campus_call.errors import MediaAccessDenied, MediaUnavailable

from .conftest import FakeMediaDevices, FakeTrack


@pytest.mark.asyncio
async def test_acquires_audio_and_video():
    devices = FakeMediaDevices()
    stream = await acquire_local_media(devices)
    assert len(stream.audio_tracks()) == 1
    assert len(stream.video_tracks()) == 1
    assert devices.requests == [DEFAULT_CONSTRAINTS]


@pytest.mark.asyncio
async def test_falls_back_to_audio_only_once():
    devices = FakeMediaDevices(camera_broken=True)
    stream = await acquire_local_media(devices)
    assert [t.kind for t in stream.get_tracks()] == ["audio"]
    assert len(devices.requests) == 2
    assert devices.requests[1].video is None
    assert devices.requests[1].audio == DEFAULT_CONSTRAINTS.audio


@pytest.mark.asyncio
async def test_denied_is_not_retried():
    devices = FakeMediaDevices(deny=True)
    with pytest.raises(MediaAccessDenied):
        await acquire_local_media(devices)
    assert len(devices.requests) == 1


@pytest.mark.asyncio
async def test_no_microphone_fails():
    devices = FakeMediaDevices(mic_broken=True)
    with pytest.raises(MediaUnavailable):
        await acquire_local_media(devices)
    assert len(devices.requests) == 2


def test_default_audio_processing_enabled():
    audio = DEFAULT_CONSTRAINTS.audio
    assert audio.echo_cancellation
    assert audio.noise_suppression
    assert audio.auto_gain_control


def test_audio_only_keeps_audio_settings():
    constraints = DEFAULT_CONSTRAINTS.audio_only()
    assert constraints.video is None
    assert constraints.audio == DEFAULT_CONSTRAINTS.audio


def test_stop_stream_counts_live_tracks():
    tracks = [FakeTrack("audio"), FakeTrack("video")]
    tracks[1].stop()
    stream = MediaStream(tracks)
    assert stop_stream(stream) == 1
    assert stream.live_tracks() == []
    assert stop_stream(stream) == 0


def test_stream_ignores_duplicate_tracks():
    track = FakeTrack("audio")
    stream = MediaStream([track])
    stream.add_track(track)
    assert stream.get_tracks() == [track]
