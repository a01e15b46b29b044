import asyncio

import pytest

from campus_call.call.ringtone import (
    BEEP_DURATION,
    BEEP_OFFSETS,
    SAMPLE_RATE,
    TONE_GAIN,
    Ringer,
    beep,
    generate_ring_pcm,
    mix_into,
    to_pcm16,
)


def test_beep_length_and_range():
    samples = beep()
    assert len(samples) == int(SAMPLE_RATE * BEEP_DURATION)
    assert all(-TONE_GAIN <= s <= TONE_GAIN for s in samples)


def test_beep_starts_and_ends_silent():
    samples = beep()
    assert samples[0] == 0.0
    assert abs(samples[-1]) < 0.01


def test_mix_into_adds_with_gain():
    dest = [0.0, 0.0, 0.0, 0.0, 0.0]
    src = [1.0, 2.0]
    mix_into(dest, src, 1, 0.5)
    assert dest == [0.0, 0.5, 1.0, 0.0, 0.0]


def test_mix_into_clips_at_end():
    dest = [0.0, 0.0, 0.0]
    src = [1.0, 1.0, 1.0, 1.0]
    mix_into(dest, src, 2, 1.0)
    assert dest == [0.0, 0.0, 1.0]


def test_ring_is_two_beeps():
    samples = generate_ring_pcm()
    assert len(samples) == int(SAMPLE_RATE * (BEEP_OFFSETS[-1] + BEEP_DURATION))
    # Gap between the two beeps is silent
    gap_start = int(SAMPLE_RATE * BEEP_DURATION) + 10
    gap_end = int(SAMPLE_RATE * BEEP_OFFSETS[1]) - 10
    assert all(s == 0.0 for s in samples[gap_start:gap_end])
    assert max(abs(s) for s in samples) <= TONE_GAIN


def test_to_pcm16_two_bytes_per_sample():
    pcm = to_pcm16([0.0, 1.0, -1.0, 2.0])
    assert len(pcm) == 8
    assert pcm[2:4] == (32767).to_bytes(2, "little", signed=True)
    assert pcm[6:8] == pcm[2:4]


@pytest.mark.asyncio
async def test_ringer_repeats_same_tone():
    played: list[bytes] = []
    ringer = Ringer(played.append, interval=0.01)
    ringer.start()
    assert ringer.active
    await asyncio.sleep(0.05)
    ringer.stop()
    assert len(played) >= 3
    assert len(set(played)) == 1
    assert ringer.rings == len(played)


@pytest.mark.asyncio
async def test_ringer_start_is_idempotent():
    played: list[bytes] = []
    ringer = Ringer(played.append, interval=10)
    ringer.start()
    ringer.start()
    assert len(played) == 1
    ringer.stop()


@pytest.mark.asyncio
async def test_stopped_ringer_stays_stopped():
    played: list[bytes] = []
    ringer = Ringer(played.append, interval=0.01)
    ringer.start()
    ringer.stop()
    ringer.stop()
    ringer.start()
    await asyncio.sleep(0.03)
    assert len(played) == 1
    assert not ringer.active


@pytest.mark.asyncio
async def test_ringer_survives_sink_errors():
    calls = []

    def sink(pcm: bytes) -> None:
        calls.append(pcm)
        raise OSError("speaker unplugged")

    ringer = Ringer(sink, interval=0.01)
    ringer.start()
    await asyncio.sleep(0.035)
    ringer.stop()
    assert len(calls) >= 2
