"""Outgoing-call ring tone and the repeating timer that plays it.

The tone is a soft double beep: two 520 Hz sine bursts, 0.18 s each, starting
0.22 s apart, at a fixed gain. It is rendered once per :class:`Ringer` and
replayed every ``interval`` seconds until the ringer is stopped. Volume never
changes between repeats.
"""

from __future__ import annotations

import asyncio
import logging
import math
import struct
from collections.abc import Callable

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
TONE_FREQ = 520.0
TONE_GAIN = 0.18
BEEP_OFFSETS = (0.0, 0.22)
BEEP_DURATION = 0.18
ATTACK = 0.02
RING_INTERVAL = 3.5


def beep(
    duration_s: float = BEEP_DURATION,
    freq: float = TONE_FREQ,
    gain: float = TONE_GAIN,
    sample_rate: int = SAMPLE_RATE,
) -> list[float]:
    """Sine burst with a linear attack ramp then a linear release to silence."""
    n = int(sample_rate * duration_s)
    attack = max(1, int(sample_rate * ATTACK))
    out: list[float] = []
    for i in range(n):
        if i < attack:
            env = i / attack
        else:
            env = max(0.0, (n - i) / (n - attack))
        out.append(gain * env * math.sin(2.0 * math.pi * freq * i / sample_rate))
    return out


def mix_into(dest: list[float], src: list[float], offset: int, gain: float) -> None:
    """Add src samples into dest at offset with gain."""
    for i, s in enumerate(src):
        pos = offset + i
        if pos < len(dest):
            dest[pos] += s * gain


def generate_ring_pcm(sample_rate: int = SAMPLE_RATE) -> list[float]:
    """One ring: both beeps, float samples in [-TONE_GAIN, TONE_GAIN]."""
    total = int(sample_rate * (BEEP_OFFSETS[-1] + BEEP_DURATION))
    out = [0.0] * total
    tone = beep(sample_rate=sample_rate)
    for offset_s in BEEP_OFFSETS:
        mix_into(out, tone, int(sample_rate * offset_s), 1.0)
    return out


def to_pcm16(samples: list[float]) -> bytes:
    """Encode float samples as little-endian signed 16-bit mono PCM."""
    clipped = (max(-1.0, min(1.0, s)) for s in samples)
    return b"".join(struct.pack("<h", int(s * 32767)) for s in clipped)


class Ringer:
    """Plays the ring tone through *sink* on a repeating timer.

    ``start`` and ``stop`` are idempotent. A stopped ringer stays stopped;
    a call creates exactly one ringer and never a second on retry.
    """

    def __init__(
        self,
        sink: Callable[[bytes], None],
        *,
        interval: float = RING_INTERVAL,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._sink = sink
        self._interval = interval
        self._loop = loop
        self._pcm: bytes | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._stopped = False
        self.rings = 0

    @property
    def active(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self._stopped or self._timer is not None:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if self._pcm is None:
            self._pcm = to_pcm16(generate_ring_pcm())
        logger.debug("Ringing every %.1fs", self._interval)
        self._fire()

    def _fire(self) -> None:
        if self._stopped or self._pcm is None or self._loop is None:
            return
        try:
            self._sink(self._pcm)
        except Exception:
            logger.warning("Ring tone sink failed", exc_info=True)
        self.rings += 1
        self._timer = self._loop.call_later(self._interval, self._fire)

    def stop(self) -> None:
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
