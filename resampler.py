"""Conversion of captured audio to 16 kHz mono float32.

Rate conversion is polyphase windowed-sinc: a low-pass FIR is designed with
``scipy.signal.firwin`` and applied by ``scipy.signal.resample_poly``. Each
call is independent (no filter state carried between chunks), so a chunk's
output depends only on that chunk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

import numpy as np
from scipy import signal

from models import TARGET_SAMPLE_RATE, AudioFrame, ResamplerQuality

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SincParameters:
    sinc_len: int  # zero crossings of the kernel, both sides
    f_cutoff: float  # relative to the lower of the two Nyquist rates
    oversampling_factor: int  # max denominator of the conversion ratio
    window: str


PRESETS = {
    ResamplerQuality.FAST: SincParameters(
        sinc_len=16, f_cutoff=0.90, oversampling_factor=64, window="hann"
    ),
    ResamplerQuality.BALANCED: SincParameters(
        sinc_len=32, f_cutoff=0.925, oversampling_factor=160, window="blackman"
    ),
    ResamplerQuality.HIGH_QUALITY: SincParameters(
        sinc_len=64, f_cutoff=0.95, oversampling_factor=512, window="blackmanharris"
    ),
}


def to_mono(data: np.ndarray, channels: int) -> np.ndarray:
    """Average interleaved or ``(frames, channels)`` audio down to one channel."""
    data = np.asarray(data, dtype=np.float32)
    if channels <= 1:
        return data.reshape(-1)
    return data.reshape(-1, channels).mean(axis=1, dtype=np.float32)


class Resampler:
    def __init__(
        self,
        quality: ResamplerQuality = ResamplerQuality.BALANCED,
        params: Optional[SincParameters] = None,
        target_rate: int = TARGET_SAMPLE_RATE,
    ) -> None:
        self.params = params or PRESETS[quality]
        self.target_rate = target_rate
        self._filters: dict[tuple[int, int], np.ndarray] = {}

    def process(self, frame: AudioFrame) -> np.ndarray:
        mono = to_mono(frame.as_float32(), frame.channels)
        return self.resample(mono, frame.sample_rate)

    def resample(self, mono: np.ndarray, source_rate: int) -> np.ndarray:
        mono = np.asarray(mono, dtype=np.float32)
        if source_rate == self.target_rate:
            return mono.copy()
        if mono.size == 0:
            return np.zeros(0, dtype=np.float32)
        up, down = self.ratio(source_rate)
        taps = self._design(up, down)
        out = signal.resample_poly(mono, up, down, window=taps)
        return out.astype(np.float32, copy=False)

    def ratio(self, source_rate: int) -> tuple[int, int]:
        exact = Fraction(self.target_rate, source_rate)
        approx = exact.limit_denominator(self.params.oversampling_factor)
        if approx != exact:
            logger.debug(
                "Approximating %d->%d Hz ratio %s as %s",
                source_rate,
                self.target_rate,
                exact,
                approx,
            )
        return approx.numerator, approx.denominator

    def _design(self, up: int, down: int) -> np.ndarray:
        key = (up, down)
        taps = self._filters.get(key)
        if taps is None:
            max_rate = max(up, down)
            half_len = (self.params.sinc_len // 2) * max_rate
            taps = signal.firwin(
                2 * half_len + 1,
                self.params.f_cutoff / max_rate,
                window=self.params.window,
            )
            self._filters[key] = taps
        return taps
