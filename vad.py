"""Energy-based voice activity gate."""

from __future__ import annotations

import logging

import numpy as np

from models import TARGET_SAMPLE_RATE, ActivityState

logger = logging.getLogger(__name__)


class VoiceActivityGate:
    """Classify consecutive chunks as speech or silence.

    The RMS of each chunk is smoothed with an exponential moving average and
    mapped to a speech probability: 0 below ``threshold``, 1 above
    ``5 * threshold`` and linear in between. A chunk counts as speech when the
    probability exceeds 0.5. Once in speech, the gate only falls back to
    silence after ``hangover_ms`` of consecutive silent audio.

    With ``adaptive=True`` the effective threshold also follows a slowly
    updated noise floor estimated from silent chunks.
    """

    def __init__(
        self,
        threshold: float = 0.005,
        smoothing: float = 0.6,
        hangover_ms: int = 300,
        sample_rate: int = TARGET_SAMPLE_RATE,
        adaptive: bool = False,
        noise_factor: float = 3.0,
    ) -> None:
        self.threshold = threshold
        self.smoothing = smoothing
        self.hangover_samples = int(sample_rate * hangover_ms / 1000)
        self.adaptive = adaptive
        self.noise_factor = noise_factor
        self.reset()

    def reset(self) -> None:
        self._energy = 0.0
        self._noise_floor = 0.0
        self._silence_run = 0
        self._state = ActivityState.SILENCE
        self._transitioned = False

    @property
    def state(self) -> ActivityState:
        return self._state

    @property
    def transitioned(self) -> bool:
        """Whether the last :meth:`update` changed the state."""
        return self._transitioned

    @property
    def effective_threshold(self) -> float:
        if not self.adaptive:
            return self.threshold
        return max(self.threshold, self._noise_floor * self.noise_factor)

    def speech_probability(self, chunk: np.ndarray) -> float:
        return self._probability(_rms(chunk))

    def update(self, chunk: np.ndarray) -> ActivityState:
        if len(chunk) == 0:
            self._transitioned = False
            return self._state
        rms = _rms(chunk)
        self._energy = self.smoothing * rms + (1.0 - self.smoothing) * self._energy
        is_speech = self._probability(self._energy) > 0.5

        if self.adaptive and not is_speech:
            self._noise_floor = 0.95 * self._noise_floor + 0.05 * rms

        previous = self._state
        if is_speech:
            self._silence_run = 0
            self._state = ActivityState.SPEECH
        elif previous == ActivityState.SPEECH:
            self._silence_run += len(chunk)
            if self._silence_run >= self.hangover_samples:
                self._state = ActivityState.SILENCE
                self._silence_run = 0
        self._transitioned = self._state != previous
        if self._transitioned:
            logger.debug("VAD %s -> %s (energy %.4f)", previous.value, self._state.value, self._energy)
        return self._state

    def _probability(self, rms: float) -> float:
        threshold = self.effective_threshold
        if rms < threshold:
            return 0.0
        if rms > threshold * 5.0:
            return 1.0
        return min(1.0, (rms - threshold) / (threshold * 4.0))


def _rms(chunk: np.ndarray) -> float:
    data = np.asarray(chunk, dtype=np.float32)
    if data.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(data, dtype=np.float64))))
