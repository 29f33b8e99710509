"""Per-session noise suppression for the recognition feed."""

from __future__ import annotations

import logging

import numpy as np

from models import TARGET_SAMPLE_RATE

try:
    import noisereduce as nr
except Exception:  # pragma: no cover
    nr = None  # type: ignore

logger = logging.getLogger(__name__)


def denoise_available() -> bool:
    return nr is not None


class Denoiser:
    """Spectral-gating denoiser that learns its noise profile per recording.

    The first ``noise_ms`` of a recording (the moment between pressing the
    key and speaking) pass through unchanged and become the stationary noise
    profile. After that, audio is denoised in fixed ``block_ms`` blocks;
    partial blocks are held until the next call or :meth:`flush`. A block
    that fails to denoise is passed through as captured.

    Create one instance per recording: the profile belongs to the room and
    microphone of that session.
    """

    def __init__(
        self,
        sample_rate: int = TARGET_SAMPLE_RATE,
        block_ms: int = 100,
        noise_ms: int = 300,
        prop_decrease: float = 0.9,
        n_fft: int = 512,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_samples = max(1, sample_rate * block_ms // 1000)
        self.noise_samples = sample_rate * noise_ms // 1000
        self.prop_decrease = prop_decrease
        self.n_fft = n_fft
        self.blocks_processed = 0
        self.failures = 0
        self._noise: list[np.ndarray] = []
        self._noise_held = 0
        self._profile: np.ndarray | None = None
        self._pending = np.zeros(0, dtype=np.float32)

    @property
    def profiled(self) -> bool:
        return self._profile is not None

    def process(self, samples: np.ndarray) -> np.ndarray:
        data = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        full = len(data) - len(data) % self.block_samples
        self._pending = data[full:]
        if full == 0:
            return np.zeros(0, dtype=np.float32)
        blocks = [self._block(data[i:i + self.block_samples]) for i in range(0, full, self.block_samples)]
        return np.concatenate(blocks)

    def flush(self) -> np.ndarray:
        """Denoise the held remainder, zero-padded to one block and trimmed back."""
        valid = len(self._pending)
        if valid == 0:
            return np.zeros(0, dtype=np.float32)
        padded = np.zeros(self.block_samples, dtype=np.float32)
        padded[:valid] = self._pending
        self._pending = np.zeros(0, dtype=np.float32)
        return self._block(padded)[:valid]

    def _block(self, block: np.ndarray) -> np.ndarray:
        self.blocks_processed += 1
        if self._profile is None:
            self._noise.append(block)
            self._noise_held += len(block)
            if self._noise_held >= self.noise_samples:
                self._profile = np.concatenate(self._noise)
                self._noise = []
                logger.debug("Noise profile captured from %d samples", len(self._profile))
            return block
        try:
            cleaned = nr.reduce_noise(
                y=block,
                sr=self.sample_rate,
                y_noise=self._profile,
                stationary=True,
                prop_decrease=self.prop_decrease,
                n_fft=self.n_fft,
            )
        except Exception as exc:
            self.failures += 1
            if self.failures == 1:
                logger.warning("Denoising failed, passing audio through: %s", exc)
            return block
        return np.asarray(cleaned, dtype=np.float32)[:len(block)]
