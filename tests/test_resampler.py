from __future__ import annotations

import numpy as np
import pytest

from models import AudioFrame, ResamplerQuality
from resampler import PRESETS, Resampler, SincParameters, to_mono


def test_16k_mono_is_identity() -> None:
    samples = np.random.default_rng(0).uniform(-0.5, 0.5, 1600).astype(np.float32)
    frame = AudioFrame(samples=samples, sample_rate=16000)

    out = Resampler().process(frame)

    assert out.dtype == np.float32
    assert np.array_equal(out, samples)
    assert out is not samples


def test_stereo_is_averaged_to_mono() -> None:
    stereo = np.stack([np.ones(800), np.zeros(800)], axis=1).astype(np.float32)
    out = Resampler().process(AudioFrame(samples=stereo, sample_rate=16000, channels=2))

    assert out.shape == (800,)
    assert np.allclose(out, 0.5)


def test_int16_input_is_normalized() -> None:
    samples = np.full(160, 16384, dtype=np.int16)
    out = Resampler().process(AudioFrame(samples=samples, sample_rate=16000))
    assert np.allclose(out, 0.5)


def test_to_mono_passthrough_for_single_channel() -> None:
    data = np.arange(6, dtype=np.float32)
    assert to_mono(data, 1).tolist() == data.tolist()


def test_48k_downsamples_to_one_third_length() -> None:
    out = Resampler().resample(np.zeros(4800, dtype=np.float32), 48000)
    assert len(out) == 1600


@pytest.mark.parametrize("quality", list(ResamplerQuality))
def test_sine_amplitude_survives_conversion(quality: ResamplerQuality) -> None:
    rate = 48000
    t = np.arange(rate) / rate
    sine = (0.5 * np.sin(2 * np.pi * 1000 * t)).astype(np.float32)

    out = Resampler(quality).resample(sine, rate)
    middle = out[2000:-2000]
    rms = float(np.sqrt(np.mean(middle ** 2)))

    assert rms == pytest.approx(0.5 / np.sqrt(2), rel=0.05)


def test_ratio_is_bounded_by_oversampling_factor() -> None:
    exact = Resampler(ResamplerQuality.HIGH_QUALITY).ratio(44100)
    approx = Resampler(ResamplerQuality.BALANCED).ratio(44100)

    assert exact == (160, 441)
    assert approx[1] <= PRESETS[ResamplerQuality.BALANCED].oversampling_factor
    assert approx[0] / approx[1] == pytest.approx(160 / 441, rel=1e-3)


def test_explicit_parameters_override_preset() -> None:
    params = SincParameters(sinc_len=8, f_cutoff=0.8, oversampling_factor=32, window="hann")
    resampler = Resampler(ResamplerQuality.HIGH_QUALITY, params=params)
    assert resampler.params is params
    assert len(resampler._design(1, 3)) == 2 * (8 // 2) * 3 + 1


def test_filters_are_cached_per_ratio() -> None:
    resampler = Resampler()
    assert resampler._design(1, 3) is resampler._design(1, 3)


def test_empty_input() -> None:
    assert Resampler().resample(np.zeros(0, dtype=np.float32), 44100).size == 0
