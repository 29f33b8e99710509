"""Tests for SoundDeviceRecorder."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import DEVICE_LOST, DeviceBusy, DeviceUnavailable
from models import AudioFrame
from recorder import SoundDeviceRecorder, in_audio_callback


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _device(rate: float = 48000.0, channels: int = 2) -> dict:
    return {"name": "Test Mic", "default_samplerate": rate, "max_input_channels": channels}


def _setup(mock_sd: MagicMock, **device) -> MagicMock:  # noqa: ANN003
    mock_sd.query_devices.return_value = _device(**device)
    stream = MagicMock()
    mock_sd.InputStream.return_value = stream
    return stream


# ---------------------------------------------------------------
# Basic start / stop
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_start_opens_device_at_native_format(mock_sd: MagicMock) -> None:
    stream = _setup(mock_sd, rate=44100.0, channels=2)

    recorder = SoundDeviceRecorder(chunk_ms=100)
    recorder.start(lambda frame: None)

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 44100
    assert kwargs["channels"] == 2
    assert kwargs["blocksize"] == 4410
    assert kwargs["dtype"] == "float32"
    stream.start.assert_called_once()
    assert (recorder.sample_rate, recorder.channels) == (44100, 2)

    recorder.stop()
    stream.stop.assert_called_once()
    stream.close.assert_called_once()


@patch("recorder.sd")
def test_sample_rate_override_and_channel_clamp(mock_sd: MagicMock) -> None:
    _setup(mock_sd, rate=48000.0, channels=8)

    recorder = SoundDeviceRecorder(device="USB Mic", sample_rate_override=16000)
    recorder.start(lambda frame: None)

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 16000
    assert kwargs["channels"] == 2
    assert kwargs["device"] == "USB Mic"
    mock_sd.query_devices.assert_called_once_with("USB Mic", kind="input")
    recorder.stop()


@patch("recorder.sd")
def test_start_and_stop_are_idempotent(mock_sd: MagicMock) -> None:
    stream = _setup(mock_sd)

    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None)
    recorder.start(lambda frame: None)  # second call should be no-op
    recorder.stop()
    recorder.stop()

    assert mock_sd.InputStream.call_count == 1
    stream.stop.assert_called_once()


# ---------------------------------------------------------------
# Device errors
# ---------------------------------------------------------------

def test_start_raises_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    with pytest.raises(DeviceUnavailable, match="sounddevice is not installed"):
        SoundDeviceRecorder().start(lambda frame: None)


@patch("recorder.sd")
def test_missing_input_device(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.side_effect = ValueError("No input device matching 'x'")
    with pytest.raises(DeviceUnavailable):
        SoundDeviceRecorder(device="x").start(lambda frame: None)


@patch("recorder.sd")
def test_output_only_device_is_unavailable(mock_sd: MagicMock) -> None:
    _setup(mock_sd, channels=0)
    with pytest.raises(DeviceUnavailable):
        SoundDeviceRecorder().start(lambda frame: None)


@patch("recorder.sd")
def test_stream_open_failure_is_device_busy(mock_sd: MagicMock) -> None:
    _setup(mock_sd)
    mock_sd.InputStream.side_effect = RuntimeError("Device unavailable [PaErrorCode -9985]")

    recorder = SoundDeviceRecorder()
    with pytest.raises(DeviceBusy):
        recorder.start(lambda frame: None)
    recorder.stop()  # nothing to stop, must not raise


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_callback_delivers_copied_frames(mock_sd: MagicMock) -> None:
    _setup(mock_sd, rate=48000.0, channels=2)
    frames: list[AudioFrame] = []
    flags: list[bool] = []

    def on_frame(frame: AudioFrame) -> None:
        flags.append(in_audio_callback())
        frames.append(frame)

    recorder = SoundDeviceRecorder()
    recorder.start(on_frame)
    block = np.full((4800, 2), 0.25, dtype=np.float32)
    recorder._on_audio(block, frames=4800, time_info=None, status=None)
    block[:] = 0.0  # the backend reuses its buffer

    assert len(frames) == 1
    assert frames[0].sample_rate == 48000
    assert frames[0].channels == 2
    assert frames[0].frame_count == 4800
    assert np.allclose(frames[0].samples, 0.25)
    assert flags == [True]
    assert in_audio_callback() is False
    recorder.stop()


@patch("recorder.sd")
def test_callback_never_raises(mock_sd: MagicMock) -> None:
    _setup(mock_sd)

    def on_frame(frame: AudioFrame) -> None:
        raise RuntimeError("sink failed")

    recorder = SoundDeviceRecorder()
    recorder.start(on_frame)
    recorder._on_audio(np.zeros((480, 2), dtype=np.float32), frames=480, time_info=None, status="input overflow")

    assert recorder.callback_errors == 1
    assert recorder.status_flags == 1
    recorder.stop()


@patch("recorder.sd")
def test_callback_after_stop_is_noop(mock_sd: MagicMock) -> None:
    _setup(mock_sd)
    frames: list[AudioFrame] = []

    recorder = SoundDeviceRecorder()
    recorder.start(frames.append)
    recorder.stop()
    recorder._on_audio(np.zeros((480, 2), dtype=np.float32), frames=480, time_info=None, status=None)

    assert frames == []


# ---------------------------------------------------------------
# Stream ending
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_unexpected_stream_end_reports_device_lost(mock_sd: MagicMock) -> None:
    _setup(mock_sd)
    errors: list[tuple[str, str]] = []

    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None, lambda code, msg: errors.append((code, msg)))
    recorder._on_finished()

    assert errors and errors[0][0] == DEVICE_LOST
    recorder.stop()


@patch("recorder.sd")
def test_requested_stop_is_not_device_lost(mock_sd: MagicMock) -> None:
    _setup(mock_sd)
    errors: list[tuple[str, str]] = []

    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None, lambda code, msg: errors.append((code, msg)))
    recorder.stop()
    recorder._on_finished()

    assert errors == []


@patch("recorder.sd")
def test_stop_after_device_lost_closes_stream(mock_sd: MagicMock) -> None:
    first = _setup(mock_sd)
    errors: list[tuple[str, str]] = []

    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None, lambda code, msg: errors.append((code, msg)))
    recorder._on_finished()
    recorder._on_finished()
    recorder.stop()

    assert len(errors) == 1
    first.stop.assert_called_once()
    first.close.assert_called_once()

    second = MagicMock()
    mock_sd.InputStream.return_value = second
    recorder.start(lambda frame: None)
    assert mock_sd.InputStream.call_count == 2
    second.start.assert_called_once()
    recorder.stop()
    first.close.assert_called_once()


@patch("recorder.sd")
def test_restart_after_device_lost_closes_stale_stream(mock_sd: MagicMock) -> None:
    first = _setup(mock_sd)
    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None, lambda code, msg: None)
    recorder._on_finished()

    mock_sd.InputStream.return_value = MagicMock()
    recorder.start(lambda frame: None)

    first.close.assert_called_once()
    assert mock_sd.InputStream.call_count == 2
    recorder.stop()


@patch("recorder.sd")
def test_frames_after_device_lost_are_ignored(mock_sd: MagicMock) -> None:
    _setup(mock_sd)
    frames: list[AudioFrame] = []

    recorder = SoundDeviceRecorder()
    recorder.start(frames.append, lambda code, msg: None)
    recorder._on_finished()
    recorder._on_audio(np.zeros((480, 2), dtype=np.float32), frames=480, time_info=None, status=None)

    assert frames == []
    recorder.stop()


@patch("recorder.sd")
def test_status_flags_are_logged_on_stop(mock_sd: MagicMock, caplog) -> None:  # noqa: ANN001
    _setup(mock_sd)
    recorder = SoundDeviceRecorder()
    recorder.start(lambda frame: None)
    recorder._on_audio(np.zeros((480, 2), dtype=np.float32), frames=480, time_info=None, status="input overflow")

    with caplog.at_level(logging.WARNING, logger="recorder"):
        recorder.stop()

    assert "1 status flag" in caplog.text
