"""Microphone recorder adapter."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

from errors import DEVICE_LOST, DeviceBusy, DeviceUnavailable
from interfaces import ErrorSink, FrameSink
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

_callback_context = threading.local()


def in_audio_callback() -> bool:
    """True while running inside the audio backend's callback."""
    return getattr(_callback_context, "active", False)


class SoundDeviceRecorder:
    """Capture from an input device at its native rate and channel count.

    The callback only copies the block and hands it to ``on_frame``; it never
    blocks and never lets an exception escape into the audio backend.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        sample_rate_override: Optional[int] = None,
        chunk_ms: int = 100,
    ) -> None:
        self.device = device
        self.sample_rate_override = sample_rate_override
        self.chunk_ms = chunk_ms
        self.sample_rate = 0
        self.channels = 0
        self.callback_errors = 0
        self.status_flags = 0
        self._stream: Any = None
        self._running = False
        self._device_lost = False
        self._lock = threading.Lock()
        self._on_frame: Optional[FrameSink] = None
        self._on_error: Optional[ErrorSink] = None

    def start(self, on_frame: FrameSink, on_error: Optional[ErrorSink] = None) -> None:
        with self._lock:
            if self._running and not self._device_lost:
                return
            if self._stream is not None:
                # Left open by a lost device that was never stopped.
                _close_stream(self._stream)
                self._stream = None
            if sd is None:
                raise DeviceUnavailable("sounddevice is not installed")
            info = self._query_device()
            self.sample_rate = int(self.sample_rate_override or info.get("default_samplerate") or 16000)
            self.channels = max(1, min(2, int(info.get("max_input_channels", 1))))
            self._on_frame = on_frame
            self._on_error = on_error
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    device=self.device,
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=blocksize,
                    callback=self._on_audio,
                    finished_callback=self._on_finished,
                )
                self._running = True
                self._device_lost = False
                self._stream.start()
            except Exception as exc:
                self._running = False
                self._stream = None
                raise DeviceBusy(f"could not open input device: {exc}") from exc
            logger.info(
                "Capturing from %s at %d Hz, %d channel(s)",
                info.get("name", "default input"),
                self.sample_rate,
                self.channels,
            )

    def stop(self) -> None:
        with self._lock:
            self._running = False
            stream = self._stream
            self._stream = None
        if stream is None:
            return
        _close_stream(stream)
        if self.status_flags:
            logger.warning("Input stream reported %d status flag(s) (overflow or underflow)", self.status_flags)

    def _query_device(self) -> dict:
        try:
            info = sd.query_devices(self.device, kind="input")
        except Exception as exc:
            raise DeviceUnavailable(f"no input device: {exc}") from exc
        if not info or int(info.get("max_input_channels", 0)) < 1:
            raise DeviceUnavailable("no input device")
        return dict(info)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._device_lost or self._on_frame is None:
            return
        if np is None:
            return
        _callback_context.active = True
        try:
            if status:
                self.status_flags += 1
            frame = AudioFrame(
                samples=np.array(indata, dtype=np.float32, copy=True),
                sample_rate=self.sample_rate,
                channels=self.channels,
                timestamp_ms=int(time.time() * 1000),
            )
            self._on_frame(frame)
        except Exception:
            self.callback_errors += 1
        finally:
            _callback_context.active = False

    def _on_finished(self) -> None:
        # Runs when the stream ends; an end we did not ask for is a lost device.
        # The stream stays referenced so stop() can still close it.
        if not self._running or self._device_lost:
            return
        self._device_lost = True
        if self._on_error is not None:
            self._on_error(DEVICE_LOST, "input stream ended unexpectedly")


def _close_stream(stream: Any) -> None:
    try:
        stream.stop()
    finally:
        stream.close()
