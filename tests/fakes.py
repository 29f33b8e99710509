"""Test doubles for the recorder, engines and loaders."""

from __future__ import annotations

import time
from typing import Optional

import numpy as np

from errors import DEVICE_LOST, InferenceError, ModelLoadError
from models import AudioFrame, EngineKind

SR = 16000


def silence(seconds: float, sample_rate: int = SR) -> np.ndarray:
    return np.zeros(int(seconds * sample_rate), dtype=np.float32)


def tone(seconds: float, amplitude: float = 0.1, freq: float = 440.0, sample_rate: int = SR) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def utterance(total_s: float, speech_start_s: float, speech_end_s: float, sample_rate: int = SR) -> np.ndarray:
    """Silence with a tone between ``speech_start_s`` and ``speech_end_s``."""
    audio = silence(total_s, sample_rate)
    start, end = int(speech_start_s * sample_rate), int(speech_end_s * sample_rate)
    audio[start:end] = tone(speech_end_s - speech_start_s, sample_rate=sample_rate)[: end - start]
    return audio


def chunks(audio: np.ndarray, size: int):
    for i in range(0, len(audio), size):
        yield audio[i:i + size]


class FakeRecorder:
    def __init__(self, sample_rate: int = SR, channels: int = 1, fail: Optional[Exception] = None) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.fail = fail
        self.started = False
        self.stopped = False
        self.on_frame = None
        self.on_error = None

    def start(self, on_frame, on_error=None) -> None:  # noqa: ANN001
        if self.fail is not None:
            raise self.fail
        self.started = True
        self.stopped = False
        self.on_frame = on_frame
        self.on_error = on_error

    def stop(self) -> None:
        self.stopped = True

    def feed(self, audio: np.ndarray, chunk_ms: int = 100, pace_s: float = 0.0) -> None:
        """Deliver mono audio as callback blocks, duplicated per channel."""
        size = int(self.sample_rate * chunk_ms / 1000)
        for block in chunks(audio, size):
            data = np.repeat(block[:, None], self.channels, axis=1) if self.channels > 1 else block.copy()
            self.on_frame(AudioFrame(samples=data, sample_rate=self.sample_rate, channels=self.channels))
            if pace_s:
                time.sleep(pace_s)

    def lose_device(self) -> None:
        self.on_error(DEVICE_LOST, "device unplugged")


class FakeEngine:
    def __init__(self, kind: EngineKind = EngineKind.WHISPER, text: str = "hello", fail_on=(), delay_s: float = 0.0) -> None:
        self.kind = kind
        self.text = text
        self.fail_on = set(fail_on)
        self.delay_s = delay_s
        self.calls: list[int] = []
        self.resets = 0
        self.closed = False
        self.parts: list[str] = []

    def transcribe(self, samples: np.ndarray) -> str:
        self.calls.append(len(samples))
        if self.delay_s:
            time.sleep(self.delay_s)
        if len(self.calls) in self.fail_on:
            raise InferenceError("decoder exploded")
        return self.text

    def accept_window(self, samples: np.ndarray) -> str:
        text = self.transcribe(samples)
        if text:
            self.parts.append(text)
        return " ".join(self.parts)

    def reset(self) -> None:
        self.resets += 1
        self.parts = []

    def close(self) -> None:
        self.closed = True


class FakeLoader:
    """Loader tracking how many engines are alive across all loaders."""

    def __init__(self, kind: EngineKind, live: Optional[list] = None, fail: Optional[Exception] = None, text: str = "hello") -> None:
        self.kind = kind
        self.live = live if live is not None else []
        self.fail = fail
        self.text = text
        self.loaded_paths: list = []
        self.live_at_load: list[int] = []
        self.engines: list[FakeEngine] = []

    def load(self, model_path) -> FakeEngine:  # noqa: ANN001
        self.live[:] = [e for e in self.live if not e.closed]
        self.live_at_load.append(len(self.live))
        self.loaded_paths.append(model_path)
        if self.fail is not None:
            raise self.fail
        engine = FakeEngine(self.kind, text=self.text)
        self.engines.append(engine)
        self.live.append(engine)
        return engine


def missing_model() -> ModelLoadError:
    return ModelLoadError("model file missing")
