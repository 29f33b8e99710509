"""Core data models for the transcription pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

TARGET_SAMPLE_RATE = 16000


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"
    PASTING = "PASTING"
    ERROR = "ERROR"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    CHUNK = "chunk"
    FINAL = "final"
    WARNING = "warning"
    ERROR = "error"


class EngineKind(str, Enum):
    WHISPER = "whisper"
    PARAKEET = "parakeet"

    @property
    def method(self) -> str:
        return self.value.capitalize()


class ActivityState(str, Enum):
    SILENCE = "silence"
    SPEECH = "speech"


class TranscriptStage(str, Enum):
    RAW = "raw"
    SPELL_CHECKED = "spell_checked"
    GRAMMAR_CORRECTED = "grammar_corrected"


class ResamplerQuality(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    HIGH_QUALITY = "high_quality"


@dataclass(frozen=True)
class AudioFrame:
    """One block delivered by the capture callback.

    ``samples`` is int16 or float32, shaped ``(frames,)`` or
    ``(frames, channels)``. The array is made read-only on construction.
    """

    samples: np.ndarray
    sample_rate: int
    channels: int = 1
    timestamp_ms: int = 0

    def __post_init__(self) -> None:
        self.samples.flags.writeable = False

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_ms(self) -> float:
        return self.frame_count * 1000.0 / self.sample_rate

    def copy(self) -> AudioFrame:
        return AudioFrame(
            samples=self.samples.copy(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=self.timestamp_ms,
        )

    def as_float32(self) -> np.ndarray:
        """Return samples as ``(frames, channels)`` float32 in [-1, 1]."""
        data = self.samples
        if data.dtype == np.int16:
            data = data.astype(np.float32) / 32768.0
        else:
            data = data.astype(np.float32, copy=False)
        return data.reshape(-1, self.channels)


@dataclass(frozen=True)
class Transcript:
    text: str
    stage: TranscriptStage = TranscriptStage.RAW

    def advance(self, text: str, stage: TranscriptStage) -> Transcript:
        return Transcript(text=text, stage=stage)


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    is_final: bool = False
    method: str = ""
    processing_time_ms: int = 0
    audio_end_ms: int = 0
    latency_ms: int = 0
    code: str = ""
    message: str = ""
    retryable: bool = False
    session_id: int = 0


@dataclass
class SessionSummary:
    session_id: int
    duration_ms: int
    speech_ms: int = 0
    raw_text: str = ""
    archive_path: Optional[str] = None
    dropped_frames: int = 0
    too_short: bool = False
    reason: str = ""
    engine: Optional[EngineKind] = None


@dataclass
class SessionTooShort:
    duration_ms: int
    reason: str = ""


@dataclass
class FinalTranscript:
    transcript: Transcript
    raw_text: str
    duration_ms: int
    engine: Optional[EngineKind] = None
    archive_path: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.transcript.text


@dataclass
class PasteResult:
    success: bool
    reason: str
    clipboard_restored: bool
