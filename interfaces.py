"""Protocol interfaces used across the pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Protocol

import numpy as np

from config import PipelineConfig
from models import AudioFrame, EngineKind, PasteResult, TranscriptStage

FrameSink = Callable[[AudioFrame], None]
ErrorSink = Callable[[str, str], None]


class Recorder(Protocol):
    sample_rate: int
    channels: int

    def start(self, on_frame: FrameSink, on_error: Optional[ErrorSink] = None) -> None: ...

    def stop(self) -> None: ...


class AsrEngine(Protocol):
    kind: EngineKind

    def transcribe(self, samples: np.ndarray) -> str: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


class StreamingAsrEngine(AsrEngine, Protocol):
    def accept_window(self, samples: np.ndarray) -> str: ...


class EngineLoader(Protocol):
    def load(self, model_path: Path) -> AsrEngine: ...


class EngineAdapter(Protocol):
    method: str

    def start(self) -> None: ...

    def arm(self) -> None: ...

    def consume_audio(self, chunk: np.ndarray) -> None: ...

    def flush_if_needed(self, force: bool = False) -> bool: ...

    def shutdown(self, wait: bool = True) -> None: ...

    def cancel(self) -> None: ...

    def transcript(self) -> str: ...


class PostProcessingStage(Protocol):
    name: str
    stage: TranscriptStage

    @property
    def is_ready(self) -> bool: ...

    def process(self, text: str) -> str: ...

    def load(self) -> None: ...

    def unload(self) -> None: ...


class PasteService(Protocol):
    def paste_text(self, text: str) -> PasteResult: ...


class ConfigStore(Protocol):
    def get_pipeline_config(self) -> PipelineConfig: ...

    def set_pipeline_config(self, config: PipelineConfig) -> None: ...

    def get_active_engine(self) -> EngineKind: ...

    def set_active_engine(self, kind: EngineKind) -> None: ...

    def get_post_processing(self) -> tuple[bool, bool]: ...

    def set_post_processing(self, spellcheck: bool, grammar: bool) -> None: ...
