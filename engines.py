"""Local ASR engines and their loaders.

Model files are opaque to this module: loading and inference are delegated
to faster-whisper (buffered "Whisper" engine) and NVIDIA NeMo (streaming
"Parakeet" engine). Heavy imports are optional so the rest of the pipeline
works without them; a missing library surfaces as ``ModelLoadError``.
"""

from __future__ import annotations

import gc
import logging
import time
from pathlib import Path
from typing import Any, Optional

import numpy as np

from errors import InferenceError, ModelLoadError
from models import TARGET_SAMPLE_RATE, EngineKind

try:
    from faster_whisper import WhisperModel
except Exception:  # pragma: no cover
    WhisperModel = None  # type: ignore

try:
    from nemo.collections.asr.models import ASRModel
except Exception:  # pragma: no cover
    ASRModel = None  # type: ignore

try:
    import torch
except Exception:  # pragma: no cover
    torch = None  # type: ignore

logger = logging.getLogger(__name__)


def clear_gpu_cache() -> None:
    """Collect garbage and release cached device memory after an unload."""
    gc.collect()
    gc.collect()
    if torch is None:
        return
    try:
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
            torch.cuda.synchronize()
            logger.debug("GPU cache cleared")
    except Exception as exc:
        logger.debug("Could not clear GPU cache: %s", exc)


def _log_perf(kind: EngineKind, samples: np.ndarray, started: float) -> None:
    elapsed = time.perf_counter() - started
    audio_s = len(samples) / TARGET_SAMPLE_RATE
    speed = audio_s / elapsed if elapsed > 0 else 0.0
    logger.debug(
        "[%s] processed %.2fs audio in %.0fms (%.1fx)",
        kind.method,
        audio_s,
        elapsed * 1000,
        speed,
    )


class WhisperEngine:
    """faster-whisper model transcribing whole segments.

    Text from earlier segments of the same recording is passed back as the
    initial prompt so consecutive segments stay consistent.
    """

    kind = EngineKind.WHISPER

    def __init__(self, model: Any, model_path: Path, language: str = "en", beam_size: int = 1) -> None:
        self._model = model
        self.model_path = model_path
        self.language = language
        self.beam_size = beam_size
        self._context = ""

    def transcribe(self, samples: np.ndarray) -> str:
        if self._model is None:
            raise InferenceError("Whisper model is not loaded")
        started = time.perf_counter()
        try:
            segments, _info = self._model.transcribe(
                np.asarray(samples, dtype=np.float32),
                language=self.language or None,
                beam_size=self.beam_size,
                initial_prompt=self._context or None,
                condition_on_previous_text=False,
                vad_filter=False,
            )
            text = "".join(segment.text for segment in segments).strip()
        except Exception as exc:
            raise InferenceError(f"Whisper transcription failed: {exc}") from exc
        if text:
            self._context = f"{self._context} {text}".strip()
        _log_perf(self.kind, samples, started)
        return text

    def reset(self) -> None:
        self._context = ""

    def close(self) -> None:
        self._model = None


class ParakeetEngine:
    """NeMo Parakeet model with a rolling utterance context.

    ``accept_window`` appends a window to the current utterance and decodes
    the whole utterance again, so a new hypothesis can revise words that an
    earlier window cut in half. The utterance is committed once a window is
    quiet (after at least ``min_commit_s``) or when it reaches
    ``max_context_s``; committed text is never revised.
    """

    kind = EngineKind.PARAKEET

    def __init__(
        self,
        model: Any,
        model_path: Path,
        max_context_s: float = 6.0,
        min_commit_s: float = 1.0,
        pause_rms: float = 0.003,
    ) -> None:
        self._model = model
        self.model_path = model_path
        self.max_context_samples = int(max_context_s * TARGET_SAMPLE_RATE)
        self.min_commit_samples = int(min_commit_s * TARGET_SAMPLE_RATE)
        self.pause_rms = pause_rms
        self._committed: list[str] = []
        self._active: list[np.ndarray] = []
        self._active_samples = 0
        self._hypothesis = ""

    @property
    def text(self) -> str:
        parts = self._committed + ([self._hypothesis] if self._hypothesis else [])
        return " ".join(parts)

    def transcribe(self, samples: np.ndarray) -> str:
        if self._model is None:
            raise InferenceError("Parakeet model is not loaded")
        started = time.perf_counter()
        try:
            outputs = self._model.transcribe(
                [np.asarray(samples, dtype=np.float32)], batch_size=1, verbose=False
            )
        except Exception as exc:
            raise InferenceError(f"Parakeet transcription failed: {exc}") from exc
        if isinstance(outputs, tuple):  # RNNT models return (best, all)
            outputs = outputs[0]
        text = ""
        if outputs:
            first = outputs[0]
            text = first.text if hasattr(first, "text") else str(first)
        _log_perf(self.kind, samples, started)
        return text.strip()

    def accept_window(self, samples: np.ndarray) -> str:
        """Decode the utterance extended by ``samples``; returns the full text so far."""
        window = np.asarray(samples, dtype=np.float32)
        self._active.append(window)
        self._active_samples += len(window)
        try:
            self._hypothesis = self.transcribe(np.concatenate(self._active))
        except InferenceError:
            self._active.pop()
            self._active_samples -= len(window)
            raise
        if self._should_commit(window):
            self._commit()
        return self.text

    def _should_commit(self, window: np.ndarray) -> bool:
        if self._active_samples >= self.max_context_samples:
            return True
        if self._active_samples < self.min_commit_samples or len(window) == 0:
            return False
        return float(np.sqrt(np.mean(np.square(window)))) < self.pause_rms

    def _commit(self) -> None:
        if self._hypothesis:
            self._committed.append(self._hypothesis)
        self._active = []
        self._active_samples = 0
        self._hypothesis = ""

    def reset(self) -> None:
        self._committed = []
        self._active = []
        self._active_samples = 0
        self._hypothesis = ""

    def close(self) -> None:
        self._model = None
        self.reset()


class WhisperLoader:
    def __init__(
        self,
        device: str = "auto",
        compute_type: str = "default",
        language: str = "en",
        warm_up: bool = True,
    ) -> None:
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.warm_up = warm_up

    def load(self, model_path: Optional[Path]) -> WhisperEngine:
        if WhisperModel is None:
            raise ModelLoadError("faster-whisper is not installed")
        if model_path is None or not Path(model_path).exists():
            raise ModelLoadError(f"Whisper model not found: {model_path}")
        logger.info("Loading Whisper model from %s", model_path)
        started = time.perf_counter()
        try:
            model = WhisperModel(str(model_path), device=self.device, compute_type=self.compute_type)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load Whisper model: {exc}") from exc
        engine = WhisperEngine(model, Path(model_path), language=self.language)
        logger.info("Whisper model loaded in %.2fs", time.perf_counter() - started)
        if self.warm_up:
            _warm_up(engine)
        return engine


class ParakeetLoader:
    def __init__(self, device: str = "auto", warm_up: bool = True) -> None:
        self.device = device
        self.warm_up = warm_up

    def load(self, model_path: Optional[Path]) -> ParakeetEngine:
        if ASRModel is None:
            raise ModelLoadError("NeMo toolkit is not installed (pip install nemo_toolkit[asr])")
        if model_path is None or not Path(model_path).is_file():
            raise ModelLoadError(f"Parakeet model not found: {model_path}")
        logger.info("Loading Parakeet model from %s", model_path)
        started = time.perf_counter()
        try:
            model = ASRModel.restore_from(str(model_path), map_location="cpu")
            if self._use_cuda():
                model = model.cuda()
            model.eval()
        except Exception as exc:
            clear_gpu_cache()
            raise ModelLoadError(f"Failed to load Parakeet model: {exc}") from exc
        engine = ParakeetEngine(model, Path(model_path))
        logger.info("Parakeet model loaded in %.2fs", time.perf_counter() - started)
        if self.warm_up:
            _warm_up(engine)
        return engine

    def _use_cuda(self) -> bool:
        if self.device == "cpu" or torch is None:
            return False
        return bool(torch.cuda.is_available())


def _warm_up(engine: WhisperEngine | ParakeetEngine) -> None:
    # One second of silence compiles kernels so the first real chunk is not slow.
    try:
        engine.transcribe(np.zeros(TARGET_SAMPLE_RATE, dtype=np.float32))
    except InferenceError as exc:
        logger.warning("Warm-up failed (not critical): %s", exc)
    finally:
        engine.reset()
