"""VAD-gated buffered adapter for segment-at-a-time engines (Whisper)."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Full, Queue
from typing import Callable, Optional

import numpy as np

from errors import INFERENCE_ERROR
from interfaces import AsrEngine
from models import TARGET_SAMPLE_RATE, ActivityState, EngineKind, RecognitionEvent, RecognitionKind
from vad import VoiceActivityGate

logger = logging.getLogger(__name__)

EventCallback = Callable[[RecognitionEvent], None]


class BufferedState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class FlushReason(str, Enum):
    SILENCE = "silence"
    CAP = "cap"
    FINALIZE = "finalize"


@dataclass
class SpeechSegment:
    index: int
    samples: np.ndarray
    start_sample: int
    reason: FlushReason
    sample_rate: int = TARGET_SAMPLE_RATE

    @property
    def end_sample(self) -> int:
        return self.start_sample + len(self.samples)

    @property
    def duration_s(self) -> float:
        return len(self.samples) / self.sample_rate


class BufferedEngineAdapter:
    """Accumulate gated speech and transcribe one segment per flush.

    Audio is cut into fixed VAD frames. A segment starts on the first speech
    frame (with a short pre-roll of the audio before it) and is flushed on a
    speech-to-silence transition or when it reaches ``max_segment_s``. The
    cap is exact: the frame crossing it is split and, while speech continues,
    the remainder opens the next segment. If the cap and a speech-to-silence
    transition land on the same frame, the cap flush wins and the adapter
    goes idle.

    Flushed segments are transcribed in order on a worker thread, which holds
    them until :meth:`arm` is called.
    """

    method = EngineKind.WHISPER.method

    def __init__(
        self,
        engine: AsrEngine,
        on_event: EventCallback,
        gate: Optional[VoiceActivityGate] = None,
        sample_rate: int = TARGET_SAMPLE_RATE,
        frame_samples: int = 512,
        max_segment_s: float = 6.0,
        pre_roll_ms: int = 200,
        queue_maxsize: int = 8,
    ) -> None:
        self._engine = engine
        self._on_event = on_event
        self._gate = gate or VoiceActivityGate(sample_rate=sample_rate)
        self.sample_rate = sample_rate
        self.frame_samples = frame_samples
        self.max_samples = int(max_segment_s * sample_rate)
        pre_roll_frames = math.ceil(sample_rate * pre_roll_ms / 1000 / frame_samples)
        self._pre_roll: deque[np.ndarray] = deque(maxlen=max(pre_roll_frames, 1))
        self._pre_roll_enabled = pre_roll_ms > 0

        self._state = BufferedState.IDLE
        self._pending = np.zeros(0, dtype=np.float32)
        self._parts: list[np.ndarray] = []
        self._buffered = 0
        self._segment_start = 0
        self._position = 0
        self._segment_index = 0

        self._queue: Queue[SpeechSegment | None] = Queue(maxsize=queue_maxsize)
        self._armed = threading.Event()
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._texts: list[str] = []
        self.flushes: list[SpeechSegment] = []
        self.dropped_segments = 0

    @property
    def state(self) -> BufferedState:
        return self._state

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._engine.reset()
        self._thread = threading.Thread(target=self._worker, name="buffered-inference", daemon=True)
        self._thread.start()

    def arm(self) -> None:
        self._armed.set()

    def consume_audio(self, chunk: np.ndarray) -> None:
        chunk = np.asarray(chunk, dtype=np.float32)
        data = np.concatenate((self._pending, chunk)) if self._pending.size else chunk
        size = self.frame_samples
        n_frames = len(data) // size
        for i in range(n_frames):
            self._consume_frame(data[i * size:(i + 1) * size])
        self._pending = data[n_frames * size:].copy()

    def flush_if_needed(self, force: bool = False) -> bool:
        """Flush the open segment; without ``force`` only VAD/cap decide."""
        if not force:
            return False
        if self._pending.size and self._state == BufferedState.ACCUMULATING:
            self._accumulate(self._pending, ActivityState.SPEECH)
        self._pending = np.zeros(0, dtype=np.float32)
        if self._state == BufferedState.ACCUMULATING and self._buffered > 0:
            self._flush(FlushReason.FINALIZE)
            return True
        return False

    def shutdown(self, wait: bool = True) -> None:
        """Transcribe everything already flushed, then stop the worker."""
        self.arm()
        self._queue.put(None)
        if wait and self._thread is not None:
            self._thread.join()

    def cancel(self) -> None:
        """Drop pending segments; an inference already running may finish."""
        self._cancelled.set()
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                break
        try:
            self._queue.put_nowait(None)
        except Full:
            pass
        if self._thread is not None:
            self._thread.join(timeout=0.5)

    def transcript(self) -> str:
        return " ".join(self._texts)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _consume_frame(self, frame: np.ndarray) -> None:
        activity = self._gate.update(frame)
        frame_start = self._position
        self._position += len(frame)

        if self._state == BufferedState.IDLE:
            if activity != ActivityState.SPEECH:
                if self._pre_roll_enabled:
                    self._pre_roll.append(frame)
                return
            pre_roll = list(self._pre_roll)
            self._pre_roll.clear()
            self._begin(frame_start - sum(len(p) for p in pre_roll))
            for part in pre_roll:
                self._parts.append(part)
                self._buffered += len(part)
        self._accumulate(frame, activity)

    def _begin(self, start_sample: int) -> None:
        self._state = BufferedState.ACCUMULATING
        self._segment_start = start_sample
        self._parts = []
        self._buffered = 0

    def _accumulate(self, frame: np.ndarray, activity: ActivityState) -> None:
        room = self.max_samples - self._buffered
        if len(frame) < room:
            self._parts.append(frame)
            self._buffered += len(frame)
            if self._gate.transitioned and activity == ActivityState.SILENCE:
                self._flush(FlushReason.SILENCE)
            return

        head, tail = frame[:room], frame[room:]
        self._parts.append(head)
        self._buffered += len(head)
        next_start = self._segment_start + self._buffered
        self._flush(FlushReason.CAP)
        if activity == ActivityState.SPEECH:
            self._begin(next_start)
            if tail.size:
                self._accumulate(tail, activity)
        elif tail.size and self._pre_roll_enabled:
            self._pre_roll.append(tail)

    def _flush(self, reason: FlushReason) -> None:
        self._state = BufferedState.FLUSHING
        samples = np.concatenate(self._parts) if self._parts else np.zeros(0, dtype=np.float32)
        segment = SpeechSegment(
            index=self._segment_index,
            samples=samples,
            start_sample=self._segment_start,
            reason=reason,
            sample_rate=self.sample_rate,
        )
        self._segment_index += 1
        self.flushes.append(segment)
        logger.info(
            "[VAD] Flushing %.2fs segment #%d (%s)", segment.duration_s, segment.index, reason.value
        )
        self._submit(segment)
        self._parts = []
        self._buffered = 0
        self._state = BufferedState.IDLE

    def _submit(self, segment: SpeechSegment) -> None:
        try:
            self._queue.put_nowait(segment)
            return
        except Full:
            pass
        try:
            dropped = self._queue.get_nowait()
        except Empty:
            dropped = None
        if dropped is not None:
            self.dropped_segments += 1
            logger.warning("Inference is behind, dropping segment #%d", dropped.index)
        try:
            self._queue.put_nowait(segment)
        except Full:
            self.dropped_segments += 1
            logger.warning("Inference is behind, dropping segment #%d", segment.index)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _worker(self) -> None:
        while True:
            segment = self._queue.get()
            if segment is None:  # Sentinel
                break
            while not self._armed.wait(timeout=0.1):
                if self._cancelled.is_set():
                    return
            if self._cancelled.is_set():
                return
            self._transcribe(segment)

    def _transcribe(self, segment: SpeechSegment) -> None:
        started = time.perf_counter()
        try:
            text = self._engine.transcribe(segment.samples)
        except Exception as exc:
            logger.error("[%s] Segment #%d failed: %s", self.method, segment.index, exc)
            self._emit(
                RecognitionEvent(
                    kind=RecognitionKind.WARNING.value,
                    code=INFERENCE_ERROR,
                    message=str(exc),
                    method=self.method,
                    retryable=True,
                )
            )
            return
        if self._cancelled.is_set():
            return
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        text = text.strip()
        if not text:
            logger.debug("[%s] Segment #%d produced no text", self.method, segment.index)
            return
        logger.info("[TRANSCRIPT] %r (took %dms)", text, elapsed_ms)
        self._texts.append(text)
        self._emit(
            RecognitionEvent(
                kind=RecognitionKind.CHUNK.value,
                text=text,
                is_final=True,
                method=self.method,
                processing_time_ms=elapsed_ms,
                audio_end_ms=segment.end_sample * 1000 // self.sample_rate,
            )
        )

    def _emit(self, event: RecognitionEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Transcript event handler failed")
