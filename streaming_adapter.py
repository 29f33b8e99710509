"""Windowed streaming adapter for low-latency engines (Parakeet)."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Optional

import numpy as np

from errors import INFERENCE_ERROR, STREAM_GAP
from interfaces import StreamingAsrEngine
from models import TARGET_SAMPLE_RATE, EngineKind, RecognitionEvent, RecognitionKind
from ring_buffer import RingBuffer, RingCursor, StreamGap

logger = logging.getLogger(__name__)

EventCallback = Callable[[RecognitionEvent], None]


class StreamingEngineAdapter:
    """Decode fixed windows as soon as they are available.

    The capture side writes into a ring buffer and never waits; a decode
    thread feeds consecutive ``window_ms`` windows to the engine, which keeps
    its own utterance context. Each changed hypothesis is emitted as a
    ``partial`` event carrying the full text so far, superseding the previous
    partial. On finalize the remaining tail is zero-padded to one window,
    decoded, and a ``final`` event is emitted.

    If decoding falls so far behind that the writer laps the reader, the
    skipped audio is reported as a ``STREAM_GAP`` warning and decoding resumes
    from the newest data.
    """

    method = EngineKind.PARAKEET.method

    def __init__(
        self,
        engine: StreamingAsrEngine,
        on_event: EventCallback,
        sample_rate: int = TARGET_SAMPLE_RATE,
        window_ms: int = 320,
        buffer_s: float = 10.0,
        latency_bound_ms: int = 500,
        poll_interval_s: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._on_event = on_event
        self.sample_rate = sample_rate
        self.window_samples = int(sample_rate * window_ms / 1000)
        self.latency_bound_ms = latency_bound_ms
        self._ring = RingBuffer(int(buffer_s * sample_rate))
        if self._ring.capacity < self.window_samples:
            raise ValueError("streaming buffer must hold at least one window")
        self._cursor = RingCursor(self._ring, position=0)
        self._poll_interval = poll_interval_s if poll_interval_s is not None else window_ms / 4000.0
        # (write position after a write, monotonic time of that write)
        self._marks: deque[tuple[int, float]] = deque(maxlen=4096)
        self._finalize = threading.Event()
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._text = ""
        self.windows_decoded = 0
        self.gaps: list[StreamGap] = []
        self.max_latency_ms = 0
        self.latency_violations = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._engine.reset()
        self._thread = threading.Thread(target=self._decode_loop, name="streaming-decode", daemon=True)
        self._thread.start()

    def arm(self) -> None:
        # Decoding starts with the first window to keep partials within the latency bound.
        return None

    def consume_audio(self, chunk: np.ndarray) -> None:
        if len(chunk) == 0:
            return
        self._ring.write(chunk)
        self._marks.append((self._ring.write_position, time.monotonic()))

    def flush_if_needed(self, force: bool = False) -> bool:
        if not force:
            return False
        self._finalize.set()
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._finalize.set()
        if wait and self._thread is not None:
            self._thread.join()

    def cancel(self) -> None:
        self._cancelled.set()
        self._finalize.set()
        if self._thread is not None:
            self._thread.join(timeout=0.5)

    def transcript(self) -> str:
        return self._text

    def _decode_loop(self) -> None:
        window = self.window_samples
        while not self._cancelled.is_set():
            data, gap = self._cursor.read(window)
            if gap is not None:
                self._report_gap(gap)
                continue
            if data is not None:
                self._decode(data, self._cursor.position)
                continue
            if self._finalize.is_set():
                break
            self._finalize.wait(self._poll_interval)

        if self._cancelled.is_set():
            return
        tail, gap = self._cursor.read_all()
        if gap is not None:
            self._report_gap(gap)
        if tail.size:
            padded = np.zeros(window, dtype=np.float32)
            padded[:len(tail)] = tail
            self._decode(padded, self._cursor.position)
        self._emit(
            RecognitionEvent(
                kind=RecognitionKind.FINAL.value,
                text=self.transcript(),
                is_final=True,
                method=self.method,
                audio_end_ms=self._cursor.position * 1000 // self.sample_rate,
            )
        )

    def _decode(self, samples: np.ndarray, end_position: int) -> None:
        started = time.perf_counter()
        try:
            text = self._engine.accept_window(samples)
        except Exception as exc:
            logger.error("[%s] Window ending at %d failed: %s", self.method, end_position, exc)
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
        self.windows_decoded += 1
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        latency_ms = self._latency_ms(end_position)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if latency_ms > self.latency_bound_ms:
            self.latency_violations += 1
            logger.warning("[%s] Partial latency %dms exceeds %dms", self.method, latency_ms, self.latency_bound_ms)

        text = text.strip()
        if not text or text == self._text:
            return
        self._text = text
        self._emit(
            RecognitionEvent(
                kind=RecognitionKind.PARTIAL.value,
                text=self.transcript(),
                is_final=False,
                method=self.method,
                processing_time_ms=elapsed_ms,
                audio_end_ms=end_position * 1000 // self.sample_rate,
                latency_ms=latency_ms,
            )
        )

    def _latency_ms(self, end_position: int) -> int:
        """Time since the last sample of the decoded window was captured."""
        captured_at = None
        while self._marks:
            position, at = self._marks[0]
            if position >= end_position:
                captured_at = at
                break
            self._marks.popleft()
        if captured_at is None:
            return 0
        return int((time.monotonic() - captured_at) * 1000)

    def _report_gap(self, gap: StreamGap) -> None:
        self.gaps.append(gap)
        lost_ms = gap.lost_samples * 1000 // self.sample_rate
        logger.warning("[%s] Decoder fell behind, skipped %dms of audio", self.method, lost_ms)
        self._emit(
            RecognitionEvent(
                kind=RecognitionKind.WARNING.value,
                code=STREAM_GAP,
                message=f"skipped {lost_ms}ms of audio",
                method=self.method,
                retryable=True,
            )
        )

    def _emit(self, event: RecognitionEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Transcript event handler failed")
