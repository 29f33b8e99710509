"""One recording: device capture, raw archive and transcription feed."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from queue import Full, Queue
from typing import Callable, Optional

import numpy as np

from archive import WavArchiveWriter, archive_path_for
from buffered_adapter import BufferedEngineAdapter
from config import PipelineConfig
from denoise import Denoiser, denoise_available
from engine_coordinator import EngineCoordinator, EngineHandle
from errors import SessionError
from interfaces import EngineAdapter, ErrorSink, Recorder
from models import (
    TARGET_SAMPLE_RATE,
    ActivityState,
    AudioFrame,
    EngineKind,
    RecognitionEvent,
    SessionSummary,
)
from resampler import Resampler
from streaming_adapter import StreamingEngineAdapter
from vad import VoiceActivityGate

logger = logging.getLogger(__name__)

EventCallback = Callable[[RecognitionEvent], None]


@dataclass
class RecordingSession:
    session_id: int
    engine: Optional[EngineKind]
    started_at: float
    archive_path: Optional[Path] = None
    native_rate: int = 0
    channels: int = 0
    captured_frames: int = 0
    processed_samples: int = 0
    speech_samples: int = 0
    dropped_archive: int = 0
    dropped_pipeline: int = 0

    @property
    def duration_ms(self) -> int:
        if self.native_rate <= 0:
            return 0
        return self.captured_frames * 1000 // self.native_rate

    @property
    def speech_ms(self) -> int:
        return self.speech_samples * 1000 // TARGET_SAMPLE_RATE


class AudioCaptureSession:
    """Run one recording from device open to final flush.

    The device callback only copies frames onto two bounded queues: one for
    the WAV archive writer and one for the feeder thread, which resamples to
    16 kHz mono, optionally denoises, and drives the active engine adapter.
    The archive always receives the raw frames. Frames that do not fit
    are dropped and counted.
    """

    def __init__(
        self,
        recorder: Recorder,
        coordinator: EngineCoordinator,
        config: Optional[PipelineConfig] = None,
        on_event: Optional[EventCallback] = None,
        on_device_error: Optional[ErrorSink] = None,
        resampler: Optional[Resampler] = None,
        queue_maxsize: int = 100,
        archive: bool = True,
    ) -> None:
        self._recorder = recorder
        self._coordinator = coordinator
        self._config = config or PipelineConfig()
        self._on_event = on_event
        self._on_device_error = on_device_error
        self._resampler = resampler or Resampler(self._config.resampler_quality)
        self._queue_maxsize = queue_maxsize
        self._archive_enabled = archive

        self._lock = threading.Lock()
        self._active = False
        self._session: Optional[RecordingSession] = None
        self._summary: Optional[SessionSummary] = None
        self._adapter: Optional[EngineAdapter] = None
        self._gate: Optional[VoiceActivityGate] = None
        self._denoiser: Optional[Denoiser] = None
        self._archive_queue: Optional[Queue[AudioFrame | None]] = None
        self._pipeline_queue: Optional[Queue[AudioFrame | None]] = None
        self._writer: Optional[WavArchiveWriter] = None
        self._feeder: Optional[threading.Thread] = None
        self._armed = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def adapter(self) -> Optional[EngineAdapter]:
        return self._adapter

    def start(self, session_id: int = 1) -> RecordingSession:
        with self._lock:
            if self._active:
                raise SessionError("a recording is already in progress")
            handle = self._coordinator.borrow()
            self._summary = None
            self._armed = False
            self._session = RecordingSession(
                session_id=session_id, engine=handle.kind, started_at=time.monotonic()
            )
            try:
                self._start_locked(handle)
            except Exception:
                self._teardown_after_failure()
                raise
            self._active = True
            logger.info("Recording session %d started (%s)", session_id, handle.kind.method)
            return self._session

    def _start_locked(self, handle: EngineHandle) -> None:
        cfg = self._config
        self._writer = None
        self._gate = VoiceActivityGate(
            threshold=cfg.vad_threshold, hangover_ms=cfg.vad_hangover_ms, adaptive=cfg.vad_adaptive
        )
        self._denoiser = self._build_denoiser()
        self._adapter = self._build_adapter(handle)
        self._adapter.start()

        self._pipeline_queue = Queue(maxsize=self._queue_maxsize)
        self._archive_queue = Queue(maxsize=self._queue_maxsize) if self._archive_enabled else None
        self._feeder = threading.Thread(target=self._feed, name="transcription-feeder", daemon=True)
        self._feeder.start()

        self._recorder.start(self._on_frame, self._on_recorder_error)
        self._session.native_rate = self._recorder.sample_rate
        self._session.channels = self._recorder.channels

        if self._archive_queue is not None:
            try:
                path = archive_path_for(cfg.archive_dir())
            except OSError as exc:
                logger.warning("Recording archive disabled: %s", exc)
                self._archive_queue = None
            else:
                self._writer = WavArchiveWriter(path, self._recorder.sample_rate, self._recorder.channels)
                self._writer.start(self._archive_queue)
                self._session.archive_path = path

    def _build_denoiser(self) -> Optional[Denoiser]:
        if not self._config.denoise_enabled:
            return None
        if not denoise_available():
            logger.warning("Denoising requested but noisereduce is not installed")
            return None
        return Denoiser(prop_decrease=self._config.denoise_strength)

    def _build_adapter(self, handle: EngineHandle) -> EngineAdapter:
        cfg = self._config
        if handle.kind == EngineKind.PARAKEET:
            return StreamingEngineAdapter(
                handle.engine,
                self._emit,
                window_ms=cfg.streaming_window_ms,
                buffer_s=cfg.streaming_buffer_s,
                latency_bound_ms=cfg.streaming_latency_ms,
            )
        gate = VoiceActivityGate(
            threshold=cfg.vad_threshold, hangover_ms=cfg.vad_hangover_ms, adaptive=cfg.vad_adaptive
        )
        return BufferedEngineAdapter(
            handle.engine,
            self._emit,
            gate=gate,
            max_segment_s=cfg.buffered_max_s,
            pre_roll_ms=cfg.pre_roll_ms,
        )

    def stop(self) -> SessionSummary:
        """Finish the recording; repeated calls return the same summary."""
        with self._lock:
            if self._summary is not None:
                return self._summary
            if not self._active:
                raise SessionError()
            self._active = False
        session = self._session
        try:
            self._stop_capture()
            too_short, reason = self._too_short(session)
            adapter = self._adapter
            raw_text = ""
            if too_short:
                logger.info("Session %d too short (%s), discarding", session.session_id, reason)
                adapter.cancel()
            else:
                adapter.arm()
                adapter.flush_if_needed(force=True)
                adapter.shutdown(wait=True)
                raw_text = adapter.transcript()
        finally:
            self._coordinator.release()
        self._summary = self._summarize(session, raw_text, too_short, reason)
        return self._summary

    def cancel(self, reason: str = "cancelled") -> Optional[SessionSummary]:
        """Stop capture and drop pending work without producing text."""
        with self._lock:
            if self._summary is not None:
                return self._summary
            if not self._active:
                return None
            self._active = False
        session = self._session
        try:
            self._stop_capture()
            if self._adapter is not None:
                self._adapter.cancel()
        finally:
            self._coordinator.release()
        logger.info("Session %d cancelled: %s", session.session_id, reason)
        self._summary = self._summarize(session, "", False, reason)
        return self._summary

    # ------------------------------------------------------------------
    # Capture threads
    # ------------------------------------------------------------------

    def _on_frame(self, frame: AudioFrame) -> None:
        # Audio callback thread: copy and enqueue only.
        session = self._session
        session.captured_frames += frame.frame_count
        if self._archive_queue is not None:
            try:
                self._archive_queue.put_nowait(frame.copy())
            except Full:
                session.dropped_archive += 1
        try:
            self._pipeline_queue.put_nowait(frame.copy())
        except Full:
            session.dropped_pipeline += 1

    def _on_recorder_error(self, code: str, message: str) -> None:
        logger.error("Capture error %s: %s", code, message)
        if self._on_device_error is not None:
            self._on_device_error(code, message)

    def _feed(self) -> None:
        session = self._session
        min_samples = self._config.min_session_ms * TARGET_SAMPLE_RATE // 1000
        while True:
            frame = self._pipeline_queue.get()
            if frame is None:  # Sentinel
                break
            try:
                mono = self._resampler.process(frame)
            except Exception:
                logger.exception("Resampling failed, dropping frame")
                session.dropped_pipeline += 1
                continue
            if self._denoiser is not None:
                mono = self._denoiser.process(mono)
            self._deliver(mono, min_samples)
        if self._denoiser is not None:
            self._deliver(self._denoiser.flush(), min_samples)

    def _deliver(self, mono: np.ndarray, min_samples: int) -> None:
        if len(mono) == 0:
            return
        session = self._session
        if self._gate.update(mono) == ActivityState.SPEECH:
            session.speech_samples += len(mono)
        self._adapter.consume_audio(mono)
        session.processed_samples += len(mono)
        if not self._armed and session.processed_samples >= min_samples:
            self._armed = True
            self._adapter.arm()

    def _stop_capture(self) -> None:
        try:
            self._recorder.stop()
        except Exception as exc:
            logger.warning("Error while stopping the recorder: %s", exc)
        if self._pipeline_queue is not None and self._feeder is not None:
            self._pipeline_queue.put(None)
            self._feeder.join()
        if self._archive_queue is not None and self._writer is not None:
            self._archive_queue.put(None)
            self._writer.join()
        session = self._session
        if session.dropped_archive or session.dropped_pipeline:
            logger.warning(
                "Session %d dropped %d archive / %d pipeline frames",
                session.session_id,
                session.dropped_archive,
                session.dropped_pipeline,
            )

    def _too_short(self, session: RecordingSession) -> tuple[bool, str]:
        if session.duration_ms < self._config.min_session_ms:
            return True, f"{session.duration_ms}ms is below {self._config.min_session_ms}ms"
        if session.speech_samples == 0:
            return True, "no speech detected"
        return False, ""

    def _summarize(
        self, session: RecordingSession, raw_text: str, too_short: bool, reason: str
    ) -> SessionSummary:
        return SessionSummary(
            session_id=session.session_id,
            duration_ms=session.duration_ms,
            speech_ms=session.speech_ms,
            raw_text=raw_text,
            archive_path=str(session.archive_path) if session.archive_path else None,
            dropped_frames=session.dropped_archive + session.dropped_pipeline,
            too_short=too_short,
            reason=reason,
            engine=session.engine,
        )

    def _teardown_after_failure(self) -> None:
        try:
            self._recorder.stop()
        except Exception as exc:
            logger.debug("Recorder stop after failed start: %s", exc)
        if self._feeder is not None and self._feeder.is_alive():
            self._pipeline_queue.put(None)
            self._feeder.join(timeout=1.0)
        if self._adapter is not None:
            self._adapter.cancel()
        self._feeder = None
        self._writer = None
        self._archive_queue = None
        self._pipeline_queue = None
        self._coordinator.release()

    def _emit(self, event: RecognitionEvent) -> None:
        if self._session is not None:
            event.session_id = self._session.session_id
        if self._on_event is not None:
            self._on_event(event)
