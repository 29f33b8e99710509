"""State-machine based session orchestration."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from capture_session import AudioCaptureSession
from config import PipelineConfig
from engine_coordinator import EngineCoordinator
from errors import (
    NO_ACTIVE_TARGET,
    POST_PROCESSING_ERROR,
    SESSION_TOO_SHORT,
    EngineBusy,
    ScribeError,
    SessionError,
)
from interfaces import ConfigStore, PasteService, Recorder
from models import (
    EngineKind,
    FinalTranscript,
    PasteResult,
    RecognitionEvent,
    RecognitionKind,
    SessionState,
    SessionTooShort,
    Transcript,
)
from post_processing import PostProcessingChain, clean_transcript

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
ChunkCallback = Callable[[RecognitionEvent], None]
ErrorCallback = Callable[[str, str], None]


class SessionController:
    """Control surface: start/stop/cancel recordings and manage the engine.

    ``stop_recording`` returns the post-processed ``FinalTranscript`` or a
    ``SessionTooShort`` result. Transcript events are forwarded to
    ``on_chunk``; warnings (inference errors, stream gaps, post-processing
    failures) go to ``on_warning`` and fatal problems to ``on_error``.
    """

    def __init__(
        self,
        recorder: Recorder,
        coordinator: EngineCoordinator,
        config: Optional[PipelineConfig] = None,
        post_processing: Optional[PostProcessingChain] = None,
        paste_service: Optional[PasteService] = None,
        config_store: Optional[ConfigStore] = None,
        archive: bool = True,
        on_state_change: Optional[StateCallback] = None,
        on_chunk: Optional[ChunkCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_warning: Optional[ErrorCallback] = None,
    ) -> None:
        self._recorder = recorder
        self._coordinator = coordinator
        self._config = config or PipelineConfig()
        self._post_processing = post_processing or PostProcessingChain()
        self._paste_service = paste_service
        self._config_store = config_store
        self._archive = archive
        self._on_state_change = on_state_change
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._on_warning = on_warning

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._capture: Optional[AudioCaptureSession] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def active_engine(self) -> Optional[EngineKind]:
        return self._coordinator.active_kind

    def start_recording(self) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                return
            self._session_id += 1
            capture = AudioCaptureSession(
                self._recorder,
                self._coordinator,
                self._config,
                on_event=self._handle_recognition_event,
                on_device_error=self._handle_device_error,
                archive=self._archive,
            )
            try:
                capture.start(self._session_id)
            except ScribeError as exc:
                self._transition(SessionState.ERROR)
                self._emit_error(exc.code, exc.message)
                self._transition(SessionState.IDLE)
                raise
            self._capture = capture
            self._transition(SessionState.RECORDING)

    def stop_recording(self) -> Union[FinalTranscript, SessionTooShort]:
        with self._lock:
            if self._state != SessionState.RECORDING or self._capture is None:
                raise SessionError()
            capture = self._capture
            self._transition(SessionState.FINALIZING)

        # Joins capture and inference workers; their events must not wait on our lock.
        summary = capture.stop()

        with self._lock:
            self._capture = None
            if summary.too_short:
                self._emit_warning(SESSION_TOO_SHORT, summary.reason)
                self._transition(SessionState.IDLE)
                return SessionTooShort(duration_ms=summary.duration_ms, reason=summary.reason)

        raw = Transcript(clean_transcript(summary.raw_text))
        processed, warnings = self._post_processing.run(raw)
        for warning in warnings:
            self._emit_warning(POST_PROCESSING_ERROR, warning)
        final = FinalTranscript(
            transcript=processed,
            raw_text=summary.raw_text,
            duration_ms=summary.duration_ms,
            engine=summary.engine,
            archive_path=summary.archive_path,
            warnings=warnings,
        )
        logger.info("Final transcript (%s): %r", processed.stage.value, final.text)

        with self._lock:
            if self._paste_service is not None and final.text:
                self._transition(SessionState.PASTING)
                result = self._run_paste(final.text)
                if not result.success:
                    self._emit_error(NO_ACTIVE_TARGET, result.reason)
            self._transition(SessionState.IDLE)
        return final

    def cancel_recording(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._state == SessionState.IDLE or self._capture is None:
                return
            capture = self._capture
            self._capture = None
        capture.cancel(reason)
        with self._lock:
            self._transition(SessionState.IDLE)

    def switch_engine(self, kind: EngineKind, model_path: Optional[Path] = None) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                raise EngineBusy()
        try:
            self._coordinator.switch_to(kind, model_path)
        except ScribeError as exc:
            self._emit_error(exc.code, exc.message)
            raise
        if self._config_store is not None:
            self._config_store.set_active_engine(EngineKind(kind))

    def set_post_processing(self, spellcheck: bool, grammar: bool) -> list[str]:
        warnings = self._post_processing.configure(spellcheck, grammar)
        for warning in warnings:
            self._emit_warning(POST_PROCESSING_ERROR, warning)
        if self._config_store is not None:
            self._config_store.set_post_processing(spellcheck, grammar)
        return warnings

    def _run_paste(self, text: str) -> PasteResult:
        try:
            return self._paste_service.paste_text(text)
        except Exception as exc:
            return PasteResult(success=False, reason=str(exc), clipboard_restored=False)

    def _handle_recognition_event(self, event: RecognitionEvent) -> None:
        if event.session_id != self._session_id:
            return
        kind = event.kind
        if kind in (RecognitionKind.PARTIAL.value, RecognitionKind.CHUNK.value, RecognitionKind.FINAL.value):
            if self._on_chunk:
                self._on_chunk(event)
        elif kind == RecognitionKind.WARNING.value:
            self._emit_warning(event.code, event.message)
        elif kind == RecognitionKind.ERROR.value:
            self._emit_error(event.code, event.message)

    def _handle_device_error(self, code: str, message: str) -> None:
        # Called from the audio backend; clean up elsewhere.
        threading.Thread(target=self._fail_session, args=(code, message), daemon=True).start()

    def _fail_session(self, code: str, message: str) -> None:
        with self._lock:
            if self._state != SessionState.RECORDING or self._capture is None:
                return
            capture = self._capture
            self._capture = None
            self._transition(SessionState.ERROR)
        self._emit_error(code, message)
        capture.cancel(message)
        with self._lock:
            self._transition(SessionState.IDLE)

    def _emit_error(self, code: str, message: str) -> None:
        logger.error("%s: %s", code, message)
        if self._on_error:
            self._on_error(code, message)

    def _emit_warning(self, code: str, message: str) -> None:
        if self._on_warning:
            self._on_warning(code, message)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
