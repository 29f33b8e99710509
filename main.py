"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from auto_paste import ClipboardPasteService
from config import JsonConfigStore, PipelineConfig
from engine_coordinator import EngineCoordinator
from engines import ParakeetLoader, WhisperLoader
from errors import ERROR_MESSAGES, ScribeError
from models import EngineKind, FinalTranscript, RecognitionEvent, RecognitionKind, SessionState
from post_processing import GrammarStage, PostProcessingChain, SpellCheckStage
from recorder import SoundDeviceRecorder
from session_controller import SessionController

logger = logging.getLogger(__name__)

HELP = "[Enter] start/stop  [w] Whisper  [p] Parakeet  [s] spellcheck  [g] grammar  [q] quit"


def build_coordinator(config: PipelineConfig) -> EngineCoordinator:
    loaders = {
        EngineKind.WHISPER: WhisperLoader(
            device=config.whisper_device,
            compute_type=config.whisper_compute_type,
            language=config.language,
        ),
        EngineKind.PARAKEET: ParakeetLoader(),
    }
    paths = {kind: config.model_path(kind) for kind in EngineKind}
    return EngineCoordinator(loaders, paths)


def build_post_processing(config: PipelineConfig) -> PostProcessingChain:
    return PostProcessingChain(
        spellcheck=SpellCheckStage(config.spellcheck_dictionary),
        grammar=GrammarStage(config.grammar_model_path, gpu_layers=config.grammar_gpu_layers),
    )


class App:
    def __init__(self, config_path: Optional[Path] = None) -> None:
        self.config_store = JsonConfigStore(config_path)
        self.config = self.config_store.get_pipeline_config()
        self.coordinator = build_coordinator(self.config)
        self.controller = SessionController(
            recorder=SoundDeviceRecorder(
                device=self.config.input_device,
                sample_rate_override=self.config.sample_rate_override,
            ),
            coordinator=self.coordinator,
            config=self.config,
            post_processing=build_post_processing(self.config),
            paste_service=ClipboardPasteService() if self.config.auto_paste else None,
            config_store=self.config_store,
            on_state_change=self._on_state_change,
            on_chunk=self._on_chunk,
            on_error=self._on_error,
            on_warning=self._on_warning,
        )
        self._spellcheck = self.config.spellcheck_enabled
        self._grammar = self.config.grammar_enabled
        self._print_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Callbacks (called from worker threads)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        if to_state == SessionState.RECORDING:
            self._print("Recording... press Enter to stop")
        elif to_state == SessionState.FINALIZING:
            self._print("Processing...")

    def _on_chunk(self, event: RecognitionEvent) -> None:
        if event.kind == RecognitionKind.PARTIAL.value:
            self._print(f"  ... {event.text}")
        elif event.kind == RecognitionKind.CHUNK.value:
            self._print(f"  [{event.method}] {event.text}")

    def _on_error(self, code: str, message: str) -> None:
        self._print(f"! {ERROR_MESSAGES.get(code, code)} ({message})")

    def _on_warning(self, code: str, message: str) -> None:
        self._print(f"~ {ERROR_MESSAGES.get(code, code)} ({message})")

    def _print(self, text: str) -> None:
        with self._print_lock:
            print(text, flush=True)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def toggle_recording(self) -> None:
        if self.controller.state == SessionState.IDLE:
            self.controller.start_recording()
            return
        result = self.controller.stop_recording()
        if isinstance(result, FinalTranscript):
            self._print(f"> {result.text}" if result.text else "(no speech recognised)")
            if result.archive_path:
                self._print(f"  saved to {result.archive_path}")
        else:
            self._print(f"(discarded: {result.reason})")

    def switch_engine(self, kind: EngineKind) -> None:
        self._print(f"Loading {kind.method}...")
        self.controller.switch_engine(kind)
        self._print(f"{kind.method} ready")

    def toggle_stage(self, spellcheck: bool, grammar: bool) -> None:
        self._spellcheck, self._grammar = spellcheck, grammar
        self.controller.set_post_processing(spellcheck, grammar)
        self._print(f"spellcheck={'on' if spellcheck else 'off'} grammar={'on' if grammar else 'off'}")

    def handle(self, command: str) -> bool:
        command = command.strip().lower()
        try:
            if command == "":
                self.toggle_recording()
            elif command == "w":
                self.switch_engine(EngineKind.WHISPER)
            elif command == "p":
                self.switch_engine(EngineKind.PARAKEET)
            elif command == "s":
                self.toggle_stage(not self._spellcheck, self._grammar)
            elif command == "g":
                self.toggle_stage(self._spellcheck, not self._grammar)
            elif command == "q":
                return False
            else:
                self._print(HELP)
        except ScribeError as exc:
            logger.debug("Command %r failed: %s", command, exc)
        return True

    def run(self) -> int:
        try:
            self.switch_engine(self.config.active_engine)
        except ScribeError:
            self._print("No engine loaded; set a model path in the config and press w or p")
        if self._spellcheck or self._grammar:
            self.controller.set_post_processing(self._spellcheck, self._grammar)
        self._print(HELP)
        try:
            for line in sys.stdin:
                if not self.handle(line):
                    break
        except KeyboardInterrupt:
            pass
        self.quit()
        return 0

    def quit(self) -> None:
        self.controller.cancel_recording("app quit")
        self.coordinator.unload()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="localscribe", description="Offline push-to-talk dictation")
    parser.add_argument("--config", type=Path, default=None, help="path to config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = App(args.config)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
