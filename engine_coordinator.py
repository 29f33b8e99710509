"""Single-active-engine lifecycle management."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from engines import clear_gpu_cache
from errors import EngineBusy, EngineError, ModelLoadError, NoEngineLoaded
from interfaces import AsrEngine, EngineLoader
from models import EngineKind
from recorder import in_audio_callback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineHandle:
    kind: Optional[EngineKind] = None
    engine: Optional[AsrEngine] = None
    model_path: Optional[Path] = None

    @property
    def is_loaded(self) -> bool:
        return self.engine is not None


class EngineCoordinator:
    """Owns the one loaded engine.

    ``switch_to`` is the only way the handle changes. The previous engine is
    always fully released before the next one loads, so two models never hold
    memory at the same time. A recording session borrows the handle; switching
    while it is borrowed raises ``EngineBusy``.
    """

    def __init__(
        self,
        loaders: Mapping[EngineKind, EngineLoader],
        model_paths: Optional[Mapping[EngineKind, Any]] = None,
    ) -> None:
        self._loaders = dict(loaders)
        self._model_paths = {k: Path(v) for k, v in (model_paths or {}).items() if v}
        self._lock = threading.RLock()
        self._handle = EngineHandle()
        self._borrowed = 0

    @property
    def handle(self) -> EngineHandle:
        return self._handle

    @property
    def active_kind(self) -> Optional[EngineKind]:
        return self._handle.kind

    def switch_to(self, kind: EngineKind, model_path: Optional[Path] = None) -> EngineHandle:
        kind = EngineKind(kind)
        self._ensure_not_audio_thread("switch engines")
        with self._lock:
            path = Path(model_path) if model_path else self._model_paths.get(kind)
            current = self._handle
            if current.is_loaded and current.kind == kind and (path is None or path == current.model_path):
                logger.debug("%s already loaded", kind.method)
                return current
            if self._borrowed:
                raise EngineBusy()
            loader = self._loaders.get(kind)
            if loader is None:
                raise ModelLoadError(f"no loader registered for {kind.method}")
            self._unload_locked()
            try:
                engine = loader.load(path)
            except EngineError:
                logger.error("Failed to load %s from %s", kind.method, path)
                clear_gpu_cache()
                raise
            except Exception as exc:
                clear_gpu_cache()
                raise ModelLoadError(f"Failed to load {kind.method}: {exc}") from exc
            if path is not None:
                self._model_paths[kind] = path
            self._handle = EngineHandle(kind=kind, engine=engine, model_path=path)
            logger.info("Active engine: %s", kind.method)
            return self._handle

    def unload(self) -> None:
        self._ensure_not_audio_thread("unload the engine")
        with self._lock:
            if self._borrowed:
                raise EngineBusy()
            self._unload_locked()

    def borrow(self) -> EngineHandle:
        with self._lock:
            if not self._handle.is_loaded:
                raise NoEngineLoaded()
            self._borrowed += 1
            return self._handle

    def release(self) -> None:
        with self._lock:
            if self._borrowed > 0:
                self._borrowed -= 1

    def _unload_locked(self) -> None:
        current = self._handle
        if not current.is_loaded:
            return
        logger.info("Unloading %s", current.kind.method if current.kind else "engine")
        self._handle = EngineHandle()
        try:
            current.engine.close()
        except Exception as exc:
            logger.warning("Error while closing engine: %s", exc)
        del current
        clear_gpu_cache()

    @staticmethod
    def _ensure_not_audio_thread(action: str) -> None:
        if in_audio_callback():
            raise EngineError(f"cannot {action} on the audio callback thread")
