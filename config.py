"""Simple JSON-based config store."""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from models import EngineKind, ResamplerQuality

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    sample_rate_override: Optional[int] = None
    input_device: Optional[str] = None
    resampler_quality: ResamplerQuality = ResamplerQuality.BALANCED
    vad_threshold: float = 0.005
    vad_hangover_ms: int = 300
    vad_adaptive: bool = False
    buffered_max_s: float = 6.0
    pre_roll_ms: int = 200
    denoise_enabled: bool = False
    denoise_strength: float = 0.9
    streaming_window_ms: int = 320
    streaming_latency_ms: int = 500
    streaming_buffer_s: float = 10.0
    min_session_ms: int = 1500
    active_engine: EngineKind = EngineKind.WHISPER
    whisper_model_path: str = ""
    parakeet_model_path: str = ""
    whisper_device: str = "auto"
    whisper_compute_type: str = "default"
    language: str = "en"
    spellcheck_enabled: bool = False
    grammar_enabled: bool = False
    spellcheck_dictionary: str = ""
    grammar_model_path: str = ""
    grammar_gpu_layers: int = 0
    recordings_dir: str = ""
    auto_paste: bool = False

    def archive_dir(self) -> Path:
        if self.recordings_dir:
            return Path(self.recordings_dir)
        return Path(tempfile.gettempdir()) / "localscribe"

    def model_path(self, kind: EngineKind) -> Optional[Path]:
        raw = self.whisper_model_path if kind == EngineKind.WHISPER else self.parakeet_model_path
        return Path(raw).expanduser() if raw else None

    @classmethod
    def from_dict(cls, data: dict) -> PipelineConfig:
        """Build a config, keeping defaults for unknown or invalid values."""
        config = cls()
        for f in fields(cls):
            if f.name not in data:
                continue
            default = getattr(config, f.name)
            try:
                value = _coerce(f.name, data[f.name], default)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid config value %s=%r", f.name, data[f.name])
                continue
            setattr(config, f.name, value)
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["resampler_quality"] = self.resampler_quality.value
        data["active_engine"] = self.active_engine.value
        return data


def _coerce(name: str, value: Any, default: Any) -> Any:
    if name == "sample_rate_override":
        return None if value is None else int(value)
    if isinstance(default, ResamplerQuality):
        return ResamplerQuality(value)
    if isinstance(default, EngineKind):
        return EngineKind(value)
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise TypeError("expected bool")
        return value
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if default is None:
        return None if value is None else str(value)
    return str(value)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "localscribe" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_pipeline_config(self) -> PipelineConfig:
        return PipelineConfig.from_dict(self._read_all())

    def set_pipeline_config(self, config: PipelineConfig) -> None:
        self._write_all(config.to_dict())

    def get_active_engine(self) -> EngineKind:
        return self.get_pipeline_config().active_engine

    def set_active_engine(self, kind: EngineKind) -> None:
        data = self._read_all()
        data["active_engine"] = kind.value
        self._write_all(data)

    def get_post_processing(self) -> tuple[bool, bool]:
        config = self.get_pipeline_config()
        return config.spellcheck_enabled, config.grammar_enabled

    def set_post_processing(self, spellcheck: bool, grammar: bool) -> None:
        data = self._read_all()
        data["spellcheck_enabled"] = spellcheck
        data["grammar_enabled"] = grammar
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Config at %s is unreadable, using defaults", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
