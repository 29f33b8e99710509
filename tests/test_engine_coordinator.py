from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

import recorder
from engine_coordinator import EngineCoordinator
from errors import EngineBusy, EngineError, ModelLoadError, NoEngineLoaded
from fakes import FakeLoader, missing_model
from models import EngineKind


def make_coordinator(live=None, parakeet_fail=None):  # noqa: ANN001
    live = live if live is not None else []
    loaders = {
        EngineKind.WHISPER: FakeLoader(EngineKind.WHISPER, live),
        EngineKind.PARAKEET: FakeLoader(EngineKind.PARAKEET, live, fail=parakeet_fail),
    }
    paths = {EngineKind.WHISPER: "/models/whisper", EngineKind.PARAKEET: "/models/parakeet.nemo"}
    return EngineCoordinator(loaders, paths), loaders


def test_switch_loads_engine_with_configured_path() -> None:
    coordinator, loaders = make_coordinator()
    handle = coordinator.switch_to(EngineKind.WHISPER)

    assert handle.is_loaded
    assert handle.kind == EngineKind.WHISPER
    assert loaders[EngineKind.WHISPER].loaded_paths == [Path("/models/whisper")]
    assert coordinator.active_kind == EngineKind.WHISPER


def test_switch_to_loaded_engine_is_noop() -> None:
    coordinator, loaders = make_coordinator()
    first = coordinator.switch_to(EngineKind.WHISPER)
    second = coordinator.switch_to(EngineKind.WHISPER)

    assert first is second
    assert len(loaders[EngineKind.WHISPER].loaded_paths) == 1


def test_previous_engine_released_before_next_loads() -> None:
    live: list = []
    coordinator, loaders = make_coordinator(live)
    coordinator.switch_to(EngineKind.WHISPER)
    whisper = loaders[EngineKind.WHISPER].engines[0]

    with patch("engine_coordinator.clear_gpu_cache") as clear:
        coordinator.switch_to(EngineKind.PARAKEET)

    assert whisper.closed is True
    clear.assert_called()
    assert loaders[EngineKind.PARAKEET].live_at_load == [0]
    assert [e for e in live if not e.closed] == loaders[EngineKind.PARAKEET].engines


def test_failed_load_leaves_no_engine() -> None:
    coordinator, loaders = make_coordinator(parakeet_fail=missing_model())
    coordinator.switch_to(EngineKind.WHISPER)

    with pytest.raises(ModelLoadError):
        coordinator.switch_to(EngineKind.PARAKEET)

    assert coordinator.handle.is_loaded is False
    assert loaders[EngineKind.WHISPER].engines[0].closed is True


def test_unexpected_loader_exception_becomes_model_load_error() -> None:
    coordinator, _ = make_coordinator(parakeet_fail=RuntimeError("corrupt archive"))
    with pytest.raises(ModelLoadError, match="corrupt archive"):
        coordinator.switch_to(EngineKind.PARAKEET)


def test_switch_while_borrowed_raises_engine_busy() -> None:
    coordinator, _ = make_coordinator()
    coordinator.switch_to(EngineKind.WHISPER)
    coordinator.borrow()

    with pytest.raises(EngineBusy):
        coordinator.switch_to(EngineKind.PARAKEET)
    with pytest.raises(EngineBusy):
        coordinator.unload()

    coordinator.release()
    assert coordinator.switch_to(EngineKind.PARAKEET).kind == EngineKind.PARAKEET


def test_borrow_without_engine_raises() -> None:
    coordinator, _ = make_coordinator()
    with pytest.raises(NoEngineLoaded):
        coordinator.borrow()


def test_refuses_to_load_on_audio_callback_thread() -> None:
    coordinator, loaders = make_coordinator()
    recorder._callback_context.active = True
    try:
        with pytest.raises(EngineError):
            coordinator.switch_to(EngineKind.WHISPER)
    finally:
        recorder._callback_context.active = False
    assert loaders[EngineKind.WHISPER].loaded_paths == []


def test_unload_closes_engine() -> None:
    coordinator, loaders = make_coordinator()
    coordinator.switch_to(EngineKind.WHISPER)
    coordinator.unload()

    assert loaders[EngineKind.WHISPER].engines[0].closed is True
    assert coordinator.active_kind is None


def test_explicit_model_path_overrides_configured_one() -> None:
    coordinator, loaders = make_coordinator()
    coordinator.switch_to(EngineKind.WHISPER)
    coordinator.switch_to(EngineKind.WHISPER, Path("/models/other"))

    assert loaders[EngineKind.WHISPER].loaded_paths == [Path("/models/whisper"), Path("/models/other")]
